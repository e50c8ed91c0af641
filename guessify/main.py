import argparse
import asyncio
import logging

import socketio

from guessify import config
from guessify.models import events
from guessify.models.room import GameMode, RoomConfig, is_valid_room_code, normalize_room_code
from guessify.models.round import Phase
from guessify.services.catalog import SongCatalog
from guessify.services.playback import PlaybackSession, StreamedAudioBackend
from guessify.services.rounds import RoundLifecycleController

logger = logging.getLogger(__name__)


def bind_socket(sio, controller: RoundLifecycleController) -> None:
    """Route the server's round events into the controller."""

    def handler(event, method):
        async def _handle(data=None):
            try:
                await method(data)
            except Exception as e:
                logger.error(f"Error in {event}: {e}", exc_info=True)
        return _handle

    sio.on(events.ROOM_INFO, handler(events.ROOM_INFO, controller.on_room_info))
    sio.on(events.ROUND_START, handler(events.ROUND_START, controller.on_round_start))
    sio.on(events.SCORE_UPDATE, handler(events.SCORE_UPDATE, controller.on_score_update))
    sio.on(events.CONTINUE_TO_NEXT_ROUND, handler(events.CONTINUE_TO_NEXT_ROUND, controller.on_continue))
    sio.on(events.NAVIGATE_TO_END_GAME, handler(events.NAVIGATE_TO_END_GAME, controller.on_end_game))


def print_phase(controller: RoundLifecycleController, phase: Phase) -> None:
    state = controller.state
    if phase == Phase.ACTIVE:
        print(f"\n-- Round {controller.current_round}/{controller.total_rounds} ({state.time_left}s) --")
        for i, option in enumerate(state.options):
            print(f"  [{i + 1}] {option}")
    elif phase == Phase.INTERMISSION:
        result = controller.round_result()
        if result.timed_out:
            print(f"Time's up! It was: {result.correct_answer}")
        elif result.player_got_correct:
            print(f"Correct! {result.correct_answer}")
        else:
            print(f"Nope, it was: {result.correct_answer}")
        for p in result.players:
            print(f"  {p.name}: {p.points} (+{p.points - p.previous_points})")
    elif phase == Phase.ENDED:
        print("\nGame over")


async def console(controller: RoundLifecycleController, done: asyncio.Event) -> None:
    """
    Read answers from stdin: an option number, "y" for a correct free-form
    guess, "s" to skip, "c" to continue, "m" to toggle mute, "q" to quit.
    """
    loop = asyncio.get_running_loop()
    while not done.is_set():
        line = await loop.run_in_executor(None, input)
        cmd = line.strip().lower()
        # Typing anything counts as the gesture that unlocks audio
        await controller.session.unlock()
        if cmd == "q":
            break
        elif cmd == "s":
            await controller.skip()
        elif cmd == "c":
            await controller.continue_game()
        elif cmd == "m":
            controller.session.set_muted(not controller.session.muted)
        elif cmd == "y":
            await controller.correct_guess()
        elif cmd.isdigit():
            await controller.select_option(int(cmd) - 1)
    done.set()


async def run(args) -> None:
    backend = StreamedAudioBackend()
    session = PlaybackSession(backend)
    done = asyncio.Event()
    sio = None

    if args.solo:
        local_config = RoomConfig.from_menu(args.genre, args.mode, args.rounds, args.guess_time)
        controller = RoundLifecycleController(
            session,
            args.name,
            local_config=local_config,
            catalog=SongCatalog(args.api_url),
        )
    else:
        code = normalize_room_code(args.room)
        if not is_valid_room_code(code):
            raise SystemExit(f"Invalid room code: {args.room!r}")
        sio = socketio.AsyncClient()
        controller = RoundLifecycleController(
            session,
            args.name,
            code,
            is_host=args.host,
            emit=sio.emit,
        )
        bind_socket(sio, controller)

        @sio.event
        async def connect():
            logger.info(f"Connected to {args.server_url}")

        @sio.event
        async def disconnect():
            logger.info("Disconnected from server")

    def on_phase(phase):
        print_phase(controller, phase)
        if phase == Phase.ENDED:
            done.set()
    controller.subscribe(on_phase)

    try:
        if sio is not None:
            await sio.connect(args.server_url)
        await controller.mount()
        await console(controller, done)
    finally:
        controller.close()
        if sio is not None and sio.connected:
            await sio.disconnect()
        await backend.aclose()


def cli() -> None:
    parser = argparse.ArgumentParser(description="Guess songs from their previews")
    parser.add_argument("--name", default="Player")
    parser.add_argument("--room", help="Room code to join")
    parser.add_argument("--host", action="store_true", help="Drive round progression for the room")
    parser.add_argument("--solo", action="store_true", help="Single-player game")
    parser.add_argument("--genre", default="pop")
    parser.add_argument("--mode", default=GameMode.SINGLE_SONG.value, help='e.g. "Quick Guess - 3 Sec"')
    parser.add_argument("--rounds", default="10 Rounds")
    parser.add_argument("--guess-time", default="20 sec")
    parser.add_argument("--server-url", default=config.SERVER_URL)
    parser.add_argument("--api-url", default=config.API_BASE_URL)
    args = parser.parse_args()
    if not args.solo and not args.room:
        parser.error("--room is required unless --solo is given")

    logging.basicConfig(level=config.LOG_LEVEL)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
