"""
Round lifecycle for one client.

    IDLE -> LOADING -> ACTIVE -> ANSWER_LOCKED | TIMED_OUT -> INTERMISSION
         -> LOADING (next round) | ENDED

In a multiplayer room the server is the authority: non-host clients only
move on inbound events (or when their own countdown runs out), and the host's
local advance after "continue" is overwritten by the broadcast it triggers.
Single-player games generate their rounds locally and never talk to a server.
"""
import asyncio
import logging
import math
import random
import time
from typing import Awaitable, Callable, List, Optional

from guessify.config import ROUND_SETTLE_SEC, SNIPPET_DELAY_SEC
from guessify.exceptions import CatalogError, ProtocolError
from guessify.models import events
from guessify.models.events import (
    GuessArtistRound,
    HostContinuePayload,
    MixedSongsRound,
    QuickGuessRound,
    RoomCodePayload,
    SingleSongRound,
    UpdateScorePayload,
)
from guessify.models.room import GameMode, Player, RoomConfig, Track
from guessify.models.round import Phase, RoundContent, RoundResult, RoundState
from guessify.services.catalog import SongCatalog
from guessify.services.playback import PlaybackSession
from guessify.services.scoring import (
    apply_points,
    calculate_points,
    rank_players,
    snapshot_previous_points,
)
from guessify.services.selection import build_round_start, derive_round_content

logger = logging.getLogger(__name__)

Emitter = Callable[[str, dict], Awaitable[None]]
PhaseListener = Callable[[Phase], None]


class RoundLifecycleController:
    def __init__(
        self,
        session: PlaybackSession,
        player_name: str,
        code: str = "",
        *,
        is_host: bool = False,
        emit: Optional[Emitter] = None,
        local_config: Optional[RoomConfig] = None,
        catalog: Optional[SongCatalog] = None,
        playlist: Optional[List[Track]] = None,
        clock: Callable[[], float] = time.time,
        tick_interval: float = 1.0,
        settle_sec: float = ROUND_SETTLE_SEC,
        snippet_delay_sec: float = SNIPPET_DELAY_SEC,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.player_name = player_name
        self.code = code
        self.is_host = is_host
        self.local_config = local_config # Set for single-player games
        self._emit = emit
        self._catalog = catalog
        self._clock = clock
        self._tick_interval = tick_interval
        self._settle_sec = settle_sec
        self._snippet_delay_sec = snippet_delay_sec
        self._rng = rng

        self.config: Optional[RoomConfig] = None
        self.playlist: List[Track] = list(playlist or [])
        self.player = Player(name=player_name)
        self.players: List[Player] = [self.player]
        self.current_round = 0
        self.phase = Phase.IDLE
        self.state = RoundState()
        self.content = RoundContent()
        self.mode: Optional[GameMode] = None
        self._result: Optional[RoundResult] = None

        self._round_lock_until = 0.0
        self._requested_round = 0
        self._countdown_task: Optional[asyncio.Task] = None
        self._playback_task: Optional[asyncio.Task] = None
        self._listeners: List[PhaseListener] = []
        self._closed = False
        self._unsubscribe_track = session.on_track_change(self._on_track_change)

    # --- public state ---

    @property
    def is_single_player(self) -> bool:
        return self.local_config is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def total_rounds(self) -> int:
        return self.config.rounds if self.config else 0

    @property
    def playback_task(self) -> Optional[asyncio.Task]:
        return self._playback_task

    def round_result(self) -> Optional[RoundResult]:
        return self._result if self.phase == Phase.INTERMISSION else None

    def subscribe(self, listener: PhaseListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    # --- lifecycle ---

    async def mount(self) -> None:
        if self.phase != Phase.IDLE or self._closed:
            return
        if not self.is_single_player:
            await self._send(events.GET_ROOM_INFO, RoomCodePayload(code=self.code))
            return

        self.config = self.local_config
        if not self.playlist and self._catalog is not None:
            try:
                self.playlist = list(await self._catalog.ensure_genre(self.config.genre))
            except CatalogError as e:
                logger.warning(f"Could not load songs, rounds will be silent: {e}")
        if self._closed or self.phase != Phase.IDLE:
            return
        await self._enter_round(1)

    def close(self) -> None:
        """Unmount: stop audio, invalidate pending plays, drop subscriptions."""
        if self._closed:
            return
        self._unsubscribe_track()
        self.session.close()
        self._cancel_round_tasks()
        self._closed = True

    # --- inbound events ---

    async def on_room_info(self, data) -> None:
        if self._closed:
            return
        try:
            info = events.parse_room_info(data)
        except ProtocolError as e:
            logger.warning(str(e))
            return

        # Safe to re-apply at any point; it only refreshes config and playlist
        self.config = info.config
        self.playlist = list(info.playlist)
        self.code = info.code or self.code
        logger.info(f"room-info code={self.code} genre={info.config.genre.value} playlist={len(self.playlist)}")
        if not self.playlist:
            logger.warning("Room playlist is empty, server did not supply tracks")
        elif not any(t.has_source for t in self.playlist):
            logger.warning("Room playlist has no playable preview URLs")

        if self.phase in (Phase.IDLE, Phase.LOADING):
            self.state.time_left = info.config.guess_time_sec
        if self.phase == Phase.IDLE:
            await self._enter_round(1)

    async def on_round_start(self, data) -> None:
        if self._closed or self.phase == Phase.ENDED:
            return
        if self.config is None:
            logger.warning("round-start before room-info, ignoring")
            return
        try:
            event = events.parse_round_start(data)
        except ProtocolError as e:
            logger.warning(str(e))
            if self.phase == Phase.LOADING:
                self._activate(None)
            return

        if event.round < self.current_round:
            logger.info(f"Ignoring round-start for past round {event.round}")
            return
        if event.round == self.current_round and self.phase != Phase.LOADING:
            logger.debug(f"Round {event.round} already started, ignoring duplicate")
            return
        if event.round > self.current_round:
            # Already started by the server, no need to ask for it
            if self.is_host:
                self._requested_round = event.round
            await self._enter_round(event.round)
        if self.current_round != event.round or self.phase != Phase.LOADING:
            return
        self._activate(event)

    async def on_score_update(self, data) -> None:
        if self._closed:
            return
        try:
            players = events.parse_score_update(data)
        except ProtocolError as e:
            logger.warning(str(e))
            return
        if not players:
            return

        known = {p.name: p for p in self.players}
        merged = []
        for p in players:
            # Keep our round-delta snapshot when the server doesn't send one
            if "previous_points" not in p.model_fields_set and p.name in known:
                p = p.model_copy(update={"previous_points": known[p.name].previous_points})
            merged.append(p)
        self.players = rank_players(merged)
        me = next((p for p in merged if p.name == self.player_name), None)
        if me is not None:
            self.player = me

    async def on_continue(self, data) -> None:
        if self._closed or self.phase == Phase.ENDED:
            return
        try:
            next_round = events.parse_continue(data).next_round
        except ProtocolError as e:
            logger.warning(str(e))
            return

        if next_round <= self.current_round:
            # Our own optimistic advance, or a repeat of the same broadcast
            logger.debug(f"Already at round {self.current_round}, ignoring continue to {next_round}")
            return
        if self.config is not None and next_round > self.config.rounds:
            await self._end()
            return
        await self._enter_round(next_round)

    async def on_end_game(self, data=None) -> None:
        await self._end()

    # --- player actions ---

    async def select_option(self, index: int) -> bool:
        """Multiple-choice answer. Returns True if it was the right one."""
        if not self._accepting_answers():
            return False
        options = self.state.options
        if not options or not 0 <= index < len(options):
            logger.warning(f"No option {index} in this round")
            return False
        self.state.selected_option_index = index
        return await self._lock_in(options[index] == self.state.correct_answer)

    async def correct_guess(self) -> bool:
        """Free-form guessing reported a correct title/artist."""
        if not self._accepting_answers():
            return False
        if self.mode is not None and self.mode.has_options:
            logger.warning("Free-form guess in a multiple-choice round, ignoring")
            return False
        return await self._lock_in(True)

    async def skip(self) -> None:
        if not self._accepting_answers():
            return
        self.state.has_answered = True
        self._set_phase(Phase.ANSWER_LOCKED)
        self._cancel_round_tasks()
        self.session.stop()
        self.state.reveal_answer = True
        self._enter_intermission()

    async def continue_game(self) -> None:
        if self.phase != Phase.INTERMISSION or self.config is None:
            return
        is_final = self.current_round >= self.config.rounds
        next_round = self.current_round + 1

        if not self.is_single_player:
            if not self.is_host:
                logger.debug("Waiting for the host to continue")
                return
            if is_final:
                await self._send(events.HOST_END_GAME, RoomCodePayload(code=self.code))
            else:
                await self._send(events.HOST_CONTINUE_ROUND, HostContinuePayload(
                    code=self.code,
                    next_round=next_round,
                    total_rounds=self.config.rounds,
                ))

        # Local advance; for the host the broadcast that follows is a no-op.
        # The broadcast may also have beaten us here while the emit was in flight.
        if is_final:
            await self._end()
        elif self.current_round < next_round and not self._closed:
            await self._enter_round(next_round)

    async def tick(self) -> None:
        """One second of countdown."""
        if self.phase != Phase.ACTIVE:
            return
        self.state.time_left = max(0, self.state.time_left - 1)
        if self.state.time_left == 0:
            await self._time_out()

    # --- transitions ---

    async def _enter_round(self, number: int) -> bool:
        now = time.monotonic()
        # Only a repeat of the round being set up is held back; a newer round always goes through
        if number == self.current_round and now < self._round_lock_until:
            logger.debug(f"Round {number} is still starting, ignoring repeat")
            return False
        self._round_lock_until = now + self._settle_sec

        self._cancel_round_tasks()
        self.session.stop()
        if number > 1:
            self.players = snapshot_previous_points(self.players)
            self.player = self.player.model_copy(update={"previous_points": self.player.points})

        self.current_round = number
        self.state = RoundState(time_left=self.config.guess_time_sec if self.config else 0)
        self.content = RoundContent()
        self._result = None
        self._set_phase(Phase.LOADING)

        if self.is_single_player:
            self._start_local_round()
        elif self.is_host and self._requested_round != number:
            self._requested_round = number
            await self._send(events.HOST_START_ROUND, RoomCodePayload(code=self.code))
        return True

    def _start_local_round(self) -> None:
        try:
            event = build_round_start(
                self.config.game_mode,
                self.current_round,
                self.code,
                self.playlist,
                self._clock() * 1000,
                self._rng,
            )
        except ProtocolError as e:
            logger.warning(f"Round {self.current_round} has no content: {e}")
            event = None
        self._activate(event)

    def _activate(self, event) -> None:
        content = RoundContent()
        if event is not None:
            try:
                content = derive_round_content(event, self.playlist)
            except ProtocolError as e:
                logger.warning(f"Round {event.round} has no content: {e}")
            start = event.start_time_sec
            self.mode = GameMode(event.mode)
        else:
            start = self._clock()
            self.mode = self.config.game_mode

        if content.is_empty:
            logger.info(f"Round {self.current_round} has nothing to play, running the timer only")
        elapsed = max(0, math.floor(self._clock() - start))
        self.content = content
        self.state = RoundState(
            time_left=max(0, self.config.guess_time_sec - elapsed),
            round_start_timestamp=start,
            is_round_active=True,
            current_song=content.current_song,
            options=list(content.options),
            correct_answer=content.correct_answer,
        )
        self._set_phase(Phase.ACTIVE)
        self._countdown_task = asyncio.create_task(self._run_countdown())
        if event is not None and content.tracks:
            self._playback_task = asyncio.create_task(self._play_round(event, content, start))

    async def _play_round(self, event, content: RoundContent, start: float) -> bool:
        if isinstance(event, (SingleSongRound, GuessArtistRound)):
            return await self.session.play_single(content.tracks[0])
        elif isinstance(event, QuickGuessRound):
            state = self.state
            delay = max(0.0, self._snippet_delay_sec - (self._clock() - start))
            await asyncio.sleep(delay)
            played = await self.session.play_snippet(content.tracks[0], self.config.effective_snippet_sec)
            state.has_played_snippet = True
            return played
        elif isinstance(event, MixedSongsRound):
            return await self.session.play_simultaneous(content.tracks)
        else:
            raise ProtocolError(events.ROUND_START, f"unsupported round type {type(event).__name__}")

    async def _run_countdown(self) -> None:
        state = self.state
        if state.time_left <= 0:
            await self._time_out()
            return
        while self.phase == Phase.ACTIVE:
            await asyncio.sleep(self._tick_interval)
            if self.state is not state:
                return
            await self.tick()

    async def _lock_in(self, correct: bool) -> bool:
        # Lock before anything awaits so a second answer can't get in
        self.state.has_answered = True
        self._set_phase(Phase.ANSWER_LOCKED)
        self._cancel_round_tasks()

        if correct:
            points = calculate_points(self.state.round_start_timestamp, self._clock(), self.config.guess_time_sec)
            self._update_local_player(apply_points(self.player, points, correct=True))
            logger.info(f"{self.player_name} answered correctly for {points} points")
        self.state.answered_correctly = correct
        self.state.reveal_answer = True
        payload = UpdateScorePayload(
            code=self.code,
            player_name=self.player_name,
            points=self.player.points,
            correct_answers=self.player.correct_answers,
        )

        # Inbound events can run while the emit is awaited, so the round is
        # wrapped up first
        self.session.stop()
        self._enter_intermission()
        if not self.is_single_player:
            await self._send(events.UPDATE_SCORE, payload)
        return correct

    async def _time_out(self) -> None:
        if self.phase != Phase.ACTIVE:
            return
        self._cancel_round_tasks()
        self.session.stop()
        self.state.time_left = 0
        self.state.timed_out = True
        self.state.reveal_answer = True
        self._set_phase(Phase.TIMED_OUT)
        self._enter_intermission()
        if not self.is_single_player:
            await self._send(events.ROUND_END, RoomCodePayload(code=self.code))

    def _enter_intermission(self) -> None:
        self.state.is_round_active = False
        self.state.is_intermission = True
        self._result = RoundResult(
            round=self.current_round,
            total_rounds=self.total_rounds,
            is_final_round=self.current_round >= self.total_rounds,
            correct_answer=self.state.correct_answer,
            player_got_correct=self.state.answered_correctly,
            timed_out=self.state.timed_out,
            players=list(self.players),
        )
        self._set_phase(Phase.INTERMISSION)

    async def _end(self) -> None:
        if self.phase == Phase.ENDED:
            return
        self._set_phase(Phase.ENDED)
        self.close()

    # --- helpers ---

    def _accepting_answers(self) -> bool:
        return self.phase == Phase.ACTIVE and not self.state.has_answered

    def _update_local_player(self, player: Player) -> None:
        self.player = player
        if any(p.name == player.name for p in self.players):
            self.players = [player if p.name == player.name else p for p in self.players]
        else:
            self.players.append(player)

    def _on_track_change(self, track: Track, token: int) -> None:
        if self.phase == Phase.ACTIVE and self.content.current_song is not None:
            self.state.current_song = track

    def _cancel_round_tasks(self) -> None:
        try:
            current = asyncio.current_task()
        except RuntimeError:
            # Called from outside the event loop, e.g. a sync teardown
            current = None
        for task in (self._countdown_task, self._playback_task):
            if task is None or task is current or task.done() or task.get_loop().is_closed():
                continue
            task.cancel()
        self._countdown_task = None
        self._playback_task = None

    def _set_phase(self, phase: Phase) -> None:
        if phase == self.phase:
            return
        logger.info(f"[round {self.current_round}] {self.phase.value} -> {phase.value}")
        self.phase = phase
        for listener in list(self._listeners):
            try:
                listener(phase)
            except Exception as e:
                logger.error(f"Phase listener failed: {e}", exc_info=True)

    async def _send(self, event: str, payload) -> None:
        if self._emit is None:
            return
        try:
            await self._emit(event, payload.to_wire())
        except Exception as e:
            logger.error(f"Failed to emit {event}: {e}", exc_info=True)
