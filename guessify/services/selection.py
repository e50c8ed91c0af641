"""
Round picks.

Whoever drives a round (the server for multiplayer rooms, the client itself
in single-player) decides which playlist indices it uses. Every client then
derives the same round content from those indices, so all players see the
same options in the same order.
"""
import random
import secrets
from typing import List, Optional, Sequence

from guessify.exceptions import ProtocolError
from guessify.models.events import (
    ROUND_START,
    GuessArtistRound,
    MixedSongsRound,
    QuickGuessRound,
    SingleSongRound,
)
from guessify.models.room import GameMode, Track
from guessify.models.round import RoundContent

QUICK_GUESS_OPTIONS = 4
MIXED_SONG_COUNT = 3
MIXED_DISTRACTORS = 3

_system_random = secrets.SystemRandom()


def derive_round_content(event, playlist: Sequence[Track]) -> RoundContent:
    """Resolve a round-start event against the room playlist."""

    def track_at(index: int) -> Track:
        if not 0 <= index < len(playlist):
            raise ProtocolError(ROUND_START, f"index {index} outside playlist of {len(playlist)}")
        return playlist[index]

    if isinstance(event, (SingleSongRound, GuessArtistRound)):
        song = track_at(event.pick.playlist_index)
        answer = song.artist if isinstance(event, GuessArtistRound) else song.title
        return RoundContent(tracks=[song], current_song=song, correct_answer=answer)

    if isinstance(event, QuickGuessRound):
        song = track_at(event.pick.playlist_index)
        options = [track_at(i).title for i in event.pick.choice_indices]
        return RoundContent(tracks=[song], current_song=song, options=options, correct_answer=song.title)

    if isinstance(event, MixedSongsRound):
        songs = [track_at(i) for i in event.pick.playlist_indices]
        titles = [s.title for s in songs]
        distractors = [track_at(i).title for i in event.pick.choice_indices]
        position = sum(event.pick.playlist_indices) % (len(distractors) + 1)
        return RoundContent(
            tracks=songs,
            options=mixed_song_options(titles, distractors, position),
            correct_answer=", ".join(titles),
        )

    raise ProtocolError(ROUND_START, f"unsupported round type {type(event).__name__}")


def mixed_song_options(answer_titles: List[str], distractor_titles: List[str], answer_position: int) -> List[str]:
    """
    Each distractor replaces one title of the answer, cycling through the
    answer's positions. The answer itself is inserted at `answer_position`.
    """
    answer = ", ".join(answer_titles)
    options = []
    for k, title in enumerate(distractor_titles):
        combo = list(answer_titles)
        combo[k % len(combo)] = title
        options.append(", ".join(combo))
    options.insert(answer_position % (len(options) + 1), answer)
    return options


def build_round_start(
    mode: GameMode,
    round_number: int,
    code: str,
    playlist: Sequence[Track],
    start_time_ms: float,
    rng: Optional[random.Random] = None,
):
    """Generate the pick for a locally driven round."""
    rng = rng or _system_random
    if not playlist:
        raise ProtocolError(ROUND_START, "playlist is empty")

    base = {"code": code, "round": round_number, "start_time": start_time_ms, "mode": GameMode(mode).value}

    if mode in (GameMode.SINGLE_SONG, GameMode.GUESS_ARTIST):
        # Work through the playlist in order
        pick = {"playlist_index": (round_number - 1) % len(playlist)}
        cls = SingleSongRound if mode == GameMode.SINGLE_SONG else GuessArtistRound
        return cls(**base, pick=pick)

    candidates = _playable_indices(playlist)

    if mode == GameMode.QUICK_GUESS:
        answer = rng.choice(candidates)
        others = _distinct_title_indices(playlist, exclude=[answer])
        choices = rng.sample(others, min(QUICK_GUESS_OPTIONS - 1, len(others))) + [answer]
        rng.shuffle(choices)
        return QuickGuessRound(**base, pick={"playlist_index": answer, "choice_indices": choices})

    if mode == GameMode.MIXED_SONGS:
        picks = rng.sample(candidates, min(MIXED_SONG_COUNT, len(candidates)))
        others = _distinct_title_indices(playlist, exclude=picks)
        if not others:
            raise ProtocolError(ROUND_START, "not enough distinct tracks for Mixed Songs options")
        distractors = rng.sample(others, min(MIXED_DISTRACTORS, len(others)))
        return MixedSongsRound(**base, pick={"playlist_indices": picks, "choice_indices": distractors})

    raise ProtocolError(ROUND_START, f"unsupported game mode {mode!r}")


def _playable_indices(playlist: Sequence[Track]) -> List[int]:
    playable = [i for i, t in enumerate(playlist) if t.has_source]
    # A silent round is still a round
    return playable or list(range(len(playlist)))


def _distinct_title_indices(playlist: Sequence[Track], exclude: Sequence[int]) -> List[int]:
    taken = {playlist[i].title for i in exclude}
    result = []
    for i, track in enumerate(playlist):
        if i in exclude or track.title in taken:
            continue
        taken.add(track.title)
        result.append(i)
    return result
