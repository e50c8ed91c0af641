import math
from typing import Iterable, List, Optional

from guessify.models.room import Player

MAX_POINTS = 1000
MIN_POINTS = 100
FALLBACK_POINTS = 500 # Answer arrived before the round start was recorded


def calculate_points(round_start: Optional[float], now: float, round_duration_sec: float) -> int:
    """
    Points for an answer given at `now` in a round that started at
    `round_start` (both in seconds). Decays linearly from 1000 at the start
    to 100 once the round duration has elapsed; never below 100.
    """
    if round_start is None:
        return FALLBACK_POINTS
    if round_duration_sec <= 0:
        return MIN_POINTS

    elapsed = now - round_start
    ratio = (round_duration_sec - elapsed) / round_duration_sec
    ratio = max(0.0, min(1.0, ratio))
    points = math.floor(MIN_POINTS + (MAX_POINTS - MIN_POINTS) * ratio)
    return max(points, MIN_POINTS)


def apply_points(player: Player, delta: int, correct: bool = False) -> Player:
    # previous_points only moves at round boundaries, see snapshot_previous_points
    update = {"points": player.points + delta}
    if correct:
        update["correct_answers"] = player.correct_answers + 1
    return player.model_copy(update=update)


def snapshot_previous_points(players: Iterable[Player]) -> List[Player]:
    return [p.model_copy(update={"previous_points": p.points}) for p in players]


def rank_players(players: Iterable[Player]) -> List[Player]:
    return sorted(players, key=lambda p: p.points, reverse=True)
