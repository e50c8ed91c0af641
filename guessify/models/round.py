from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from guessify.models.room import Player, Track


class Phase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    ACTIVE = "active"
    ANSWER_LOCKED = "answer_locked"
    TIMED_OUT = "timed_out"
    INTERMISSION = "intermission"
    ENDED = "ended"


class RoundContent(BaseModel):
    """What a round plays and what counts as the right answer."""
    model_config = ConfigDict(frozen=True)

    tracks: List[Track] = [] # Tracks to play; one except in Mixed Songs
    current_song: Optional[Track] = None
    options: List[str] = [] # Empty for free-form modes
    correct_answer: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.tracks and not self.correct_answer


class RoundState(BaseModel):
    time_left: int = 0
    round_start_timestamp: Optional[float] = None # epoch seconds
    is_round_active: bool = False
    is_intermission: bool = False
    has_answered: bool = False
    selected_option_index: Optional[int] = None
    answered_correctly: bool = False
    reveal_answer: bool = False
    timed_out: bool = False
    has_played_snippet: bool = False
    current_song: Optional[Track] = None
    options: List[str] = []
    correct_answer: str = ""


class RoundResult(BaseModel):
    """Frozen view of a finished round, handed to the result screen."""
    model_config = ConfigDict(frozen=True)

    round: int
    total_rounds: int
    is_final_round: bool
    correct_answer: str
    player_got_correct: bool
    timed_out: bool
    players: List[Player] = []
