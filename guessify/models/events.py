"""
Socket events exchanged with the rendezvous server.

Inbound events are parsed into models here before the round controller sees
them, so a malformed payload is reported as a ProtocolError instead of
blowing up halfway through a state transition.
"""
from typing import Annotated, List, Literal, Union

from pydantic import Field, TypeAdapter, ValidationError, model_validator

from guessify.exceptions import ProtocolError
from guessify.models.room import Player, RoomInfo, WireModel

# Inbound (server -> client)
ROOM_INFO = "room-info"
ROUND_START = "round-start"
SCORE_UPDATE = "score-update"
CONTINUE_TO_NEXT_ROUND = "continue-to-next-round"
NAVIGATE_TO_END_GAME = "navigate-to-end-game"

# Outbound (client -> server)
GET_ROOM_INFO = "get-room-info"
HOST_START_ROUND = "host-start-round"
UPDATE_SCORE = "update-score"
ROUND_END = "round-end"
HOST_CONTINUE_ROUND = "host-continue-round"
HOST_END_GAME = "host-end-game"


# ---- round-start ----

class SinglePick(WireModel):
    playlist_index: int = Field(ge=0)


class QuickGuessPick(WireModel):
    playlist_index: int = Field(ge=0)
    choice_indices: List[Annotated[int, Field(ge=0)]] = Field(min_length=1)

    @model_validator(mode="after")
    def _answer_is_a_choice(self):
        if self.playlist_index not in self.choice_indices:
            raise ValueError("choiceIndices must include playlistIndex")
        return self


class MixedPick(WireModel):
    playlist_indices: List[Annotated[int, Field(ge=0)]] = Field(min_length=1, max_length=3)
    choice_indices: List[Annotated[int, Field(ge=0)]] = Field(min_length=1)


class _RoundStartBase(WireModel):
    code: str
    round: int = Field(ge=1)
    start_time: float # epoch milliseconds, set by whoever generated the round

    @property
    def start_time_sec(self) -> float:
        return self.start_time / 1000.0


class SingleSongRound(_RoundStartBase):
    mode: Literal["Single Song"]
    pick: SinglePick


class GuessArtistRound(_RoundStartBase):
    mode: Literal["Guess the Artist"]
    pick: SinglePick


class QuickGuessRound(_RoundStartBase):
    mode: Literal["Quick Guess"]
    pick: QuickGuessPick


class MixedSongsRound(_RoundStartBase):
    mode: Literal["Mixed Songs"]
    pick: MixedPick


RoundStartEvent = Annotated[
    Union[SingleSongRound, GuessArtistRound, QuickGuessRound, MixedSongsRound],
    Field(discriminator="mode"),
]

_round_start_adapter = TypeAdapter(RoundStartEvent)
_players_adapter = TypeAdapter(List[Player])


# ---- other inbound ----

class ContinueToNextRound(WireModel):
    next_round: int = Field(ge=1)


# ---- outbound ----

class RoomCodePayload(WireModel):
    code: str


class UpdateScorePayload(WireModel):
    code: str
    player_name: str
    points: int
    correct_answers: int


class HostContinuePayload(WireModel):
    code: str
    next_round: int
    total_rounds: int


def _validate(event: str, adapter_or_model, data):
    try:
        if isinstance(adapter_or_model, TypeAdapter):
            return adapter_or_model.validate_python(data)
        return adapter_or_model.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(event, f"{e.error_count()} invalid field(s): {e.errors()[0]['msg']}") from e


def parse_room_info(data) -> RoomInfo:
    return _validate(ROOM_INFO, RoomInfo, data)


def parse_round_start(data):
    """Validate the `mode` discriminant and then the matching variant."""
    return _validate(ROUND_START, _round_start_adapter, data)


def parse_score_update(data) -> List[Player]:
    return _validate(SCORE_UPDATE, _players_adapter, data or [])


def parse_continue(data) -> ContinueToNextRound:
    return _validate(CONTINUE_TO_NEXT_ROUND, ContinueToNextRound, data)
