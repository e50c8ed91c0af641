import re
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ROOM_CODE_LENGTH = 6
_ROOM_CODE_RE = re.compile(rf"^[A-Z0-9]{{{ROOM_CODE_LENGTH}}}$")


class WireModel(BaseModel):
    # camelCase on the wire, snake_case in Python; accept both on input
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class GameMode(str, Enum):
    SINGLE_SONG = "Single Song"
    MIXED_SONGS = "Mixed Songs"
    GUESS_ARTIST = "Guess the Artist"
    QUICK_GUESS = "Quick Guess"

    @property
    def has_options(self) -> bool:
        return self in (GameMode.MIXED_SONGS, GameMode.QUICK_GUESS)


class Genre(str, Enum):
    KPOP = "kpop"
    POP = "pop"
    HIPHOP = "hiphop"
    EDM = "edm"


class Track(WireModel):
    id: str
    title: str
    artist: str = "Unknown"
    preview_url: str = ""
    image_url: str = ""
    external_url: str = ""
    duration: Optional[float] = None # Seconds, when the catalog knows it

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v):
        # Catalog ids are numeric
        return str(v) if isinstance(v, int) else v

    @property
    def has_source(self) -> bool:
        return bool(self.preview_url and self.preview_url.strip())


class Player(WireModel):
    name: str
    points: int = Field(default=0, ge=0)
    previous_points: int = Field(default=0, ge=0) # Snapshot of points at round start
    correct_answers: int = Field(default=0, ge=0)


class RoomConfig(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    genre: Genre
    game_mode: GameMode
    rounds: int = Field(gt=0)
    guess_time_sec: int = Field(gt=0)
    snippet_duration_sec: Optional[Literal[1, 3, 5]] = None # Quick Guess only

    @property
    def effective_snippet_sec(self) -> int:
        return self.snippet_duration_sec or 3

    @classmethod
    def from_menu(cls, genre: str, game_mode: str, rounds: str, guess_time: str) -> "RoomConfig":
        """
        Build a local config from the single-player menu labels, e.g.
        ("pop", "Quick Guess - 5 Sec", "10 Rounds", "20 sec").
        """
        snippet = None
        mode_label = game_mode.strip()
        if mode_label.startswith(GameMode.QUICK_GUESS.value):
            m = re.search(r"(\d+)\s*Sec", mode_label, re.IGNORECASE)
            snippet = int(m.group(1)) if m else 3
            mode_label = GameMode.QUICK_GUESS.value

        return cls(
            genre=genre.lower(),
            game_mode=mode_label,
            rounds=_leading_int(rounds),
            guess_time_sec=_leading_int(guess_time),
            snippet_duration_sec=snippet,
        )


class RoomInfo(WireModel):
    code: str
    config: RoomConfig
    playlist: List[Track] = []


def _leading_int(label) -> int:
    # "20 sec" -> 20, "10 Rounds" -> 10
    if isinstance(label, int):
        return label
    m = re.match(r"\s*(\d+)", str(label))
    if not m:
        raise ValueError(f"No number in {label!r}")
    return int(m.group(1))


def normalize_room_code(raw: str) -> str:
    return re.sub(r"[^A-Z0-9]", "", (raw or "").upper())


def is_valid_room_code(code: str) -> bool:
    return bool(_ROOM_CODE_RE.match(code or ""))
