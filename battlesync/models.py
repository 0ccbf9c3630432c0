# battlesync/models.py

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Generic, List, Optional, TypeVar

DAY_MS = 86_400_000
UNKNOWN_REPLAY_ID = "-"

T = TypeVar("T")


class Outcome(str, Enum):
    WIN = "WIN"
    LOSE = "LOSE"
    DRAW = "DRAW"
    UNKNOWN = "UNKNOWN"


class SyncStatus(str, Enum):
    OK = "OK"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    IDENTITY_UNRESOLVED = "IDENTITY_UNRESOLVED"


class LookupKind(str, Enum):
    OK = "OK"
    EMPTY = "EMPTY"
    FAILED = "FAILED"


@dataclass(frozen=True)
class LookupResult(Generic[T]):
    """Outcome of one page or season lookup; keeps 'no data' apart from 'error'."""

    kind: LookupKind
    value: Optional[T] = None
    reason: str = ""

    @classmethod
    def ok(cls, value: T) -> "LookupResult[T]":
        return cls(LookupKind.OK, value)

    @classmethod
    def empty(cls, reason: str = "") -> "LookupResult[T]":
        return cls(LookupKind.EMPTY, None, reason)

    @classmethod
    def failed(cls, reason: str) -> "LookupResult[T]":
        return cls(LookupKind.FAILED, None, reason)

    @property
    def is_ok(self) -> bool:
        return self.kind is LookupKind.OK


@dataclass(frozen=True)
class PlayerSide:
    name: str
    id: str
    character: str
    input_type: str = "Unknown"
    rating: Optional[int] = None


@dataclass(frozen=True)
class MatchRecord:
    """One completed match as shown on a battle log page."""

    player1: PlayerSide
    player2: PlayerSide
    player1_score: int = 0
    player2_score: int = 0
    replay_id: str = UNKNOWN_REPLAY_ID
    timestamp: Optional[int] = None
    display_date: str = ""
    # 1 or 2 for the winning side, 0 for a draw, None when the page did not say
    winner: Optional[int] = None
    outcome: Outcome = Outcome.UNKNOWN

    @property
    def has_replay_id(self) -> bool:
        return bool(self.replay_id) and self.replay_id != UNKNOWN_REPLAY_ID

    def outcome_for(self, subject_id: Optional[str]) -> Outcome:
        if subject_id is None or self.winner is None:
            return Outcome.UNKNOWN
        subject = str(subject_id)
        if subject == str(self.player1.id):
            side = 1
        elif subject == str(self.player2.id):
            side = 2
        else:
            return Outcome.UNKNOWN
        if self.winner == 0:
            return Outcome.DRAW
        return Outcome.WIN if self.winner == side else Outcome.LOSE

    def with_outcome_for(self, subject_id: Optional[str]) -> "MatchRecord":
        return replace(self, outcome=self.outcome_for(subject_id))

    def to_row(self, short_id: str, fetched_at: str) -> Dict[str, Any]:
        return {
            "short_id": short_id,
            "replay_id": self.replay_id,
            "battle_timestamp": self.timestamp,
            "battle_date": self.display_date,
            "p1_name": self.player1.name,
            "p1_id": self.player1.id,
            "p1_character": self.player1.character,
            "p1_type": self.player1.input_type,
            "p1_rating": self.player1.rating or 0,
            "p1_score": self.player1_score,
            "p2_name": self.player2.name,
            "p2_id": self.player2.id,
            "p2_character": self.player2.character,
            "p2_type": self.player2.input_type,
            "p2_rating": self.player2.rating or 0,
            "p2_score": self.player2_score,
            "winner": self.winner if self.winner is not None else 0,
            "outcome": self.outcome.value,
            "fetched_at": fetched_at,
        }


@dataclass(frozen=True)
class RatingPoint:
    date: int
    rating: int


def add_rating_point(history: List[RatingPoint], point: RatingPoint) -> bool:
    """Append point unless another point already sits within 24h of it."""
    if any(abs(existing.date - point.date) < DAY_MS for existing in history):
        return False
    history.append(point)
    return True


@dataclass(frozen=True)
class CharacterLeague:
    """One character's ranking row for a season."""

    character_id: str
    character_name: str
    league_point: Optional[int] = None
    master_rating: Optional[int] = None
    league_rank: Optional[int] = None
    master_rating_ranking: Optional[int] = None
    battle_count: int = 0
    is_played: bool = True

    @property
    def rating(self) -> Optional[int]:
        return self.master_rating or self.league_point or None


@dataclass(frozen=True)
class PlayerProfile:
    short_id: str
    fighter_name: str = "Unknown"
    favorite_character: str = ""
    favorite_character_name: str = "Unknown"


@dataclass(frozen=True)
class KnownKeys:
    """Keys already stored for a subject. Read-only for the duration of a sync."""

    replay_ids: FrozenSet[str] = frozenset()
    season_ids: FrozenSet[int] = frozenset()

    @classmethod
    def empty(cls) -> "KnownKeys":
        return cls()

    def is_known_replay(self, replay_id: str) -> bool:
        return replay_id != UNKNOWN_REPLAY_ID and replay_id in self.replay_ids


@dataclass(frozen=True)
class Summary:
    subject_id: str
    current_rating: int
    highest_rating_seen: int
    main_character: str
    computed_at: int

    def to_row(self) -> Dict[str, Any]:
        return {
            "short_id": self.subject_id,
            "current_rating": self.current_rating,
            "highest_rating": self.highest_rating_seen,
            "main_character": self.main_character,
            "computed_at": self.computed_at,
        }


@dataclass
class DiffSyncResult:
    records: List[MatchRecord] = field(default_factory=list)
    truncated_at_known: bool = False
    pages_fetched: int = 0
    # EXHAUSTED, TRUNCATED, CAP_REACHED, MAX_PAGES or PAGE_FAILED
    stop_reason: str = ""
