# battlesync/stats.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from battlesync.models import MatchRecord, Outcome, RatingPoint, Summary

RECENT_LIMIT = 20


@dataclass
class BattleStats:
    total: int = 0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    win_rate_percent: str = "0"
    recent: List[MatchRecord] = field(default_factory=list)
    full_history: List[MatchRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_matches": self.total,
            "wins": self.wins,
            "losses": self.losses,
            "draws": self.draws,
            "win_rate": self.win_rate_percent,
        }


def win_rate(wins: int, total: int) -> str:
    if total == 0:
        return "0"
    return f"{wins / total * 100:.1f}"


def aggregate(records: Sequence[MatchRecord]) -> BattleStats:
    """
    Fold a record list into W/L/D counters.

    Records whose outcome is UNKNOWN (subject on neither side, or no result on
    the page) are counted as draws, so they still dilute the win rate.
    """
    wins = losses = draws = 0
    for record in records:
        if record.outcome is Outcome.WIN:
            wins += 1
        elif record.outcome is Outcome.LOSE:
            losses += 1
        else:
            draws += 1

    total = wins + losses + draws
    history = list(records)
    return BattleStats(
        total=total,
        wins=wins,
        losses=losses,
        draws=draws,
        win_rate_percent=win_rate(wins, total),
        recent=history[:RECENT_LIMIT],
        full_history=history,
    )


def summarize(
    subject_id: str,
    points_by_character: Mapping[str, Iterable[RatingPoint]],
    computed_at: int,
) -> Summary:
    """Highest rating over all characters; current rating and main character from the newest point."""
    highest = 0
    current = 0
    main_character = "unknown"
    latest = 0
    for character, points in points_by_character.items():
        for point in points:
            if point.rating > highest:
                highest = point.rating
            if point.date > latest:
                latest = point.date
                current = point.rating
                main_character = character
    return Summary(
        subject_id=str(subject_id),
        current_rating=current,
        highest_rating_seen=highest,
        main_character=main_character,
        computed_at=computed_at,
    )
