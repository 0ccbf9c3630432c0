# battlesync/engine.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from battlesync.backfill import ActHistoryBackfill, PlayDataService, RatingHistory, now_ms
from battlesync.batch import BatchQueue, SummaryService
from battlesync.battlelog import PaginatedDiffSync, SubjectLocks
from battlesync.config import SyncConfig
from battlesync.extractors import DEFAULT_EXTRACTORS, RecordExtractor
from battlesync.fetcher import AuthenticationLost, Pacer, RateLimitedFetcher, SleepFn
from battlesync.identity import IdentityResolver
from battlesync.models import CharacterLeague, KnownKeys, MatchRecord, PlayerProfile, SyncStatus
from battlesync.stats import BattleStats, aggregate
from battlesync.store import CURRENT_ACT_ID, utc_now_iso

LOGGER = logging.getLogger(__name__)


@dataclass
class SyncReport:
    status: SyncStatus
    subject_id: Optional[str] = None
    records: List[MatchRecord] = field(default_factory=list)
    truncated_at_known: bool = False
    stats: Optional[BattleStats] = None
    rating_history: Optional[RatingHistory] = None
    profile: Optional[PlayerProfile] = None
    fetched_at: str = field(default_factory=utc_now_iso)
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is SyncStatus.OK

    def player_rows(self) -> List[Dict[str, Any]]:
        if self.profile is None:
            return []
        return [{
            "short_id": self.profile.short_id,
            "fighter_name": self.profile.fighter_name,
            "favorite_character": self.profile.favorite_character_name,
            "updated_at": self.fetched_at,
        }]

    def battle_rows(self) -> List[Dict[str, Any]]:
        return [r.to_row(self.subject_id, self.fetched_at) for r in self.records if r.has_replay_id]

    def act_rows(self) -> List[Dict[str, Any]]:
        history = self.rating_history
        if history is None:
            return []

        def row(act_id: int, league: CharacterLeague) -> Dict[str, Any]:
            return {
                "short_id": self.subject_id,
                "act_id": act_id,
                "is_current": 1 if act_id == CURRENT_ACT_ID else 0,
                "character_id": league.character_id,
                "character_name": league.character_name,
                "lp": league.league_point if league.league_point is not None else -1,
                "mr": league.master_rating or 0,
                "mr_ranking": league.master_rating_ranking,
                "league_rank": league.league_rank,
                "fetched_at": self.fetched_at,
            }

        rows = [row(CURRENT_ACT_ID, lg) for lg in history.current if lg.is_played]
        for act_id in sorted(history.seasons):
            rows.extend(row(act_id, lg) for lg in history.seasons[act_id])
        return rows

    def battle_stat_rows(self) -> List[Dict[str, Any]]:
        history = self.rating_history
        if history is None:
            return []
        rows = []
        for category, items in history.battle_stats.items():
            for item in items:
                value = item.get("value")
                rows.append({
                    "short_id": self.subject_id,
                    "category": category,
                    "label": item["label"],
                    "value": None if value is None else str(value),
                    "fetched_at": self.fetched_at,
                })
        return rows


class SyncEngine:
    """
    Wires identity, battle log diffing, act backfill and opponent summaries together.

    The engine only reads known keys (through ``known_keys_loader``) and returns
    a report; writing the report is the caller's job.
    """

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        config: Optional[SyncConfig] = None,
        known_keys_loader: Optional[Callable[[str], KnownKeys]] = None,
        pacer: Optional[Pacer] = None,
        sleep: Optional[SleepFn] = None,
        clock: Callable[[], int] = now_ms,
        extractors: Sequence[RecordExtractor] = DEFAULT_EXTRACTORS,
    ):
        self.config = config or SyncConfig()
        self.fetcher = fetcher
        self.known_keys_loader = known_keys_loader
        self.pacer = pacer or Pacer(sleep=sleep)
        self.clock = clock

        self.resolver = IdentityResolver(fetcher, self.config)
        self.locks = SubjectLocks()
        self.battle_log = PaginatedDiffSync(fetcher, self.config, self.pacer, extractors, self.locks)
        self.backfill = ActHistoryBackfill(fetcher, self.config, self.pacer, clock)
        self.play_data = PlayDataService(fetcher, self.config, self.backfill, clock)
        self.summaries = SummaryService(self.play_data, self.config.summary_cache_ttl_ms, clock)
        self.batch = BatchQueue(
            self.summaries.refresh,
            wave_size=self.config.batch_wave_size,
            cooldown_ms=self.config.batch_cooldown_ms,
            sleep=sleep,
        )

    def _known_keys(self, subject_id: str, known: Optional[KnownKeys]) -> KnownKeys:
        if self.config.force_full:
            LOGGER.info("Full mode: ignoring stored keys for %s", subject_id)
            return KnownKeys.empty()
        if known is not None:
            return known
        if self.known_keys_loader is None:
            return KnownKeys.empty()
        return self.known_keys_loader(subject_id)

    async def sync_player(
        self,
        hint: Optional[str] = None,
        known: Optional[KnownKeys] = None,
        include_history: bool = True,
    ) -> SyncReport:
        subject_id = await self.resolver.resolve_subject_id(hint)
        if not subject_id:
            return SyncReport(
                status=SyncStatus.IDENTITY_UNRESOLVED,
                message="Player id not detected. Log in to the portal first.",
            )

        keys = self._known_keys(subject_id, known)
        LOGGER.info(
            "Syncing %s (%d stored battles, %d stored acts)",
            subject_id, len(keys.replay_ids), len(keys.season_ids),
        )

        report = SyncReport(status=SyncStatus.OK, subject_id=subject_id)
        try:
            profile = await self.play_data.fetch_profile(subject_id)
            if profile.is_ok:
                report.profile = profile.value
            else:
                LOGGER.warning("Profile for %s unavailable: %s", subject_id, profile.reason)

            diff = await self.battle_log.sync(subject_id, keys.replay_ids)
            report.records = diff.records
            report.truncated_at_known = diff.truncated_at_known

            if include_history:
                await self.pacer.pause(*self.config.pacing.page_delay_ms)
                report.rating_history = await self.play_data.fetch_history(subject_id, keys.season_ids)
        except AuthenticationLost as exc:
            LOGGER.error("Session expired while syncing %s: %s", subject_id, exc)
            self.resolver.forget()
            return SyncReport(
                status=SyncStatus.NOT_AUTHENTICATED,
                subject_id=subject_id,
                message=str(exc),
            )

        report.stats = aggregate(report.records)
        if not report.records and not report.truncated_at_known:
            LOGGER.warning(
                "No battles found for %s; if this repeats, check the page extractors", subject_id
            )
        return report

    def queue_opponents(self, subject_ids: Sequence[str]) -> None:
        self.batch.enqueue(subject_ids)
