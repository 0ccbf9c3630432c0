# battlesync/backfill.py

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from battlesync.config import SyncConfig
from battlesync.extractors import (
    extract_next_data,
    page_props,
    parse_battle_stats,
    parse_league_infos,
    parse_profile,
)
from battlesync.fetcher import AuthenticationLost, FetchError, Pacer, RateLimitedFetcher
from battlesync.models import (
    CharacterLeague,
    LookupKind,
    LookupResult,
    PlayerProfile,
    RatingPoint,
    add_rating_point,
)

LOGGER = logging.getLogger(__name__)

# Last day of each act (UTC, epoch ms). Past points are dated by the act they belong to.
ACT_END_DATES: Dict[int, int] = {
    0: 1690156800000,
    1: 1698796800000,
    2: 1709001600000,
    3: 1716336000000,
    4: 1727136000000,
    5: 1735689600000,
    6: 1743465600000,
    7: 1751328000000,
    8: 1759276800000,
    9: 1767225600000,
    10: 1774915200000,
    11: 1782777600000,
}


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class BackfillResult:
    points: List[RatingPoint] = field(default_factory=list)
    seasons: Dict[int, List[CharacterLeague]] = field(default_factory=dict)
    skipped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


class ActHistoryBackfill:
    """Fills a character's rating history with one point per past act."""

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        config: Optional[SyncConfig] = None,
        pacer: Optional[Pacer] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.fetcher = fetcher
        self.config = config or SyncConfig()
        self.pacer = pacer or Pacer()
        self.clock = clock

    @property
    def season_url(self) -> str:
        return f"{self.config.base_url}/api/profile/play/act/leagueinfo"

    def _request_headers(self, subject_id: str) -> Dict[str, str]:
        origin = self.config.base_url.split("/6/buckler")[0]
        return {
            "Content-Type": "application/json",
            "Origin": origin,
            "Referer": f"{self.config.base_url}/profile/{subject_id}/play",
            "Sec-Fetch-Site": "same-origin",
            "Sec-Fetch-Mode": "cors",
            "Sec-Fetch-Dest": "empty",
        }

    @staticmethod
    def _request_body(subject_id: str, season_id: int) -> Dict[str, Any]:
        try:
            target: Any = int(subject_id)
        except ValueError:
            target = subject_id
        return {
            "targetShortId": target,
            "targetSeasonId": season_id,
            "targetModeId": 1,
            "lang": "ja-jp",
        }

    async def fetch_season(self, subject_id: str, season_id: int) -> LookupResult[List[CharacterLeague]]:
        try:
            response = await self.fetcher.fetch(
                self.season_url,
                method="POST",
                headers=self._request_headers(subject_id),
                json_body=self._request_body(subject_id, season_id),
                timeout_ms=self.config.pacing.season_timeout_ms,
            )
        except FetchError as exc:
            return LookupResult.failed(str(exc))

        if self.fetcher.is_login_redirect(response):
            return LookupResult.failed("redirected to login")
        if not response.ok:
            return LookupResult.failed(f"HTTP {response.status}")
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError):
            return LookupResult.failed("response was not JSON")

        leagues = [league for league in parse_league_infos(payload) if league.is_played]
        if not leagues:
            return LookupResult.empty("no played characters")
        return LookupResult.ok(leagues)

    def season_date(self, season_id: int) -> int:
        return ACT_END_DATES.get(season_id, self.clock())

    async def backfill(
        self,
        subject_id: str,
        character_id: str,
        current_points: Iterable[RatingPoint] = (),
        known_season_ids: Iterable[int] = (),
    ) -> List[RatingPoint]:
        result = await self.backfill_detailed(subject_id, character_id, current_points, known_season_ids)
        return result.points

    async def backfill_detailed(
        self,
        subject_id: str,
        character_id: str,
        current_points: Iterable[RatingPoint] = (),
        known_season_ids: Iterable[int] = (),
    ) -> BackfillResult:
        """
        Query every act not in ``known_season_ids`` in ascending order.

        A failed or empty act is logged and skipped; the rest still run.
        """
        result = BackfillResult()
        for point in current_points:
            add_rating_point(result.points, point)
        known = set(known_season_ids)

        for season_id in sorted(self.config.season_ids):
            if season_id in known:
                result.skipped.append(season_id)
                LOGGER.debug("  act %d... skip (already stored)", season_id)
                continue

            lookup = await self.fetch_season(subject_id, season_id)
            if lookup.is_ok:
                leagues = lookup.value or []
                result.seasons[season_id] = leagues
                match = next((lg for lg in leagues if lg.character_id == character_id), None)
                if match is not None and match.rating:
                    point = RatingPoint(date=self.season_date(season_id), rating=match.rating)
                    if not add_rating_point(result.points, point):
                        LOGGER.debug("  act %d... duplicate date window, dropped", season_id)
                LOGGER.info("  act %d... ok (%d characters)", season_id, len(leagues))
            elif lookup.kind is LookupKind.EMPTY:
                LOGGER.info("  act %d... -", season_id)
            else:
                result.failed.append(season_id)
                LOGGER.warning("  act %d... failed: %s", season_id, lookup.reason)

            await self.pacer.pause(*self.config.pacing.season_delay_ms)

        if result.skipped:
            LOGGER.info("  skipped %d stored acts", len(result.skipped))
        return result


@dataclass
class RatingHistory:
    subject_id: str
    points: Dict[str, List[RatingPoint]] = field(default_factory=dict)
    current: List[CharacterLeague] = field(default_factory=list)
    seasons: Dict[int, List[CharacterLeague]] = field(default_factory=dict)
    battle_stats: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    main_character: Optional[str] = None


class PlayDataService:
    """Profile and play page lookups, plus the act backfill for the most played character."""

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        config: Optional[SyncConfig] = None,
        backfill: Optional[ActHistoryBackfill] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.fetcher = fetcher
        self.config = config or SyncConfig()
        self.backfill = backfill or ActHistoryBackfill(fetcher, self.config, clock=clock)
        self.clock = clock

    async def _fetch_next_data(self, url: str) -> LookupResult[Dict[str, Any]]:
        try:
            response = await self.fetcher.fetch(url, timeout_ms=self.config.page_timeout_ms)
        except FetchError as exc:
            return LookupResult.failed(str(exc))
        if self.fetcher.is_login_redirect(response):
            raise AuthenticationLost(f"Redirected to login while reading {url}")
        if not response.ok:
            return LookupResult.failed(f"HTTP {response.status}")
        next_data = extract_next_data(response.text)
        if next_data is None:
            return LookupResult.empty("no __NEXT_DATA__ payload")
        return LookupResult.ok(next_data)

    async def fetch_profile(self, subject_id: str) -> LookupResult[PlayerProfile]:
        page = await self._fetch_next_data(f"{self.config.base_url}/profile/{subject_id}")
        if not page.is_ok:
            return LookupResult(page.kind, None, page.reason)
        profile = parse_profile(page.value, fallback_id=str(subject_id))
        if profile is None:
            return LookupResult.empty("no fighter banner")
        return LookupResult.ok(profile)

    async def fetch_history(self, subject_id: str, known_season_ids: Iterable[int] = ()) -> RatingHistory:
        history = RatingHistory(subject_id=str(subject_id))
        page = await self._fetch_next_data(f"{self.config.base_url}/profile/{subject_id}/play")
        if not page.is_ok:
            LOGGER.warning("Play page for %s unavailable: %s", subject_id, page.reason)
            return history

        play = page_props(page.value).get("play")
        history.current = parse_league_infos(play)
        history.battle_stats = parse_battle_stats(page.value)

        now = self.clock()
        for league in history.current:
            points = history.points.setdefault(league.character_id, [])
            if league.rating:
                add_rating_point(points, RatingPoint(date=now, rating=league.rating))

        if not history.current:
            return history

        top = max(history.current, key=lambda lg: lg.battle_count)
        history.main_character = top.character_id
        detail = await self.backfill.backfill_detailed(
            history.subject_id,
            top.character_id,
            history.points.get(top.character_id, []),
            known_season_ids,
        )
        history.points[top.character_id] = detail.points
        history.seasons = detail.seasons
        return history
