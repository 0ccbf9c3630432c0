# battlesync/battlelog.py

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from battlesync.config import SyncConfig
from battlesync.extractors import DEFAULT_EXTRACTORS, RecordExtractor, extract_records
from battlesync.fetcher import AuthenticationLost, FetchError, Pacer, RateLimitedFetcher
from battlesync.models import DiffSyncResult, KnownKeys, MatchRecord

LOGGER = logging.getLogger(__name__)


class SubjectLocks:
    """One lock per subject id so two syncs of the same player never interleave.

    An entry lives only while some sync holds or waits on it.
    """

    def __init__(self):
        self._entries: Dict[str, List] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def is_busy(self, subject_id: str) -> bool:
        entry = self._entries.get(str(subject_id))
        return entry is not None and entry[0].locked()

    @contextlib.asynccontextmanager
    async def hold(self, subject_id: str):
        key = str(subject_id)
        entry = self._entries.get(key)
        if entry is None:
            entry = [asyncio.Lock(), 0]
            self._entries[key] = entry
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]


def scan_page(
    records: Sequence[MatchRecord],
    known: KnownKeys,
    threshold: int,
) -> Tuple[List[MatchRecord], bool]:
    """
    Split one page into not-yet-known records and a truncation flag.

    Known records are never returned. A run of ``threshold`` known records in
    a row ends the scan; anything after that run is dropped, new or not.
    """
    streak = 0
    fresh: List[MatchRecord] = []
    for record in records:
        if known.is_known_replay(record.replay_id):
            streak += 1
            if streak >= threshold:
                return fresh, True
        else:
            streak = 0
            fresh.append(record)
    return fresh, False


class PaginatedDiffSync:
    """Walk a subject's ranked battle log newest-first until known data is reached."""

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        config: Optional[SyncConfig] = None,
        pacer: Optional[Pacer] = None,
        extractors: Sequence[RecordExtractor] = DEFAULT_EXTRACTORS,
        locks: Optional[SubjectLocks] = None,
    ):
        self.fetcher = fetcher
        self.config = config or SyncConfig()
        self.pacer = pacer or Pacer()
        self.extractors = tuple(extractors)
        self.locks = locks or SubjectLocks()

    def page_url(self, subject_id: str, page: int) -> str:
        return f"{self.config.base_url}/profile/{subject_id}/battlelog/rank?page={page}"

    async def sync(
        self,
        subject_id: str,
        known_replay_ids: Optional[Iterable[str]] = None,
        perspective_id: Optional[str] = None,
    ) -> DiffSyncResult:
        """
        Fetch pages 1..max_pages and return only records not in ``known_replay_ids``.

        Raises AuthenticationLost when the portal bounces a page to its login
        screen. Timeouts and network errors stop pagination but keep what was
        already gathered.

        The end of history is only seen as an empty page, so a log that fills
        pages 1..n exactly costs n + 1 fetches and stops with EXHAUSTED.
        """
        known = KnownKeys(replay_ids=frozenset(known_replay_ids or ()))
        perspective = str(perspective_id or subject_id)
        if self.locks.is_busy(subject_id):
            LOGGER.info("Sync for %s already running; waiting for it to finish", subject_id)
        async with self.locks.hold(subject_id):
            return await self._run(str(subject_id), known, perspective)

    async def _run(self, subject_id: str, known: KnownKeys, perspective: str) -> DiffSyncResult:
        cfg = self.config
        result = DiffSyncResult()

        for page in range(1, cfg.max_pages + 1):
            await self.pacer.pause(*cfg.pacing.page_delay_ms)

            url = self.page_url(subject_id, page)
            try:
                response = await self.fetcher.fetch(url, timeout_ms=cfg.page_timeout_ms)
            except FetchError as exc:
                LOGGER.warning("Page %d failed (%s); keeping %d records", page, exc, len(result.records))
                result.stop_reason = "PAGE_FAILED"
                break

            if self.fetcher.is_login_redirect(response):
                raise AuthenticationLost(f"Redirected to login while reading page {page} for {subject_id}")
            if not response.ok:
                LOGGER.warning("Page %d returned HTTP %s; keeping %d records",
                               page, response.status, len(result.records))
                result.stop_reason = "PAGE_FAILED"
                break

            result.pages_fetched += 1
            records = extract_records(response.text, self.extractors)
            if not records:
                LOGGER.info("  page %d... empty", page)
                result.stop_reason = "EXHAUSTED"
                break

            records = [r.with_outcome_for(perspective) for r in records]
            fresh, truncated = scan_page(records, known, cfg.consecutive_known_threshold)
            room = cfg.max_records_cap - len(result.records)
            result.records.extend(fresh[:room])

            if truncated:
                LOGGER.info("  page %d... %d new, reached known data (total %d)",
                            page, len(fresh), len(result.records))
                result.truncated_at_known = True
                result.stop_reason = "TRUNCATED"
                break

            LOGGER.info("  page %d... %d new (total %d)", page, len(fresh), len(result.records))
            if len(result.records) >= cfg.max_records_cap:
                result.stop_reason = "CAP_REACHED"
                break
        else:
            result.stop_reason = "MAX_PAGES"

        LOGGER.info(
            "Battle log for %s: %d new records over %d pages (%s)",
            subject_id, len(result.records), result.pages_fetched, result.stop_reason,
        )
        return result
