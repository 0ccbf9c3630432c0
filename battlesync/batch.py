# battlesync/batch.py

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

from battlesync.backfill import PlayDataService, now_ms
from battlesync.fetcher import SleepFn
from battlesync.models import RatingPoint, Summary
from battlesync.stats import summarize

LOGGER = logging.getLogger(__name__)

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Entries expire ``ttl_ms`` after they were written. Last writer wins."""

    def __init__(self, ttl_ms: int, clock: Callable[[], int] = now_ms):
        self.ttl_ms = ttl_ms
        self.clock = clock
        self._entries: Dict[str, Tuple[int, V]] = {}

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self.clock() - stored_at >= self.ttl_ms:
            del self._entries[key]
            return None
        return value

    def put(self, key: str, value: V) -> None:
        self._entries[key] = (self.clock(), value)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)


class SummaryService:
    """Opponent summaries backed by a 30 minute cache."""

    def __init__(
        self,
        play_data: PlayDataService,
        ttl_ms: int = 30 * 60 * 1000,
        clock: Callable[[], int] = now_ms,
    ):
        self.play_data = play_data
        self.clock = clock
        self.cache: TTLCache[Summary] = TTLCache(ttl_ms, clock)
        self.histories: Dict[str, Dict[str, List[RatingPoint]]] = {}

    async def get_summary(self, subject_id: Optional[str]) -> Optional[Summary]:
        if not subject_id or subject_id == "undefined":
            return None
        cached = self.cache.get(str(subject_id))
        if cached is not None:
            return cached
        return await self.refresh(str(subject_id))

    async def refresh(self, subject_id: str) -> Summary:
        history = await self.play_data.fetch_history(subject_id)
        summary = summarize(subject_id, history.points, self.clock())
        self.histories[subject_id] = history.points
        self.cache.put(subject_id, summary)
        return summary

    def history_rows(self, subject_id: str) -> List[Dict[str, Any]]:
        """Rating points kept from the last refresh, one row per character and day."""
        computed_at = self.clock()
        return [
            {
                "short_id": subject_id,
                "character_id": character_id,
                "point_date": point.date,
                "rating": point.rating,
                "computed_at": computed_at,
            }
            for character_id, points in sorted(self.histories.get(subject_id, {}).items())
            for point in points
        ]


class BatchQueue:
    """
    Runs queued lookups in waves of ``wave_size`` with a cool-down between waves.

    ``enqueue`` never blocks; it must be called from inside a running event
    loop. Only one runner task exists at a time, and it keeps the processing
    flag for its whole life, cool-downs included.
    """

    def __init__(
        self,
        lookup: Callable[[str], Awaitable[Any]],
        wave_size: int = 5,
        cooldown_ms: int = 2000,
        sleep: Optional[SleepFn] = None,
    ):
        if wave_size < 1:
            raise ValueError("wave_size must be at least 1")
        self.lookup = lookup
        self.wave_size = wave_size
        self.cooldown_ms = cooldown_ms
        self._sleep = sleep or asyncio.sleep
        self._pending: Dict[str, None] = {}
        self._processing = False
        self._task: Optional[asyncio.Task] = None
        self.results: Dict[str, Any] = {}
        self.failures: Dict[str, str] = {}

    @property
    def pending(self) -> List[str]:
        return list(self._pending)

    @property
    def is_processing(self) -> bool:
        return self._processing

    def enqueue(self, ids: Iterable[str]) -> None:
        for subject_id in ids or ():
            if not subject_id:
                continue
            key = str(subject_id)
            if key not in self._pending:
                self._pending[key] = None
        self._kick()

    def _kick(self) -> None:
        if self._processing or not self._pending:
            return
        self._processing = True
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _take_wave(self) -> List[str]:
        wave = list(self._pending)[: self.wave_size]
        for subject_id in wave:
            del self._pending[subject_id]
        return wave

    async def _run(self) -> None:
        try:
            while self._pending:
                wave = self._take_wave()
                LOGGER.info("Processing wave of %d (%d still queued)", len(wave), len(self._pending))
                await asyncio.gather(*(self._lookup_one(subject_id) for subject_id in wave))
                if self._pending:
                    await self._sleep(self.cooldown_ms / 1000.0)
        finally:
            self._processing = False

    async def _lookup_one(self, subject_id: str) -> None:
        try:
            value = await self.lookup(subject_id)
        except Exception as exc:
            LOGGER.warning("Lookup for %s failed: %s", subject_id, exc)
            self.failures[subject_id] = str(exc)
            return
        self.results[subject_id] = value
        self.failures.pop(subject_id, None)

    async def drain(self) -> None:
        """Wait until the queue is empty and no wave is running."""
        while self._task is not None and not self._task.done():
            await self._task
