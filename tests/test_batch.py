# tests/test_batch.py

import asyncio

from battlesync.backfill import RatingHistory
from battlesync.batch import BatchQueue, SummaryService, TTLCache
from battlesync.models import RatingPoint
from tests.helpers import RecordingSleep


class FakeClock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


class TestTTLCache:
    def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache = TTLCache(ttl_ms=1000, clock=clock)
        cache.put("a", 1)

        clock.now += 999
        assert cache.get("a") == 1

        clock.now += 1
        assert cache.get("a") is None
        assert "a" not in cache

    def test_last_write_wins(self):
        cache = TTLCache(ttl_ms=1000, clock=FakeClock())
        cache.put("a", 1)
        cache.put("a", 2)

        assert cache.get("a") == 2
        assert len(cache) == 1


class TestBatchQueue:
    def _queue(self, lookup, sleep=None, wave_size=5):
        return BatchQueue(lookup, wave_size=wave_size, cooldown_ms=2000, sleep=sleep or RecordingSleep())

    def test_runs_in_waves_with_cooldowns(self):
        waves = []
        current = []

        async def lookup(subject_id):
            current.append(subject_id)
            await asyncio.sleep(0)
            if current:
                waves.append(list(current))
                current.clear()
            return subject_id

        sleep = RecordingSleep()
        queue = self._queue(lookup, sleep)

        async def scenario():
            queue.enqueue([str(i) for i in range(12)])
            await queue.drain()

        asyncio.run(scenario())

        assert [len(w) for w in waves] == [5, 5, 2]
        assert sleep.calls == [2.0, 2.0]
        assert len(queue.results) == 12
        assert queue.is_processing is False

    def test_duplicate_ids_are_looked_up_once(self):
        seen = []

        async def lookup(subject_id):
            seen.append(subject_id)

        queue = self._queue(lookup)

        async def scenario():
            queue.enqueue(["1", "2", "1", "", None, "2"])
            await queue.drain()

        asyncio.run(scenario())

        assert sorted(seen) == ["1", "2"]

    def test_one_failure_does_not_sink_the_wave(self):
        async def lookup(subject_id):
            if subject_id == "bad":
                raise RuntimeError("boom")
            return subject_id.upper()

        queue = self._queue(lookup)

        async def scenario():
            queue.enqueue(["a", "bad", "c"])
            await queue.drain()

        asyncio.run(scenario())

        assert queue.results == {"a": "A", "c": "C"}
        assert queue.failures == {"bad": "boom"}

    def test_enqueue_during_processing_joins_the_running_batch(self):
        seen = []
        queue = None

        async def lookup(subject_id):
            seen.append(subject_id)
            if subject_id == "1":
                queue.enqueue(["late"])

        sleep = RecordingSleep()
        queue = self._queue(lookup, sleep, wave_size=2)

        async def scenario():
            queue.enqueue(["1", "2"])
            task = queue._task
            await queue.drain()
            return task

        first_task = asyncio.run(scenario())

        assert seen == ["1", "2", "late"]
        assert sleep.calls == [2.0]
        assert first_task is queue._task

    def test_enqueue_returns_before_lookups_run(self):
        seen = []

        async def lookup(subject_id):
            seen.append(subject_id)

        queue = self._queue(lookup)

        async def scenario():
            queue.enqueue(["1"])
            before = list(seen)
            await queue.drain()
            return before

        assert asyncio.run(scenario()) == []
        assert seen == ["1"]


class _StubPlayData:
    def __init__(self, points):
        self.points = points
        self.calls = []

    async def fetch_history(self, subject_id, known_season_ids=()):
        self.calls.append(subject_id)
        return RatingHistory(subject_id=subject_id, points=self.points)


class TestSummaryService:
    def test_summary_is_cached_for_ttl(self):
        clock = FakeClock(5_000)
        play_data = _StubPlayData({
            "ryu": [RatingPoint(date=1000, rating=1500), RatingPoint(date=3000, rating=1450)],
            "ken": [RatingPoint(date=2000, rating=1700)],
        })
        service = SummaryService(play_data, ttl_ms=1000, clock=clock)

        summary = asyncio.run(service.get_summary("42"))
        again = asyncio.run(service.get_summary("42"))

        assert summary.highest_rating_seen == 1700
        assert summary.current_rating == 1450
        assert summary.main_character == "ryu"
        assert again is summary
        assert play_data.calls == ["42"]

        clock.now += 1000
        asyncio.run(service.get_summary("42"))
        assert play_data.calls == ["42", "42"]

    def test_blank_ids_are_ignored(self):
        play_data = _StubPlayData({})
        service = SummaryService(play_data, ttl_ms=1000, clock=FakeClock())

        assert asyncio.run(service.get_summary("")) is None
        assert asyncio.run(service.get_summary("undefined")) is None
        assert play_data.calls == []

    def test_refresh_keeps_rating_points_as_rows(self):
        clock = FakeClock(9_000)
        play_data = _StubPlayData({
            "ryu": [RatingPoint(date=1000, rating=1500), RatingPoint(date=3000, rating=1450)],
            "ken": [RatingPoint(date=2000, rating=1700)],
        })
        service = SummaryService(play_data, ttl_ms=1000, clock=clock)

        assert service.history_rows("42") == []
        asyncio.run(service.get_summary("42"))
        rows = service.history_rows("42")

        assert [(r["character_id"], r["point_date"], r["rating"]) for r in rows] == [
            ("ken", 2000, 1700),
            ("ryu", 1000, 1500),
            ("ryu", 3000, 1450),
        ]
        assert {r["short_id"] for r in rows} == {"42"}
        assert {r["computed_at"] for r in rows} == {9_000}
