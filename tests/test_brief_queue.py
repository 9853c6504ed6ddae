"""Tests for pipeline.brief_queue: atomic claim, staleness reclaim and dead letter."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from wholesome_library.common import ClaimLostError
from wholesome_library.pipeline import DEAD_LETTER_REASON, BriefQueue
from wholesome_library.storage import SqliteStoryStore
from wholesome_library.story_generation import BriefStatus

T0 = datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def clock() -> _Clock:
    return _Clock(T0)


@pytest.fixture
def queue(store, clock) -> BriefQueue:
    return BriefQueue(store, stale_claim_after_s=1800, max_claim_attempts=3, clock=clock)


class TestClaimNext:
    def test_empty_queue_returns_none(self, queue):
        assert queue.claim_next() is None

    def test_priority_then_oldest(self, store, queue, make_brief):
        old_low = make_brief(priority=0)
        new_high = make_brief(priority=5)
        newer_low = make_brief(priority=0)
        store.insert_briefs([newer_low, old_low, new_high])

        assert queue.claim_next().id == new_high.id
        assert queue.claim_next().id == old_low.id
        assert queue.claim_next().id == newer_low.id
        assert queue.claim_next() is None

    def test_claim_is_durable_before_return(self, store, queue, make_brief):
        brief = make_brief()
        store.insert_briefs([brief])
        claimed = queue.claim_next()

        stored = store.get_brief(brief.id)
        assert claimed.status is BriefStatus.PROCESSING
        assert stored.status is BriefStatus.PROCESSING
        assert stored.claimed_at == T0
        assert stored.attempts == 1

    def test_completed_and_failed_briefs_are_never_claimed(self, store, queue, make_brief):
        brief = make_brief()
        store.insert_briefs([brief])
        queue.claim_next()
        queue.mark_failed(brief, "safety: unsafe")
        assert queue.claim_next() is None
        assert store.get_brief(brief.id).status is BriefStatus.FAILED


class TestConcurrentClaim:
    def test_single_brief_has_single_winner(self, tmp_path, make_brief):
        db_path = tmp_path / "race.db"
        SqliteStoryStore(db_path).insert_briefs([make_brief()])

        workers = 8
        barrier = threading.Barrier(workers)
        results: list = []
        errors: list = []

        def worker() -> None:
            queue = BriefQueue(SqliteStoryStore(db_path, timeout=10.0))
            barrier.wait()
            try:
                results.append(queue.claim_next())
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        winners = [brief for brief in results if brief is not None]
        assert len(winners) == 1
        assert winners[0].attempts == 1

    def test_many_briefs_are_claimed_once_each(self, tmp_path, make_brief):
        db_path = tmp_path / "race_many.db"
        briefs = [make_brief() for _ in range(6)]
        SqliteStoryStore(db_path).insert_briefs(briefs)

        workers = 6
        barrier = threading.Barrier(workers)
        claimed: list[str] = []
        lock = threading.Lock()

        def worker() -> None:
            queue = BriefQueue(SqliteStoryStore(db_path, timeout=10.0))
            barrier.wait()
            while (brief := queue.claim_next()) is not None:
                with lock:
                    claimed.append(brief.id)

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(claimed) == sorted(brief.id for brief in briefs)


class TestStaleness:
    def test_processing_brief_within_window_is_not_reclaimed(self, store, queue, clock, make_brief):
        store.insert_briefs([make_brief()])
        queue.claim_next()
        clock.advance(seconds=1799)
        assert queue.claim_next() is None

    def test_processing_brief_beyond_window_is_reclaimed(self, store, queue, clock, make_brief):
        brief = make_brief()
        store.insert_briefs([brief])
        queue.claim_next()
        clock.advance(seconds=1801)

        reclaimed = queue.claim_next()

        assert reclaimed.id == brief.id
        assert reclaimed.attempts == 2
        assert reclaimed.claimed_at == clock.now

    def test_previous_holder_cannot_fail_a_reclaimed_brief(self, store, queue, clock, make_brief):
        store.insert_briefs([make_brief()])
        first = queue.claim_next()
        clock.advance(seconds=1801)
        second = queue.claim_next()

        with pytest.raises(ClaimLostError):
            queue.mark_failed(first, "safety: unsafe")
        assert store.get_brief(second.id).status is BriefStatus.PROCESSING

        queue.mark_failed(second, "safety: unsafe")
        assert store.get_brief(second.id).status is BriefStatus.FAILED

    def test_exhausted_brief_goes_to_dead_letter(self, store, queue, clock, make_brief):
        brief = make_brief()
        store.insert_briefs([brief])
        for _ in range(3):
            assert queue.claim_next().id == brief.id
            clock.advance(seconds=1801)

        assert queue.claim_next() is None
        stored = store.get_brief(brief.id)
        assert stored.status is BriefStatus.FAILED
        assert stored.failure_reason == DEAD_LETTER_REASON

    def test_stale_brief_competes_by_priority(self, store, queue, clock, make_brief):
        stale = make_brief(priority=1)
        fresh = make_brief(priority=0)
        store.insert_briefs([stale])
        queue.claim_next()
        clock.advance(hours=1)
        store.insert_briefs([fresh])

        assert queue.claim_next().id == stale.id
        assert queue.claim_next().id == fresh.id


class TestStats:
    def test_counts_per_status(self, store, queue, make_brief):
        store.insert_briefs([make_brief() for _ in range(3)])
        brief = queue.claim_next()
        queue.mark_failed(brief, "generation: empty")
        queue.claim_next()

        stats = queue.stats()
        assert (stats.queued, stats.processing, stats.completed, stats.failed) == (1, 1, 0, 1)
        assert stats.total == 3


class TestValidation:
    def test_rejects_non_positive_window(self, store):
        with pytest.raises(ValueError):
            BriefQueue(store, stale_claim_after_s=0)
