"""
Claiming briefs for processing, with staleness reclaim and a claim attempt cap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from wholesome_library.common import RunLogger
from wholesome_library.storage import StoryStore
from wholesome_library.story_generation import BriefStatus, StoryBrief, utc_now

logger = logging.getLogger(__name__)

STAGE = "queue"
DEAD_LETTER_REASON = "claim_attempts_exhausted"


@dataclass(frozen=True)
class QueueStats:
    queued: int
    processing: int
    completed: int
    failed: int

    @property
    def total(self) -> int:
        return self.queued + self.processing + self.completed + self.failed


class BriefQueue:
    """
    Single writer of brief status outside the persister.

    A brief left in ``processing`` by a killed run becomes claimable again once its claim
    is older than ``stale_claim_after_s``. A stale brief that has already been claimed
    ``max_claim_attempts`` times is failed instead of being handed out again.
    """

    def __init__(
        self,
        store: StoryStore,
        *,
        stale_claim_after_s: float = 1800.0,
        max_claim_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if stale_claim_after_s <= 0:
            raise ValueError("stale_claim_after_s must be positive.")
        if max_claim_attempts < 1:
            raise ValueError("max_claim_attempts must be at least 1.")
        self._store = store
        self._stale_after = timedelta(seconds=stale_claim_after_s)
        self._max_claim_attempts = max_claim_attempts
        self._clock = clock

    def claim_next(self, *, run_logger: RunLogger | None = None) -> StoryBrief | None:
        """
        Claim the highest-priority, oldest eligible brief, or return ``None`` when idle.
        """
        now = self._clock()
        stale_before = now - self._stale_after

        expired = self._store.expire_stale_briefs(
            stale_before=stale_before,
            max_attempts=self._max_claim_attempts,
            reason=DEAD_LETTER_REASON,
        )
        for brief_id in expired:
            logger.warning("Brief %s exhausted %d claims; marked failed", brief_id, self._max_claim_attempts)

        brief = self._store.claim_next_brief(
            now=now,
            stale_before=stale_before,
            max_attempts=self._max_claim_attempts,
        )
        if brief is None:
            logger.info("No eligible briefs in the queue")
            return None

        if run_logger is not None:
            run_logger.info(
                STAGE,
                "Claimed brief",
                brief_id=brief.id,
                attempt=brief.attempts,
                priority=brief.priority,
            )
        else:
            logger.info("Claimed brief %s (attempt %d)", brief.id, brief.attempts)
        return brief

    def mark_failed(self, brief: StoryBrief, reason: str) -> None:
        self._store.mark_brief_status(
            brief.id,
            BriefStatus.FAILED,
            expected=BriefStatus.PROCESSING,
            reason=reason,
            claimed_at=brief.claimed_at,
        )

    def stats(self) -> QueueStats:
        counts = self._store.count_briefs_by_status()
        return QueueStats(
            queued=counts.get(BriefStatus.QUEUED, 0),
            processing=counts.get(BriefStatus.PROCESSING, 0),
            completed=counts.get(BriefStatus.COMPLETED, 0),
            failed=counts.get(BriefStatus.FAILED, 0),
        )
