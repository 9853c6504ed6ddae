"""
Abstract persistent store shared by the queue, the runner and the persister.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Sequence

from wholesome_library.models import GeneratedStory, PipelineRun
from wholesome_library.story_generation import BriefStatus, StoryBrief


class StoryStore(ABC):
    """
    Storage boundary for briefs, runs and finished stories.

    Brief status changes are conditional on the expected prior status so that the
    queued -> processing -> {completed, failed} order can never be violated, even by
    concurrent writers. Implementations wrap their driver errors in ``PersistenceError``.
    """

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """Make every store call inside the ``with`` block commit or roll back together."""

    # -- briefs ---------------------------------------------------------------

    @abstractmethod
    def insert_briefs(self, briefs: Sequence[StoryBrief]) -> None: ...

    @abstractmethod
    def get_brief(self, brief_id: str) -> StoryBrief | None: ...

    @abstractmethod
    def claim_next_brief(
        self,
        *,
        now: datetime,
        stale_before: datetime,
        max_attempts: int | None = None,
    ) -> StoryBrief | None:
        """
        Move the best eligible brief to ``processing`` and return it, or return ``None``.

        Eligible briefs are ``queued`` ones, and ``processing`` ones whose claim is older
        than ``stale_before`` and, when ``max_attempts`` is given, have used fewer claims.
        Higher priority wins, then the oldest brief.
        """

    @abstractmethod
    def try_claim_brief(
        self,
        brief_id: str,
        *,
        expected_status: BriefStatus,
        expected_claimed_at: datetime | None,
        now: datetime,
    ) -> bool:
        """Conditional claim; ``True`` only for the single caller whose expectation held."""

    @abstractmethod
    def expire_stale_briefs(
        self,
        *,
        stale_before: datetime,
        max_attempts: int,
        reason: str,
    ) -> list[str]:
        """Fail stale ``processing`` briefs that already used ``max_attempts`` claims."""

    @abstractmethod
    def mark_brief_status(
        self,
        brief_id: str,
        status: BriefStatus,
        *,
        expected: BriefStatus,
        reason: str | None = None,
        claimed_at: datetime | None = None,
    ) -> None:
        """
        Move a brief from ``expected`` to ``status``.

        When ``claimed_at`` is given the update also requires the brief to still carry that
        claim; a brief reclaimed by another runner raises :class:`ClaimLostError`.
        """

    @abstractmethod
    def brief_combinations(self) -> list[tuple[str, str, str]]:
        """Existing ``(genre, primary_virtue, reading_level)`` combinations."""

    @abstractmethod
    def count_briefs_by_status(self) -> dict[BriefStatus, int]: ...

    # -- runs -----------------------------------------------------------------

    @abstractmethod
    def insert_run(self, run: PipelineRun) -> None:
        """Insert or refresh the run record; terminal records are never overwritten."""

    @abstractmethod
    def attach_story(self, run_id: str, story_id: str) -> None: ...

    @abstractmethod
    def get_run(self, run_id: str) -> PipelineRun | None: ...

    @abstractmethod
    def list_runs(self, brief_id: str) -> list[PipelineRun]: ...

    # -- stories --------------------------------------------------------------

    @abstractmethod
    def insert_story(self, story: GeneratedStory) -> str: ...

    @abstractmethod
    def get_story(self, story_id: str) -> GeneratedStory | None: ...

    @abstractmethod
    def count_stories(self) -> int: ...

    @abstractmethod
    def slug_exists(self, slug: str) -> bool: ...
