"""
Writes a vetted story, completes its brief and links the run, all in one transaction.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from typing import Callable

from wholesome_library.ai_generation import CoverResult
from wholesome_library.models import GateResults, GeneratedStory, PipelineRun, PublicationStatus
from wholesome_library.storage import StoryStore
from wholesome_library.story_generation import BriefStatus, StoryBrief, StoryDraft, utc_now

SLUG_MAX_LENGTH = 80
MAX_SLUG_SUFFIX = 100


def slugify(title: str) -> str:
    slug = title.lower()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-") or "story"


def determine_publication_status(
    gates: GateResults,
    *,
    values_threshold: float,
    approval_quality_threshold: float,
) -> PublicationStatus:
    if gates.quality_score >= approval_quality_threshold and gates.values_score >= values_threshold:
        return PublicationStatus.APPROVED
    return PublicationStatus.EDITOR_QUEUE


class Persister:
    """
    Single writer of story rows.

    Parameters
    ----------
    store:
        Store used for the story, brief and run writes.
    values_threshold / quality_threshold:
        The gate thresholds. A draft below either is never written.
    approval_quality_threshold:
        Quality score from which the story is published immediately instead of
        waiting in the editor queue.
    """

    def __init__(
        self,
        store: StoryStore,
        *,
        values_threshold: float = 3.0,
        quality_threshold: float = 70.0,
        approval_quality_threshold: float = 85.0,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._store = store
        self._values_threshold = values_threshold
        self._quality_threshold = quality_threshold
        self._approval_quality_threshold = approval_quality_threshold
        self._clock = clock
        self._id_factory = id_factory

    def commit(
        self,
        brief: StoryBrief,
        draft: StoryDraft,
        gate_results: GateResults,
        cover: CoverResult,
        run: PipelineRun,
    ) -> GeneratedStory:
        """
        Persist the story and return it.

        Raises
        ------
        PersistenceError
            When any write fails; nothing from this call is kept in that case.
        ClaimLostError
            When another runner reclaimed the brief after this claim went stale.
        """
        if not (
            gate_results.safety_passed
            and gate_results.values_score >= self._values_threshold
            and gate_results.quality_score >= self._quality_threshold
        ):
            raise ValueError("Refusing to persist a draft that did not pass every gate.")

        now = self._clock()
        status = determine_publication_status(
            gate_results,
            values_threshold=self._values_threshold,
            approval_quality_threshold=self._approval_quality_threshold,
        )

        with self._store.transaction():
            story = GeneratedStory(
                id=self._id_factory(),
                brief_id=brief.id,
                title=draft.title,
                slug=self.unique_slug(draft.title),
                blurb=draft.blurb,
                reading_level=brief.reading_level,
                genre=brief.genre,
                primary_virtue=brief.primary_virtue,
                chapters=draft.chapters,
                cover_image_ref=cover.image_ref,
                cover_degraded=cover.degraded,
                safety_passed=gate_results.safety_passed,
                values_score=gate_results.values_score,
                quality_score=gate_results.quality_score,
                publication_status=status,
                created_at=now,
                published_at=now if status is PublicationStatus.APPROVED else None,
            )
            self._store.insert_story(story)
            self._store.mark_brief_status(
                brief.id,
                BriefStatus.COMPLETED,
                expected=BriefStatus.PROCESSING,
                claimed_at=brief.claimed_at,
            )
            self._store.attach_story(run.run_id, story.id)

        run.story_id = story.id
        return story

    def unique_slug(self, title: str) -> str:
        base = slugify(title)
        if not self._store.slug_exists(base):
            return base
        for suffix in range(1, MAX_SLUG_SUFFIX + 1):
            candidate = f"{base}-{suffix}"
            if not self._store.slug_exists(candidate):
                return candidate
        return f"{base}-{int(self._clock().timestamp())}"
