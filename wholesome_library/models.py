"""
Run records, stage outcomes and the finished story record shared by the pipeline and the store.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from wholesome_library.common import FailureCategory
from wholesome_library.story_generation.story_service import WORDS_PER_MINUTE, Chapter


class RunState(str, Enum):
    STARTED = "started"
    GENERATING = "generating"
    CHECKING_SAFETY = "checking_safety"
    CHECKING_VALUES = "checking_values"
    CHECKING_QUALITY = "checking_quality"
    ILLUSTRATING = "illustrating"
    PERSISTING = "persisting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunState.SUCCEEDED, RunState.FAILED)


RUN_STATE_ORDER: tuple[RunState, ...] = (
    RunState.STARTED,
    RunState.GENERATING,
    RunState.CHECKING_SAFETY,
    RunState.CHECKING_VALUES,
    RunState.CHECKING_QUALITY,
    RunState.ILLUSTRATING,
    RunState.PERSISTING,
)


class RunOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class PublicationStatus(str, Enum):
    APPROVED = "approved"
    EDITOR_QUEUE = "editor_queue"


@dataclass(frozen=True)
class Passed:
    score: float | None = None
    rationale: str = ""


@dataclass(frozen=True)
class Failed:
    reason: str
    category: FailureCategory


@dataclass(frozen=True)
class Degraded:
    fallback_used: bool
    note: str


StageOutcome = Union[Passed, Failed, Degraded]


def outcome_to_dict(outcome: StageOutcome) -> dict[str, Any]:
    match outcome:
        case Passed(score=score, rationale=rationale):
            return {"kind": "passed", "score": score, "rationale": rationale}
        case Failed(reason=reason, category=category):
            return {"kind": "failed", "reason": reason, "category": category.value}
        case Degraded(fallback_used=fallback_used, note=note):
            return {"kind": "degraded", "fallback_used": fallback_used, "note": note}
    raise TypeError(f"Unknown stage outcome: {outcome!r}")


def outcome_from_dict(payload: dict[str, Any]) -> StageOutcome:
    kind = payload.get("kind")
    if kind == "passed":
        return Passed(score=payload.get("score"), rationale=payload.get("rationale", ""))
    if kind == "failed":
        return Failed(reason=payload["reason"], category=FailureCategory(payload["category"]))
    if kind == "degraded":
        return Degraded(fallback_used=bool(payload["fallback_used"]), note=payload["note"])
    raise ValueError(f"Unknown stage outcome kind: {kind!r}")


@dataclass(frozen=True)
class StageResult:
    """
    What one stage produced: its tagged outcome, timing, and a reference to the raw output.
    ``tokens`` is the provider-reported LLM token count, ``None`` for stages without an LLM call.
    """

    stage: str
    outcome: StageOutcome
    duration_ms: int
    attempts: int = 1
    raw_output_ref: str | None = None
    tokens: int | None = None

    @property
    def passed(self) -> bool:
        return not isinstance(self.outcome, Failed)

    @property
    def score(self) -> float | None:
        if isinstance(self.outcome, Passed):
            return self.outcome.score
        return None

    def as_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "outcome": outcome_to_dict(self.outcome),
            "passed": self.passed,
            "score": self.score,
            "duration_ms": self.duration_ms,
            "attempts": self.attempts,
            "raw_output_ref": self.raw_output_ref,
            "tokens": self.tokens,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StageResult":
        return cls(
            stage=payload["stage"],
            outcome=outcome_from_dict(payload["outcome"]),
            duration_ms=int(payload["duration_ms"]),
            attempts=int(payload.get("attempts", 1)),
            raw_output_ref=payload.get("raw_output_ref"),
            tokens=payload.get("tokens"),
        )


@dataclass
class PipelineRun:
    """
    Audit record of one run against one brief.

    ``stages`` preserves execution order; stages that never ran are absent. The record is
    mutable only until :meth:`finalize` writes the terminal outcome.
    """

    run_id: str
    brief_id: str
    started_at: datetime
    stages: dict[str, StageResult] = field(default_factory=dict)
    ended_at: datetime | None = None
    outcome: RunOutcome | None = None
    error: str | None = None
    error_kind: str | None = None
    failing_stage: str | None = None
    story_id: str | None = None
    notes: list[str] = field(default_factory=list)
    recovery_payload: dict[str, Any] | None = None

    @property
    def active(self) -> bool:
        return self.outcome is None

    @property
    def succeeded(self) -> bool:
        return self.outcome is RunOutcome.SUCCESS

    @property
    def duration_ms(self) -> int | None:
        if self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    @property
    def token_usage(self) -> int:
        """Total LLM tokens reported across the recorded stages."""
        return sum(result.tokens for result in self.stages.values() if result.tokens is not None)

    def record(self, result: StageResult) -> None:
        self._ensure_active()
        if result.stage in self.stages:
            raise ValueError(f"Stage {result.stage!r} already recorded for run {self.run_id}.")
        self.stages[result.stage] = result

    def add_note(self, note: str) -> None:
        self._ensure_active()
        self.notes.append(note)

    def finalize(
        self,
        outcome: RunOutcome,
        ended_at: datetime,
        *,
        error: str | None = None,
        error_kind: str | None = None,
        failing_stage: str | None = None,
    ) -> None:
        self._ensure_active()
        self.outcome = outcome
        self.ended_at = ended_at
        self.error = error
        self.error_kind = error_kind
        self.failing_stage = failing_stage

    def _ensure_active(self) -> None:
        if not self.active:
            raise RuntimeError(f"Run {self.run_id} is already terminal.")


@dataclass(frozen=True)
class GateResults:
    safety_passed: bool
    values_score: float
    quality_score: float


@dataclass(frozen=True)
class GeneratedStory:
    """
    The finished, vetted story record written by the persister.
    """

    id: str
    brief_id: str
    title: str
    slug: str
    blurb: str
    reading_level: str
    genre: str
    primary_virtue: str
    chapters: tuple[Chapter, ...]
    cover_image_ref: str
    cover_degraded: bool
    safety_passed: bool
    values_score: float
    quality_score: float
    publication_status: PublicationStatus
    created_at: datetime
    published_at: datetime | None = None

    @property
    def total_word_count(self) -> int:
        return sum(chapter.word_count for chapter in self.chapters)

    @property
    def estimated_read_minutes(self) -> int:
        return max(1, math.ceil(self.total_word_count / WORDS_PER_MINUTE))
