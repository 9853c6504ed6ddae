"""
Orchestrates one story run from a claimed brief to a persisted, vetted story.
"""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, TypeVar

from wholesome_library.ai_generation import CoverArtGenerator, CoverResult, ReplicateImageGenerator
from wholesome_library.checks import QualityChecker, SafetyChecker, SafetyVerdict, ScoreVerdict, ValuesChecker
from wholesome_library.common import (
    ClaimLostError,
    CompletionCallable,
    FailureCategory,
    PersistenceError,
    RetryPolicy,
    RunLogger,
    SafetyGateFailure,
    ThresholdGateFailure,
    call_with_retry,
    classify_exception,
)
from wholesome_library.config import PipelineSettings
from wholesome_library.models import (
    Degraded,
    Failed,
    GateResults,
    GeneratedStory,
    Passed,
    PipelineRun,
    RUN_STATE_ORDER,
    RunOutcome,
    RunState,
    StageOutcome,
    StageResult,
)
from wholesome_library.storage import SqliteStoryStore, StoryStore
from wholesome_library.story_generation import BriefStatus, StoryBrief, StoryDraft, StoryGenerator, utc_now

from .persister import Persister

ProgressCallback = Callable[[str, dict[str, Any]], None]

T = TypeVar("T")

PERSISTENCE_FAILURE_REASON = "persistence_error"


@dataclass
class _RunContext:
    run: PipelineRun
    log: RunLogger
    progress_callback: ProgressCallback | None
    state: RunState = RunState.STARTED


class _StageFailure(Exception):
    def __init__(self, stage: str, reason: str, category: FailureCategory) -> None:
        super().__init__(reason)
        self.stage = stage
        self.reason = reason
        self.category = category


class PipelineRunner:
    """
    High-level coordinator that chains generation, the three gates, the cover and persistence.

    The run moves strictly forward through ``STARTED -> GENERATING -> CHECKING_SAFETY ->
    CHECKING_VALUES -> CHECKING_QUALITY -> ILLUSTRATING -> PERSISTING`` and ends in
    ``SUCCEEDED`` or ``FAILED``. The first failing stage ends the run; a degraded cover
    does not. The run record is written when the run starts and again, finalized, when
    it reaches a terminal state.
    """

    def __init__(
        self,
        *,
        store: StoryStore,
        story_generator: StoryGenerator,
        safety_checker: SafetyChecker,
        values_checker: ValuesChecker,
        quality_checker: QualityChecker,
        cover_generator: CoverArtGenerator,
        persister: Persister | None = None,
        values_threshold: float = 3.0,
        quality_threshold: float = 70.0,
        retry_policy: RetryPolicy | None = None,
        log_dir: str | None = None,
        artifact_dir: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._story_generator = story_generator
        self._safety_checker = safety_checker
        self._values_checker = values_checker
        self._quality_checker = quality_checker
        self._cover_generator = cover_generator
        self._values_threshold = values_threshold
        self._quality_threshold = quality_threshold
        self._persister = persister or Persister(
            store,
            values_threshold=values_threshold,
            quality_threshold=quality_threshold,
            clock=clock,
        )
        self._retry_policy = retry_policy or RetryPolicy()
        self._log_dir = log_dir
        self._artifact_dir = artifact_dir
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        *,
        store: StoryStore | None = None,
        completion_fn: CompletionCallable | None = None,
        cover_generator: CoverArtGenerator | None = None,
    ) -> "PipelineRunner":
        """
        Wire every stage from configuration. Covers degrade when no image token is set.
        """
        store = store or SqliteStoryStore(settings.db_path, timeout=settings.store_timeout_s)
        check_kwargs: dict[str, Any] = {
            "api_key": settings.llm_api_key,
            "model": settings.check_model,
            "completion_fn": completion_fn,
            "max_output_tokens": settings.check_max_tokens,
            "timeout": settings.llm_timeout_s,
        }

        if cover_generator is None:
            image_generator = None
            if settings.illustration_enabled:
                image_generator = ReplicateImageGenerator(
                    api_token=settings.image_api_token,
                    model_identifier=settings.image_model,
                    timeout=settings.image_timeout_s,
                )
            cover_generator = CoverArtGenerator(
                image_generator,
                fallback_cover_dir=settings.fallback_cover_dir,
                download_dir=settings.cover_download_dir,
                download_timeout=settings.image_timeout_s,
                retry_policy=settings.retry_policy,
            )

        return cls(
            store=store,
            story_generator=StoryGenerator(
                api_key=settings.llm_api_key,
                model=settings.story_model,
                completion_fn=completion_fn,
                temperature=settings.story_temperature,
                max_output_tokens=settings.story_max_tokens,
                timeout=settings.llm_timeout_s,
            ),
            safety_checker=SafetyChecker(**check_kwargs),
            values_checker=ValuesChecker(**check_kwargs),
            quality_checker=QualityChecker(**check_kwargs),
            cover_generator=cover_generator,
            persister=Persister(
                store,
                values_threshold=settings.values_threshold,
                quality_threshold=settings.quality_threshold,
                approval_quality_threshold=settings.approval_quality_threshold,
            ),
            values_threshold=settings.values_threshold,
            quality_threshold=settings.quality_threshold,
            retry_policy=settings.retry_policy,
            log_dir=settings.log_dir,
            artifact_dir=settings.artifact_dir,
        )

    def run(
        self,
        brief: StoryBrief,
        *,
        progress_callback: ProgressCallback | None = None,
        run_logger: RunLogger | None = None,
    ) -> PipelineRun:
        """
        Execute every stage for a brief this caller has claimed and return the terminal run.

        Stage failures never escape as exceptions; they are recorded on the returned run.
        Only a store failure while writing the run record itself propagates.
        """
        log = run_logger or RunLogger(log_dir=self._log_dir, artifact_dir=self._artifact_dir)
        run = PipelineRun(run_id=log.run_id, brief_id=brief.id, started_at=self._clock())
        ctx = _RunContext(run=run, log=log, progress_callback=progress_callback)

        log.info(
            RunState.STARTED.value,
            "Run started",
            brief_id=brief.id,
            genre=brief.genre,
            reading_level=brief.reading_level,
            attempt=brief.attempts,
        )
        self._notify(progress_callback, RunState.STARTED.value, run_id=run.run_id, brief_id=brief.id)
        self._store.insert_run(run)

        draft: StoryDraft | None = None
        gate_results: GateResults | None = None
        cover: CoverResult | None = None
        try:
            draft = self._execute_stage(
                ctx,
                RunState.GENERATING,
                "generation",
                lambda: self._story_generator.generate(brief),
                evaluate=_draft_outcome,
                artifact=lambda value: value.as_dict(),
                tokens=lambda value: value.tokens_used,
            )
            self._execute_stage(
                ctx,
                RunState.CHECKING_SAFETY,
                "safety",
                lambda: self._safety_checker.check(draft),
                evaluate=_safety_outcome,
                artifact=lambda verdict: verdict.as_dict(),
                tokens=lambda verdict: verdict.tokens_used,
            )
            values = self._execute_stage(
                ctx,
                RunState.CHECKING_VALUES,
                "values",
                lambda: self._values_checker.check(draft),
                evaluate=lambda verdict: _threshold_outcome("values", verdict, self._values_threshold),
                artifact=lambda verdict: verdict.as_dict(),
                tokens=lambda verdict: verdict.tokens_used,
            )
            quality = self._execute_stage(
                ctx,
                RunState.CHECKING_QUALITY,
                "quality",
                lambda: self._quality_checker.check(draft),
                evaluate=lambda verdict: _threshold_outcome("quality", verdict, self._quality_threshold),
                artifact=lambda verdict: verdict.as_dict(),
                tokens=lambda verdict: verdict.tokens_used,
            )
            gate_results = GateResults(
                safety_passed=True,
                values_score=values.score,
                quality_score=quality.score,
            )
            cover = self._execute_stage(
                ctx,
                RunState.ILLUSTRATING,
                "illustration",
                lambda: self._cover_generator.illustrate(draft, run_logger=log),
                evaluate=_cover_outcome,
                artifact=lambda result: result.as_dict(),
            )
            story = self._execute_stage(
                ctx,
                RunState.PERSISTING,
                "persistence",
                lambda: self._persister.commit(brief, draft, gate_results, cover, run),
                evaluate=lambda story: Passed(rationale=f"Stored as {story.slug} ({story.publication_status.value})"),
                artifact=_story_artifact,
            )
        except _StageFailure as failure:
            if failure.stage == "persistence":
                run.recovery_payload = {
                    "draft": draft.as_dict() if draft else None,
                    "gate_results": dataclasses.asdict(gate_results) if gate_results else None,
                    "cover": cover.as_dict() if cover else None,
                }
                reason = f"{PERSISTENCE_FAILURE_REASON}: {failure.reason}"
            else:
                reason = f"{failure.category.value}: {failure.reason}"
            self._fail_brief(ctx, brief, reason)
            self._finish(
                ctx,
                RunOutcome.FAILURE,
                error=failure.reason,
                error_kind=failure.category.value,
                failing_stage=failure.stage,
            )
            return run

        log.info(RunState.PERSISTING.value, "Story persisted", story_id=story.id, slug=story.slug)
        self._finish(ctx, RunOutcome.SUCCESS)
        return run

    def _execute_stage(
        self,
        ctx: _RunContext,
        state: RunState,
        stage: str,
        call: Callable[[], T],
        *,
        evaluate: Callable[[T], StageOutcome],
        artifact: Callable[[T], Any],
        tokens: Callable[[T], int | None] | None = None,
    ) -> T:
        self._transition(ctx, state)
        started = time.perf_counter()
        calls = 0

        def attempt() -> T:
            nonlocal calls
            calls += 1
            return call()

        try:
            value, _ = call_with_retry(
                attempt,
                policy=self._retry_policy,
                stage=stage,
                run_logger=ctx.log,
                sleep=self._sleep,
            )
        except Exception as exc:  # noqa: BLE001
            category = classify_exception(exc)
            if category is FailureCategory.UNEXPECTED:
                ctx.log.error(stage, "Unexpected error", error=repr(exc), error_type=type(exc).__name__)
            reason = str(exc) or type(exc).__name__
            self._record(
                ctx,
                stage,
                Failed(reason=reason, category=category),
                started,
                attempts=calls,
                raw_output_ref=None,
                tokens=None,
            )
            raise _StageFailure(stage, reason, category) from exc

        outcome = evaluate(value)
        reference = ctx.log.record_artifact(stage, artifact(value))
        self._record(
            ctx,
            stage,
            outcome,
            started,
            attempts=calls,
            raw_output_ref=reference,
            tokens=tokens(value) if tokens is not None else None,
        )

        match outcome:
            case Failed(reason=reason, category=category):
                ctx.log.warning(stage, "Gate rejected the draft", reason=reason, error_kind=category.value)
                raise _StageFailure(stage, reason, category)
            case Degraded(note=note):
                ctx.log.warning(stage, "Stage degraded", note=note)
                ctx.run.add_note(f"{stage}: {note}")
            case Passed(score=score):
                ctx.log.info(stage, "Stage passed", score=score, attempts=calls)
        return value

    def _record(
        self,
        ctx: _RunContext,
        stage: str,
        outcome: StageOutcome,
        started: float,
        *,
        attempts: int,
        raw_output_ref: str | None,
        tokens: int | None,
    ) -> None:
        result = StageResult(
            stage=stage,
            outcome=outcome,
            duration_ms=int((time.perf_counter() - started) * 1000),
            attempts=attempts,
            raw_output_ref=raw_output_ref,
            tokens=tokens,
        )
        ctx.run.record(result)
        self._notify(
            ctx.progress_callback,
            f"{stage}:done",
            run_id=ctx.run.run_id,
            passed=result.passed,
            score=result.score,
            duration_ms=result.duration_ms,
            tokens=result.tokens,
        )

    def _transition(self, ctx: _RunContext, state: RunState) -> None:
        previous = ctx.state
        if previous.terminal or (
            not state.terminal and RUN_STATE_ORDER.index(state) <= RUN_STATE_ORDER.index(previous)
        ):
            raise RuntimeError(f"Illegal run transition {previous.value} -> {state.value}")
        ctx.state = state
        ctx.log.transition(previous.value, state.value)
        self._notify(ctx.progress_callback, state.value, run_id=ctx.run.run_id, previous=previous.value)

    def _fail_brief(self, ctx: _RunContext, brief: StoryBrief, reason: str) -> None:
        try:
            self._store.mark_brief_status(
                brief.id,
                BriefStatus.FAILED,
                expected=BriefStatus.PROCESSING,
                reason=reason,
                claimed_at=brief.claimed_at,
            )
        except ClaimLostError as exc:
            ctx.log.warning(ctx.state.value, "Brief was reclaimed by another runner", brief_id=brief.id, error=str(exc))
            ctx.run.add_note(f"claim lost: {exc}")
        except PersistenceError as exc:
            ctx.log.error(ctx.state.value, "Could not mark brief failed", brief_id=brief.id, error=str(exc))
            ctx.run.add_note(f"brief status not updated: {exc}")

    def _finish(
        self,
        ctx: _RunContext,
        outcome: RunOutcome,
        *,
        error: str | None = None,
        error_kind: str | None = None,
        failing_stage: str | None = None,
    ) -> None:
        terminal = RunState.SUCCEEDED if outcome is RunOutcome.SUCCESS else RunState.FAILED
        self._transition(ctx, terminal)
        ctx.run.finalize(
            outcome,
            self._clock(),
            error=error,
            error_kind=error_kind,
            failing_stage=failing_stage,
        )
        if outcome is RunOutcome.SUCCESS:
            ctx.log.info(
                terminal.value,
                "Run succeeded",
                duration_ms=ctx.run.duration_ms,
                token_usage=ctx.run.token_usage,
            )
        else:
            ctx.log.error(
                terminal.value,
                "Run failed",
                failing_stage=failing_stage,
                error_kind=error_kind,
                error=error,
                duration_ms=ctx.run.duration_ms,
                token_usage=ctx.run.token_usage,
            )
        self._store.insert_run(ctx.run)

    @staticmethod
    def _notify(
        callback: ProgressCallback | None,
        stage: str,
        **payload: Any,
    ) -> None:
        if callback is not None:
            callback(stage, payload)


def _draft_outcome(draft: StoryDraft) -> StageOutcome:
    return Passed(rationale=f"{len(draft.chapters)} chapters, {draft.total_word_count} words")


def _safety_outcome(verdict: SafetyVerdict) -> StageOutcome:
    if verdict.passed:
        return Passed(rationale=verdict.rationale)
    failure = SafetyGateFailure(f"Safety gate failed: {verdict.rationale}")
    return Failed(reason=str(failure), category=failure.category)


def _threshold_outcome(gate: str, verdict: ScoreVerdict, threshold: float) -> StageOutcome:
    if verdict.score >= threshold:
        return Passed(score=verdict.score, rationale=verdict.rationale)
    failure = ThresholdGateFailure(gate, verdict.score, threshold)
    return Failed(reason=str(failure), category=failure.category)


def _cover_outcome(cover: CoverResult) -> StageOutcome:
    if cover.degraded:
        return Degraded(fallback_used=True, note=cover.note or "Used fallback cover.")
    return Passed(rationale=cover.note or "")


def _story_artifact(story: GeneratedStory) -> dict[str, Any]:
    return {
        "story_id": story.id,
        "slug": story.slug,
        "publication_status": story.publication_status.value,
        "total_word_count": story.total_word_count,
    }
