"""
Command line entry point: optionally queue new briefs, then claim and process one.

Usage:
    wholesome-pipeline
    wholesome-pipeline --auto-generate 5
    wholesome-pipeline --stats --db data/wholesome_library.db
"""

from __future__ import annotations

import argparse
import logging
from typing import Any, Dict, Sequence

from tqdm.auto import tqdm

from wholesome_library.common import PipelineError, configure_logging
from wholesome_library.config import PipelineSettings, load_settings
from wholesome_library.models import PipelineRun, RunState
from wholesome_library.pipeline import BriefQueue, PipelineRunner
from wholesome_library.storage import SqliteStoryStore, StoryStore
from wholesome_library.story_generation import BriefGenerator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

_STAGE_LABELS: dict[str, str] = {
    RunState.GENERATING.value: "Generating the story draft",
    RunState.CHECKING_SAFETY.value: "Running the safety scan",
    RunState.CHECKING_VALUES.value: "Scoring values alignment",
    RunState.CHECKING_QUALITY.value: "Scoring story quality",
    RunState.ILLUSTRATING.value: "Creating the cover",
    RunState.PERSISTING.value: "Saving the story",
}


class ProgressTracker:
    """
    Provides command-line progress updates for one pipeline run.
    """

    def __init__(self) -> None:
        self._bar: tqdm | None = None

    def __call__(self, stage: str, payload: Dict[str, Any]) -> None:
        match stage:
            case "started":
                self._write(f"Processing brief {payload.get('brief_id')} (run {payload.get('run_id')})")
                self._bar = tqdm(total=len(_STAGE_LABELS), desc="Pipeline", unit="stage")
            case "succeeded" | "failed":
                self.close()
            case label_key if label_key in _STAGE_LABELS:
                if self._bar is not None:
                    self._bar.set_description(_STAGE_LABELS[label_key])
            case done if done.endswith(":done"):
                if self._bar is not None:
                    self._bar.update(1)
                if not payload.get("passed", True):
                    self._write(f"  {done.split(':', 1)[0]} did not pass.")

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    @staticmethod
    def _write(message: str) -> None:
        tqdm.write(message)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate, vet and store one children's story.")
    parser.add_argument(
        "--auto-generate",
        type=int,
        default=None,
        metavar="N",
        help="Synthesize N new briefs into the queue before processing one.",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print brief counts per status and exit.",
    )
    parser.add_argument(
        "--db",
        default=None,
        help="Path to the SQLite database (overrides WHOLESOME_DB_PATH).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Optional YAML file overriding configuration values.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--log-format",
        default="text",
        choices=["text", "json"],
        help="Log line format on stderr (default: text).",
    )
    args = parser.parse_args(argv)
    if args.auto_generate is not None and args.auto_generate < 1:
        parser.error("--auto-generate must be at least 1.")
    return args


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level, args.log_format)

    try:
        settings = load_settings(args.config)
        if args.db:
            settings = settings.with_overrides({"db_path": args.db})

        store = SqliteStoryStore(settings.db_path, timeout=settings.store_timeout_s)
        queue = BriefQueue(
            store,
            stale_claim_after_s=settings.stale_claim_after_s,
            max_claim_attempts=settings.max_claim_attempts,
        )

        if args.stats:
            _print_stats(queue)
            return EXIT_OK

        settings.require_llm_credentials()

        if args.auto_generate:
            _auto_generate(settings, store, args.auto_generate)

        runner = PipelineRunner.from_settings(settings, store=store)
        brief = queue.claim_next()
        if brief is None:
            print("No queued briefs to process.")
            return EXIT_OK

        tracker = ProgressTracker()
        try:
            run = runner.run(brief, progress_callback=tracker)
        finally:
            tracker.close()
    except PipelineError as exc:
        logger.error("Pipeline aborted [%s]: %s", exc.category.value, exc)
        return EXIT_FAILURE
    except Exception:  # noqa: BLE001
        logger.exception("Pipeline aborted with an unexpected error")
        return EXIT_FAILURE

    if run.succeeded:
        _print_success(run, store)
        return EXIT_OK

    _print_failure(run)
    return EXIT_FAILURE


def _auto_generate(settings: PipelineSettings, store: StoryStore, count: int) -> None:
    generator = BriefGenerator(
        store=store,
        api_key=settings.llm_api_key,
        model=settings.brief_model,
        timeout=settings.llm_timeout_s,
        retry_policy=settings.retry_policy,
    )
    report = generator.generate_with_report(count)
    print(f"Queued {len(report.briefs)} of {report.requested} requested briefs.")
    for failure in report.failures:
        print(
            f"  Brief {failure.index} ({failure.axes.genre}, {failure.axes.primary_virtue}) "
            f"failed: {failure.error}"
        )


def _print_stats(queue: BriefQueue) -> None:
    stats = queue.stats()
    print("Brief queue:")
    print(f"  queued:     {stats.queued}")
    print(f"  processing: {stats.processing}")
    print(f"  completed:  {stats.completed}")
    print(f"  failed:     {stats.failed}")
    print(f"  total:      {stats.total}")


def _print_success(run: PipelineRun, store: StoryStore) -> None:
    story = store.get_story(run.story_id) if run.story_id else None
    elapsed = (run.duration_ms or 0) / 1000
    print("Story created successfully.")
    print(f"  Story id:      {run.story_id}")
    if story is not None:
        print(f"  Title:         {story.title}")
        print(f"  Slug:          {story.slug}")
        print(f"  Quality score: {story.quality_score:g}/100")
        print(f"  Safety:        {'pass' if story.safety_passed else 'fail'}")
        print(f"  Values score:  {story.values_score:g}/5")
        print(f"  Status:        {story.publication_status.value}")
    print(f"  Elapsed:       {elapsed:.1f}s")
    print(f"  Tokens used:   {run.token_usage}")
    for note in run.notes:
        print(f"  Note: {note}")


def _print_failure(run: PipelineRun) -> None:
    elapsed = (run.duration_ms or 0) / 1000
    print(f"Run {run.run_id} failed at stage '{run.failing_stage}' [{run.error_kind}].")
    print(f"  Reason:  {run.error}")
    print(f"  Elapsed: {elapsed:.1f}s")
    print(f"  Tokens:  {run.token_usage}")


if __name__ == "__main__":
    raise SystemExit(main())
