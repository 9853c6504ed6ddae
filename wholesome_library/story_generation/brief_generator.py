"""
Synthesizes new queued briefs with balanced variety across genre, virtue, theme and reading level.
"""

from __future__ import annotations

import os
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Sequence

from wholesome_library.common import (
    CompletionCallable,
    GenerationError,
    NO_RETRY,
    RetryPolicy,
    RunLogger,
    call_chat_completion,
    call_with_retry,
    classify_exception,
    parse_json_object,
)

from .brief import READING_LEVELS, BriefStatus, StoryBrief, utc_now

if TYPE_CHECKING:
    from wholesome_library.storage import StoryStore

STAGE = "brief_generation"

VARIETY_MATRIX: dict[str, tuple[str, ...]] = {
    "reading_levels": tuple(READING_LEVELS),
    "genres": (
        "adventure", "fantasy", "mystery", "friendship", "sci-fi", "animal",
        "sports", "nature", "humor", "historical", "fairy-tale", "everyday-hero",
    ),
    "virtues": (
        "courage", "kindness", "honesty", "perseverance", "gratitude", "teamwork",
        "patience", "forgiveness", "generosity", "responsibility", "respect", "compassion",
        "creativity", "humility", "self-discipline", "empathy",
    ),
    "themes": (
        "discovery and growth", "facing fears", "helping others", "telling the truth",
        "never giving up", "working together", "standing up for others", "learning from mistakes",
        "embracing differences", "finding inner strength", "the power of friendship",
        "believing in yourself", "making amends", "sharing and generosity",
        "respecting nature", "family bonds", "overcoming jealousy", "building confidence",
    ),
}

# Virtue draws per slot before accepting a combination that already exists.
MAX_COMBINATION_DRAWS = 20


def pick_least_used(options: Sequence[str], counts: dict[str, int], rng: random.Random) -> str:
    """Pick an option with the lowest count so far, breaking ties at random."""
    lowest = min(counts.get(option, 0) for option in options)
    candidates = [option for option in options if counts.get(option, 0) == lowest]
    return rng.choice(candidates)


@dataclass(frozen=True)
class BriefAxes:
    genre: str
    primary_virtue: str
    reading_level: str
    theme: str

    @property
    def combination(self) -> tuple[str, str, str]:
        return (self.genre, self.primary_virtue, self.reading_level)


@dataclass(frozen=True)
class BriefSynthesisFailure:
    index: int
    axes: BriefAxes
    error: str


@dataclass
class BriefGenerationReport:
    """
    Outcome of one auto-generation batch.
    """

    requested: int
    briefs: list[StoryBrief] = field(default_factory=list)
    failures: list[BriefSynthesisFailure] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.briefs) and bool(self.failures)


class BriefGenerator:
    """
    Plans a varied batch of brief axes, asks the LLM to flesh out each one, and queues the results.
    """

    def __init__(
        self,
        *,
        store: "StoryStore",
        api_key: str | None = None,
        model: str | None = None,
        completion_fn: CompletionCallable | None = None,
        timeout: float | None = 60.0,
        retry_policy: RetryPolicy = NO_RETRY,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._api_key = api_key or os.getenv("OPENAI_API_KEY") or os.getenv("LITELLM_API_KEY")
        self._model = (
            model
            or os.getenv("WHOLESOME_BRIEF_MODEL")
            or os.getenv("LITELLM_MODEL")
            or "gpt-4o-mini"
        )
        self._completion_fn: CompletionCallable = completion_fn or call_chat_completion
        self._timeout = timeout
        self._retry_policy = retry_policy
        self._rng = rng or random.Random()
        self._clock = clock

    def generate(self, count: int, *, run_logger: RunLogger | None = None) -> list[StoryBrief]:
        """
        Queue ``count`` new briefs and return the ones that were created, in order.
        """
        return self.generate_with_report(count, run_logger=run_logger).briefs

    def generate_with_report(
        self,
        count: int,
        *,
        run_logger: RunLogger | None = None,
    ) -> BriefGenerationReport:
        """
        Like :meth:`generate`, but also return the slots that failed.

        Raises
        ------
        GenerationError
            When not a single brief could be produced.
        """
        if count < 1:
            raise ValueError("count must be at least 1.")

        log = run_logger or RunLogger()
        log.info(STAGE, f"Auto-generating {count} balanced briefs")

        report = BriefGenerationReport(requested=count)
        for index, axes in enumerate(self.plan_axes(count), start=1):
            try:
                brief, _ = call_with_retry(
                    lambda: self._synthesize(axes),
                    policy=self._retry_policy,
                    stage=STAGE,
                    run_logger=log,
                )
                self._store.insert_briefs([brief])
            except Exception as exc:  # noqa: BLE001
                error = str(exc) or type(exc).__name__
                log.error(
                    STAGE,
                    f"Failed to create brief {index}/{count}",
                    error=error,
                    error_kind=classify_exception(exc).value,
                )
                report.failures.append(BriefSynthesisFailure(index=index, axes=axes, error=error))
                continue

            report.briefs.append(brief)
            log.info(
                STAGE,
                f"Brief {index}/{count}: {axes.reading_level} {axes.genre} - {axes.primary_virtue}",
                brief_id=brief.id,
            )

        if not report.briefs:
            raise GenerationError(f"None of the {count} requested briefs could be generated.")

        log.info(
            STAGE,
            f"Generated {len(report.briefs)} of {count} briefs",
            partial=report.partial,
        )
        return report

    def plan_axes(self, count: int) -> list[BriefAxes]:
        """
        Choose balanced axes for ``count`` briefs, avoiding combinations already stored.
        """
        existing = set(self._store.brief_combinations())
        genre_counts: dict[str, int] = {}
        level_counts: dict[str, int] = {}
        theme_counts: dict[str, int] = {}
        planned: list[BriefAxes] = []

        for _ in range(count):
            genre = pick_least_used(VARIETY_MATRIX["genres"], genre_counts, self._rng)
            reading_level = pick_least_used(VARIETY_MATRIX["reading_levels"], level_counts, self._rng)
            theme = pick_least_used(VARIETY_MATRIX["themes"], theme_counts, self._rng)

            virtue = self._rng.choice(VARIETY_MATRIX["virtues"])
            for _ in range(MAX_COMBINATION_DRAWS):
                if (genre, virtue, reading_level) not in existing:
                    break
                virtue = self._rng.choice(VARIETY_MATRIX["virtues"])

            axes = BriefAxes(genre=genre, primary_virtue=virtue, reading_level=reading_level, theme=theme)
            genre_counts[genre] = genre_counts.get(genre, 0) + 1
            level_counts[reading_level] = level_counts.get(reading_level, 0) + 1
            theme_counts[theme] = theme_counts.get(theme, 0) + 1
            existing.add(axes.combination)
            planned.append(axes)

        return planned

    def _synthesize(self, axes: BriefAxes) -> StoryBrief:
        level = READING_LEVELS[axes.reading_level]
        result = self._completion_fn(
            model=self._model,
            messages=[
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": _build_user_prompt(axes, level.age_range)},
            ],
            temperature=0.9,
            max_tokens=300,
            api_key=self._api_key,
            timeout=self._timeout,
            response_format={"type": "json_object"},
        )
        payload = parse_json_object(result.text, source="brief synthesis")

        setting = str(payload.get("setting") or "").strip()
        premise = str(payload.get("premise") or "").strip()
        if not setting or not premise:
            raise GenerationError("Brief synthesis response is missing 'setting' or 'premise'.")

        raw_avoid = payload.get("avoid_content") or ()
        if isinstance(raw_avoid, str):
            raw_avoid = raw_avoid.split(",")
        avoid_content = tuple(filter(None, (str(item).strip() for item in raw_avoid)))

        return StoryBrief(
            id=str(uuid.uuid4()),
            theme=axes.theme,
            reading_level=axes.reading_level,
            primary_virtue=axes.primary_virtue,
            genre=axes.genre,
            target_word_count=level.target_word_count,
            target_chapters=level.target_chapters,
            status=BriefStatus.QUEUED,
            created_at=self._clock(),
            setting=setting,
            premise=premise,
            avoid_content=avoid_content,
        )


_SYSTEM_PROMPT = """You are a children's library editor planning the next stories to commission.
Given fixed genre, virtue, theme and reading level, propose a fresh setting and a one-sentence premise.
Keep everything gentle, inclusive, and age-appropriate.

Return valid JSON:
{
  "setting": "string, one sentence describing where the story happens",
  "premise": "string, one sentence describing the hero, the problem, and what is at stake",
  "avoid_content": ["optional list of topics the author must steer clear of for this audience"]
}

Do not include commentary outside the JSON."""


def _build_user_prompt(axes: BriefAxes, age_range: str) -> str:
    return f"""Genre: {axes.genre}
Primary virtue: {axes.primary_virtue}
Theme: {axes.theme}
Reading level: {axes.reading_level} (ages {age_range})

Propose the setting and premise."""
