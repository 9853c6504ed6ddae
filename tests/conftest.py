"""Shared fixtures: scripted LLM responses, a fake image port and a SQLite store in tmp_path.

No network access; every external port is replaced by an in-process fake.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from wholesome_library.ai_generation import CoverArtGenerator, CoverPrompt, ImageGenerator
from wholesome_library.checks import QUALITY_DIMENSIONS, VALUES_DIMENSIONS, QualityChecker, SafetyChecker, ValuesChecker
from wholesome_library.common import ChatResult, RetryPolicy
from wholesome_library.pipeline import PipelineRunner
from wholesome_library.storage import SqliteStoryStore
from wholesome_library.story_generation import READING_LEVELS, Chapter, StoryBrief, StoryDraft, StoryGenerator


# === Fakes ===


class ScriptedCompletion:
    """Completion callable that replays scripted responses in order and records every call.

    A response may be a dict (sent as JSON text), a string, an exception instance to raise,
    or a callable receiving the call kwargs. With ``tokens_per_call`` set, each result reports
    that many tokens in its raw usage block.
    """

    def __init__(self, *responses: Any, repeat_last: bool = False, tokens_per_call: int | None = None) -> None:
        self._responses = list(responses)
        self._repeat_last = repeat_last
        self._tokens_per_call = tokens_per_call
        self.calls: list[dict[str, Any]] = []

    def __call__(self, **kwargs: Any) -> ChatResult:
        self.calls.append(kwargs)
        if not self._responses:
            raise AssertionError("Unexpected LLM call")
        if self._repeat_last and len(self._responses) == 1:
            item = self._responses[0]
        else:
            item = self._responses.pop(0)

        if callable(item) and not isinstance(item, BaseException):
            item = item(kwargs)
        if isinstance(item, BaseException):
            raise item
        text = json.dumps(item) if isinstance(item, (dict, list)) else str(item)
        raw: dict[str, Any] = {"scripted": True}
        if self._tokens_per_call is not None:
            raw["usage"] = {"total_tokens": self._tokens_per_call}
        return ChatResult(text=text, raw=raw)


class FakeImageGenerator(ImageGenerator):
    def __init__(self, result: str | BaseException = "https://images.example/cover.png") -> None:
        self._result = result
        self.prompts: list[CoverPrompt] = []

    def generate_cover(self, prompt: CoverPrompt) -> str:
        self.prompts.append(prompt)
        if isinstance(self._result, BaseException):
            raise self._result
        return self._result


# === Response builders ===


def story_payload(title: str = "Milo and the Lantern Path", chapters: int = 3, words: int = 120) -> dict:
    body = " ".join(["Milo walked on bravely through the quiet meadow."] * max(words // 8, 1))
    return {
        "title": title,
        "blurb": "A small fox learns that courage can be quiet. A gentle tale for bedtime.",
        "chapters": [{"title": f"Chapter {index}", "text": body} for index in range(1, chapters + 1)],
    }


def safety_payload(passed: bool = True, issues: list | None = None) -> dict:
    return {"passed": passed, "rationale": "Checked all criteria.", "issues": issues or []}


def values_payload(score: float) -> dict:
    payload: dict[str, Any] = {name: score for name in VALUES_DIMENSIONS}
    payload.update({"rationale": "Values assessed.", "flags": []})
    return payload


def quality_payload(total: float) -> dict:
    """Spread ``total`` (0-100) across the capped dimensions proportionally."""
    payload: dict[str, Any] = {name: cap * total / 100 for name, (cap, _) in QUALITY_DIMENSIONS.items()}
    payload.update({"rationale": "Quality assessed.", "flags": []})
    return payload


# === Fixtures ===


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    package_logger = logging.getLogger("wholesome_library")
    package_logger.handlers.clear()
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def store(tmp_path) -> SqliteStoryStore:
    return SqliteStoryStore(tmp_path / "library.db", timeout=5.0)


@pytest.fixture
def make_brief() -> Callable[..., StoryBrief]:
    counter = {"value": 0}

    def _make(**overrides: Any) -> StoryBrief:
        counter["value"] += 1
        level = READING_LEVELS[overrides.get("reading_level", "independent")]
        data: dict[str, Any] = {
            "id": f"brief-{counter['value']:03d}",
            "theme": "facing fears",
            "reading_level": "independent",
            "primary_virtue": "courage",
            "genre": "adventure",
            "target_word_count": level.target_word_count,
            "target_chapters": level.target_chapters,
            "setting": "a lantern-lit forest village",
            "premise": "A shy fox must guide lost ducklings home before nightfall.",
            "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=counter["value"]),
        }
        data.update(overrides)
        return StoryBrief(**data)

    return _make


@pytest.fixture
def claimed_brief(store, make_brief) -> Callable[..., StoryBrief]:
    """Insert a brief and claim it, returning the processing brief."""

    def _claim(**overrides: Any) -> StoryBrief:
        brief = make_brief(**overrides)
        store.insert_briefs([brief])
        now = datetime.now(timezone.utc)
        claimed = store.claim_next_brief(now=now, stale_before=now - timedelta(hours=1))
        assert claimed is not None and claimed.id == brief.id
        return claimed

    return _claim


@pytest.fixture
def sample_draft(make_brief) -> StoryDraft:
    brief = make_brief()
    text = "Milo took a deep breath and stepped into the dark, humming to the ducklings."
    return StoryDraft(
        brief=brief,
        title="Milo and the Lantern Path",
        blurb="A shy fox finds quiet courage.",
        chapters=(
            Chapter(number=1, title="The Lost Ducklings", text=text),
            Chapter(number=2, title="The Long Way Home", text=text),
        ),
    )


@pytest.fixture
def make_runner(store) -> Callable[..., PipelineRunner]:
    """Build a runner whose LLM and image ports are scripted fakes."""

    def _make(
        *,
        story: Any = None,
        safety: Any = None,
        values: Any = None,
        quality: Any = None,
        image_generator: ImageGenerator | None = None,
        values_threshold: float = 3.0,
        quality_threshold: float = 70.0,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
        **kwargs: Any,
    ) -> PipelineRunner:
        def _completion(value: Any, default: Any) -> ScriptedCompletion:
            if isinstance(value, ScriptedCompletion):
                return value
            return ScriptedCompletion(default if value is None else value)

        return PipelineRunner(
            store=store,
            story_generator=StoryGenerator(api_key="test", model="test-story", completion_fn=_completion(story, story_payload())),
            safety_checker=SafetyChecker(api_key="test", model="test-check", completion_fn=_completion(safety, safety_payload())),
            values_checker=ValuesChecker(api_key="test", model="test-check", completion_fn=_completion(values, values_payload(4.0))),
            quality_checker=QualityChecker(api_key="test", model="test-check", completion_fn=_completion(quality, quality_payload(80))),
            cover_generator=CoverArtGenerator(image_generator or FakeImageGenerator()),
            values_threshold=values_threshold,
            quality_threshold=quality_threshold,
            retry_policy=retry_policy or RetryPolicy(max_attempts=3, base_delay_s=0.0, jitter=False),
            sleep=sleep or (lambda _: None),
            **kwargs,
        )

    return _make
