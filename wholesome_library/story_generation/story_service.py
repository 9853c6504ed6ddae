"""
Service layer for producing chaptered story drafts via LiteLLM-compatible models.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Any, Iterable

from wholesome_library.common import (
    ChatResult,
    CompletionCallable,
    GenerationError,
    LLMContentError,
    call_chat_completion,
    parse_json_object,
)

from .brief import StoryBrief
from .prompting import StoryPrompt, build_story_prompt

WORDS_PER_MINUTE = 200


def count_words(text: str) -> int:
    return len(text.split())


@dataclass(frozen=True)
class Chapter:
    """
    A single titled chapter of the story in reading order.
    """

    number: int
    title: str
    text: str

    @property
    def word_count(self) -> int:
        return count_words(self.text)

    def as_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "text": self.text,
            "word_count": self.word_count,
        }


@dataclass(frozen=True)
class StoryDraft:
    """
    The unvetted story produced for one brief; checkers and the cover stage read it.
    """

    brief: StoryBrief
    title: str
    blurb: str
    chapters: tuple[Chapter, ...]
    tokens_used: int | None = None

    @property
    def total_word_count(self) -> int:
        return sum(chapter.word_count for chapter in self.chapters)

    @property
    def estimated_read_minutes(self) -> int:
        return max(1, math.ceil(self.total_word_count / WORDS_PER_MINUTE))

    @property
    def full_text(self) -> str:
        return "\n\n".join(f"## {chapter.title}\n\n{chapter.text}" for chapter in self.chapters)

    def as_dict(self) -> dict[str, Any]:
        return {
            "brief_id": self.brief.id,
            "title": self.title,
            "blurb": self.blurb,
            "total_word_count": self.total_word_count,
            "estimated_read_minutes": self.estimated_read_minutes,
            "chapters": [chapter.as_dict() for chapter in self.chapters],
        }


class StoryGenerator:
    """
    High-level helper that turns a story brief into a chaptered draft.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        completion_fn: CompletionCallable | None = None,
        temperature: float = 0.8,
        max_output_tokens: int = 12000,
        timeout: float | None = 120.0,
    ) -> None:
        self._api_key = api_key or os.getenv("OPENAI_API_KEY") or os.getenv("LITELLM_API_KEY")
        self._model = (
            model
            or os.getenv("WHOLESOME_STORY_MODEL")
            or os.getenv("LITELLM_STORY_MODEL")
            or os.getenv("LITELLM_MODEL")
            or "gpt-4.1-mini"
        )
        self._completion_fn: CompletionCallable = completion_fn or call_chat_completion
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens
        self._timeout = timeout

    @property
    def model(self) -> str:
        """Return the model identifier in use."""
        return self._model

    def generate(self, brief: StoryBrief, **response_kwargs: Any) -> StoryDraft:
        """
        Invoke the configured LLM and return the validated chapter structure.

        Raises
        ------
        GenerationError
            When the response is not JSON, has no chapters, or a chapter lacks a title or text.
        TransientAPIError
            Propagated from the LLM port so the stage boundary can retry it.
        """
        prompt: StoryPrompt = build_story_prompt(brief)

        messages = [
            {"role": "system", "content": prompt.system},
            {"role": "user", "content": prompt.user},
        ]

        try:
            result: ChatResult = self._completion_fn(
                model=self._model,
                messages=messages,
                temperature=self._temperature,
                max_tokens=self._max_output_tokens,
                api_key=self._api_key,
                timeout=self._timeout,
                response_format={"type": "json_object"},
                **response_kwargs,
            )
            payload = parse_json_object(result.text, source="story draft")
        except LLMContentError as exc:
            raise GenerationError(str(exc)) from exc

        title = str(payload.get("title") or "").strip()
        if not title:
            raise GenerationError("Story draft is missing a title.")

        chapters = self._convert_to_chapters(payload.get("chapters"))
        blurb = str(payload.get("blurb") or "").strip() or _fallback_blurb(brief, chapters)

        return StoryDraft(
            brief=brief,
            title=title,
            blurb=blurb,
            chapters=chapters,
            tokens_used=result.total_tokens,
        )

    def _convert_to_chapters(self, chapters_data: Any) -> tuple[Chapter, ...]:
        if not isinstance(chapters_data, list):
            raise GenerationError("Story draft JSON must contain a 'chapters' list.")
        if not chapters_data:
            raise GenerationError("Story draft contains zero chapters.")

        chapters: list[Chapter] = []
        for number, item in enumerate(chapters_data, start=1):
            if not isinstance(item, dict):
                raise GenerationError(f"Invalid chapter payload: {item!r}")
            title = str(item.get("title") or "").strip()
            text = str(item.get("text") or item.get("content") or "").strip()
            if not title or not text:
                raise GenerationError(f"Chapter {number} is missing title or text content.")
            chapters.append(Chapter(number=number, title=title, text=text))
        return tuple(chapters)


def _fallback_blurb(brief: StoryBrief, chapters: Iterable[Chapter]) -> str:
    opening = next(iter(chapters)).text
    first_sentence = opening.split(". ")[0].strip().rstrip(".")
    return f"A {brief.genre} story about {brief.primary_virtue}. {first_sentence}."
