"""
Shared plumbing for the LLM-judged validation gates.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

from wholesome_library.common import (
    CompletionCallable,
    LLMContentError,
    call_chat_completion,
    parse_json_object,
)


@dataclass(frozen=True)
class SafetyVerdict:
    passed: bool
    rationale: str
    issues: tuple[str, ...] = ()
    tokens_used: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "rationale": self.rationale, "issues": list(self.issues)}


@dataclass(frozen=True)
class ScoreVerdict:
    """
    Scored gate result. ``dimensions`` holds the clamped per-dimension scores and
    ``tokens_used`` the provider-reported token count of the judging call.
    """

    score: float
    rationale: str
    dimensions: dict[str, float] = field(default_factory=dict)
    flags: tuple[str, ...] = ()
    tokens_used: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "rationale": self.rationale,
            "dimensions": dict(self.dimensions),
            "flags": list(self.flags),
        }


def clamp_score(value: Any, *, low: float, high: float, name: str) -> float:
    """Coerce a judge-reported score to a number within ``[low, high]``."""
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise LLMContentError(f"Score for {name!r} is not a number: {value!r}") from exc
    return min(max(number, low), high)


def as_flag_list(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    flags: list[str] = []
    for item in value:
        if isinstance(item, dict):
            kind = str(item.get("type") or item.get("criterion") or "issue")
            description = str(item.get("description") or "").strip()
            flags.append(f"{kind}: {description}" if description else kind)
        else:
            flags.append(str(item))
    return tuple(flags)


class LLMJudge:
    """
    Base class for checkers that ask an LLM for a JSON verdict about a story draft.

    Subclasses build the prompt and interpret the payload; this class owns model
    selection, the completion call and JSON parsing. Transient port failures propagate
    unchanged so the stage boundary can retry them.
    """

    default_temperature: float = 0.2

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        completion_fn: CompletionCallable | None = None,
        temperature: float | None = None,
        max_output_tokens: int = 1000,
        timeout: float | None = 60.0,
    ) -> None:
        self._api_key = api_key or os.getenv("OPENAI_API_KEY") or os.getenv("LITELLM_API_KEY")
        self._model = (
            model
            or os.getenv("WHOLESOME_CHECK_MODEL")
            or os.getenv("LITELLM_CHECK_MODEL")
            or os.getenv("LITELLM_MODEL")
            or "gpt-4o-mini"
        )
        self._completion_fn: CompletionCallable = completion_fn or call_chat_completion
        self._temperature = self.default_temperature if temperature is None else temperature
        self._max_output_tokens = max_output_tokens
        self._timeout = timeout

    @property
    def model(self) -> str:
        return self._model

    def _judge(self, *, system: str, user: str, source: str) -> tuple[dict[str, Any], int | None]:
        """Return the parsed JSON verdict and the token count the provider reported for the call."""
        result = self._completion_fn(
            model=self._model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=self._temperature,
            max_tokens=self._max_output_tokens,
            api_key=self._api_key,
            timeout=self._timeout,
            response_format={"type": "json_object"},
        )
        return parse_json_object(result.text, source=source), result.total_tokens
