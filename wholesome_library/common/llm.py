"""
LiteLLM-powered chat completion helper utilities.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, MutableMapping, Sequence

from litellm import completion
from litellm import exceptions as litellm_exceptions

from .errors import ConfigurationError, LLMContentError, TransientAPIError

ChatMessage = Mapping[str, Any]

DEFAULT_TIMEOUT_S = 60.0

_JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class ChatResult:
    """
    Structured response returned from an LLM chat completion.
    """

    text: str
    raw: Any

    @property
    def total_tokens(self) -> int | None:
        """Token count reported by the provider, or ``None`` when the response carries no usage."""
        usage = self.raw.get("usage") if isinstance(self.raw, Mapping) else getattr(self.raw, "usage", None)
        if usage is None:
            return None
        value = usage.get("total_tokens") if isinstance(usage, Mapping) else getattr(usage, "total_tokens", None)
        return int(value) if value is not None else None


CompletionCallable = Callable[..., ChatResult]


def call_chat_completion(
    *,
    model: str,
    messages: Sequence[ChatMessage],
    temperature: float | None = None,
    max_tokens: int | None = None,
    api_key: str | None = None,
    timeout: float | None = DEFAULT_TIMEOUT_S,
    **extra_kwargs: Any,
) -> ChatResult:
    """
    Invoke LiteLLM's `completion` API and return the consolidated text.

    Timeouts, rate limits, connection drops and provider 5xx answers are raised as
    :class:`TransientAPIError`. Rejected credentials or unknown models raise
    :class:`ConfigurationError`. Bad requests, content policy refusals and responses
    without usable text raise :class:`LLMContentError`.
    """
    payload: MutableMapping[str, Any] = {
        "model": model,
        "messages": list(messages),
    }

    if temperature is not None:
        payload["temperature"] = temperature

    if max_tokens is not None:
        payload["max_tokens"] = max_tokens

    if api_key is not None:
        payload["api_key"] = api_key

    if timeout is not None:
        payload["timeout"] = timeout

    payload.update(extra_kwargs)

    try:
        response = completion(**payload)
    except litellm_exceptions.Timeout as exc:
        raise TransientAPIError(f"LLM call to {model} timed out.", reason="timeout") from exc
    except litellm_exceptions.RateLimitError as exc:
        raise TransientAPIError(f"LLM call to {model} was rate limited.", reason="rate_limit") from exc
    except (
        litellm_exceptions.ServiceUnavailableError,
        litellm_exceptions.InternalServerError,
    ) as exc:
        raise TransientAPIError(f"LLM provider error for {model}.", reason="server") from exc
    except litellm_exceptions.APIConnectionError as exc:
        raise TransientAPIError(f"Could not reach LLM provider for {model}.", reason="connection") from exc
    except (
        litellm_exceptions.AuthenticationError,
        litellm_exceptions.PermissionDeniedError,
        litellm_exceptions.NotFoundError,
    ) as exc:
        raise ConfigurationError(f"LLM provider refused the credentials or model {model}: {exc}") from exc
    except (
        litellm_exceptions.BadRequestError,
        litellm_exceptions.UnprocessableEntityError,
    ) as exc:
        raise LLMContentError(f"LLM provider rejected the request to {model}: {exc}") from exc

    try:
        message = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise LLMContentError("Unexpected LiteLLM response format.") from exc

    text = str(message or "").strip()
    if not text:
        raise LLMContentError("LLM response did not contain any text content.")
    return ChatResult(text=text, raw=response)


def parse_json_object(text: str, *, source: str) -> dict[str, Any]:
    """
    Parse a JSON object from model output, falling back to the outermost ``{...}`` span.
    """
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_PATTERN.search(text)
        if match is None:
            raise LLMContentError(f"Failed to parse {source} response as JSON.") from None
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise LLMContentError(f"Failed to parse {source} response as JSON.") from exc

    if not isinstance(parsed, dict):
        raise LLMContentError(f"{source} response must be a JSON object.")
    return parsed
