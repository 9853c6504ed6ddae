"""
Integration with Replicate for book cover image generation.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Iterable as IterableABC
from typing import Any, Callable

import replicate
from replicate.exceptions import ModelError, ReplicateError

from wholesome_library.common import ConfigurationError, IllustrationDegraded, TransientAPIError

from .prompting import CoverPrompt

DEFAULT_MODEL = "black-forest-labs/flux-schnell"
DEFAULT_TIMEOUT_S = 90.0

_TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def _build_flux_schnell_input(*, prompt: CoverPrompt) -> dict[str, Any]:
    return {
        "prompt": prompt.positive,
        "aspect_ratio": "3:4",
        "output_format": "png",
        "num_outputs": 1,
    }


def _build_flux_pro_input(*, prompt: CoverPrompt) -> dict[str, Any]:
    return {
        "prompt": prompt.positive,
        "aspect_ratio": "3:4",
        "output_format": "png",
        "safety_tolerance": 2,
        "prompt_upsampling": True,
    }


def _build_nano_banana_input(*, prompt: CoverPrompt) -> dict[str, Any]:
    return {
        "prompt": f"{prompt.positive}\n\nAvoid: {prompt.negative}",
        "aspect_ratio": "3:4",
        "output_format": "png",
    }


_MODEL_INPUT_BUILDERS: dict[str, Callable[..., dict[str, Any]]] = {
    "black-forest-labs/flux-schnell": _build_flux_schnell_input,
    "black-forest-labs/flux-1.1-pro": _build_flux_pro_input,
    "google/nano-banana": _build_nano_banana_input,
}


def _resolve_input_builder(model_identifier: str) -> Callable[..., dict[str, Any]]:
    normalized_identifier = model_identifier.strip().lower()
    builder = _MODEL_INPUT_BUILDERS.get(normalized_identifier)
    if builder is None and ":" in normalized_identifier:
        base_identifier = normalized_identifier.split(":", maxsplit=1)[0]
        builder = _MODEL_INPUT_BUILDERS.get(base_identifier)
    if builder is None:
        supported_models = ", ".join(sorted(_MODEL_INPUT_BUILDERS))
        raise ConfigurationError(
            "Model identifier "
            f"'{model_identifier}' is not configured with a default input payload. "
            f"Supported models: {supported_models}."
        )
    return builder


def normalize_image_outputs(raw: Any) -> list[str]:
    """
    Normalize the image outputs returned by Replicate into a list of URL strings.
    """

    if raw is None:
        return []

    if isinstance(raw, str):
        return [raw]

    if isinstance(raw, bytes):
        return [raw.decode("utf-8", errors="ignore")]

    url = getattr(raw, "url", None)
    if isinstance(url, str):
        return [url]

    if isinstance(raw, IterableABC):
        collected = list(raw)
        if not collected:
            return []

        if all(isinstance(item, str) and len(item) == 1 for item in collected):
            return ["".join(collected)]

        normalized: list[str] = []
        for item in collected:
            normalized.extend(normalize_image_outputs(item))
        return normalized

    return [str(raw)]


class ImageGenerator(ABC):
    """
    Image port used by the cover stage.

    ``generate_cover`` returns an image reference (usually a URL) and raises
    :class:`IllustrationDegraded` when the provider cannot produce one, or
    :class:`TransientAPIError` when a retry may help.
    """

    @abstractmethod
    def generate_cover(self, prompt: CoverPrompt) -> str: ...


class ReplicateImageGenerator(ImageGenerator):
    """
    Convenience wrapper around the Replicate client for cover generation.

    Parameters
    ----------
    api_token:
        Replicate API token. Falls back to ``REPLICATE_API_TOKEN`` environment variable.
    model_identifier:
        Model string in the ``owner/model`` or ``owner/model:version`` format. Falls back to
        ``REPLICATE_MODEL`` and then to flux-schnell.
    client:
        Optional pre-configured :class:`replicate.Client`. Mainly useful for testing.
    timeout:
        Seconds allowed for one HTTP exchange with Replicate.
    """

    def __init__(
        self,
        *,
        api_token: str | None = None,
        model_identifier: str | None = None,
        client: replicate.Client | None = None,
        timeout: float | None = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._api_token = api_token or os.getenv("REPLICATE_API_TOKEN")
        if not self._api_token and not client:
            raise ConfigurationError(
                "Replicate API token is required. Set REPLICATE_API_TOKEN or pass api_token."
            )

        self._model_identifier = model_identifier or os.getenv("REPLICATE_MODEL") or DEFAULT_MODEL
        self._build_input = _resolve_input_builder(self._model_identifier)
        self._client = client or replicate.Client(api_token=self._api_token, timeout=timeout)

    @property
    def model_identifier(self) -> str:
        """Return the model identifier currently used."""
        return self._model_identifier

    def generate_cover(self, prompt: CoverPrompt, **model_kwargs: Any) -> str:
        replicate_input = self._build_input(prompt=prompt)
        replicate_input.update(model_kwargs)

        try:
            raw_outputs = self._client.run(self._model_identifier, input=replicate_input)
        except ModelError as exc:
            raise IllustrationDegraded(f"Cover model rejected the request: {exc}") from exc
        except ReplicateError as exc:
            status = getattr(exc, "status", None)
            if status in _TRANSIENT_STATUS_CODES:
                raise TransientAPIError(
                    f"Replicate returned HTTP {status}.",
                    reason="rate_limit" if status == 429 else "server",
                ) from exc
            raise IllustrationDegraded(f"Replicate request failed: {exc}") from exc

        outputs = normalize_image_outputs(raw_outputs)
        if not outputs:
            raise IllustrationDegraded("Replicate returned no image output.")
        return outputs[0]
