"""
Classified error taxonomy shared by every pipeline stage.
"""

from __future__ import annotations

from enum import Enum


class FailureCategory(str, Enum):
    """Tag recorded on a failed stage and on the run for reporting."""

    TRANSIENT_API = "transient_api"
    GENERATION = "generation"
    SAFETY = "safety"
    THRESHOLD = "threshold"
    ILLUSTRATION_DEGRADED = "illustration_degraded"
    PERSISTENCE = "persistence"
    CONFIGURATION = "configuration"
    UNEXPECTED = "unexpected"


class PipelineError(Exception):
    """
    Base class for every classified pipeline error.
    """

    category: FailureCategory = FailureCategory.UNEXPECTED


class TransientAPIError(PipelineError):
    """
    Timeout, rate limit, connection or server failure from an external port.

    ``reason`` is one of ``timeout``, ``rate_limit``, ``connection`` or ``server``.
    """

    category = FailureCategory.TRANSIENT_API

    def __init__(self, message: str, *, reason: str = "connection") -> None:
        super().__init__(message)
        self.reason = reason


class LLMContentError(PipelineError):
    """The LLM answered, but the content is empty or not in the requested shape."""

    category = FailureCategory.GENERATION


class GenerationError(PipelineError):
    """The story draft could not be produced or lacks the required structure."""

    category = FailureCategory.GENERATION


class SafetyGateFailure(PipelineError):
    category = FailureCategory.SAFETY


class ThresholdGateFailure(PipelineError):
    """
    A scored gate (values or quality) fell below its configured threshold.
    """

    category = FailureCategory.THRESHOLD

    def __init__(self, gate: str, score: float, threshold: float) -> None:
        super().__init__(f"{gate} score {score:g} is below threshold {threshold:g}")
        self.gate = gate
        self.score = score
        self.threshold = threshold


class IllustrationDegraded(PipelineError):
    """Raised by image providers; the cover stage absorbs it and uses a fallback."""

    category = FailureCategory.ILLUSTRATION_DEGRADED


class PersistenceError(PipelineError):
    category = FailureCategory.PERSISTENCE


class ClaimLostError(PersistenceError):
    """The brief was reclaimed by another runner after this runner's claim went stale."""


class ConfigurationError(PipelineError):
    category = FailureCategory.CONFIGURATION


def classify_exception(exc: BaseException) -> FailureCategory:
    """Return the taxonomy tag for ``exc``; anything unclassified is ``unexpected``."""
    if isinstance(exc, PipelineError):
        return exc.category
    return FailureCategory.UNEXPECTED
