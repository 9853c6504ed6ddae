"""
Common utilities shared across the story pipeline modules.
"""

from .errors import (
    ClaimLostError,
    ConfigurationError,
    FailureCategory,
    GenerationError,
    IllustrationDegraded,
    LLMContentError,
    PersistenceError,
    PipelineError,
    SafetyGateFailure,
    ThresholdGateFailure,
    TransientAPIError,
    classify_exception,
)
from .llm import ChatResult, CompletionCallable, call_chat_completion, parse_json_object
from .retry import NO_RETRY, RetryPolicy, call_with_retry
from .run_logger import RunLogger, configure_logging, generate_run_id

__all__ = [
    "ClaimLostError",
    "ChatResult",
    "CompletionCallable",
    "call_chat_completion",
    "parse_json_object",
    "ConfigurationError",
    "FailureCategory",
    "GenerationError",
    "IllustrationDegraded",
    "LLMContentError",
    "PersistenceError",
    "PipelineError",
    "SafetyGateFailure",
    "ThresholdGateFailure",
    "TransientAPIError",
    "classify_exception",
    "NO_RETRY",
    "RetryPolicy",
    "call_with_retry",
    "RunLogger",
    "configure_logging",
    "generate_run_id",
]
