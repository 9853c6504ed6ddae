"""
Bounded retry with exponential backoff, applied once at each stage boundary.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, TypeVar

from .errors import TransientAPIError

if TYPE_CHECKING:
    from .run_logger import RunLogger

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how patiently a stage retries transient port failures.

    Attributes
    ----------
    max_attempts:
        Total attempts including the first call. ``1`` disables retrying.
    base_delay_s:
        Delay before the second attempt.
    backoff_factor:
        Multiplier applied to the delay after every failed attempt.
    max_delay_s:
        Upper bound for a single delay.
    jitter:
        Scale each delay by a random factor in ``[0.5, 1.5)``.
    """

    max_attempts: int = 3
    base_delay_s: float = 1.0
    backoff_factor: float = 2.0
    max_delay_s: float = 8.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("Retry delays must be non-negative.")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        delay = min(self.base_delay_s * (self.backoff_factor ** (attempt - 1)), self.max_delay_s)
        if self.jitter:
            delay *= 0.5 + random.random()  # noqa: S311
        return delay


NO_RETRY = RetryPolicy(max_attempts=1, base_delay_s=0.0, jitter=False)


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    stage: str,
    run_logger: "RunLogger | None" = None,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[T, int]:
    """
    Call ``fn`` until it succeeds or the policy is exhausted.

    Only :class:`TransientAPIError` is retried. Every other exception propagates on
    the first occurrence. Returns the value together with the number of attempts used.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(), attempt
        except TransientAPIError as exc:
            if attempt >= policy.max_attempts:
                if run_logger is not None:
                    run_logger.error(
                        stage,
                        "Transient failures exhausted the retry budget",
                        attempts=attempt,
                        reason=exc.reason,
                    )
                raise
            delay = policy.delay_for(attempt)
            if run_logger is not None:
                run_logger.warning(
                    stage,
                    "Transient failure, retrying",
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    reason=exc.reason,
                    delay_s=round(delay, 2),
                )
            sleep(delay)
