from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .config_schema import RetrySettings

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    One retry/backoff policy shared by every browser suspension point.

    - timeout_ms is the per-attempt timeout handed to the wrapped call.
    - max_attempts counts the initial attempt (max_attempts=3 => 1 try + 2 retries).
    - base_delay_seconds is the first delay after the first failure; later delays double.
    - jitter_ratio adds multiplicative jitter in [1-jitter, 1+jitter].
    """

    timeout_ms: int = 30000
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    jitter_ratio: float = 0.25

    def __post_init__(self) -> None:
        if self.timeout_ms < 1:
            raise ValueError("timeout_ms must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0 and 1")

    @classmethod
    def from_settings(cls, settings: RetrySettings, *, timeout_ms: int) -> "RetryPolicy":
        return cls(
            timeout_ms=int(timeout_ms),
            max_attempts=int(settings.max_attempts),
            base_delay_seconds=float(settings.base_delay_seconds),
            max_delay_seconds=float(settings.max_delay_seconds),
            jitter_ratio=float(settings.jitter_ratio),
        )

    def with_timeout(self, timeout_ms: int) -> "RetryPolicy":
        return RetryPolicy(
            timeout_ms=int(timeout_ms),
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            jitter_ratio=self.jitter_ratio,
        )


@dataclass(frozen=True)
class RetryEvent:
    operation: str
    failure_attempt: int
    next_attempt: int
    max_attempts: int
    delay_seconds: float
    reason: str | None
    error_type: str
    error_message: str
    context_url: str | None


IsRetryableFn = Callable[[BaseException], tuple[bool, str | None]]
OnRetryFn = Callable[[RetryEvent], None]
SleepFn = Callable[[float], None]


def backoff_seconds(failure_attempt: int, policy: RetryPolicy) -> float:
    # failure_attempt=1 => base delay.
    exponent = max(0, int(failure_attempt) - 1)
    delay = policy.base_delay_seconds * (2**exponent)
    return min(policy.max_delay_seconds, max(0.0, float(delay)))


def _apply_jitter(delay: float, policy: RetryPolicy) -> float:
    d = max(0.0, float(delay))
    if d == 0.0 or policy.jitter_ratio <= 0:
        return d
    factor = random.uniform(1.0 - policy.jitter_ratio, 1.0 + policy.jitter_ratio)
    return max(0.0, d * factor)


def call_with_retries(
    fn: Callable[[int], T],
    *,
    policy: RetryPolicy,
    is_retryable: IsRetryableFn,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: SleepFn | None = None,
    context_url: str | None = None,
) -> T:
    """
    Call fn(timeout_ms) until it succeeds, the error is fatal, or attempts run out.

    The last error is re-raised unchanged so callers can translate it.
    """
    op = (operation or "").strip() or "operation"
    sleeper = sleep_fn or time.sleep

    for attempt in range(1, int(policy.max_attempts) + 1):
        try:
            return fn(int(policy.timeout_ms))
        except Exception as exc:
            retryable, reason = is_retryable(exc)

            if not retryable or attempt >= int(policy.max_attempts):
                raise

            delay = _apply_jitter(backoff_seconds(attempt, policy), policy)

            if on_retry is not None:
                on_retry(
                    RetryEvent(
                        operation=op,
                        failure_attempt=int(attempt),
                        next_attempt=int(attempt) + 1,
                        max_attempts=int(policy.max_attempts),
                        delay_seconds=float(delay),
                        reason=reason,
                        error_type=type(exc).__name__,
                        error_message=(str(exc) or "").strip(),
                        context_url=context_url,
                    )
                )

            if delay > 0:
                sleeper(float(delay))

    raise RuntimeError(f"Retry loop exited unexpectedly for operation={op}")
