"""Retry backoff calculation.

Pure function of (policy, attempt). No jitter is applied, so delays are
deterministic: exponential with base 1s and cap 10s yields 1, 2, 4, 8, 10, 10…
"""

from __future__ import annotations

import math

from contentflow.workflow.models import BackoffStrategy, RetryPolicy


def compute_retry_delay(policy: RetryPolicy, attempt: int) -> float:
    """Return the delay in seconds to wait after failed attempt number ``attempt``.

    ``attempt`` is 1-based: the delay before the second try is
    ``compute_retry_delay(policy, 1)``.
    """
    if attempt < 1:
        msg = f"attempt must be >= 1, got {attempt}"
        raise ValueError(msg)

    match policy.backoff_strategy:
        case BackoffStrategy.LINEAR:
            delay = policy.base_delay * attempt
        case BackoffStrategy.EXPONENTIAL:
            delay = _exponential_delay(policy.base_delay, attempt - 1, policy.max_delay)
        case _:
            delay = policy.base_delay

    if policy.max_delay is not None:
        delay = min(delay, policy.max_delay)
    return delay


def _exponential_delay(base: float, exponent: int, cap: float | None) -> float:
    if base <= 0:
        return 0.0
    if cap is not None:
        # Any larger exponent lands above the cap
        exponent = min(exponent, max(0, math.ceil(math.log2(max(cap, base) / base))))
    return base * 2**exponent


def should_retry(policy: RetryPolicy, attempts: int) -> bool:
    """True while another attempt is allowed after ``attempts`` tries."""
    return attempts < policy.max_attempts
