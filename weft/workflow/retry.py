"""Backoff delays and retry decisions.

The coordinator is stateless: the executor owns the attempt counter and
sleeps between attempts through the execution's cancellation token.
"""

from __future__ import annotations

import random

from weft.config.schema import RetryDefaults
from weft.workflow.errors import error_kind
from weft.workflow.models import RetryPolicy

NO_RETRY = RetryPolicy(max_retries=0)

# Ready-made policies for common call patterns.
PREDEFINED_POLICIES: dict[str, RetryPolicy] = {
    "none": NO_RETRY,
    "quick": RetryPolicy(max_retries=3, initial_delay=0.1, max_delay=1.0, backoff_multiplier=2.0),
    "standard": RetryPolicy(
        max_retries=3, initial_delay=1.0, max_delay=10.0, backoff_multiplier=2.0, jitter=0.1
    ),
    "aggressive": RetryPolicy(
        max_retries=5, initial_delay=0.5, max_delay=30.0, backoff_multiplier=2.0, jitter=0.2
    ),
    "rate_limit": RetryPolicy(
        max_retries=5,
        initial_delay=5.0,
        max_delay=60.0,
        backoff_multiplier=2.0,
        retryable_errors=("RATE_LIMIT", "RateLimitError", "HTTP_429"),
        jitter=0.2,
    ),
}


class RetryCoordinator:
    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    @staticmethod
    def delay(policy: RetryPolicy, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt + 1`` (attempt is 0-based)."""
        return min(policy.max_delay, policy.initial_delay * policy.backoff_multiplier**attempt)

    def next_delay(self, policy: RetryPolicy, attempt: int) -> float:
        base = self.delay(policy, attempt)
        if policy.jitter <= 0:
            return base
        spread = base * policy.jitter
        return max(0.0, base + self._rng.uniform(-spread, spread))

    @staticmethod
    def is_retryable(error: BaseException, policy: RetryPolicy) -> bool:
        if policy.retryable_errors is None:
            return True
        return error_kind(error) in policy.retryable_errors

    def should_retry(self, error: BaseException, attempt: int, policy: RetryPolicy) -> bool:
        return attempt < policy.max_retries and self.is_retryable(error, policy)


def policy_from_defaults(defaults: RetryDefaults) -> RetryPolicy:
    return RetryPolicy(
        max_retries=defaults.max_retries,
        initial_delay=defaults.initial_delay,
        max_delay=defaults.max_delay,
        backoff_multiplier=defaults.backoff_multiplier,
        retryable_errors=(
            tuple(defaults.retryable_errors) if defaults.retryable_errors is not None else None
        ),
        jitter=defaults.jitter,
    )
