"""Protection for calls to quota-limited and paid external services."""

from crm_jobs.resilience.guardrails import GuardedCall, GuardError, GuardResult, UsageGuard
from crm_jobs.resilience.rate_limiter import (
    CallOutcome,
    RateLimitDecision,
    RateLimitedError,
    RateLimiter,
    with_rate_limit,
)

__all__ = [
    "CallOutcome",
    "GuardError",
    "GuardResult",
    "GuardedCall",
    "RateLimitDecision",
    "RateLimitedError",
    "RateLimiter",
    "UsageGuard",
    "with_rate_limit",
]
