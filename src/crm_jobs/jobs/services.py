"""Shared call-protection objects handed to job handler modules."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.engine import Engine

from crm_jobs.config import Settings
from crm_jobs.resilience.guardrails import UsageGuard
from crm_jobs.resilience.rate_limiter import RateLimiter
from crm_jobs.resilience.usage_ledger import SqlUsageLedger


@dataclass(slots=True)
class HandlerServices:
    """One rate limiter and one usage guard per runner process.

    Handler modules receive this in ``register(dispatcher, services)`` and
    route their external calls through ``with_rate_limit(services.rate_limiter, ...)``
    and ``services.usage_guard.with_guardrails(...)``.
    """

    rate_limiter: RateLimiter
    usage_guard: UsageGuard

    def close(self) -> None:
        self.rate_limiter.stop_maintenance()


def build_handler_services(settings: Settings, *, engine: Engine) -> HandlerServices:
    """Build call protection from settings; usage is recorded in the job database."""

    rate_limit = settings.rate_limit
    rate_limiter = RateLimiter(
        quotas=rate_limit.quotas(),
        default_quota=rate_limit.default_quota(),
        backoff=rate_limit.backoff_policy(),
        circuit=rate_limit.circuit_policy(),
        idle_eviction_seconds=rate_limit.idle_eviction_seconds,
    )
    rate_limiter.start_maintenance()
    usage_guard = UsageGuard(
        limits=settings.guardrails.limits(),
        ledger=SqlUsageLedger(engine),
    )
    return HandlerServices(rate_limiter=rate_limiter, usage_guard=usage_guard)
