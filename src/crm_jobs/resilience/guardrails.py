"""Per-owner usage limits around paid AI calls.

Every guarded call first passes three checks (calls per UTC minute, spend per
UTC day, credits per UTC month) and reserves its credits before running.
Reserved credits are kept when the call fails.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from crm_jobs.resilience.pricing import estimate_cost_usd
from crm_jobs.resilience.usage_ledger import InMemoryUsageLedger, UsageLedger, UsageRecord
from crm_jobs.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_PER_MINUTE_LIMIT = 10
DEFAULT_DAILY_COST_CAP_USD = 5.0
DEFAULT_MONTHLY_CREDITS = 200


class GuardError(str, Enum):
    RATE_LIMITED_MINUTE = "RATE_LIMITED_MINUTE"
    RATE_LIMITED_DAILY_COST = "RATE_LIMITED_DAILY_COST"
    RATE_LIMITED_MONTHLY = "RATE_LIMITED_MONTHLY"


@dataclass(slots=True)
class GuardLimits:
    per_minute: int = DEFAULT_PER_MINUTE_LIMIT
    daily_cost_usd: float = DEFAULT_DAILY_COST_CAP_USD
    monthly_credits: int = DEFAULT_MONTHLY_CREDITS


@dataclass(slots=True)
class GuardedCall:
    """What a guarded call hands back: its data plus the usage it incurred."""

    data: Any
    model: str
    input_units: int = 0
    output_units: int = 0
    cost_usd: float | None = None


@dataclass(slots=True)
class GuardResult:
    data: Any = None
    credits_left: int = 0
    error: GuardError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class UsageSnapshot:
    owner_id: str
    minute_count: int
    per_minute_limit: int
    daily_cost_usd: float
    daily_cost_cap_usd: float
    monthly_credits_remaining: int
    monthly_credits: int


@dataclass(slots=True)
class _OwnerState:
    minute_window_start: datetime
    daily_window_start: datetime
    monthly_window_start: datetime
    monthly_credits_remaining: int
    minute_window_count: int = 0
    daily_cost_usd: float = 0.0


class UsageGuard:
    """Minute, daily-cost and monthly-credit limits per owner.

    State is process-local; each deployed instance enforces its own copy.
    """

    def __init__(
        self,
        *,
        limits: GuardLimits | None = None,
        ledger: UsageLedger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.limits = limits or GuardLimits()
        self.ledger: UsageLedger = ledger if ledger is not None else InMemoryUsageLedger()
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, _OwnerState] = {}

    def with_guardrails(
        self,
        owner_id: str,
        call: Callable[[], GuardedCall],
        credits: int = 1,
    ) -> GuardResult:
        """Run ``call`` if ``owner_id`` is within every limit.

        Limit violations come back as ``GuardResult.error`` and ``call`` is
        not executed. Exceptions raised by ``call`` propagate unchanged.
        """

        if credits < 1:
            raise ValueError(f"credits must be >= 1, got {credits}")

        with self._lock:
            state = self._rolled_state(owner_id=owner_id, now=self._clock())
            if state.minute_window_count >= self.limits.per_minute:
                return self._reject(owner_id, state, GuardError.RATE_LIMITED_MINUTE)
            if state.daily_cost_usd >= self.limits.daily_cost_usd:
                return self._reject(owner_id, state, GuardError.RATE_LIMITED_DAILY_COST)
            if state.monthly_credits_remaining - credits < 0:
                return self._reject(owner_id, state, GuardError.RATE_LIMITED_MONTHLY)
            state.monthly_credits_remaining -= credits

        outcome = call()

        cost_usd = outcome.cost_usd
        if cost_usd is None:
            cost_usd = estimate_cost_usd(outcome.model, outcome.input_units, outcome.output_units)

        with self._lock:
            now = self._clock()
            state = self._rolled_state(owner_id=owner_id, now=now)
            state.minute_window_count += 1
            state.daily_cost_usd += cost_usd
            credits_left = state.monthly_credits_remaining

        self.ledger.append(
            UsageRecord(
                owner_id=owner_id,
                model=outcome.model,
                input_units=outcome.input_units,
                output_units=outcome.output_units,
                cost_usd=cost_usd,
                credits=credits,
                created_at=now,
            ),
        )
        return GuardResult(data=outcome.data, credits_left=credits_left)

    def snapshot(self, owner_id: str) -> UsageSnapshot:
        with self._lock:
            state = self._rolled_state(owner_id=owner_id, now=self._clock())
            return UsageSnapshot(
                owner_id=owner_id,
                minute_count=state.minute_window_count,
                per_minute_limit=self.limits.per_minute,
                daily_cost_usd=state.daily_cost_usd,
                daily_cost_cap_usd=self.limits.daily_cost_usd,
                monthly_credits_remaining=state.monthly_credits_remaining,
                monthly_credits=self.limits.monthly_credits,
            )

    def _reject(self, owner_id: str, state: _OwnerState, error: GuardError) -> GuardResult:
        logger.info("Guarded call rejected for %s: %s", owner_id, error.value)
        return GuardResult(credits_left=state.monthly_credits_remaining, error=error)

    def _rolled_state(self, *, owner_id: str, now: datetime) -> _OwnerState:
        minute_start = now.astimezone(UTC).replace(second=0, microsecond=0)
        day_start = minute_start.replace(hour=0, minute=0)
        month_start = day_start.replace(day=1)

        state = self._states.get(owner_id)
        if state is None:
            state = _OwnerState(
                minute_window_start=minute_start,
                daily_window_start=day_start,
                monthly_window_start=month_start,
                monthly_credits_remaining=self.limits.monthly_credits,
            )
            self._states[owner_id] = state
            return state

        if minute_start != state.minute_window_start:
            state.minute_window_start = minute_start
            state.minute_window_count = 0
        if day_start != state.daily_window_start:
            state.daily_window_start = day_start
            state.daily_cost_usd = 0.0
        if month_start != state.monthly_window_start:
            state.monthly_window_start = month_start
            state.monthly_credits_remaining = self.limits.monthly_credits
        return state
