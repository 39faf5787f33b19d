"""Per-(owner, service) token bucket with backoff floor and circuit breaker.

State lives in process memory and is only touched through ``RateLimiter``
methods under one lock. Several deployed instances each keep their own
buckets, so the effective limit multiplies with the instance count.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from crm_jobs.jobs.models import JobHandlerError
from crm_jobs.resilience.failure_classifier import status_code_of

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_IDLE_EVICTION_SECONDS = 24 * 60 * 60
DEFAULT_MAINTENANCE_INTERVAL_SECONDS = 5 * 60
QUOTA_WINDOW_SECONDS = 100


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class RejectReason(str, Enum):
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    BACKOFF = "BACKOFF"
    THROTTLED = "THROTTLED"


@dataclass(frozen=True, slots=True)
class ServiceQuota:
    """Bucket size and refill speed for one external service."""

    capacity: float
    refill_per_second: float

    @classmethod
    def per_window(cls, capacity: float, window_seconds: float = QUOTA_WINDOW_SECONDS) -> ServiceQuota:
        return cls(capacity=capacity, refill_per_second=capacity / window_seconds)


# Capacities sit at roughly 80% of the provider's per-user quota.
DEFAULT_QUOTAS: dict[str, ServiceQuota] = {
    "gmail_read": ServiceQuota.per_window(200),
    "gmail_send": ServiceQuota.per_window(200),
    "gmail_metadata": ServiceQuota.per_window(800),
    "calendar": ServiceQuota.per_window(480),
}
DEFAULT_SERVICE_QUOTA = ServiceQuota.per_window(100)


@dataclass(slots=True)
class BackoffPolicy:
    initial_seconds: float = 1.0
    max_seconds: float = 60.0
    multiplier: float = 2.0
    jitter_factor: float = 0.1


@dataclass(slots=True)
class CircuitPolicy:
    failure_threshold: int = 5
    cooldown_seconds: float = 300.0


@dataclass(slots=True)
class CallOutcome:
    """Result of one protected call, as reported back to the limiter."""

    success: bool
    status_code: int | None = None

    @classmethod
    def ok(cls) -> CallOutcome:
        return cls(success=True)

    @classmethod
    def failure(cls, status_code: int | None = None) -> CallOutcome:
        return cls(success=False, status_code=status_code)


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    reason: RejectReason | None = None
    retry_after_seconds: float = 0.0


@dataclass(slots=True)
class RateLimitSnapshot:
    """Read-only view of one key for debugging and the CLI."""

    owner_id: str
    service: str
    tokens: float
    capacity: float
    consecutive_failures: int
    circuit_state: CircuitState
    backoff_remaining_seconds: float
    circuit_remaining_seconds: float


@dataclass(slots=True)
class _KeyState:
    tokens: float
    capacity: float
    refill_per_second: float
    last_refill: float
    last_activity: float
    next_allowed_at: float = 0.0
    consecutive_failures: int = 0
    circuit_state: CircuitState = CircuitState.CLOSED
    circuit_opened_at: float | None = None
    trial_in_flight: bool = False
    trial_started_at: float | None = None


class RateLimitedError(JobHandlerError):
    """Call was not attempted because the limiter rejected it."""

    def __init__(self, *, service: str, decision: RateLimitDecision) -> None:
        reason = decision.reason.value if decision.reason is not None else "REJECTED"
        super().__init__(
            f"Rate limited on {service}: {reason}, retry after "
            f"{decision.retry_after_seconds:.1f}s",
            retryable=True,
        )
        self.service = service
        self.decision = decision


class RateLimiter:
    """Token bucket + backoff + circuit breaker keyed by owner and service."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        quotas: dict[str, ServiceQuota] | None = None,
        default_quota: ServiceQuota = DEFAULT_SERVICE_QUOTA,
        backoff: BackoffPolicy | None = None,
        circuit: CircuitPolicy | None = None,
        idle_eviction_seconds: float = DEFAULT_IDLE_EVICTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.quotas = dict(DEFAULT_QUOTAS if quotas is None else quotas)
        self.default_quota = default_quota
        self.backoff = backoff or BackoffPolicy()
        self.circuit = circuit or CircuitPolicy()
        self.idle_eviction_seconds = idle_eviction_seconds
        self._clock = clock
        self._random = rng or random.Random()  # noqa: S311
        self._lock = threading.Lock()
        self._states: dict[tuple[str, str], _KeyState] = {}
        self._maintenance_stop = threading.Event()
        self._maintenance_thread: threading.Thread | None = None

    def acquire(self, owner_id: str, service: str, cost: float = 1) -> RateLimitDecision:
        """Try to spend ``cost`` tokens; never blocks."""

        quota = self.quotas.get(service, self.default_quota)
        if cost <= 0 or cost > quota.capacity:
            raise ValueError(f"cost must be in (0, {quota.capacity}] for {service}, got {cost}")

        with self._lock:
            now = self._clock()
            state = self._state(owner_id=owner_id, service=service, now=now)
            state.last_activity = now

            if state.circuit_state is CircuitState.OPEN:
                reopen_at = (state.circuit_opened_at or now) + self.circuit.cooldown_seconds
                if now < reopen_at:
                    return RateLimitDecision(
                        allowed=False,
                        reason=RejectReason.CIRCUIT_OPEN,
                        retry_after_seconds=reopen_at - now,
                    )
                state.circuit_state = CircuitState.HALF_OPEN
                state.trial_in_flight = False
                logger.info("Circuit half-open for %s/%s", owner_id, service)

            if state.circuit_state is CircuitState.HALF_OPEN and state.trial_in_flight:
                # A trial whose outcome never arrives is given up after one cooldown.
                started_at = state.trial_started_at or now
                trial_expires_at = started_at + self.circuit.cooldown_seconds
                if now < trial_expires_at:
                    return RateLimitDecision(
                        allowed=False,
                        reason=RejectReason.CIRCUIT_OPEN,
                        retry_after_seconds=trial_expires_at - now,
                    )
                state.trial_in_flight = False
                logger.warning(
                    "Half-open trial for %s/%s never reported; admitting another",
                    owner_id,
                    service,
                )

            if now < state.next_allowed_at:
                return RateLimitDecision(
                    allowed=False,
                    reason=RejectReason.BACKOFF,
                    retry_after_seconds=state.next_allowed_at - now,
                )

            self._refill(state=state, now=now)
            if state.tokens < cost:
                return RateLimitDecision(
                    allowed=False,
                    reason=RejectReason.THROTTLED,
                    retry_after_seconds=(cost - state.tokens) / state.refill_per_second,
                )

            state.tokens -= cost
            if state.circuit_state is CircuitState.HALF_OPEN:
                state.trial_in_flight = True
                state.trial_started_at = now
            return RateLimitDecision(allowed=True)

    def report_outcome(self, owner_id: str, service: str, outcome: CallOutcome) -> None:
        """Feed the result of an acquired call back into backoff and circuit state."""

        with self._lock:
            now = self._clock()
            state = self._state(owner_id=owner_id, service=service, now=now)
            state.last_activity = now

            if outcome.success:
                if state.circuit_state is not CircuitState.CLOSED:
                    logger.info("Circuit closed for %s/%s", owner_id, service)
                state.consecutive_failures = 0
                state.next_allowed_at = 0.0
                state.circuit_state = CircuitState.CLOSED
                state.circuit_opened_at = None
                state.trial_in_flight = False
                state.trial_started_at = None
                return

            state.consecutive_failures += 1
            delay = self._backoff_seconds(
                failures=state.consecutive_failures,
                status_code=outcome.status_code,
            )
            state.next_allowed_at = max(state.next_allowed_at, now + delay)

            if state.circuit_state is CircuitState.HALF_OPEN or (
                state.circuit_state is CircuitState.CLOSED
                and state.consecutive_failures >= self.circuit.failure_threshold
            ):
                state.circuit_state = CircuitState.OPEN
                state.circuit_opened_at = now
                state.trial_in_flight = False
                state.trial_started_at = None
                logger.warning(
                    "Circuit opened for %s/%s after %d consecutive failures",
                    owner_id,
                    service,
                    state.consecutive_failures,
                )

    def status(self, owner_id: str, service: str | None = None) -> list[RateLimitSnapshot]:
        with self._lock:
            now = self._clock()
            snapshots: list[RateLimitSnapshot] = []
            for (state_owner, state_service), state in sorted(self._states.items()):
                if state_owner != owner_id or (service is not None and state_service != service):
                    continue
                self._refill(state=state, now=now)
                circuit_remaining = 0.0
                if state.circuit_state is CircuitState.OPEN and state.circuit_opened_at is not None:
                    circuit_remaining = max(
                        0.0,
                        state.circuit_opened_at + self.circuit.cooldown_seconds - now,
                    )
                snapshots.append(
                    RateLimitSnapshot(
                        owner_id=state_owner,
                        service=state_service,
                        tokens=state.tokens,
                        capacity=state.capacity,
                        consecutive_failures=state.consecutive_failures,
                        circuit_state=state.circuit_state,
                        backoff_remaining_seconds=max(0.0, state.next_allowed_at - now),
                        circuit_remaining_seconds=circuit_remaining,
                    ),
                )
            return snapshots

    def sweep(self, idle_seconds: float | None = None) -> int:
        """Drop keys idle for longer than ``idle_seconds``; open circuits are kept."""

        threshold = self.idle_eviction_seconds if idle_seconds is None else idle_seconds
        with self._lock:
            now = self._clock()
            stale = [
                key
                for key, state in self._states.items()
                if now - state.last_activity > threshold
                and state.circuit_state is not CircuitState.OPEN
            ]
            for key in stale:
                del self._states[key]
        if stale:
            logger.debug("Evicted %d idle rate limiter keys", len(stale))
        return len(stale)

    def start_maintenance(
        self,
        interval_seconds: float = DEFAULT_MAINTENANCE_INTERVAL_SECONDS,
    ) -> None:
        """Run ``sweep`` periodically on a daemon thread."""

        if self._maintenance_thread is not None and self._maintenance_thread.is_alive():
            return
        self._maintenance_stop.clear()

        def _loop() -> None:
            while not self._maintenance_stop.wait(interval_seconds):
                self.sweep()

        self._maintenance_thread = threading.Thread(
            target=_loop,
            name="rate-limiter-maintenance",
            daemon=True,
        )
        self._maintenance_thread.start()

    def stop_maintenance(self) -> None:
        self._maintenance_stop.set()
        if self._maintenance_thread is not None:
            self._maintenance_thread.join(timeout=5)
            self._maintenance_thread = None

    def _state(self, *, owner_id: str, service: str, now: float) -> _KeyState:
        key = (owner_id, service)
        state = self._states.get(key)
        if state is None:
            quota = self.quotas.get(service, self.default_quota)
            state = _KeyState(
                tokens=quota.capacity,
                capacity=quota.capacity,
                refill_per_second=quota.refill_per_second,
                last_refill=now,
                last_activity=now,
            )
            self._states[key] = state
        return state

    def _refill(self, *, state: _KeyState, now: float) -> None:
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(state.capacity, state.tokens + elapsed * state.refill_per_second)
        state.last_refill = now

    def _backoff_seconds(self, *, failures: int, status_code: int | None) -> float:
        policy = self.backoff
        base = min(
            policy.initial_seconds * policy.multiplier ** (failures - 1),
            policy.max_seconds,
        )
        jitter = base * policy.jitter_factor * self._random.random()
        return min((base + jitter) * _status_multiplier(status_code), policy.max_seconds)


def _status_multiplier(status_code: int | None) -> float:
    if status_code == 429:
        return 2.0
    if status_code == 403:
        return 3.0
    if status_code is not None and 500 <= status_code <= 599:
        return 1.5
    return 1.0


def with_rate_limit(
    limiter: RateLimiter,
    owner_id: str,
    service: str,
    call: Callable[[], T],
    *,
    cost: float = 1,
) -> T:
    """Acquire, run ``call`` and report its outcome.

    Raises ``RateLimitedError`` without calling when the limiter rejects.
    Exceptions from ``call`` are reported as failures and re-raised.
    """

    decision = limiter.acquire(owner_id, service, cost)
    if not decision.allowed:
        raise RateLimitedError(service=service, decision=decision)

    try:
        result = call()
    except Exception as error:
        status_code = status_code_of(error)
        logger.debug(
            "Protected call failed for %s/%s: status=%s",
            owner_id,
            service,
            status_code,
        )
        limiter.report_outcome(owner_id, service, CallOutcome.failure(status_code))
        raise
    limiter.report_outcome(owner_id, service, CallOutcome.ok())
    return result
