"""Runtime configuration for the job runner and call protection."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from crm_jobs.resilience.guardrails import GuardLimits
from crm_jobs.resilience.rate_limiter import (
    DEFAULT_QUOTAS,
    DEFAULT_SERVICE_QUOTA,
    QUOTA_WINDOW_SECONDS,
    BackoffPolicy,
    CircuitPolicy,
    ServiceQuota,
)


@dataclass(slots=True)
class JobSettings:
    """Queue and runner settings."""

    batch_size: int = 10
    max_batch_size: int = 50
    max_attempts: int = 3
    job_timeout_seconds: float = 300.0
    stale_after_seconds: int = 600
    runner_id: str = "runner-local"
    handler_modules: tuple[str, ...] = ()


@dataclass(slots=True)
class RateLimitSettings:
    """Token bucket, backoff and circuit breaker settings."""

    service_capacities: dict[str, int] = field(default_factory=dict)
    default_capacity: int = int(DEFAULT_SERVICE_QUOTA.capacity)
    window_seconds: float = QUOTA_WINDOW_SECONDS
    backoff_initial_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    backoff_jitter_factor: float = 0.1
    failure_threshold: int = 5
    circuit_cooldown_seconds: float = 300.0
    idle_eviction_seconds: float = 86_400.0

    def quotas(self) -> dict[str, ServiceQuota]:
        capacities = {service: quota.capacity for service, quota in DEFAULT_QUOTAS.items()}
        capacities.update(self.service_capacities)
        return {
            service: ServiceQuota.per_window(capacity, self.window_seconds)
            for service, capacity in capacities.items()
        }

    def default_quota(self) -> ServiceQuota:
        return ServiceQuota.per_window(self.default_capacity, self.window_seconds)

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_seconds=self.backoff_initial_seconds,
            max_seconds=self.backoff_max_seconds,
            jitter_factor=self.backoff_jitter_factor,
        )

    def circuit_policy(self) -> CircuitPolicy:
        return CircuitPolicy(
            failure_threshold=self.failure_threshold,
            cooldown_seconds=self.circuit_cooldown_seconds,
        )


@dataclass(slots=True)
class GuardrailSettings:
    """Per-owner limits for paid AI calls."""

    per_minute: int = 10
    daily_cost_usd: float = 5.0
    monthly_credits: int = 200

    def limits(self) -> GuardLimits:
        return GuardLimits(
            per_minute=self.per_minute,
            daily_cost_usd=self.daily_cost_usd,
            monthly_credits=self.monthly_credits,
        )


@dataclass(slots=True)
class TriggerSettings:
    """Shared secret for the process-next-batch entry point."""

    secret: str | None = field(default=None, repr=False)


@dataclass(slots=True)
class LoggingSettings:
    level: str = "INFO"
    format: str = "plain"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".crm_jobs.db")
    jobs: JobSettings = field(default_factory=JobSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    guardrails: GuardrailSettings = field(default_factory=GuardrailSettings)
    trigger: TriggerSettings = field(default_factory=TriggerSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("CRM_JOBS_DB_PATH", ".crm_jobs.db")),
            jobs=JobSettings(
                batch_size=_env_int("CRM_JOBS_BATCH_SIZE", 10),
                max_batch_size=_env_int("CRM_JOBS_MAX_BATCH_SIZE", 50),
                max_attempts=_env_int("CRM_JOBS_MAX_ATTEMPTS", 3),
                job_timeout_seconds=_env_float("CRM_JOBS_JOB_TIMEOUT_SECONDS", 300.0),
                stale_after_seconds=_env_int("CRM_JOBS_STALE_AFTER_SECONDS", 600),
                runner_id=os.getenv("CRM_JOBS_RUNNER_ID", "runner-local"),
                handler_modules=_env_csv("CRM_JOBS_HANDLER_MODULES"),
            ),
            rate_limit=RateLimitSettings(
                service_capacities=_collect_service_capacities(),
                default_capacity=_env_int(
                    "CRM_JOBS_RATE_LIMIT_DEFAULT_CAPACITY",
                    int(DEFAULT_SERVICE_QUOTA.capacity),
                ),
                window_seconds=_env_float(
                    "CRM_JOBS_RATE_LIMIT_WINDOW_SECONDS",
                    QUOTA_WINDOW_SECONDS,
                ),
                backoff_initial_seconds=_env_float("CRM_JOBS_BACKOFF_INITIAL_SECONDS", 1.0),
                backoff_max_seconds=_env_float("CRM_JOBS_BACKOFF_MAX_SECONDS", 60.0),
                backoff_jitter_factor=_env_float("CRM_JOBS_BACKOFF_JITTER_FACTOR", 0.1),
                failure_threshold=_env_int("CRM_JOBS_CIRCUIT_FAILURE_THRESHOLD", 5),
                circuit_cooldown_seconds=_env_float("CRM_JOBS_CIRCUIT_COOLDOWN_SECONDS", 300.0),
                idle_eviction_seconds=_env_float(
                    "CRM_JOBS_RATE_LIMIT_IDLE_EVICTION_SECONDS",
                    86_400.0,
                ),
            ),
            guardrails=GuardrailSettings(
                per_minute=_env_int("CRM_JOBS_GUARD_PER_MINUTE", 10),
                daily_cost_usd=_env_float("CRM_JOBS_GUARD_DAILY_COST_USD", 5.0),
                monthly_credits=_env_int("CRM_JOBS_GUARD_MONTHLY_CREDITS", 200),
            ),
            trigger=TriggerSettings(
                secret=os.getenv("CRM_JOBS_TRIGGER_SECRET") or None,
            ),
            logging=LoggingSettings(
                level=os.getenv("CRM_JOBS_LOG_LEVEL", "INFO").strip().upper(),
                format=os.getenv("CRM_JOBS_LOG_FORMAT", "plain").strip().lower(),
            ),
        )

    def validate(self) -> None:  # noqa: C901
        """Raise configuration error on out-of-range values."""

        if self.jobs.batch_size < 1:
            raise ValueError("CRM_JOBS_BATCH_SIZE must be >= 1.")
        if self.jobs.max_batch_size < self.jobs.batch_size:
            raise ValueError("CRM_JOBS_MAX_BATCH_SIZE must be >= CRM_JOBS_BATCH_SIZE.")
        if self.jobs.max_attempts < 1:
            raise ValueError("CRM_JOBS_MAX_ATTEMPTS must be >= 1.")
        if self.jobs.job_timeout_seconds <= 0:
            raise ValueError("CRM_JOBS_JOB_TIMEOUT_SECONDS must be > 0.")
        if self.jobs.stale_after_seconds < 0:
            raise ValueError("CRM_JOBS_STALE_AFTER_SECONDS must be >= 0.")
        if 0 < self.jobs.stale_after_seconds <= self.jobs.job_timeout_seconds:
            raise ValueError(
                "CRM_JOBS_STALE_AFTER_SECONDS must be 0 (disabled) or greater than "
                "CRM_JOBS_JOB_TIMEOUT_SECONDS.",
            )
        if self.rate_limit.window_seconds <= 0:
            raise ValueError("CRM_JOBS_RATE_LIMIT_WINDOW_SECONDS must be > 0.")
        if self.rate_limit.default_capacity < 1:
            raise ValueError("CRM_JOBS_RATE_LIMIT_DEFAULT_CAPACITY must be >= 1.")
        if not 0 <= self.rate_limit.backoff_jitter_factor <= 1:
            raise ValueError("CRM_JOBS_BACKOFF_JITTER_FACTOR must be between 0 and 1.")
        if self.rate_limit.failure_threshold < 1:
            raise ValueError("CRM_JOBS_CIRCUIT_FAILURE_THRESHOLD must be >= 1.")
        if self.guardrails.per_minute < 1:
            raise ValueError("CRM_JOBS_GUARD_PER_MINUTE must be >= 1.")
        if self.guardrails.daily_cost_usd < 0:
            raise ValueError("CRM_JOBS_GUARD_DAILY_COST_USD must be >= 0.")
        if self.guardrails.monthly_credits < 0:
            raise ValueError("CRM_JOBS_GUARD_MONTHLY_CREDITS must be >= 0.")
        if self.logging.level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid CRM_JOBS_LOG_LEVEL: {self.logging.level!r}.")
        if self.logging.format not in {"plain", "json"}:
            raise ValueError(
                f"Invalid CRM_JOBS_LOG_FORMAT: {self.logging.format!r}. Expected plain or json.",
            )


def _collect_service_capacities() -> dict[str, int]:
    raw = os.getenv("CRM_JOBS_RATE_LIMIT_CAPACITIES", "").strip()
    if not raw:
        return {}

    capacities: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                "Invalid CRM_JOBS_RATE_LIMIT_CAPACITIES entry: "
                f"{token!r}. Expected format '<service>:<capacity>'.",
            )
        service, capacity_raw = (value.strip() for value in token.rsplit(":", 1))
        try:
            capacity = int(capacity_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid CRM_JOBS_RATE_LIMIT_CAPACITIES value for {service!r}: {capacity_raw!r}",
            ) from error
        if capacity <= 0:
            raise ValueError(
                "Invalid CRM_JOBS_RATE_LIMIT_CAPACITIES value for "
                f"{service!r}: {capacity!r} (must be > 0)",
            )
        capacities[service] = capacity
    return capacities


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error
