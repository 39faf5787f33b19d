"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from crm_jobs.jobs.repository import JobRepository


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    """Keep developer CRM_JOBS_* variables out of tests."""

    for name in list(os.environ):
        if name.startswith("CRM_JOBS_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "jobs.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUtcClock:
    """Manually advanced wall clock returning aware UTC datetimes."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def utc_clock() -> FakeUtcClock:
    return FakeUtcClock(datetime(2026, 3, 14, 12, 0, 30, tzinfo=UTC))
