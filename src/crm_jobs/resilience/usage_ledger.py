"""Append-only audit of guarded AI calls."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from crm_jobs.storage.common import to_db_datetime, to_utc_aware_datetime
from crm_jobs.storage.sqlmodel_models import UsageRecordRow


@dataclass(frozen=True, slots=True)
class UsageRecord:
    owner_id: str
    model: str
    input_units: int
    output_units: int
    cost_usd: float
    credits: int
    created_at: datetime


@dataclass(slots=True)
class UsageAggregate:
    """Usage totals for one owner and model."""

    owner_id: str
    model: str
    calls: int
    input_units: int
    output_units: int
    cost_usd: float
    credits: int


class UsageLedger(Protocol):
    def append(self, record: UsageRecord) -> None: ...


class InMemoryUsageLedger:
    """Process-local ledger, the default when no database is configured."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[UsageRecord] = []

    def append(self, record: UsageRecord) -> None:
        with self._lock:
            self._records.append(record)

    def records(self, owner_id: str | None = None) -> list[UsageRecord]:
        with self._lock:
            return [
                record
                for record in self._records
                if owner_id is None or record.owner_id == owner_id
            ]


class SqlUsageLedger:
    """Ledger persisted in the ``usage_records`` table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def append(self, record: UsageRecord) -> None:
        with Session(self.engine) as session:
            session.add(
                UsageRecordRow(
                    owner_id=record.owner_id,
                    model=record.model,
                    input_units=record.input_units,
                    output_units=record.output_units,
                    cost_usd=record.cost_usd,
                    credits=record.credits,
                    created_at=to_db_datetime(record.created_at),
                ),
            )
            session.commit()

    def list_records(self, *, owner_id: str, limit: int = 100) -> list[UsageRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(UsageRecordRow)
                .where(UsageRecordRow.owner_id == owner_id)
                .order_by(col(UsageRecordRow.created_at).desc(), col(UsageRecordRow.id).desc())
                .limit(limit),
            ).all()
        return [
            UsageRecord(
                owner_id=row.owner_id,
                model=row.model,
                input_units=row.input_units,
                output_units=row.output_units,
                cost_usd=row.cost_usd,
                credits=row.credits,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def aggregate(self, since: datetime, owner_id: str | None = None) -> list[UsageAggregate]:
        """Sum usage per owner and model for records created at or after ``since``."""

        statement = (
            select(
                UsageRecordRow.owner_id,
                UsageRecordRow.model,
                func.count(),
                func.coalesce(func.sum(UsageRecordRow.input_units), 0),
                func.coalesce(func.sum(UsageRecordRow.output_units), 0),
                func.coalesce(func.sum(UsageRecordRow.cost_usd), 0.0),
                func.coalesce(func.sum(UsageRecordRow.credits), 0),
            )
            .where(col(UsageRecordRow.created_at) >= to_db_datetime(since))
            .group_by(UsageRecordRow.owner_id, UsageRecordRow.model)
            .order_by(UsageRecordRow.owner_id, UsageRecordRow.model)
        )
        if owner_id is not None:
            statement = statement.where(UsageRecordRow.owner_id == owner_id)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [
            UsageAggregate(
                owner_id=row_owner,
                model=model,
                calls=int(calls),
                input_units=int(input_units),
                output_units=int(output_units),
                cost_usd=float(cost_usd),
                credits=int(credits),
            )
            for row_owner, model, calls, input_units, output_units, cost_usd, credits in rows
        ]
