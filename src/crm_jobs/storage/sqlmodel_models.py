"""SQLModel ORM tables for the job store and usage ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_status_created", "status", "created_at"),
        Index("idx_jobs_owner_status", "owner_id", "status"),
        Index("idx_jobs_batch_owner", "batch_id", "owner_id"),
        Index("idx_jobs_claim_token", "claim_token"),
    )

    job_id: str = Field(primary_key=True)
    owner_id: str
    kind: str = Field(index=True)
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    status: str
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    batch_id: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    claim_token: str | None = None
    runner_id: str | None = None
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEventRow(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    owner_id: str
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UsageRecordRow(SQLModel, table=True):
    __tablename__ = "usage_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_usage_records_owner_time", "owner_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    owner_id: str
    model: str
    input_units: int = 0
    output_units: int = 0
    cost_usd: float = 0.0
    credits: int = 1
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
