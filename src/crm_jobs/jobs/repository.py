"""Persistent job store with atomic batch claims."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from crm_jobs.jobs.models import (
    BatchStatus,
    JobCreate,
    JobDetails,
    JobEventView,
    JobKind,
    JobStatus,
    JobView,
)
from crm_jobs.jobs.payloads import validate_payload
from crm_jobs.storage.alembic_runner import upgrade_head
from crm_jobs.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from crm_jobs.storage.sqlmodel_models import JobEventRow, JobRow

logger = logging.getLogger(__name__)

STALE_CLAIM_ERROR = "stale claim"


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(
        self,
        *,
        owner_id: str,
        kind: JobKind | str,
        payload: dict[str, object] | None = None,
        batch_id: str | None = None,
        max_attempts: int = 3,
    ) -> JobView:
        """Create a queued job."""

        return self.enqueue_many(
            [
                JobCreate(
                    owner_id=owner_id,
                    kind=kind,
                    payload=payload or {},
                    batch_id=batch_id,
                    max_attempts=max_attempts,
                ),
            ],
        )[0]

    def enqueue_many(self, requests: Iterable[JobCreate]) -> list[JobView]:
        """Create several queued jobs in one transaction.

        Every payload is validated before anything is written, so a bad
        request leaves the store untouched.
        """

        prepared: list[tuple[JobCreate, str, dict[str, object]]] = []
        for request in requests:
            if not request.owner_id.strip():
                raise ValueError("owner_id is required")
            if request.max_attempts < 1:
                raise ValueError(f"max_attempts must be >= 1, got {request.max_attempts}")
            kind_value = request.kind.value if isinstance(request.kind, JobKind) else request.kind
            payload = validate_payload(kind_value, request.payload)
            prepared.append((request, kind_value, payload))

        if not prepared:
            return []

        with Session(self.engine) as session:
            rows: list[JobRow] = []
            for request, kind_value, payload in prepared:
                now = utc_now()
                row = JobRow(
                    job_id=request.job_id or str(uuid4()),
                    owner_id=request.owner_id,
                    kind=kind_value,
                    payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True),
                    status=JobStatus.QUEUED.value,
                    attempts=0,
                    max_attempts=request.max_attempts,
                    batch_id=request.batch_id,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
                session.add(row)
                rows.append(row)
                self._add_event(
                    session=session,
                    row=row,
                    event_type="enqueued",
                    status_from=None,
                    status_to=JobStatus.QUEUED,
                    details={"kind": kind_value, "batch_id": request.batch_id},
                )
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_job_view(row) for row in rows]

    def claim_batch(self, *, limit: int, runner_id: str) -> list[JobView]:
        """Atomically claim up to ``limit`` queued jobs, oldest first.

        The claim is one conditional UPDATE stamping a fresh claim token, so
        concurrent callers can never receive the same job.
        """

        if limit <= 0:
            return []

        now = to_db_datetime(utc_now())
        claim_token = str(uuid4())
        candidates = (
            select(JobRow.job_id)
            .where(JobRow.status == JobStatus.QUEUED.value)
            .order_by(col(JobRow.created_at).asc(), col(JobRow.job_id).asc())
            .limit(limit)
        )
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id).in_(candidates),
                    col(JobRow.status) == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.IN_PROGRESS.value,
                    claim_token=claim_token,
                    runner_id=runner_id,
                    claimed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount == 0:
                session.rollback()
                return []

            rows = session.exec(
                select(JobRow)
                .where(JobRow.claim_token == claim_token)
                .order_by(col(JobRow.created_at).asc(), col(JobRow.job_id).asc()),
            ).all()
            for row in rows:
                self._add_event(
                    session=session,
                    row=row,
                    event_type="claimed",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.IN_PROGRESS,
                    details={"runner_id": runner_id, "attempts": row.attempts},
                )
            session.commit()
            return [_to_job_view(row) for row in rows]

    def mark_succeeded(self, job_id: str, *, claim_token: str | None = None) -> bool:
        """Mark an in-progress job as succeeded."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            statement = sa_update(JobRow).where(
                col(JobRow.job_id) == job_id,
                col(JobRow.status) == JobStatus.IN_PROGRESS.value,
            )
            if claim_token is not None:
                statement = statement.where(col(JobRow.claim_token) == claim_token)
            result = session.exec(
                statement.values(
                    status=JobStatus.SUCCEEDED.value,
                    claim_token=None,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            row = self._get_row(session=session, job_id=job_id)
            self._add_event(
                session=session,
                row=row,
                event_type="succeeded",
                status_from=JobStatus.IN_PROGRESS,
                status_to=JobStatus.SUCCEEDED,
                details={},
            )
            session.commit()
            return True

    def mark_failed(
        self,
        job_id: str,
        *,
        error: str,
        retryable: bool,
        claim_token: str | None = None,
    ) -> JobStatus | None:
        """Record one failed execution of an in-progress job.

        ``attempts`` is incremented; the job goes back to ``queued`` when the
        failure is retryable and attempts remain, otherwise it is ``failed``.
        Returns the resulting status, or None when the job was no longer ours.
        """

        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if row is None:
                return None
            if row.status != JobStatus.IN_PROGRESS.value:
                return None
            if claim_token is not None and row.claim_token != claim_token:
                return None
            status_to = self._fail_row(
                session=session,
                row=row,
                error=error,
                retryable=retryable,
                event_type=None,
            )
            if status_to is None:
                session.rollback()
                return None
            session.commit()
            return status_to

    def recover_stale_jobs(self, *, stale_after: timedelta) -> int:
        """Fail in-progress jobs whose claim is older than ``stale_after``.

        Covers runners that died mid-job: the claim is treated as one
        retryable failed attempt.
        """

        cutoff = to_db_datetime(utc_now() - stale_after)
        recovered = 0
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow)
                .where(
                    JobRow.status == JobStatus.IN_PROGRESS.value,
                    col(JobRow.claimed_at) < cutoff,
                )
                .order_by(col(JobRow.claimed_at).asc()),
            ).all()
            for row in rows:
                status_to = self._fail_row(
                    session=session,
                    row=row,
                    error=(
                        f"{STALE_CLAIM_ERROR}: runner {row.runner_id or 'unknown'} did not "
                        f"finish within {int(stale_after.total_seconds())}s"
                    ),
                    retryable=True,
                    event_type="stale_recovered",
                )
                if status_to is not None:
                    recovered += 1
            session.commit()
        if recovered:
            logger.warning("Recovered %d stale in-progress jobs", recovered)
        return recovered

    def get_batch_status(self, batch_id: str, *, owner_id: str | None = None) -> BatchStatus:
        """Return per-status counts for one batch."""

        statement = (
            select(JobRow.status, func.count())
            .where(JobRow.batch_id == batch_id)
            .group_by(JobRow.status)
        )
        if owner_id is not None:
            statement = statement.where(JobRow.owner_id == owner_id)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()

        status = BatchStatus(batch_id=batch_id)
        for status_value, count in rows:
            setattr(status, JobStatus(status_value).value, int(count))
        return status

    def cancel_batch(self, batch_id: str, *, owner_id: str) -> int:
        """Cancel queued jobs of one batch owned by ``owner_id``.

        In-progress jobs are left to finish on their own.
        """

        canceled = 0
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow).where(
                    JobRow.batch_id == batch_id,
                    JobRow.owner_id == owner_id,
                    JobRow.status == JobStatus.QUEUED.value,
                ),
            ).all()
            for row in rows:
                result = session.exec(
                    sa_update(JobRow)
                    .where(
                        col(JobRow.job_id) == row.job_id,
                        col(JobRow.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.CANCELED.value,
                        finished_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    continue
                canceled += 1
                self._add_event(
                    session=session,
                    row=row,
                    event_type="canceled",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.CANCELED,
                    details={"batch_id": batch_id},
                )
            session.commit()
        return canceled

    def retry_job(self, job_id: str) -> JobView:
        """Manual operator retry for failed/canceled jobs."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if row is None:
                raise RuntimeError(f"Job not found: {job_id}")

            previous = JobStatus(row.status)
            if previous not in {JobStatus.FAILED, JobStatus.CANCELED}:
                raise RuntimeError(
                    f"Only failed/canceled jobs can be retried manually, got {row.status}.",
                )
            max_attempts = max(row.max_attempts, row.attempts + 1)
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == previous.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    max_attempts=max_attempts,
                    claim_token=None,
                    runner_id=None,
                    claimed_at=None,
                    finished_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                row=row,
                event_type="manual_retry",
                status_from=previous,
                status_to=JobStatus.QUEUED,
                details={"max_attempts": max_attempts},
            )
            session.commit()
            refreshed = self._get_row(session=session, job_id=job_id)
            return _to_job_view(refreshed)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(JobEventRow)
                .where(JobEventRow.job_id == job_id)
                .order_by(col(JobEventRow.created_at).asc(), col(JobEventRow.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for event_row in event_rows:
            details = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=event_row.id or 0,
                    job_id=event_row.job_id,
                    event_type=event_row.event_type,
                    status_from=(
                        JobStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        JobStatus(event_row.status_to) if event_row.status_to is not None else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=_to_job_view(row), events=events)

    def list_jobs(  # noqa: PLR0913
        self,
        *,
        owner_id: str | None = None,
        status: JobStatus | None = None,
        kind: str | None = None,
        batch_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recently updated jobs with optional filters."""

        statement = select(JobRow)
        if owner_id is not None:
            statement = statement.where(JobRow.owner_id == owner_id)
        if status is not None:
            statement = statement.where(JobRow.status == status.value)
        if kind is not None:
            statement = statement.where(JobRow.kind == kind)
        if batch_id is not None:
            statement = statement.where(JobRow.batch_id == batch_id)
        statement = statement.order_by(
            col(JobRow.updated_at).desc(),
            col(JobRow.created_at).desc(),
        ).limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def count_by_status(self, *, owner_id: str | None = None) -> dict[JobStatus, int]:
        statement = select(JobRow.status, func.count()).group_by(JobRow.status)
        if owner_id is not None:
            statement = statement.where(JobRow.owner_id == owner_id)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        counts = dict.fromkeys(JobStatus, 0)
        for status_value, count in rows:
            counts[JobStatus(status_value)] = int(count)
        return counts

    def list_stuck_jobs(self, *, stale_after: timedelta) -> list[JobView]:
        """In-progress jobs claimed longer ago than ``stale_after``."""

        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow)
                .where(
                    JobRow.status == JobStatus.IN_PROGRESS.value,
                    col(JobRow.claimed_at) < cutoff,
                )
                .order_by(col(JobRow.claimed_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def _fail_row(
        self,
        *,
        session: Session,
        row: JobRow,
        error: str,
        retryable: bool,
        event_type: str | None,
    ) -> JobStatus | None:
        now = to_db_datetime(utc_now())
        attempts = row.attempts + 1
        requeue = retryable and attempts < row.max_attempts
        status_to = JobStatus.QUEUED if requeue else JobStatus.FAILED
        statement = sa_update(JobRow).where(
            col(JobRow.job_id) == row.job_id,
            col(JobRow.status) == JobStatus.IN_PROGRESS.value,
            col(JobRow.attempts) == row.attempts,
        )
        if row.claim_token is not None:
            statement = statement.where(col(JobRow.claim_token) == row.claim_token)
        result = session.exec(
            statement.values(
                status=status_to.value,
                attempts=attempts,
                last_error=error,
                claim_token=None,
                runner_id=None if requeue else row.runner_id,
                claimed_at=None if requeue else row.claimed_at,
                finished_at=None if requeue else now,
                updated_at=now,
            ),
        )
        if result.rowcount != 1:
            return None
        self._add_event(
            session=session,
            row=row,
            event_type=event_type or ("retry_scheduled" if requeue else "failed"),
            status_from=JobStatus.IN_PROGRESS,
            status_to=status_to,
            details={
                "attempts": attempts,
                "max_attempts": row.max_attempts,
                "retryable": retryable,
                "error": error,
            },
        )
        return status_to

    def _get_row(self, *, session: Session, job_id: str) -> JobRow:
        row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
        if row is None:
            raise RuntimeError(f"Job not found: {job_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        row: JobRow,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEventRow(
                job_id=row.job_id,
                owner_id=row.owner_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_job_view(row: JobRow) -> JobView:
    payload = json.loads(row.payload_json) if row.payload_json else {}
    return JobView(
        job_id=row.job_id,
        owner_id=row.owner_id,
        kind=row.kind,
        payload=payload if isinstance(payload, dict) else {},
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        batch_id=row.batch_id,
        last_error=row.last_error,
        claim_token=row.claim_token,
        runner_id=row.runner_id,
        claimed_at=to_utc_aware_datetime(row.claimed_at) if row.claimed_at is not None else None,
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
