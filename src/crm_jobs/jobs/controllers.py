"""Controllers for job queue and usage CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from crm_jobs.config import Settings
from crm_jobs.jobs.dispatcher import JobDispatcher, load_handler_modules
from crm_jobs.jobs.models import JobStatus, RunSummary
from crm_jobs.jobs.repository import JobRepository
from crm_jobs.jobs.runner import JobRunner
from crm_jobs.jobs.services import HandlerServices, build_handler_services
from crm_jobs.jobs.trigger import BatchTrigger
from crm_jobs.resilience.usage_ledger import SqlUsageLedger
from crm_jobs.storage.common import utc_now


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for job enqueue."""

    db_path: Path | None
    owner_id: str
    kind: str
    payload_json: str
    batch_id: str | None
    max_attempts: int | None


@dataclass(slots=True)
class JobProcessCommand:
    """CLI input for one authenticated batch."""

    db_path: Path | None
    secret: str | None
    batch_size: int | None


@dataclass(slots=True)
class JobRunCommand:
    """CLI input for the local runner loop."""

    db_path: Path | None
    batch_size: int | None
    interval_seconds: float
    max_batches: int | None


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    owner_id: str | None
    status: str | None
    kind: str | None
    batch_id: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for manual retry."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class BatchCommand:
    """CLI input for batch status and cancel."""

    db_path: Path | None
    batch_id: str
    owner_id: str | None


@dataclass(slots=True)
class JobStatsCommand:
    db_path: Path | None
    owner_id: str | None


@dataclass(slots=True)
class RecoverStaleCommand:
    db_path: Path | None
    stale_after_seconds: int | None


@dataclass(slots=True)
class UsageReportCommand:
    """CLI input for windowed usage report."""

    db_path: Path | None
    hours: int
    owner_id: str | None
    output_format: str = "table"


class JobsCliController:
    """Coordinates queue, runner and inspection CLI operations."""

    def enqueue(self, command: JobEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            payload = json.loads(command.payload_json or "{}")
        except json.JSONDecodeError as error:
            raise ValueError(f"Payload is not valid JSON: {error}") from error
        except RecursionError as error:
            raise ValueError("Payload is nested too deeply to parse") from error
        with _repository(settings) as repository:
            job = repository.enqueue(
                owner_id=command.owner_id,
                kind=command.kind,
                payload=payload,
                batch_id=command.batch_id,
                max_attempts=command.max_attempts or settings.jobs.max_attempts,
            )
        return [
            "Job enqueued: "
            f"job_id={job.job_id} kind={job.kind} owner={job.owner_id} "
            f"status={job.status.value} batch_id={job.batch_id or '-'}",
        ]

    def process(self, command: JobProcessCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository, _services(settings, repository) as services:
            trigger = BatchTrigger(
                runner=_runner(settings=settings, repository=repository, services=services),
                secret=settings.trigger.secret,
                default_batch_size=settings.jobs.batch_size,
                max_batch_size=settings.jobs.max_batch_size,
            )
            summary = trigger.process_next_batch(command.secret, command.batch_size)
        return _summary_lines("Batch summary", summary)

    def run(self, command: JobRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository, _services(settings, repository) as services:
            runner = _runner(settings=settings, repository=repository, services=services)
            summary = runner.run_loop(
                interval_seconds=command.interval_seconds,
                max_batches=command.max_batches,
                batch_size=command.batch_size,
            )
        return _summary_lines("Runner summary", summary)

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                owner_id=command.owner_id,
                status=status_filter,
                kind=command.kind,
                batch_id=command.batch_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} kind={job.kind} owner={job.owner_id} status={job.status.value} "
                f"attempts={job.attempts}/{job.max_attempts} batch_id={job.batch_id or '-'} "
                f"updated_at={job.updated_at.isoformat()}",
            )
        return lines

    def inspect(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Kind: {job.kind}",
            f"Owner: {job.owner_id}",
            f"Status: {job.status.value}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Batch: {job.batch_id or '-'}",
            f"Error: {job.last_error or '-'}",
            f"Payload: {json.dumps(job.payload, ensure_ascii=False, sort_keys=True)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def batch_status(self, command: BatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            status = repository.get_batch_status(command.batch_id, owner_id=command.owner_id)
        counts = " ".join(f"{name}={count}" for name, count in status.as_dict().items())
        return [f"Batch {status.batch_id}: total={status.total} {counts}"]

    def cancel_batch(self, command: BatchCommand) -> list[str]:
        if not command.owner_id:
            raise ValueError("Canceling a batch requires the owner id.")
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            canceled = repository.cancel_batch(command.batch_id, owner_id=command.owner_id)
        return [f"Batch {command.batch_id}: canceled={canceled}"]

    def retry(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.retry_job(command.job_id)
        return [
            f"Job re-queued: {job.job_id} attempts={job.attempts}/{job.max_attempts}",
        ]

    def stats(self, command: JobStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        stale_after = timedelta(seconds=settings.jobs.stale_after_seconds or 600)
        with _repository(settings) as repository:
            counts = repository.count_by_status(owner_id=command.owner_id)
            stuck = repository.list_stuck_jobs(stale_after=stale_after)

        lines = [
            "Job counts: " + " ".join(f"{status.value}={count}" for status, count in counts.items()),
            f"Stuck jobs (claimed > {int(stale_after.total_seconds())}s ago): {len(stuck)}",
        ]
        for job in stuck:
            claimed = job.claimed_at.isoformat() if job.claimed_at is not None else "-"
            lines.append(
                f"  {job.job_id} kind={job.kind} runner={job.runner_id or '-'} "
                f"claimed_at={claimed}",
            )
        return lines

    def recover_stale(self, command: RecoverStaleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        seconds = command.stale_after_seconds or settings.jobs.stale_after_seconds
        if seconds <= 0:
            raise ValueError("Stale threshold must be > 0 seconds.")
        with _repository(settings) as repository:
            recovered = repository.recover_stale_jobs(stale_after=timedelta(seconds=seconds))
        return [f"Stale jobs recovered: {recovered}"]


class UsageCliController:
    """Reports on the guarded-call usage ledger."""

    def report(self, command: UsageReportCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        since = utc_now() - timedelta(hours=max(1, command.hours))
        with _repository(settings) as repository:
            aggregates = SqlUsageLedger(repository.engine).aggregate(
                since,
                owner_id=command.owner_id,
            )

        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "window_hours": command.hours,
                        "usage": [
                            {
                                "owner_id": item.owner_id,
                                "model": item.model,
                                "calls": item.calls,
                                "input_units": item.input_units,
                                "output_units": item.output_units,
                                "cost_usd": round(item.cost_usd, 6),
                                "credits": item.credits,
                            }
                            for item in aggregates
                        ],
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]

        lines = [f"Usage (window={command.hours}h): {len(aggregates)} owner/model groups"]
        for item in aggregates:
            lines.append(
                f"  owner={item.owner_id} model={item.model} calls={item.calls} "
                f"input_units={item.input_units} output_units={item.output_units} "
                f"cost_usd={item.cost_usd:.4f} credits={item.credits}",
            )
        return lines


def _summary_lines(title: str, summary: RunSummary) -> list[str]:
    lines = [
        f"{title}: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} retried={summary.retried} "
        f"timeouts={summary.timeouts} recovered_stale={summary.recovered_stale}",
    ]
    lines.extend(f"  {error}" for error in summary.errors)
    return lines


def _parse_status(raw: str | None) -> JobStatus | None:
    if raw is None:
        return None
    try:
        return JobStatus(raw)
    except ValueError as error:
        raise ValueError(f"Unsupported job status: {raw!r}") from error


def _runner(
    *,
    settings: Settings,
    repository: JobRepository,
    services: HandlerServices,
) -> JobRunner:
    dispatcher = JobDispatcher()
    load_handler_modules(dispatcher, settings.jobs.handler_modules, services)
    return JobRunner(
        repository=repository,
        dispatcher=dispatcher,
        runner_id=settings.jobs.runner_id,
        job_timeout_seconds=settings.jobs.job_timeout_seconds,
        stale_after_seconds=settings.jobs.stale_after_seconds,
        default_batch_size=settings.jobs.batch_size,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _services(settings: Settings, repository: JobRepository) -> Iterator[HandlerServices]:
    services = build_handler_services(settings, engine=repository.engine)
    try:
        yield services
    finally:
        services.close()
