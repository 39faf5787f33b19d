"""CLI entrypoint for crm-jobs."""

from pathlib import Path

import rich_click as click

from crm_jobs import __version__
from crm_jobs.config import Settings
from crm_jobs.jobs.controllers import (
    BatchCommand,
    JobEnqueueCommand,
    JobInspectCommand,
    JobListCommand,
    JobMutateCommand,
    JobProcessCommand,
    JobRunCommand,
    JobsCliController,
    JobStatsCommand,
    RecoverStaleCommand,
    UsageCliController,
    UsageReportCommand,
)
from crm_jobs.jobs.models import JobKind, JobStatus
from crm_jobs.jobs.trigger import TriggerAuthError
from crm_jobs.logging_config import configure_logging

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()
USAGE_CONTROLLER = UsageCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="crm-jobs")
def crm_jobs() -> None:
    """CRM background jobs CLI."""

    configure_logging(Settings.from_env().logging)


@crm_jobs.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@_DB_PATH_OPTION
@click.option("--owner", "owner_id", required=True, help="Owner (tenant user) id.")
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in JobKind]),
    required=True,
    help="Job kind.",
)
@click.option("--payload", "payload_json", default="{}", show_default=True, help="JSON payload.")
@click.option("--batch-id", default=None, help="Optional batch id to group jobs.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=20),
    default=None,
    help="Attempts before the job is failed. Defaults to CRM_JOBS_MAX_ATTEMPTS.",
)
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    owner_id: str,
    kind: str,
    payload_json: str,
    batch_id: str | None,
    max_attempts: int | None,
) -> None:
    """Enqueue one job."""

    try:
        lines = JOBS_CONTROLLER.enqueue(
            JobEnqueueCommand(
                db_path=db_path,
                owner_id=owner_id,
                kind=kind,
                payload_json=payload_json,
                batch_id=batch_id,
                max_attempts=max_attempts,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@jobs.command("process")
@_DB_PATH_OPTION
@click.option(
    "--secret",
    default=None,
    help="Trigger secret; must match CRM_JOBS_TRIGGER_SECRET.",
)
@click.option(
    "--batch-size",
    type=click.IntRange(min=1),
    default=None,
    help="Jobs to claim. Clamped to CRM_JOBS_MAX_BATCH_SIZE.",
)
def jobs_process(db_path: Path | None, secret: str | None, batch_size: int | None) -> None:
    """Authenticated trigger: claim and run the next batch once."""

    try:
        lines = JOBS_CONTROLLER.process(
            JobProcessCommand(db_path=db_path, secret=secret, batch_size=batch_size),
        )
    except TriggerAuthError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@jobs.command("run")
@_DB_PATH_OPTION
@click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Jobs per batch.")
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=0.0),
    default=60.0,
    show_default=True,
    help="Seconds to wait between batches.",
)
@click.option(
    "--max-batches",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many batches (default: until SIGINT/SIGTERM).",
)
def jobs_run(
    db_path: Path | None,
    batch_size: int | None,
    interval_seconds: float,
    max_batches: int | None,
) -> None:
    """Run batches in a local loop, standing in for an external scheduler."""

    _emit_lines(
        JOBS_CONTROLLER.run(
            JobRunCommand(
                db_path=db_path,
                batch_size=batch_size,
                interval_seconds=interval_seconds,
                max_batches=max_batches,
            ),
        ),
    )


@jobs.command("list")
@_DB_PATH_OPTION
@click.option("--owner", "owner_id", default=None, help="Filter by owner id.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Filter by status.",
)
@click.option("--kind", default=None, help="Filter by job kind.")
@click.option("--batch-id", default=None, help="Filter by batch id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(  # noqa: PLR0913
    db_path: Path | None,
    owner_id: str | None,
    status: str | None,
    kind: str | None,
    batch_id: str | None,
    limit: int,
) -> None:
    """List recently updated jobs."""

    _emit_lines(
        JOBS_CONTROLLER.list_jobs(
            JobListCommand(
                db_path=db_path,
                owner_id=owner_id,
                status=status,
                kind=kind,
                batch_id=batch_id,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@_DB_PATH_OPTION
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show one job with its event history."""

    _emit_lines(JOBS_CONTROLLER.inspect(JobInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("stats")
@_DB_PATH_OPTION
@click.option("--owner", "owner_id", default=None, help="Filter by owner id.")
def jobs_stats(db_path: Path | None, owner_id: str | None) -> None:
    """Show job counts per status and stuck in-progress jobs."""

    _emit_lines(JOBS_CONTROLLER.stats(JobStatsCommand(db_path=db_path, owner_id=owner_id)))


@jobs.command("batch-status")
@_DB_PATH_OPTION
@click.argument("batch_id")
@click.option("--owner", "owner_id", default=None, help="Only count jobs of this owner.")
def jobs_batch_status(db_path: Path | None, batch_id: str, owner_id: str | None) -> None:
    """Show per-status counts for one batch."""

    _emit_lines(
        JOBS_CONTROLLER.batch_status(
            BatchCommand(db_path=db_path, batch_id=batch_id, owner_id=owner_id),
        ),
    )


@jobs.command("cancel-batch")
@_DB_PATH_OPTION
@click.argument("batch_id")
@click.option("--owner", "owner_id", required=True, help="Owner of the batch.")
def jobs_cancel_batch(db_path: Path | None, batch_id: str, owner_id: str) -> None:
    """Cancel queued jobs of a batch. In-progress jobs finish normally."""

    _emit_lines(
        JOBS_CONTROLLER.cancel_batch(
            BatchCommand(db_path=db_path, batch_id=batch_id, owner_id=owner_id),
        ),
    )


@jobs.command("retry")
@_DB_PATH_OPTION
@click.argument("job_id")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Re-queue a failed or canceled job."""

    try:
        lines = JOBS_CONTROLLER.retry(JobMutateCommand(db_path=db_path, job_id=job_id))
    except RuntimeError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@jobs.command("recover-stale")
@_DB_PATH_OPTION
@click.option(
    "--stale-after",
    "stale_after_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Claim age in seconds. Defaults to CRM_JOBS_STALE_AFTER_SECONDS.",
)
def jobs_recover_stale(db_path: Path | None, stale_after_seconds: int | None) -> None:
    """Fail (and requeue when attempts remain) jobs whose runner died mid-job."""

    _emit_lines(
        JOBS_CONTROLLER.recover_stale(
            RecoverStaleCommand(db_path=db_path, stale_after_seconds=stale_after_seconds),
        ),
    )


@crm_jobs.group()
def usage() -> None:
    """Guarded AI call usage commands."""


@usage.command("report")
@_DB_PATH_OPTION
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
@click.option("--owner", "owner_id", default=None, help="Filter by owner id.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
    help="Output format.",
)
def usage_report(
    db_path: Path | None,
    hours: int,
    owner_id: str | None,
    output_format: str,
) -> None:
    """Aggregate usage records per owner and model."""

    _emit_lines(
        USAGE_CONTROLLER.report(
            UsageReportCommand(
                db_path=db_path,
                hours=hours,
                owner_id=owner_id,
                output_format=output_format,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    crm_jobs()
