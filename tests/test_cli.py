from __future__ import annotations

import json
import re
from pathlib import Path

import allure
from click.testing import CliRunner

from crm_jobs import __version__
from crm_jobs.jobs.models import JobStatus
from crm_jobs.jobs.repository import JobRepository
from crm_jobs.main import crm_jobs
from crm_jobs.resilience.usage_ledger import SqlUsageLedger, UsageRecord
from crm_jobs.storage.common import utc_now

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]

_HANDLERS = """\
from crm_jobs.jobs.models import JobHandlerError, JobKind
from crm_jobs.resilience.guardrails import GuardedCall
from crm_jobs.resilience.rate_limiter import with_rate_limit


def _reject(job):
    raise JobHandlerError("contact source gone", retryable=False)


def register(dispatcher, services):
    def _normalize(job):
        result = services.usage_guard.with_guardrails(
            job.owner_id,
            lambda: with_rate_limit(
                services.rate_limiter,
                job.owner_id,
                "crm_api",
                lambda: GuardedCall(data=None, model="gpt-a", input_units=10, cost_usd=0.01),
            ),
        )
        if not result.ok:
            raise JobHandlerError(result.error.value, retryable=False)

    dispatcher.register(JobKind.NORMALIZE, _normalize)
    dispatcher.register(JobKind.EXTRACT_CONTACTS, _reject)
"""


def _install_handlers(tmp_path: Path, monkeypatch) -> None:
    handlers_dir = tmp_path / "handlers"
    handlers_dir.mkdir()
    (handlers_dir / "crm_cli_handlers.py").write_text(_HANDLERS, "utf-8")
    monkeypatch.syspath_prepend(str(handlers_dir))
    monkeypatch.setenv("CRM_JOBS_HANDLER_MODULES", "crm_cli_handlers")


def _enqueue(runner: CliRunner, db_path: Path, *args: str) -> str:
    result = runner.invoke(
        crm_jobs,
        ["jobs", "enqueue", "--db-path", str(db_path), "--owner", "owner-1", *args],
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"job_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def test_cli_enqueue_process_and_inspect(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "cli.db"
    _install_handlers(tmp_path, monkeypatch)
    runner = CliRunner()

    for _ in range(3):
        _enqueue(runner, db_path, "--kind", "normalize", "--batch-id", "batch-1")
    rejected_id = _enqueue(
        runner,
        db_path,
        "--kind",
        "extract_contacts",
        "--payload",
        '{"mode": "single"}',
    )

    unconfigured = runner.invoke(crm_jobs, ["jobs", "process", "--db-path", str(db_path)])
    assert unconfigured.exit_code == 1

    monkeypatch.setenv("CRM_JOBS_TRIGGER_SECRET", "s3cret")
    wrong = runner.invoke(
        crm_jobs,
        ["jobs", "process", "--db-path", str(db_path), "--secret", "nope"],
    )
    assert wrong.exit_code == 1

    processed = runner.invoke(
        crm_jobs,
        ["jobs", "process", "--db-path", str(db_path), "--secret", "s3cret"],
    )
    assert processed.exit_code == 0, processed.output
    assert "processed=4 succeeded=3 failed=1 retried=0" in processed.output
    assert f"Job {rejected_id}: contact source gone" in processed.output

    failed = runner.invoke(
        crm_jobs,
        ["jobs", "list", "--db-path", str(db_path), "--status", "failed"],
    )
    assert failed.exit_code == 0
    assert "Jobs: 1" in failed.output
    assert rejected_id in failed.output

    inspect = runner.invoke(crm_jobs, ["jobs", "inspect", "--db-path", str(db_path), rejected_id])
    assert inspect.exit_code == 0
    assert "Status: failed" in inspect.output
    assert "Error: contact source gone" in inspect.output
    assert 'Payload: {"mode": "single"}' in inspect.output

    missing = runner.invoke(crm_jobs, ["jobs", "inspect", "--db-path", str(db_path), "nope"])
    assert "Job not found: nope" in missing.output

    batch = runner.invoke(crm_jobs, ["jobs", "batch-status", "--db-path", str(db_path), "batch-1"])
    assert batch.exit_code == 0
    assert (
        "Batch batch-1: total=3 queued=0 in_progress=0 succeeded=3 failed=0 canceled=0"
        in batch.output
    )


def test_cli_retry_cancel_and_stats(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "cli.db"
    _install_handlers(tmp_path, monkeypatch)
    monkeypatch.setenv("CRM_JOBS_TRIGGER_SECRET", "s3cret")
    runner = CliRunner()

    rejected_id = _enqueue(runner, db_path, "--kind", "extract_contacts", "--max-attempts", "2")
    runner.invoke(crm_jobs, ["jobs", "process", "--db-path", str(db_path), "--secret", "s3cret"])

    retried = runner.invoke(crm_jobs, ["jobs", "retry", "--db-path", str(db_path), rejected_id])
    assert retried.exit_code == 0, retried.output
    assert f"Job re-queued: {rejected_id} attempts=1/2" in retried.output

    not_retryable = runner.invoke(
        crm_jobs,
        ["jobs", "retry", "--db-path", str(db_path), rejected_id],
    )
    assert not_retryable.exit_code == 1

    for _ in range(2):
        _enqueue(runner, db_path, "--kind", "normalize", "--batch-id", "batch-2")
    canceled = runner.invoke(
        crm_jobs,
        ["jobs", "cancel-batch", "--db-path", str(db_path), "batch-2", "--owner", "owner-1"],
    )
    assert canceled.exit_code == 0
    assert "Batch batch-2: canceled=2" in canceled.output

    stats = runner.invoke(crm_jobs, ["jobs", "stats", "--db-path", str(db_path)])
    assert stats.exit_code == 0
    assert "queued=1" in stats.output
    assert "canceled=2" in stats.output
    assert "Stuck jobs (claimed > 600s ago): 0" in stats.output

    recovered = runner.invoke(crm_jobs, ["jobs", "recover-stale", "--db-path", str(db_path)])
    assert recovered.exit_code == 0
    assert "Stale jobs recovered: 0" in recovered.output

    loop = runner.invoke(
        crm_jobs,
        [
            "jobs",
            "run",
            "--db-path",
            str(db_path),
            "--interval",
            "0",
            "--max-batches",
            "1",
        ],
    )
    assert loop.exit_code == 0, loop.output
    assert "Runner summary: processed=1 succeeded=0 failed=1" in loop.output

    repository = JobRepository(db_path)
    job = repository.get_job(rejected_id)
    repository.close()
    assert job is not None
    assert job.status == JobStatus.FAILED
    assert job.attempts == 2


def test_cli_handlers_get_configured_call_protection(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "cli.db"
    _install_handlers(tmp_path, monkeypatch)
    monkeypatch.setenv("CRM_JOBS_TRIGGER_SECRET", "s3cret")
    monkeypatch.setenv("CRM_JOBS_GUARD_MONTHLY_CREDITS", "2")
    runner = CliRunner()
    for _ in range(3):
        _enqueue(runner, db_path, "--kind", "normalize")

    processed = runner.invoke(
        crm_jobs,
        ["jobs", "process", "--db-path", str(db_path), "--secret", "s3cret"],
    )
    usage = runner.invoke(
        crm_jobs,
        ["usage", "report", "--db-path", str(db_path), "--format", "json"],
    )

    assert processed.exit_code == 0, processed.output
    assert "processed=3 succeeded=2 failed=1 retried=0" in processed.output
    assert "RATE_LIMITED_MONTHLY" in processed.output
    assert usage.exit_code == 0, usage.output
    (row,) = json.loads(usage.output)["usage"]
    assert row["owner_id"] == "owner-1"
    assert row["calls"] == 2
    assert row["credits"] == 2


def test_cli_enqueue_rejects_invalid_payload(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    bad_json = runner.invoke(
        crm_jobs,
        [
            "jobs",
            "enqueue",
            "--db-path",
            str(db_path),
            "--owner",
            "owner-1",
            "--kind",
            "normalize",
            "--payload",
            "{not json",
        ],
    )
    bad_field = runner.invoke(
        crm_jobs,
        [
            "jobs",
            "enqueue",
            "--db-path",
            str(db_path),
            "--owner",
            "owner-1",
            "--kind",
            "extract_contacts",
            "--payload",
            '{"mode": "all"}',
        ],
    )
    too_deep = runner.invoke(
        crm_jobs,
        [
            "jobs",
            "enqueue",
            "--db-path",
            str(db_path),
            "--owner",
            "owner-1",
            "--kind",
            "normalize",
            "--payload",
            '{"n": ' * 5000 + "1" + "}" * 5000,
        ],
    )

    assert bad_json.exit_code == 1
    assert bad_field.exit_code == 1
    assert too_deep.exit_code == 1
    repository = JobRepository(db_path)
    repository.init_schema()
    assert repository.list_jobs() == []
    repository.close()


def test_cli_usage_report(tmp_path: Path) -> None:
    db_path = tmp_path / "usage.db"
    repository = JobRepository(db_path)
    repository.init_schema()
    ledger = SqlUsageLedger(repository.engine)
    for cost in (0.01, 0.02):
        ledger.append(
            UsageRecord(
                owner_id="owner-1",
                model="gpt-a",
                input_units=100,
                output_units=10,
                cost_usd=cost,
                credits=1,
                created_at=utc_now(),
            ),
        )
    repository.close()
    runner = CliRunner()

    table = runner.invoke(crm_jobs, ["usage", "report", "--db-path", str(db_path)])
    as_json = runner.invoke(
        crm_jobs,
        ["usage", "report", "--db-path", str(db_path), "--format", "json"],
    )

    assert table.exit_code == 0
    assert "Usage (window=24h): 1 owner/model groups" in table.output
    assert "calls=2" in table.output
    payload = json.loads(as_json.output)
    assert payload["window_hours"] == 24
    assert payload["usage"][0]["cost_usd"] == 0.03
    assert payload["usage"][0]["credits"] == 2


def test_cli_version() -> None:
    result = CliRunner().invoke(crm_jobs, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output
