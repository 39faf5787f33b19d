from __future__ import annotations

import multiprocessing
import queue
import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session

from crm_jobs.jobs.models import JobCreate, JobKind, JobStatus
from crm_jobs.jobs.payloads import PayloadValidationError
from crm_jobs.jobs.repository import STALE_CLAIM_ERROR, JobRepository
from crm_jobs.storage.common import to_db_datetime, utc_now
from crm_jobs.storage.sqlmodel_models import JobRow

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Job Store"),
]


def _claim_in_process(  # pragma: no cover - executed in child process
    db_path: str,
    runner_id: str,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[tuple[str, list[str]]],
) -> None:
    repository = JobRepository(Path(db_path))
    try:
        start_event.wait(timeout=5)
        claimed: list[str] = []
        while True:
            jobs = repository.claim_batch(limit=3, runner_id=runner_id)
            if not jobs:
                break
            claimed.extend(job.job_id for job in jobs)
        result_queue.put((runner_id, claimed))
    finally:
        repository.close()


def _enqueue_many(repository: JobRepository, count: int, **kwargs: object) -> list[str]:
    return [
        repository.enqueue(owner_id="owner-1", kind=JobKind.NORMALIZE, **kwargs).job_id
        for _ in range(count)
    ]


def test_enqueue_persists_queued_job_with_event(repository: JobRepository) -> None:
    job = repository.enqueue(
        owner_id="owner-1",
        kind=JobKind.GOOGLE_GMAIL_SYNC,
        payload={"batch_id": "6f1c4f62-3c4e-4a43-9a53-2b8d1f7a9d10"},
        batch_id="batch-a",
    )

    assert job.status == JobStatus.QUEUED
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.kind == "google_gmail_sync"
    assert job.payload == {"batch_id": "6f1c4f62-3c4e-4a43-9a53-2b8d1f7a9d10"}

    details = repository.get_job_details(job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["enqueued"]
    assert details.events[0].status_to == JobStatus.QUEUED


def test_enqueue_rejects_invalid_payload_without_inserting(repository: JobRepository) -> None:
    with pytest.raises(PayloadValidationError, match="unexpected field"):
        repository.enqueue(owner_id="owner-1", kind=JobKind.EMBED, payload={"oops": 1})

    assert repository.list_jobs() == []


def test_enqueue_many_is_all_or_nothing(repository: JobRepository) -> None:
    with pytest.raises(PayloadValidationError):
        repository.enqueue_many(
            [
                JobCreate(owner_id="owner-1", kind=JobKind.NORMALIZE),
                JobCreate(owner_id="owner-1", kind=JobKind.EXTRACT_CONTACTS, payload={"mode": "x"}),
            ],
        )
    assert repository.list_jobs() == []

    created = repository.enqueue_many(
        [
            JobCreate(owner_id="owner-1", kind=JobKind.NORMALIZE, batch_id="b"),
            JobCreate(owner_id="owner-2", kind=JobKind.INSIGHT, batch_id="b"),
        ],
    )
    assert len(created) == 2
    assert repository.get_batch_status("b").queued == 2


def test_claim_batch_claims_oldest_first_and_never_touches_attempts(
    repository: JobRepository,
) -> None:
    job_ids = _enqueue_many(repository, 4)

    claimed = repository.claim_batch(limit=3, runner_id="runner-a")

    assert [job.job_id for job in claimed] == job_ids[:3]
    assert all(job.status == JobStatus.IN_PROGRESS for job in claimed)
    assert all(job.attempts == 0 for job in claimed)
    assert all(job.runner_id == "runner-a" for job in claimed)
    assert len({job.claim_token for job in claimed}) == 1
    assert claimed[0].claimed_at is not None

    remaining = repository.claim_batch(limit=10, runner_id="runner-b")
    assert [job.job_id for job in remaining] == job_ids[3:]
    assert repository.claim_batch(limit=10, runner_id="runner-c") == []


def test_claim_batch_with_non_positive_limit_claims_nothing(repository: JobRepository) -> None:
    _enqueue_many(repository, 2)

    assert repository.claim_batch(limit=0, runner_id="runner-a") == []
    assert repository.count_by_status()[JobStatus.QUEUED] == 2


def test_concurrent_claims_in_threads_never_overlap(db_path: Path) -> None:
    repository = JobRepository(db_path)
    repository.init_schema()
    job_ids = set(_enqueue_many(repository, 40))

    start_event = threading.Event()
    results: queue.Queue[list[str]] = queue.Queue()

    def _claim(runner_id: str) -> None:
        local = JobRepository(db_path)
        try:
            start_event.wait(timeout=2)
            claimed: list[str] = []
            while True:
                jobs = local.claim_batch(limit=4, runner_id=runner_id)
                if not jobs:
                    break
                claimed.extend(job.job_id for job in jobs)
            results.put(claimed)
        finally:
            local.close()

    threads = [
        threading.Thread(target=_claim, args=(f"runner-{index}",), daemon=True)
        for index in range(4)
    ]
    for thread in threads:
        thread.start()
    start_event.set()
    for thread in threads:
        thread.join(timeout=30)

    claimed_sets = [set(results.get_nowait()) for _ in threads]
    union: set[str] = set()
    for claimed in claimed_sets:
        assert union.isdisjoint(claimed)
        union |= claimed
    assert union == job_ids
    repository.close()


def test_concurrent_claims_across_processes_never_overlap(db_path: Path) -> None:
    repository = JobRepository(db_path)
    repository.init_schema()
    job_ids = set(_enqueue_many(repository, 24))
    repository.close()

    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    result_queue: multiprocessing.queues.Queue[tuple[str, list[str]]] = context.Queue()
    processes = [
        context.Process(
            target=_claim_in_process,
            args=(str(db_path), f"runner-{index}", start_event, result_queue),
        )
        for index in range(3)
    ]
    for process in processes:
        process.start()
    start_event.set()

    results = [result_queue.get(timeout=30) for _ in processes]
    for process in processes:
        process.join(timeout=30)
        assert process.exitcode == 0

    union: set[str] = set()
    for _, claimed in results:
        assert union.isdisjoint(claimed)
        union |= set(claimed)
    assert union == job_ids


def test_enqueue_claim_fail_claim_round_trip(repository: JobRepository) -> None:
    job_id = repository.enqueue(owner_id="owner-1", kind=JobKind.NORMALIZE).job_id

    first = repository.claim_batch(limit=1, runner_id="runner-a")
    status = repository.mark_failed(first[0].job_id, error="x", retryable=True)
    second = repository.claim_batch(limit=1, runner_id="runner-a")

    assert status == JobStatus.QUEUED
    assert [job.job_id for job in second] == [job_id]
    assert second[0].attempts == 1
    assert second[0].last_error == "x"


def test_always_retryable_failure_is_claimed_exactly_max_attempts_times(
    repository: JobRepository,
) -> None:
    job_id = repository.enqueue(owner_id="owner-1", kind=JobKind.NORMALIZE, max_attempts=3).job_id

    claims = 0
    statuses: list[JobStatus | None] = []
    while jobs := repository.claim_batch(limit=1, runner_id="runner-a"):
        claims += 1
        statuses.append(
            repository.mark_failed(
                jobs[0].job_id,
                error="upstream 503",
                retryable=True,
                claim_token=jobs[0].claim_token,
            ),
        )

    job = repository.get_job(job_id)
    assert claims == 3
    assert statuses == [JobStatus.QUEUED, JobStatus.QUEUED, JobStatus.FAILED]
    assert job is not None
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert job.last_error == "upstream 503"
    assert job.finished_at is not None


def test_non_retryable_failure_is_terminal_on_first_attempt(repository: JobRepository) -> None:
    repository.enqueue(owner_id="owner-1", kind=JobKind.NORMALIZE)
    job = repository.claim_batch(limit=1, runner_id="runner-a")[0]

    status = repository.mark_failed(job.job_id, error="bad input", retryable=False)

    assert status == JobStatus.FAILED
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.attempts == 1


def test_mark_outcomes_require_in_progress_and_matching_claim(repository: JobRepository) -> None:
    job_id = repository.enqueue(owner_id="owner-1", kind=JobKind.NORMALIZE).job_id

    assert repository.mark_succeeded(job_id) is False
    assert repository.mark_failed(job_id, error="x", retryable=True) is None

    claimed = repository.claim_batch(limit=1, runner_id="runner-a")[0]
    assert repository.mark_succeeded(job_id, claim_token="other-token") is False
    assert repository.mark_succeeded(job_id, claim_token=claimed.claim_token) is True
    assert repository.mark_failed(job_id, error="late", retryable=True) is None

    details = repository.get_job_details(job_id)
    assert details is not None
    assert details.job.status == JobStatus.SUCCEEDED
    assert [event.event_type for event in details.events] == ["enqueued", "claimed", "succeeded"]


def test_batch_status_and_owner_scoped_cancel(repository: JobRepository) -> None:
    for _ in range(3):
        repository.enqueue(owner_id="owner-1", kind=JobKind.NORMALIZE, batch_id="batch-1")
    repository.enqueue(owner_id="owner-2", kind=JobKind.NORMALIZE, batch_id="batch-1")
    in_flight = repository.claim_batch(limit=1, runner_id="runner-a")[0]

    assert repository.cancel_batch("batch-1", owner_id="someone-else") == 0
    canceled = repository.cancel_batch("batch-1", owner_id="owner-1")

    assert canceled == 2
    status = repository.get_batch_status("batch-1")
    assert status.as_dict() == {
        "queued": 1,
        "in_progress": 1,
        "succeeded": 0,
        "failed": 0,
        "canceled": 2,
    }
    assert status.total == 4
    assert repository.get_batch_status("batch-1", owner_id="owner-2").queued == 1
    # In-progress jobs finish normally after a cancel.
    assert repository.mark_succeeded(in_flight.job_id, claim_token=in_flight.claim_token)


def test_unknown_batch_has_zero_counts(repository: JobRepository) -> None:
    status = repository.get_batch_status("missing")
    assert status.total == 0


def test_recover_stale_jobs_requeues_old_claims(repository: JobRepository) -> None:
    stale_id, fresh_id = _enqueue_many(repository, 2)
    repository.claim_batch(limit=2, runner_id="runner-dead")
    with Session(repository.engine) as session:
        session.exec(
            sa_update(JobRow)
            .where(JobRow.job_id == stale_id)
            .values(claimed_at=to_db_datetime(utc_now() - timedelta(hours=1))),
        )
        session.commit()

    assert [job.job_id for job in repository.list_stuck_jobs(stale_after=timedelta(minutes=10))] == [
        stale_id,
    ]
    recovered = repository.recover_stale_jobs(stale_after=timedelta(minutes=10))

    assert recovered == 1
    stale = repository.get_job(stale_id)
    fresh = repository.get_job(fresh_id)
    assert stale is not None
    assert fresh is not None
    assert stale.status == JobStatus.QUEUED
    assert stale.attempts == 1
    assert stale.last_error is not None
    assert stale.last_error.startswith(STALE_CLAIM_ERROR)
    assert fresh.status == JobStatus.IN_PROGRESS

    details = repository.get_job_details(stale_id)
    assert details is not None
    assert details.events[-1].event_type == "stale_recovered"


def test_manual_retry_requeues_failed_job_and_extends_attempts(repository: JobRepository) -> None:
    job_id = repository.enqueue(owner_id="owner-1", kind=JobKind.NORMALIZE, max_attempts=1).job_id
    repository.claim_batch(limit=1, runner_id="runner-a")
    assert repository.mark_failed(job_id, error="boom", retryable=True) == JobStatus.FAILED

    retried = repository.retry_job(job_id)

    assert retried.status == JobStatus.QUEUED
    assert retried.attempts == 1
    assert retried.max_attempts == 2
    assert retried.finished_at is None
    assert [job.job_id for job in repository.claim_batch(limit=1, runner_id="runner-a")] == [job_id]


def test_manual_retry_rejects_active_and_missing_jobs(repository: JobRepository) -> None:
    job_id = repository.enqueue(owner_id="owner-1", kind=JobKind.NORMALIZE).job_id

    with pytest.raises(RuntimeError, match="Only failed/canceled"):
        repository.retry_job(job_id)
    with pytest.raises(RuntimeError, match="Job not found"):
        repository.retry_job("missing")


def test_list_jobs_filters_and_counts(repository: JobRepository) -> None:
    repository.enqueue(owner_id="owner-1", kind=JobKind.NORMALIZE)
    repository.enqueue(owner_id="owner-1", kind=JobKind.EMBED)
    repository.enqueue(owner_id="owner-2", kind=JobKind.EMBED)
    repository.claim_batch(limit=1, runner_id="runner-a")

    assert len(repository.list_jobs(owner_id="owner-1")) == 2
    assert len(repository.list_jobs(kind="embed")) == 2
    assert len(repository.list_jobs(status=JobStatus.IN_PROGRESS)) == 1
    assert len(repository.list_jobs(limit=1)) == 1

    counts = repository.count_by_status()
    assert counts[JobStatus.QUEUED] == 2
    assert counts[JobStatus.IN_PROGRESS] == 1
    assert counts[JobStatus.CANCELED] == 0
    assert repository.count_by_status(owner_id="owner-2")[JobStatus.QUEUED] == 1
