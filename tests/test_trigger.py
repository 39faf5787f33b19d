from __future__ import annotations

import allure
import pytest

from crm_jobs.jobs.dispatcher import JobDispatcher
from crm_jobs.jobs.models import JobKind, JobStatus
from crm_jobs.jobs.repository import JobRepository
from crm_jobs.jobs.runner import JobRunner
from crm_jobs.jobs.trigger import BatchTrigger, TriggerAuthError

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Batch Trigger"),
]


def _trigger(repository: JobRepository, secret: str | None, **kwargs: int) -> BatchTrigger:
    dispatcher = JobDispatcher()
    dispatcher.register(JobKind.NORMALIZE, lambda job: None)
    runner = JobRunner(repository=repository, dispatcher=dispatcher, runner_id="trigger-test")
    return BatchTrigger(runner=runner, secret=secret, **kwargs)


@pytest.mark.parametrize("presented", [None, "", "wrong", "s3cret "])
def test_wrong_secret_does_no_work(repository: JobRepository, presented: str | None) -> None:
    job_id = repository.enqueue(owner_id="owner-1", kind=JobKind.NORMALIZE).job_id
    trigger = _trigger(repository, "s3cret")

    with pytest.raises(TriggerAuthError, match="Invalid trigger secret"):
        trigger.process_next_batch(presented)

    job = repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert job.attempts == 0


def test_unconfigured_secret_rejects_every_call(repository: JobRepository) -> None:
    trigger = _trigger(repository, None)

    with pytest.raises(TriggerAuthError, match="not configured"):
        trigger.process_next_batch("anything")


def test_valid_secret_processes_one_clamped_batch(repository: JobRepository) -> None:
    for _ in range(7):
        repository.enqueue(owner_id="owner-1", kind=JobKind.NORMALIZE)
    trigger = _trigger(repository, "s3cret", default_batch_size=2, max_batch_size=4)

    default = trigger.process_next_batch("s3cret")
    clamped = trigger.process_next_batch("s3cret", batch_size=100)
    floor = trigger.process_next_batch("s3cret", batch_size=0)

    assert default.processed == 2
    assert clamped.processed == 4
    assert floor.processed == 1
    assert repository.count_by_status()[JobStatus.SUCCEEDED] == 7
