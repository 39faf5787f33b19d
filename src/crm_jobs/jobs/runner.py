"""Sequential batch runner for queued jobs."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import timedelta

from crm_jobs.jobs.dispatcher import JobDispatcher
from crm_jobs.jobs.models import JobHandlerError, JobStatus, JobView, RunSummary
from crm_jobs.jobs.repository import JobRepository

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_JOB_TIMEOUT_SECONDS = 300.0
TIMEOUT_ERROR = "timeout"


class JobRunner:
    """Claims a batch and runs its jobs one after another.

    Retries are not delayed here: a requeued job becomes eligible again on the
    next ``run_once`` call.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        dispatcher: JobDispatcher,
        runner_id: str,
        job_timeout_seconds: float = DEFAULT_JOB_TIMEOUT_SECONDS,
        stale_after_seconds: int = 0,
        default_batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.runner_id = runner_id
        self.job_timeout_seconds = job_timeout_seconds
        self.stale_after_seconds = stale_after_seconds
        self.default_batch_size = default_batch_size
        self._stop_requested = False

    def run_once(self, batch_size: int | None = None) -> RunSummary:
        """Claim and process one batch."""

        summary = RunSummary()
        if self.stale_after_seconds > 0:
            summary.recovered_stale = self.repository.recover_stale_jobs(
                stale_after=timedelta(seconds=self.stale_after_seconds),
            )

        jobs = self.repository.claim_batch(
            limit=batch_size or self.default_batch_size,
            runner_id=self.runner_id,
        )
        if not jobs:
            logger.debug("No queued jobs for runner %s", self.runner_id)
            return summary

        logger.info("Runner %s claimed %d jobs", self.runner_id, len(jobs))
        for job in jobs:
            self._process(job=job, summary=summary)
        return summary

    def run_loop(
        self,
        *,
        interval_seconds: float,
        max_batches: int | None = None,
        batch_size: int | None = None,
    ) -> RunSummary:
        """Call ``run_once`` repeatedly until stopped or ``max_batches`` reached."""

        aggregate = RunSummary()
        batches = 0
        with self._signal_handlers():
            while not self._stop_requested:
                if max_batches is not None and batches >= max_batches:
                    break
                aggregate.merge(self.run_once(batch_size))
                batches += 1
                if max_batches is not None and batches >= max_batches:
                    break
                self._sleep_with_stop(interval_seconds)
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _process(self, *, job: JobView, summary: RunSummary) -> None:
        summary.processed += 1
        started = time.monotonic()
        error: JobHandlerError | None = None
        timed_out = False
        try:
            timed_out = not self._run_with_timeout(job)
        except JobHandlerError as handler_error:
            error = handler_error
        except Exception as unexpected:  # noqa: BLE001
            error = JobHandlerError(str(unexpected) or type(unexpected).__name__, retryable=True)

        if timed_out:
            summary.timeouts += 1
            error = JobHandlerError(TIMEOUT_ERROR, retryable=True)

        if error is None:
            outcome = "succeeded"
            if self.repository.mark_succeeded(job.job_id, claim_token=job.claim_token):
                summary.succeeded += 1
            else:
                outcome = "claim_lost"
                summary.errors.append(f"Job {job.job_id}: claim lost before completion")
        else:
            summary.failed += 1
            summary.errors.append(f"Job {job.job_id}: {error.message}")
            status = self.repository.mark_failed(
                job.job_id,
                error=error.message,
                retryable=error.retryable,
                claim_token=job.claim_token,
            )
            if status is JobStatus.QUEUED:
                summary.retried += 1
                outcome = "retry_scheduled"
            elif status is JobStatus.FAILED:
                outcome = "failed"
            else:
                outcome = "claim_lost"

        duration_ms = int((time.monotonic() - started) * 1000)
        log = logger.warning if error is not None else logger.info
        log(
            "Job %s kind=%s outcome=%s duration_ms=%d",
            job.job_id,
            job.kind,
            outcome,
            duration_ms,
            extra={
                "job_id": job.job_id,
                "kind": job.kind,
                "owner_id": job.owner_id,
                "outcome": outcome,
                "duration_ms": duration_ms,
                "attempts": job.attempts + (1 if error is not None else 0),
                "error": error.message if error is not None else None,
            },
        )

    def _run_with_timeout(self, job: JobView) -> bool:
        """Dispatch ``job`` on a worker thread; False when it ran out of time.

        A handler that overruns keeps running on its abandoned thread, so
        handlers must tolerate being executed again by a later attempt.
        """

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"job-{job.job_id[:8]}")
        future = executor.submit(self.dispatcher.dispatch, job)
        timed_out = False
        try:
            future.result(timeout=self.job_timeout_seconds)
        except TimeoutError:
            # A handler may raise TimeoutError itself; only an unfinished future is ours.
            if future.done():
                raise
            timed_out = True
            return False
        finally:
            executor.shutdown(wait=not timed_out, cancel_futures=timed_out)
        return True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            logger.info("Runner %s received %s, stopping", self.runner_id, signal.Signals(signum).name)
            self.request_stop()

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return

        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
