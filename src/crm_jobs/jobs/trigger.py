"""Authenticated "process next batch" entry point for external schedulers."""

from __future__ import annotations

import hmac
import logging

from crm_jobs.jobs.models import RunSummary
from crm_jobs.jobs.runner import JobRunner

logger = logging.getLogger(__name__)


class TriggerAuthError(PermissionError):
    """Trigger secret missing, unconfigured or wrong."""


class BatchTrigger:
    """Runs one batch per authenticated call.

    Schedulers (cron, a hosted job scheduler, an HTTP endpoint) call
    ``process_next_batch`` on their own interval; that interval is what
    spaces out retries.
    """

    def __init__(
        self,
        *,
        runner: JobRunner,
        secret: str | None,
        default_batch_size: int = 10,
        max_batch_size: int = 50,
    ) -> None:
        self.runner = runner
        self._secret = secret
        self.default_batch_size = default_batch_size
        self.max_batch_size = max_batch_size

    def process_next_batch(self, secret: str | None, batch_size: int | None = None) -> RunSummary:
        if not self._secret:
            logger.error("Trigger called but no trigger secret is configured")
            raise TriggerAuthError("Trigger secret is not configured.")
        if secret is None or not hmac.compare_digest(
            secret.encode("utf-8"),
            self._secret.encode("utf-8"),
        ):
            logger.warning("Rejected trigger call with invalid secret")
            raise TriggerAuthError("Invalid trigger secret.")

        size = batch_size if batch_size is not None else self.default_batch_size
        size = max(1, min(size, self.max_batch_size))
        summary = self.runner.run_once(size)
        logger.info(
            "Trigger batch done: processed=%d succeeded=%d failed=%d retried=%d",
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.retried,
        )
        return summary
