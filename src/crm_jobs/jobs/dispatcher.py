"""Routes claimed jobs to the handler registered for their kind."""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Iterable
from enum import Enum

from crm_jobs.jobs.models import JobHandlerError, JobKind, JobView
from crm_jobs.jobs.payloads import PayloadValidationError, validate_payload
from crm_jobs.jobs.services import HandlerServices

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobView], None]


class DispatchErrorCode(str, Enum):
    UNKNOWN_KIND = "UNKNOWN_KIND"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"


class DispatchError(JobHandlerError):
    """Job cannot be routed; never retried since the next attempt would fail the same way."""

    def __init__(self, code: DispatchErrorCode, message: str) -> None:
        super().__init__(message, retryable=False)
        self.code = code


class JobDispatcher:
    """Registry of one handler per job kind."""

    def __init__(self) -> None:
        self._handlers: dict[JobKind, JobHandler] = {}

    def register(self, kind: JobKind, handler: JobHandler) -> None:
        if not isinstance(kind, JobKind):
            raise ValueError(f"Unsupported job kind: {kind!r}")
        if kind in self._handlers:
            raise ValueError(f"Handler already registered for job kind {kind.value!r}")
        self._handlers[kind] = handler

    def registered_kinds(self) -> tuple[JobKind, ...]:
        return tuple(self._handlers)

    def dispatch(self, job: JobView) -> None:
        """Validate the job payload and invoke its handler.

        Handler exceptions propagate unchanged; the runner decides what they mean.
        """

        try:
            kind = JobKind(job.kind)
        except ValueError as error:
            raise DispatchError(
                DispatchErrorCode.UNKNOWN_KIND,
                f"Unknown job kind: {job.kind}",
            ) from error

        handler = self._handlers.get(kind)
        if handler is None:
            raise DispatchError(
                DispatchErrorCode.UNKNOWN_KIND,
                f"No handler registered for job kind: {kind.value}",
            )

        try:
            job.payload = validate_payload(kind, job.payload)
        except PayloadValidationError as error:
            raise DispatchError(DispatchErrorCode.INVALID_PAYLOAD, str(error)) from error

        logger.debug("Dispatching job %s kind=%s", job.job_id, kind.value)
        handler(job)


def load_handler_modules(
    dispatcher: JobDispatcher,
    modules: Iterable[str],
    services: HandlerServices,
) -> list[str]:
    """Import handler modules and let each one ``register(dispatcher, services)``.

    Returns the module names that were loaded.
    """

    loaded: list[str] = []
    for module_name in modules:
        name = module_name.strip()
        if not name:
            continue
        module = importlib.import_module(name)
        register = getattr(module, "register", None)
        if not callable(register):
            raise ValueError(
                f"Handler module {name!r} does not define register(dispatcher, services)",
            )
        register(dispatcher, services)
        loaded.append(name)
        logger.info("Loaded job handler module %s", name)
    return loaded
