"""Per-kind job payload validation.

Payloads are checked when a job is enqueued and again before dispatch, so a
row edited out of band can never reach a handler in a malformed state.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from crm_jobs.jobs.models import JobKind

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 1024 * 1024
MAX_NESTING_DEPTH = 10
MAX_STRING_LENGTH = 50_000
MAX_ARRAY_LENGTH = 1_000
MAX_BATCH_ITEMS = 500
EXTRACT_CONTACTS_MODES = ("single", "batch")


class PayloadValidationError(ValueError):
    """Payload does not satisfy the contract of its job kind."""

    def __init__(self, kind: str, problems: list[str]) -> None:
        super().__init__(f"Invalid payload for {kind}: {'; '.join(problems)}")
        self.kind = kind
        self.problems = problems


@dataclass(frozen=True, slots=True)
class FieldRule:
    """One optional payload field and its validator."""

    name: str
    check: Callable[[Any], str | None]


def validate_payload(kind: JobKind | str, payload: object) -> dict[str, Any]:
    """Validate ``payload`` for ``kind`` and return it as a plain dict."""

    kind_value = kind.value if isinstance(kind, JobKind) else str(kind)
    try:
        job_kind = JobKind(kind_value)
    except ValueError as error:
        raise PayloadValidationError(kind_value, [f"unknown job kind {kind_value!r}"]) from error

    if not isinstance(payload, Mapping):
        raise PayloadValidationError(kind_value, ["root: payload must be an object"])

    if _exceeds_depth(payload, MAX_NESTING_DEPTH):
        raise PayloadValidationError(
            kind_value,
            [f"root: nesting depth exceeds {MAX_NESTING_DEPTH}"],
        )

    try:
        serialized = json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError) as error:
        raise PayloadValidationError(kind_value, [f"root: not JSON serializable ({error})"]) from error

    size = len(serialized.encode("utf-8"))
    if size > MAX_PAYLOAD_BYTES:
        logger.warning(
            "Job payload exceeds size limit: kind=%s size=%d",
            kind_value,
            size,
        )
        raise PayloadValidationError(
            kind_value,
            [f"root: payload size {size // 1024}KB exceeds {MAX_PAYLOAD_BYTES // 1024}KB"],
        )

    problems = _generic_limits(payload, path="root")
    problems.extend(_check_fields(payload, _SCHEMAS[job_kind]))
    if problems:
        raise PayloadValidationError(kind_value, problems)
    return dict(payload)


def _check_fields(payload: Mapping[str, Any], rules: tuple[FieldRule, ...]) -> list[str]:
    allowed = {rule.name for rule in rules}
    problems = [f"{key}: unexpected field" for key in payload if key not in allowed]
    for rule in rules:
        if rule.name not in payload:
            continue
        problem = rule.check(payload[rule.name])
        if problem is not None:
            problems.append(f"{rule.name}: {problem}")
    return problems


def _generic_limits(value: object, *, path: str) -> list[str]:
    problems: list[str] = []
    if isinstance(value, str):
        if len(value) > MAX_STRING_LENGTH:
            problems.append(f"{path}: string longer than {MAX_STRING_LENGTH}")
    elif isinstance(value, Mapping):
        for key, item in value.items():
            problems.extend(_generic_limits(item, path=f"{path}.{key}"))
    elif isinstance(value, list):
        if len(value) > MAX_ARRAY_LENGTH:
            problems.append(f"{path}: array longer than {MAX_ARRAY_LENGTH}")
        for index, item in enumerate(value):
            problems.extend(_generic_limits(item, path=f"{path}[{index}]"))
    return problems


def _exceeds_depth(value: object, limit: int) -> bool:
    # Never descends more than one level past the limit.
    stack: list[tuple[object, int]] = [(value, 1)]
    while stack:
        item, level = stack.pop()
        if isinstance(item, Mapping):
            children = list(item.values())
        elif isinstance(item, list):
            children = item
        else:
            continue
        if level > limit:
            return True
        stack.extend((child, level + 1) for child in children)
    return False


def _uuid(value: Any) -> str | None:
    if not isinstance(value, str):
        return "must be a string"
    if len(value) > 50:
        return "too long"
    try:
        UUID(value)
    except ValueError:
        return "invalid uuid format"
    return None


def _mode(value: Any) -> str | None:
    if value not in EXTRACT_CONTACTS_MODES:
        return f"must be one of {', '.join(EXTRACT_CONTACTS_MODES)}"
    return None


def _max_items(value: Any) -> str | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return "must be an integer"
    if value < 1 or value > MAX_BATCH_ITEMS:
        return f"must be between 1 and {MAX_BATCH_ITEMS}"
    return None


_EMPTY: tuple[FieldRule, ...] = ()
_BATCH: tuple[FieldRule, ...] = (FieldRule("batch_id", _uuid),)
_EXTRACT_CONTACTS: tuple[FieldRule, ...] = (
    FieldRule("mode", _mode),
    FieldRule("interaction_id", _uuid),
    FieldRule("max_items", _max_items),
    FieldRule("batch_id", _uuid),
)

_SCHEMAS: dict[JobKind, tuple[FieldRule, ...]] = {
    JobKind.NORMALIZE: _EMPTY,
    JobKind.EMBED: _EMPTY,
    JobKind.INSIGHT: _EMPTY,
    JobKind.EXTRACT_CONTACTS: _EXTRACT_CONTACTS,
    JobKind.GOOGLE_GMAIL_SYNC: _BATCH,
    JobKind.GOOGLE_CALENDAR_SYNC: _BATCH,
    JobKind.NORMALIZE_GOOGLE_EMAIL: _BATCH,
    JobKind.NORMALIZE_GOOGLE_EVENT: _BATCH,
}
