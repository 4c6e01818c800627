"""Structured operation logging for davsync commands.

Each CLI operation appends a single JSON record to ``operations.jsonl`` in the
configured logs directory. Records carry the operation name, arguments, the
steps taken and a result block. The logger never raises for I/O problems: if
the directory cannot be created or a write fails it disables itself and the
command carries on.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _as_list(values: Iterable[object] | None) -> list[str] | None:
    if values is None:
        return None
    return [str(item) for item in values]


@dataclass
class OperationScope:
    """Mutable record for a single in-flight operation."""

    logger: StructuredLogger
    name: str
    args: Mapping[str, object]
    target: Mapping[str, object] | None
    started_at: str = field(default_factory=_timestamp)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    _start: float = field(default_factory=time.perf_counter)

    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Record an intermediate step of the operation."""
        step: dict[str, object] = {"name": name, "status": status, "at": _timestamp()}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)
        LOGGER.debug("%s: step %s (%s) %s", self.name, name, status, detail or "")

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=_as_list(warnings),
            errors=_as_list(errors),
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=_as_list(errors) or [message],
            warnings=_as_list(warnings),
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if changed is not None:
            result["changed"] = changed
        if warnings:
            result["warnings"] = warnings
        if errors:
            result["errors"] = errors
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        result = self.result or {
            "status": "error",
            "message": "Operation ended without recording a result.",
        }
        return {
            "id": uuid.uuid4().hex,
            "op": self.name,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target) if self.target is not None else None,
            "started_at": self.started_at,
            "finished_at": _timestamp(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "steps": self.steps,
            "result": result,
        }


class StructuredLogger:
    """Append-only JSON-lines writer for operation records."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the logs directory, disabling the logger on failure."""
        self._logs_dir = logs_dir.expanduser()
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled, cannot create %s: %s", logs_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the JSON-lines file receiving operation records."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(logger=self, name=name, args=dict(args or {}), target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Operation aborted: {exc!r}")
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError as exc:
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
