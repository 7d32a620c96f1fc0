"""Structured operation log for sandbox lifecycle commands.

Each top-level operation (``server start``, ``server shutdown`` ...) appends a
single JSON object to ``operations.jsonl`` under the configured logs
directory. Logging never interferes with the operation itself: when the
directory cannot be created or a write fails, the logger disables itself and
later records are dropped silently.
"""
from __future__ import annotations

import json
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG_NAME = "operations.jsonl"


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Collects the result of a single logged operation."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set(
            "warning",
            message,
            warnings=list(warnings),
            errors=list(errors),
            changed=changed,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _set(
        self,
        status: str,
        message: str,
        *,
        context: Mapping[str, object] | None = None,
        **fields: object,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        for key, value in fields.items():
            if value is None:
                continue
            result[key] = _sanitize(value)
        if context:
            result["context"] = _sanitize(context)
        self.result = result


class StructuredLogger:
    """Append JSON operation records to ``operations.jsonl``."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger if that fails."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Log the operation executed inside the ``with`` block.

        An exception escaping the block is recorded as an error (unless the
        block already set a result) and then re-raised.
        """
        scope = OperationScope(command=command, args=dict(args or {}), target=dict(target or {}))
        started_at = datetime.now(UTC)
        started = time.perf_counter()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__, errors=[type(exc).__name__])
            raise
        finally:
            duration_ms = int((time.perf_counter() - started) * 1000)
            self._write(scope, started_at, duration_ms)

    def _write(self, scope: OperationScope, started_at: datetime, duration_ms: int) -> None:
        if not self._enabled:
            return
        record = {
            "timestamp": started_at.isoformat(),
            "operation_id": scope.operation_id,
            "command": scope.command,
            "pid": os.getpid(),
            "args": _sanitize(scope.args),
            "target": _sanitize(scope.target),
            "steps": scope.steps,
            "result": scope.result or {"status": "unknown", "message": ""},
            "duration_ms": duration_ms,
        }
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OPERATIONS_LOG_NAME", "OperationScope", "StructuredLogger"]
