"""Structured operation logging for ptunnelctl.

Every CLI operation appends one JSON document to ``operations.jsonl`` and a
single human-readable line to ``ptunnelctl.log`` inside the configured logs
directory. Logging is best effort: when the directory cannot be created or a
write fails the logger disables itself instead of interrupting provisioning.
"""
from __future__ import annotations

import json
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from . import __version__

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "ptunnelctl.log"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


class OperationScope:
    """Collect steps and the final result for a single operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger* for the operation named *command*."""
        self._logger = logger
        self.command = command
        self.op_id = secrets.token_hex(6)
        self._args = dict(args or {})
        self._target = dict(target or {})
        self._steps: list[dict[str, object]] = []
        self._result: dict[str, object] | None = None
        self._lock_wait_ms: int | None = None
        self._started = time.monotonic()
        self._started_at = _now_iso()

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = detail
        self._steps.append(step)

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the operation waited for its lock."""
        self._lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            backups=list(backups or []),
            rc=rc,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            errors=list(errors or [message]),
            rc=rc,
            context=context,
        )

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        backups: list[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
        }
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if backups:
            result["backups"] = list(backups)
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitise(dict(context))
        self._result = result

    def _finalise(self, exc: BaseException | None) -> dict[str, Any]:
        if self._result is None:
            if exc is None:
                self.success("Operation completed.")
            else:
                self.error(f"{type(exc).__name__}: {exc}")
        record: dict[str, Any] = {
            "op_id": self.op_id,
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "command": self.command,
            "args": _sanitise(self._args),
            "target": _sanitise(self._target),
            "context": {"ptunnelctl_version": __version__},
            "steps": list(self._steps),
            "result": self._result,
        }
        if self._lock_wait_ms is not None:
            record["lock_wait_ms"] = self._lock_wait_ms
        return record


class StructuredLogger:
    """Append operation records to the logs directory."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging when it is unusable."""
        self.logs_dir = logs_dir.expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG
        self._human_log_path = self.logs_dir / HUMAN_LOG
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return whether records are still being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            self._write(scope._finalise(exc))
            raise
        self._write(scope._finalise(None))

    def _write(self, record: Mapping[str, Any]) -> None:
        if not self._enabled:
            return
        result = record.get("result") or {}
        line = (
            f"{record.get('finished_at')} {result.get('status', 'unknown').upper()} "
            f"{record.get('command')}: {result.get('message', '')}"
        )
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
