"""Structured logging for hybridnode runs.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects the steps performed (one per aspect, credential configuration and
daemon lifecycle call) and appends a single JSON record to
``operations.jsonl`` when the block ends. Human-readable lines go to
``hybridnode.log`` through a logger owned by the :class:`StructuredLogger`
instance, so several runs can coexist in one process without sharing
handlers.

Logging never fails a run: if the log directory cannot be created or a write
fails, the logger disables itself and the command carries on.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from . import __version__

LOGGER = logging.getLogger(__name__)

HUMAN_FORMAT = "%(asctime)s %(levelname)s %(message)s"


class OperationScope:
    """Collects the outcome of one logged operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object],
        target: Mapping[str, object],
    ) -> None:
        """Bind the scope to *logger* for *command*."""
        self.op_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args)
        self.target = dict(target)
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._logger = logger
        self._timestamp = datetime.now(UTC).isoformat()
        self._started = time.monotonic()

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record a step performed as part of the operation."""
        self.steps.append({"name": name, "status": status, "detail": _sanitise(detail)})
        level = logging.INFO if status in {"success", "skipped", "started"} else logging.ERROR
        suffix = f" ({detail})" if detail else ""
        self._logger.emit(level, f"[{self.command}] {name}: {status}{suffix}")

    def info(self, message: str, **fields: object) -> None:
        """Write an informational line to the human log."""
        self._logger.emit(logging.INFO, _with_fields(f"[{self.command}] {message}", fields))

    def debug(self, message: str, **fields: object) -> None:
        """Write a debug line to the human log."""
        self._logger.emit(logging.DEBUG, _with_fields(f"[{self.command}] {message}", fields))

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=errors,
            warnings=warnings,
            rc=rc,
            context=context,
        )

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing the operation."""
        return {
            "op_id": self.op_id,
            "timestamp": self._timestamp,
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "steps": list(self.steps),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "result": self.result,
            "context": {"hybridnode_version": __version__, "pid": os.getpid()},
        }

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "rc": rc,
            "context": _sanitise(dict(context or {})),
        }
        level = logging.ERROR if status == "error" else logging.INFO
        self._logger.emit(level, f"[{self.command}] {status}: {message}")


class StructuredLogger:
    """Write operation records and human log lines under *log_dir*."""

    def __init__(
        self,
        log_dir: Path,
        *,
        operations_file: str = "operations.jsonl",
        human_file: str = "hybridnode.log",
    ) -> None:
        """Prepare the log directory and the per-instance human log handler."""
        self.log_dir = Path(log_dir)
        self._operations_log_path = self.log_dir / operations_file
        self._human_log_path = self.log_dir / human_file
        self._enabled = True
        self._handler: logging.Handler | None = None
        self._human = logging.getLogger(f"hybridnode.run.{uuid.uuid4().hex[:12]}")
        self._human.propagate = False
        self._human.setLevel(logging.DEBUG)

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._disable(f"cannot create log directory {self.log_dir}: {exc}")
            return

        try:
            handler = logging.FileHandler(self._human_log_path, encoding="utf-8")
        except OSError as exc:
            self._disable(f"cannot open {self._human_log_path}: {exc}")
            return
        handler.setFormatter(logging.Formatter(HUMAN_FORMAT))
        self._human.addHandler(handler)
        self._handler = handler

    @property
    def operations_log_path(self) -> Path:
        """Return the JSONL file receiving operation records."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run a block as a logged operation and persist its record."""
        scope = OperationScope(self, command, args=args or {}, target=target or {})
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                message = str(exc) or type(exc).__name__
                scope.error(message, errors=[message])
            raise
        else:
            if scope.result is None:
                scope.success("Completed.")
        finally:
            self._write(scope.to_record())

    def emit(self, level: int, message: str) -> None:
        """Write *message* to the human log and the module logger."""
        LOGGER.log(level, message)
        if self._enabled and self._handler is not None:
            self._human.log(level, message)

    def close(self) -> None:
        """Detach and close the human log handler."""
        if self._handler is None:
            return
        self._human.removeHandler(self._handler)
        self._handler.close()
        self._handler = None

    # ------------------------------------------------------------------
    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            self._disable(f"cannot write {self._operations_log_path}: {exc}")

    def _disable(self, reason: str) -> None:
        self._enabled = False
        LOGGER.warning("Structured logging disabled: %s", reason)


def _with_fields(message: str, fields: Mapping[str, object]) -> str:
    if not fields:
        return message
    rendered = " ".join(f"{key}={_sanitise(value)}" for key, value in sorted(fields.items()))
    return f"{message} {rendered}"


def _sanitise(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return _sanitise(value.value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        return [_sanitise(item) for item in items]
    return str(value)


__all__ = ["OperationScope", "StructuredLogger"]
