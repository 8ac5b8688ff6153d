"""Structured operation logging for helixctl.

Every top-level operation (provisioning, TLS setup, a backup run...) is
recorded as one JSON line in ``<log_dir>/operations.jsonl``. While the
operation runs, each step is echoed to the console as a timestamped,
human-readable line so container logs show progress as it happens.

The logger never raises because of its own I/O: when the log directory or file
cannot be written it disables the JSON sink and keeps echoing to the console.
"""
from __future__ import annotations

import json
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import cast

from rich.console import Console
from rich.panel import Panel

REDACTED = "********"

_STEP_STYLES = {
    "success": "green",
    "info": "cyan",
    "skipped": "dim",
    "warning": "yellow",
    "error": "red",
    "critical": "bold red",
}


def _timestamp() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def _sanitise(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def _redact(value: object, secrets: Iterable[str]) -> object:
    tokens = [secret for secret in secrets if secret]
    if not tokens:
        return value
    if isinstance(value, str):
        for token in tokens:
            value = value.replace(token, REDACTED)
        return value
    if isinstance(value, dict):
        return {key: _redact(item, tokens) for key, item in value.items()}
    if isinstance(value, list):
        return [_redact(item, tokens) for item in value]
    return value


class OperationScope:
    """Collects steps and the final result of one logged operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        name: str,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
        secrets: Iterable[str] = (),
    ) -> None:
        self._logger = logger
        self.name = name
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None
        self._secrets: list[str] = [secret for secret in secrets if secret]
        self._started = time.monotonic()
        self.started_at = _timestamp()

    def add_secret(self, value: str) -> None:
        """Register *value* for redaction from the persisted record."""
        if value and value not in self._secrets:
            self._secrets.append(value)

    def add_step(self, step_id: str, *, status: str = "success", detail: object = None) -> None:
        """Record a step and echo it to the console."""
        entry: dict[str, object] = {"id": step_id, "status": status, "at": _timestamp()}
        if detail is not None:
            entry["detail"] = _sanitise(detail)
        self.steps.append(entry)
        self._logger.echo_step(step_id, status, detail, secrets=self._secrets)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful result for the operation."""
        self._set_result("ok", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a result that completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=list(warnings) if warnings is not None else [message],
            errors=list(errors) if errors is not None else None,
            changed=changed,
            backups=list(backups) if backups is not None else None,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        warnings: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed result for the operation."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            warnings=list(warnings) if warnings is not None else None,
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        changed: int | None = None,
        backups: list[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if warnings is not None:
            result["warnings"] = warnings
        if errors is not None:
            result["errors"] = errors
        if changed is not None:
            result["changed"] = changed
        if backups is not None:
            result["backups"] = backups
        if rc is not None:
            result["rc"] = rc
        if context is not None:
            result["context"] = {str(key): str(value) for key, value in context.items()}
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record with secrets redacted."""
        record: dict[str, object] = {
            "operation": self.name,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "started_at": self.started_at,
            "finished_at": _timestamp(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "steps": self.steps,
            "result": self.result or {"status": "ok", "message": "completed"},
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return cast(dict[str, object], _redact(record, self._secrets))


class StructuredLogger:
    """Write operation records as JSON lines and echo steps to the console."""

    def __init__(self, log_dir: Path, *, console: Console | None = None) -> None:
        self.log_dir = log_dir
        self.console = console or Console(highlight=False)
        self._operations_log_path = log_dir / "operations.jsonl"
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
        secrets: Iterable[str] = (),
    ) -> Iterator[OperationScope]:
        """Context manager yielding an :class:`OperationScope` for *name*."""
        scope = OperationScope(self, name, args, target, secrets)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or exc.__class__.__name__)
            raise
        finally:
            self._write(scope.to_record())

    def echo(self, message: str, *, style: str | None = None) -> None:
        """Print a timestamped line to the console."""
        self.console.print(f"[{_timestamp()}] {message}", style=style, markup=False)

    def echo_step(
        self,
        step_id: str,
        status: str,
        detail: object,
        *,
        secrets: Iterable[str] = (),
    ) -> None:
        """Print one step line to the console."""
        line = f"{step_id} [{status}]"
        if detail is not None:
            line = f"{line} {detail}"
        redacted = _redact(line, list(secrets))
        self.echo(str(redacted), style=_STEP_STYLES.get(status))

    def banner(self, title: str, body: str, *, ok: bool) -> None:
        """Render a pass/fail banner at the end of a run."""
        style = "green" if ok else "red"
        self.console.print(Panel(body, title=title, border_style=style, expand=False))

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True))
                handle.write("\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "REDACTED"]
