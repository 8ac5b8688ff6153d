"""Typed wrapper around external command execution."""
from __future__ import annotations

import os
import pwd
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path


class CommandError(RuntimeError):
    """Raised when a command cannot be executed or fails under ``check=True``."""

    def __init__(self, message: str, result: CommandResult | None = None) -> None:
        super().__init__(message)
        self.result = result


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Structured outcome of one external invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """True when the command exited with status 0."""
        return self.returncode == 0

    def summary(self) -> str:
        """Return the most useful single line of output for log messages."""
        for stream in (self.stderr, self.stdout):
            text = stream.strip()
            if text:
                return text.splitlines()[-1]
        return "no output"


@dataclass(slots=True)
class CommandRunner:
    """Run external commands, optionally as the service account.

    When ``as_user`` is given and differs from the effective user, the command
    is wrapped with ``runuser -u <user> --``. Running as the same account (or
    as root when root is requested) executes directly.
    """

    base_env: Mapping[str, str] = field(default_factory=dict)
    runuser_bin: str = "runuser"

    def run(
        self,
        args: Sequence[str | os.PathLike[str]],
        *,
        as_user: str | None = None,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        check: bool = False,
        error_prefix: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Execute *args* and return a :class:`CommandResult`.

        A *timeout* kills the command once it expires and raises
        :class:`CommandError`.
        """
        command = [str(part) for part in args]
        if as_user is not None and self._needs_switch(as_user):
            command = [self.runuser_bin, "-u", as_user, "--", *command]

        merged_env: dict[str, str] | None = None
        if self.base_env or env:
            merged_env = dict(os.environ)
            merged_env.update(self.base_env)
            if env:
                merged_env.update(env)

        prefix = error_prefix or " ".join(command[:2])
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                input=input_text,
                env=merged_env,
                cwd=str(cwd) if cwd is not None else None,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError(f"{prefix} timed out after {exc.timeout:g}s") from exc
        except FileNotFoundError as exc:
            raise CommandError(f"{command[0]} not found: {exc}") from exc
        except OSError as exc:
            raise CommandError(f"{prefix} could not be executed: {exc}") from exc

        result = CommandResult(
            args=tuple(command),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if check and not result.ok:
            raise CommandError(
                f"{prefix} failed (exit {result.returncode}): {result.summary()}",
                result,
            )
        return result

    def _needs_switch(self, user: str) -> bool:
        try:
            target_uid = pwd.getpwnam(user).pw_uid
        except KeyError as exc:
            raise CommandError(f"Service account '{user}' does not exist.") from exc
        return os.geteuid() != target_uid


__all__ = ["CommandError", "CommandResult", "CommandRunner"]
