"""Provider managing entries in the invoking user's crontab."""
from __future__ import annotations

from dataclasses import dataclass

from ..commands import CommandError, CommandRunner


class CronError(RuntimeError):
    """Raised when the crontab cannot be read or written."""


@dataclass(slots=True)
class CronProvider:
    """Install or replace single, tagged crontab lines."""

    runner: CommandRunner
    crontab_bin: str = "crontab"

    def entries(self) -> list[str]:
        """Return the current crontab lines (empty when no crontab exists)."""
        try:
            result = self.runner.run([self.crontab_bin, "-l"])
        except CommandError as exc:
            raise CronError(str(exc)) from exc
        if not result.ok:
            if "no crontab" in result.stderr.lower():
                return []
            raise CronError(f"crontab -l failed (exit {result.returncode}): {result.summary()}")
        return [line for line in result.stdout.splitlines() if line.strip()]

    def install(self, line: str, *, tag: str) -> bool:
        """Ensure exactly one line carrying *tag* exists and equals *line*.

        Returns ``True`` when the crontab was rewritten.
        """
        current = self.entries()
        kept = [entry for entry in current if tag not in entry]
        desired = [*kept, line.strip()]
        if desired == current:
            return False
        try:
            result = self.runner.run(
                [self.crontab_bin, "-"],
                input_text="\n".join(desired) + "\n",
            )
        except CommandError as exc:
            raise CronError(str(exc)) from exc
        if not result.ok:
            raise CronError(f"crontab - failed (exit {result.returncode}): {result.summary()}")
        return True


__all__ = ["CronError", "CronProvider"]
