"""Provider wrapping the p4d init script, server binary and p4 client."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from ..commands import CommandError, CommandResult, CommandRunner
from ..layout import InstanceLayout


class P4dError(RuntimeError):
    """Raised when a required p4d or p4 invocation fails."""


@dataclass(slots=True)
class P4dProvider:
    """Issue server lifecycle and administration commands for one instance.

    Every method returns a :class:`CommandResult`; callers decide whether a
    non-zero exit is fatal. Methods taking ``check=True`` raise
    :class:`P4dError` instead.
    """

    layout: InstanceLayout
    runner: CommandRunner
    p4port: str
    admin_user: str = "perforce"
    service_user: str = "perforce"
    password: str | None = field(default=None, repr=False)

    # ------------------------------------------------------------------
    # Lifecycle (init script)
    def init(
        self, action: str, *, check: bool = False, timeout: float | None = None
    ) -> CommandResult:
        """Run ``p4d_<id>_init <action>``, raising :class:`P4dError` past *timeout*."""
        return self._run(
            [self.layout.init_script, action],
            check=check,
            timeout=timeout,
            label=f"p4d_{self.layout.instance}_init {action}",
        )

    # ------------------------------------------------------------------
    # Server binary operations (run as the service account)
    def enable_unicode(self, *, check: bool = True) -> CommandResult:
        """Switch the metadata to unicode mode (``p4d -xi``)."""
        return self._run(
            [self.layout.control_script, "-r", self.layout.p4root, "-xi"],
            as_user=self.service_user,
            check=check,
            label="p4d -xi",
        )

    def generate_certificate(self, ssl_dir: Path, *, check: bool = True) -> CommandResult:
        """Generate a self-signed key pair into *ssl_dir* (``p4d -Gc``)."""
        return self._run(
            [self.layout.control_script, "-r", self.layout.p4root, "-Gc"],
            as_user=self.service_user,
            env={"P4SSLDIR": str(ssl_dir)},
            check=check,
            label="p4d -Gc",
        )

    # ------------------------------------------------------------------
    # Client operations
    def trust(self, *, check: bool = False) -> CommandResult:
        """Accept the server's TLS fingerprint for this host."""
        return self.p4(["trust", "-y", "-f"], check=check)

    def ping(self, *, check: bool = False) -> CommandResult:
        """Verify a direct connection to the server."""
        return self.p4(["-s", "info", "-s"], check=check)

    def info(self) -> dict[str, str]:
        """Return tagged ``p4 info`` fields, or an empty mapping on failure."""
        try:
            result = self.p4(["-ztag", "info", "-s"])
        except P4dError:
            return {}
        if not result.ok:
            return {}
        return parse_ztag(result.stdout)

    def server_version(self) -> str | None:
        """Return the server's ``serverVersion``, or ``None`` when unreachable."""
        return self.info().get("serverVersion")

    def configure_set(self, key: str, value: str, *, check: bool = False) -> CommandResult:
        """Set configurable *key* to *value*."""
        return self.p4(["configure", "set", f"{key}={value}"], check=check)

    def configure_show(self, key: str) -> str | None:
        """Return the value of configurable *key*, or ``None`` when unset."""
        result = self.p4(["-ztag", "configure", "show", key])
        if not result.ok:
            return None
        return parse_ztag(result.stdout).get("Value")

    def load_typemap(self, path: Path, *, check: bool = False) -> CommandResult:
        """Load the typemap table from *path*."""
        return self._load_table("typemap", path, check=check)

    def load_protections(self, path: Path, *, check: bool = False) -> CommandResult:
        """Load the protections table from *path*."""
        return self._load_table("protect", path, check=check)

    def set_password(self, user: str, password: str, *, check: bool = False) -> CommandResult:
        """Set the password for *user* non-interactively."""
        result = self.p4(["passwd", "-P", password, user], check=check)
        self.password = password
        return result

    def p4(
        self,
        args: list[str],
        *,
        input_text: str | None = None,
        check: bool = False,
    ) -> CommandResult:
        """Run the instance's p4 client against the local server."""
        command: list[str | os.PathLike[str]] = [
            self.layout.client_bin,
            "-p",
            self.p4port,
            "-u",
            self.admin_user,
            *args,
        ]
        env = {
            "P4TICKETS": str(self.layout.tickets_file),
            "P4TRUST": str(self.layout.trust_file),
        }
        if self.password:
            env["P4PASSWD"] = self.password
        label = "p4 " + " ".join(arg for arg in args if not arg.startswith("-")).strip()
        if args[:1] == ["passwd"]:
            label = "p4 passwd"
        return self._run(command, input_text=input_text, env=env, check=check, label=label)

    # ------------------------------------------------------------------
    def _load_table(self, table: str, path: Path, *, check: bool) -> CommandResult:
        try:
            spec = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise P4dError(f"Cannot read {table} definition {path}: {exc}") from exc
        return self.p4([table, "-i"], input_text=spec, check=check)

    def _run(
        self,
        args: list[str | os.PathLike[str]],
        *,
        label: str,
        check: bool,
        as_user: str | None = None,
        env: dict[str, str] | None = None,
        input_text: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        try:
            result = self.runner.run(
                args,
                as_user=as_user,
                env=env,
                input_text=input_text,
                timeout=timeout,
            )
        except CommandError as exc:
            raise P4dError(str(exc)) from exc
        if check and not result.ok:
            raise P4dError(f"{label} failed (exit {result.returncode}): {result.summary()}")
        return result


def parse_ztag(output: str) -> dict[str, str]:
    """Parse ``p4 -ztag`` output (``... key value`` lines) into a mapping."""
    fields: dict[str, str] = {}
    for line in output.splitlines():
        if not line.startswith("... "):
            continue
        key, _, value = line[4:].partition(" ")
        if key and key not in fields:
            fields[key] = value.strip()
    return fields


__all__ = ["P4dError", "P4dProvider", "parse_ztag"]
