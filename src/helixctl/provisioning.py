"""First-run provisioning and per-boot reconciliation of a p4d instance.

A new instance (no control script) goes through the destructive one-time
path: SDP directory creation from a rendered ``mkdirs.cfg``, unicode mode, TLS,
first start, SDP configurables, typemap and protections, the administrator
password, a first checkpoint and the security level. The setup-complete marker
is written as soon as the password and the security level are applied.

An instance that carries the marker is only reconciled: the critical
configurables are re-applied against a running server and the broker wrapper
is linked. Reconciliation never touches the password or the security level.

An instance with a control script but no marker had its first run interrupted
(or the marker was removed). It is resumed: the reconciliation steps plus the
table loads and a checkpoint. Directory creation, unicode mode and the
configure script are never repeated, and the password and security level are
applied only while the server still reports a lower security level.
"""
from __future__ import annotations

import re
import secrets
import shutil
import string
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

import yaml

from . import __version__
from .commands import CommandResult
from .config import AppConfig
from .layout import InstanceLayout
from .logging import OperationScope, StructuredLogger
from .process import ProcessController, ServerState
from .providers.p4d import P4dError, P4dProvider, parse_ztag
from .providers.sdp import SdpError, SdpProvider
from .templates import TemplateError, write_atomic
from .tls import TLSOutcome, TLSProvisioner, TLSProvisioningError

_SSL_PORT_PATTERN = re.compile(r"^\s*(?:export\s+)?P4PORT=[\"']?ssl:", re.MULTILINE)


class ProvisioningState(str, Enum):
    """States of the provisioning state machine."""

    UNPROVISIONED = "unprovisioned"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    REPROVISION_CHECK = "reprovision-check"


class ProvisioningError(RuntimeError):
    """Raised when a fatal provisioning step fails."""


@dataclass(slots=True)
class ProvisionReport:
    """Outcome of one provisioning or reconciliation run."""

    path: str
    state: ProvisioningState
    steps: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    generated_password: bool = False
    marker_written: bool = False
    tls: TLSOutcome | None = None

    @property
    def ok(self) -> bool:
        """True when no step recorded an error."""
        return not self.errors

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly view of the report."""
        return {
            "path": self.path,
            "state": self.state.value,
            "steps": list(self.steps),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "generated_password": self.generated_password,
            "marker_written": self.marker_written,
            "tls_fingerprint": self.tls.fingerprint if self.tls else None,
        }


def generate_password(length: int = 20) -> str:
    """Return a random password satisfying p4d's strong-password rules."""
    alphabet = string.ascii_letters + string.digits
    while True:
        candidate = "".join(secrets.choice(alphabet) for _ in range(length))
        if (
            any(char.islower() for char in candidate)
            and any(char.isupper() for char in candidate)
            and any(char.isdigit() for char in candidate)
        ):
            return candidate


def critical_configurables(config: AppConfig, layout: InstanceLayout) -> list[tuple[str, str]]:
    """Return the configurables re-applied on every provisioning path."""
    return [
        ("any:journalPrefix", layout.journal_prefix),
        ("any:server.depot.root", layout.depot_storage_root),
        ("monitor", "1"),
        ("any:description", config.server.description),
    ]


def _default_chown(path: Path, user: str, group: str | None) -> None:
    shutil.chown(path, user=user, group=group)


class ProvisioningStateMachine:
    """Decide between provisioning and reconciliation, then carry it out."""

    def __init__(
        self,
        config: AppConfig,
        layout: InstanceLayout,
        *,
        p4d: P4dProvider,
        sdp: SdpProvider,
        controller: ProcessController,
        tls: TLSProvisioner,
        logger: StructuredLogger,
        chown: Callable[[Path, str, str | None], None] = _default_chown,
        password_factory: Callable[[], str] = generate_password,
    ) -> None:
        self.config = config
        self.layout = layout
        self.p4d = p4d
        self.sdp = sdp
        self.controller = controller
        self.tls = tls
        self.logger = logger
        self._chown = chown
        self._password_factory = password_factory

    # ------------------------------------------------------------------
    def detect_state(self) -> ProvisioningState:
        """Classify the instance from its control script and setup-complete marker.

        ``PROVISIONING`` means the control script exists without a marker: a
        first run that stopped before completion.
        """
        if not self.layout.control_script.exists():
            return ProvisioningState.UNPROVISIONED
        if not self.layout.marker_path.exists():
            return ProvisioningState.PROVISIONING
        return ProvisioningState.PROVISIONED

    def ssl_requested(self) -> bool:
        """Return True when TLS is configured or the instance already uses ``ssl:``."""
        if self.config.server.ssl_enabled:
            return True
        try:
            text = self.layout.vars_file.read_text(encoding="utf-8")
        except OSError:
            return False
        return bool(_SSL_PORT_PATTERN.search(text))

    def run(self, op: OperationScope) -> ProvisionReport:
        """Provision or reconcile depending on the detected state."""
        state = self.detect_state()
        op.add_step("provision.detect", status="info", detail=state.value)
        if state is ProvisioningState.PROVISIONED:
            return self.reconcile(op)
        if state is ProvisioningState.PROVISIONING:
            return self.resume(op)
        return self.provision(op)

    # ------------------------------------------------------------------
    def ensure_sdp(self, op: OperationScope, report: ProvisionReport) -> None:
        """Unpack the bundled SDP when the depot volume does not carry it yet."""
        if self.sdp.is_installed():
            self._record(op, report, "sdp.installed", "info", self.sdp.installed_version())
            return
        provisioning = self.config.provisioning
        try:
            copied = self.sdp.install(provisioning.bundle_dir, provisioning.sdp_tarball)
        except (SdpError, OSError) as exc:
            raise ProvisioningError(f"SDP installation failed: {exc}") from exc
        self._record(op, report, "sdp.install", "success", f"{len(copied)} helix binaries copied")

    def provision(self, op: OperationScope) -> ProvisionReport:
        """Run the one-time provisioning sequence for a new instance."""
        report = ProvisionReport(path="provision", state=ProvisioningState.PROVISIONING)
        server = self.config.server
        ssl = self.ssl_requested()

        self.ensure_sdp(op, report)

        password = self._admin_password(op, report)

        try:
            path = self.sdp.write_mkdirs_config(
                self.config.provisioning.mkdirs_template, self._mkdirs_context(password)
            )
        except (TemplateError, OSError) as exc:
            raise ProvisioningError(f"Cannot render mkdirs configuration: {exc}") from exc
        self._record(op, report, "provision.mkdirs-config", "success", path)

        try:
            self.sdp.run_mkdirs()
        except SdpError as exc:
            raise ProvisioningError(str(exc)) from exc
        self._record(op, report, "provision.mkdirs", "success", self.layout.root)

        if server.unicode:
            try:
                self.p4d.enable_unicode(check=True)
            except P4dError as exc:
                raise ProvisioningError(f"Failed to enable unicode mode: {exc}") from exc
            self._record(op, report, "provision.unicode", "success", None)

        if ssl:
            self._ensure_tls(op, report)

        started = self._start_or_fail(op, report, "provision.start")
        try:
            self._configure_new_instance(op, report, password, ssl)
        except (P4dError, SdpError) as exc:
            if started:
                self.controller.stop(server.shutdown_timeout, op)
            raise ProvisioningError(str(exc)) from exc
        except BaseException:
            if started:
                self.controller.stop(server.shutdown_timeout, op)
            raise

        stop = self.controller.stop(server.shutdown_timeout, op)
        if not stop.stopped:
            raise ProvisioningError(
                f"Server did not stop after provisioning (PIDs {stop.remaining})."
            )
        self._record(op, report, "provision.stop", "success", None)

        self._post_setup(op, report)
        self._show_password(report, password)
        self._banner(report)
        return report

    def reconcile(self, op: OperationScope) -> ProvisionReport:
        """Idempotently re-apply critical configuration to a provisioned instance."""
        report = ProvisionReport(path="reconcile", state=ProvisioningState.REPROVISION_CHECK)
        with self._running_server(op, report, "reconcile", "Reconciliation"):
            pass
        self._post_setup(op, report)
        report.state = ProvisioningState.PROVISIONED
        self._banner(report)
        return report

    def resume(self, op: OperationScope) -> ProvisionReport:
        """Finish a first run that stopped before writing the setup-complete marker."""
        report = ProvisionReport(path="resume", state=ProvisioningState.PROVISIONING)
        password: str | None = None
        with self._running_server(op, report, "resume", "Resumed provisioning"):
            self._load_tables(op, report, "resume")
            level = self._security_level()
            if level is not None and level < self.config.server.security_level:
                password = self._admin_password(op, report)
                self._apply_secrets(op, report, password, "resume")
            else:
                if level is None:
                    detail = "security level could not be read"
                    status = "warning"
                    report.warnings.append(f"resume: {detail}")
                else:
                    detail = f"security level already {level}"
                    status = "info"
                self._record(
                    op,
                    report,
                    "resume.secrets",
                    status,
                    f"{detail}; password and security level left unchanged",
                )
                self._fix_client_state_ownership(op, report)
                checkpoint = self.sdp.live_checkpoint()
                self._check(op, report, "resume.checkpoint", checkpoint, fatal=False)
                self._complete(op, report, "resume")
        self._post_setup(op, report)
        if password is not None:
            self._show_password(report, password)
        self._banner(report)
        return report

    # ------------------------------------------------------------------
    @contextmanager
    def _running_server(
        self, op: OperationScope, report: ProvisionReport, prefix: str, title: str
    ) -> Iterator[None]:
        """Run the body against a live server, starting and stopping it when needed.

        SDP and TLS are ensured first; trust and the critical configurables are
        applied before the body, the broker wrapper is linked after it.
        """
        ssl = self.ssl_requested()
        self.ensure_sdp(op, report)
        if ssl:
            self._ensure_tls(op, report)

        need_stop = False
        if self.controller.status() is not ServerState.RUNNING:
            self._record(op, report, f"{prefix}.temporary-start", "info", None)
            need_stop = self._start_or_fail(op, report, f"{prefix}.start")

        try:
            if ssl:
                self._check(op, report, f"{prefix}.trust", self.p4d.trust(), fatal=False)
            self._apply_configurables(op, report, prefix)
            yield
            links = self.sdp.link_broker()
            if links:
                self._record(op, report, f"{prefix}.broker", "success", [str(p) for p in links])
        except (P4dError, SdpError, OSError) as exc:
            raise ProvisioningError(f"{title} failed: {exc}") from exc
        finally:
            if need_stop:
                stop = self.controller.stop(self.config.server.shutdown_timeout, op)
                if not stop.stopped:
                    raise ProvisioningError(
                        f"Server did not stop after {title.lower()} (PIDs {stop.remaining})."
                    )

    def _ensure_tls(self, op: OperationScope, report: ProvisionReport) -> None:
        try:
            report.tls = self.tls.ensure(True, op)
        except TLSProvisioningError as exc:
            raise ProvisioningError(str(exc)) from exc
        report.warnings.extend(report.tls.warnings)

    # ------------------------------------------------------------------
    def _configure_new_instance(
        self,
        op: OperationScope,
        report: ProvisionReport,
        password: str,
        ssl: bool,
    ) -> None:
        if ssl:
            self._check(op, report, "provision.trust", self.p4d.trust(), fatal=False)

        ping = self.p4d.ping()
        if not ping.ok:
            raise ProvisioningError(f"Cannot connect to the server: {ping.summary()}")
        self._record(op, report, "provision.connect", "success", self.config.server.p4port)

        try:
            backup = self.sdp.patch_configure_script(self.config.server.storage_min)
            self._record(op, report, "provision.patch-configure", "success", backup)
            self.sdp.run_configure()
        except SdpError as exc:
            raise ProvisioningError(str(exc)) from exc
        self._record(op, report, "provision.configure", "success", None)

        self._apply_configurables(op, report, "provision")

        self._load_tables(op, report, "provision")
        self._apply_secrets(op, report, password, "provision")

    def _load_tables(self, op: OperationScope, report: ProvisionReport, prefix: str) -> None:
        provisioning = self.config.provisioning
        for name, loader, path in (
            ("typemap", self.p4d.load_typemap, provisioning.typemap_file),
            ("protect", self.p4d.load_protections, provisioning.protections_file),
        ):
            if path is None:
                continue
            step = f"{prefix}.{name}"
            try:
                self._check(op, report, step, loader(path), fatal=False)
            except P4dError as exc:
                self._record(op, report, step, "warning", str(exc))
                report.warnings.append(str(exc))

    def _apply_secrets(
        self, op: OperationScope, report: ProvisionReport, password: str, prefix: str
    ) -> None:
        """Set the password, checkpoint, then raise the security level.

        The marker is written as soon as both the password and the security
        level are applied. A failed checkpoint is only a warning.
        """
        result = self.p4d.set_password(self.config.admin_user, password)
        password_ok = self._check(
            op, report, f"{prefix}.password", result, fatal=False, error=True
        )

        self._fix_client_state_ownership(op, report)

        checkpoint = self.sdp.live_checkpoint()
        self._check(op, report, f"{prefix}.checkpoint", checkpoint, fatal=False)

        security = self.p4d.configure_set("security", str(self.config.server.security_level))
        security_ok = self._check(
            op, report, f"{prefix}.security", security, fatal=False, error=True
        )
        if password_ok and security_ok:
            self._complete(op, report, prefix)

    def _complete(self, op: OperationScope, report: ProvisionReport, prefix: str) -> None:
        self._write_marker()
        report.marker_written = True
        report.state = ProvisioningState.PROVISIONED
        self._record(op, report, f"{prefix}.marker", "success", self.layout.marker_path)

    def _security_level(self) -> int | None:
        """Return the server's security level (unset is 0), or None when unreadable."""
        result = self.p4d.p4(["-ztag", "configure", "show", "security"])
        if not result.ok:
            return None
        try:
            return int(parse_ztag(result.stdout).get("Value", "0"))
        except ValueError:
            return None

    def _admin_password(self, op: OperationScope, report: ProvisionReport) -> str:
        password = self.config.admin_password
        if not password:
            password = self._password_factory()
            report.generated_password = True
        op.add_secret(password)
        return password

    def _show_password(self, report: ProvisionReport, password: str) -> None:
        if not report.generated_password:
            return
        self.logger.banner(
            "GENERATED ADMINISTRATOR PASSWORD (shown once)",
            f"User: {self.config.admin_user}\nPassword: {password}\n"
            "Store it now; it is not written to any log file.",
            ok=True,
        )

    def _apply_configurables(
        self, op: OperationScope, report: ProvisionReport, prefix: str
    ) -> None:
        for key, value in critical_configurables(self.config, self.layout):
            result = self.p4d.configure_set(key, value)
            self._check(op, report, f"{prefix}.configure.{key}", result, fatal=False)

    def _fix_client_state_ownership(self, op: OperationScope, report: ProvisionReport) -> None:
        for path in (self.layout.tickets_file, self.layout.trust_file):
            if not path.exists():
                continue
            try:
                self._chown(path, self.config.service_user, self.config.service_group)
            except (OSError, LookupError) as exc:
                message = f"Cannot chown {path}: {exc}"
                report.warnings.append(message)
                self._record(op, report, "provision.ownership", "warning", message)
                continue
            self._record(op, report, "provision.ownership", "success", path)

    def _post_setup(self, op: OperationScope, report: ProvisionReport) -> None:
        try:
            crontab = self.sdp.install_crontab()
            self._check(op, report, "sdp.crontab", crontab, fatal=False)
            verify = self.sdp.verify(self.config.provisioning.verify_skip)
            self._check(op, report, "sdp.verify", verify, fatal=False)
        except SdpError as exc:
            report.warnings.append(str(exc))
            self._record(op, report, "sdp.post-setup", "warning", str(exc))

    def _start_or_fail(self, op: OperationScope, report: ProvisionReport, step: str) -> bool:
        try:
            result = self.controller.start(op)
        except P4dError as exc:
            raise ProvisioningError(f"Server start failed: {exc}") from exc
        if not result.ok:
            raise ProvisioningError(f"Server start failed: {result.summary()}")
        report.steps.append(step)
        return True

    def _check(
        self,
        op: OperationScope,
        report: ProvisionReport,
        step: str,
        result: CommandResult,
        *,
        fatal: bool,
        error: bool = False,
    ) -> bool:
        if result.ok:
            self._record(op, report, step, "success", None)
            return True
        message = f"{step} failed (exit {result.returncode}): {result.summary()}"
        if fatal:
            raise ProvisioningError(message)
        if error:
            report.errors.append(message)
            self._record(op, report, step, "error", message)
        else:
            report.warnings.append(message)
            self._record(op, report, step, "warning", message)
        return False

    def _record(
        self,
        op: OperationScope,
        report: ProvisionReport,
        step: str,
        status: str,
        detail: object,
    ) -> None:
        report.steps.append(step)
        op.add_step(step, status=status, detail=detail)

    def _mkdirs_context(self, password: str) -> dict[str, object]:
        config = self.config
        return {
            "instance": config.instance,
            "metadata_root": config.metadata_root,
            "depots_root": config.depots_root,
            "logs_root": config.logs_root,
            "service_user": config.service_user,
            "service_group": config.service_group,
            "admin_user": config.admin_user,
            "admin_password": password,
            "domain": config.server.domain,
            "ssl_prefix": config.server.ssl_prefix,
            "port": config.server.port,
            "master_host": config.server.master_host,
        }

    def _write_marker(self) -> None:
        payload = {
            "instance": self.config.instance,
            "completed_at": datetime.now(UTC).isoformat(timespec="seconds"),
            "helixctl_version": __version__,
        }
        write_atomic(self.layout.marker_path, yaml.safe_dump(payload, sort_keys=True), mode=0o644)

    def _banner(self, report: ProvisionReport) -> None:
        title = "Reconciliation" if report.path == "reconcile" else "Provisioning"
        if report.ok:
            body = f"{title} completed with {len(report.warnings)} warning(s)."
        else:
            body = "\n".join([f"{title} completed with errors:", *report.errors])
        self.logger.banner(f"{title} {'PASSED' if report.ok else 'FAILED'}", body, ok=report.ok)


__all__ = [
    "ProvisionReport",
    "ProvisioningError",
    "ProvisioningState",
    "ProvisioningStateMachine",
    "critical_configurables",
    "generate_password",
]
