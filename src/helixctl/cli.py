"""Typer-powered command line for ``helixctl``.

``helixctl entrypoint`` is the container's PID 1. The remaining commands
expose the individual building blocks (provisioning, server lifecycle, TLS,
backups) so operators and cron can drive them one at a time.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import get_version
from .backups import BackupError, BackupJob, schedule_backup
from .commands import CommandRunner
from .config import AppConfig, ConfigError, load_config
from .entrypoint import EntryOrchestrator, SignalHandler
from .exit_codes import ExitCode
from .layout import InstanceLayout
from .locking import LockHeldError, LockManager
from .logging import OperationScope, StructuredLogger
from .process import ProcessController, ServerState
from .providers import CronError, CronProvider, P4dError, P4dProvider, SdpProvider
from .provisioning import ProvisioningError, ProvisioningStateMachine
from .templates import TemplateEngine
from .tls import (
    TLSMaterial,
    TLSProvisioner,
    TLSProvisioningError,
    TLSValidationReport,
    TLSValidationSeverity,
    TLSValidator,
    certificate_fingerprint,
)

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to helixctl's YAML config file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON output.")
TIMEOUT_OPTION = typer.Option(
    None,
    "--timeout",
    min=0.0,
    help="Seconds to wait before escalating to SIGKILL (defaults to server.shutdown_timeout).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Helix Core SDP container control.

        Provisions or reconciles a p4d instance, keeps it running until the
        container is asked to stop, and runs the scheduled incremental backup.
        """
    ).strip(),
)
server_app = typer.Typer(help="Start, stop and query the p4d server.")
tls_app = typer.Typer(help="Provision and inspect TLS material.")
backup_app = typer.Typer(help="Run or schedule incremental backups.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(server_app, name="server")
app.add_typer(tls_app, name="tls")
app.add_typer(backup_app, name="backup")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    layout: InstanceLayout
    runner: CommandRunner
    templates: TemplateEngine
    locks: LockManager
    logger: StructuredLogger
    p4d: P4dProvider
    sdp: SdpProvider
    cron: CronProvider
    controller: ProcessController
    tls: TLSProvisioner

    def state_machine(self) -> ProvisioningStateMachine:
        """Build the provisioning state machine for this runtime."""
        return ProvisioningStateMachine(
            self.config,
            self.layout,
            p4d=self.p4d,
            sdp=self.sdp,
            controller=self.controller,
            tls=self.tls,
            logger=self.logger,
        )

    def backup_job(self) -> BackupJob:
        """Build the backup job for this runtime."""
        return BackupJob(
            self.config,
            self.layout,
            sdp=self.sdp,
            p4d=self.p4d,
            templates=self.templates,
            locks=self.locks,
            logger=self.logger,
        )


def build_runtime(config: AppConfig) -> RuntimeContext:
    """Wire providers and controllers for *config*."""
    layout = InstanceLayout.from_config(config)
    runner = CommandRunner()
    templates = TemplateEngine.with_overrides(config.templates_dir)
    locks = LockManager(config.runtime_dir)
    logger = StructuredLogger(config.logs_dir, console=console)
    p4d = P4dProvider(
        layout=layout,
        runner=runner,
        p4port=config.server.p4port,
        admin_user=config.admin_user,
        service_user=config.service_user,
        password=config.admin_password,
    )
    sdp = SdpProvider(
        layout=layout,
        runner=runner,
        templates=templates,
        service_user=config.service_user,
    )
    controller = ProcessController(
        p4d,
        layout,
        port=config.server.port,
        settle_delay=config.server.settle_delay,
        init_timeout=config.server.ready_timeout,
    )
    tls = TLSProvisioner(
        tls=config.tls,
        server=config.server,
        instance=config.instance,
        templates=templates,
        p4d=p4d,
        controller=controller,
    )
    return RuntimeContext(
        config=config,
        layout=layout,
        runner=runner,
        templates=templates,
        locks=locks,
        logger=logger,
        p4d=p4d,
        sdp=sdp,
        cron=CronProvider(runner),
        controller=controller,
        tls=tls,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: ExitCode = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _target(runtime: RuntimeContext) -> dict[str, object]:
    return {"kind": "instance", "name": runtime.config.instance}


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the helixctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"helixctl {get_version()}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Container lifecycle
@app.command()
def entrypoint(ctx: typer.Context) -> None:
    """Provision or reconcile, run the server and stop it on SIGTERM/SIGINT/SIGHUP."""
    runtime = _get_runtime(ctx)
    config = runtime.config

    def _schedule(op: OperationScope) -> bool:
        return schedule_backup(config, runtime.templates, runtime.cron, op)

    orchestrator = EntryOrchestrator(
        config,
        machine=runtime.state_machine(),
        controller=runtime.controller,
        locks=runtime.locks,
        logger=runtime.logger,
        signals=SignalHandler(),
        schedule_backup=_schedule,
    )
    outcome = orchestrator.run()
    raise typer.Exit(code=int(outcome.exit_code))


@app.command()
def provision(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision a new instance or reconcile an existing one, then leave it stopped."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "provision",
        args={"json": json_output},
        target=_target(runtime),
    ) as op:
        try:
            with runtime.locks.acquire("provision", timeout=0) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                report = runtime.state_machine().run(op)
        except LockHeldError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except ProvisioningError as exc:
            _command_error(op, f"Provisioning failed: {exc}", rc=ExitCode.PROVIDER)

        if json_output:
            console.print_json(data=report.to_dict())
        context = {"path": report.path, "marker_written": report.marker_written}
        if report.errors:
            op.error(
                "Provisioning completed with errors.",
                errors=report.errors,
                warnings=report.warnings,
                rc=int(ExitCode.FAILURE),
                context=context,
            )
            raise typer.Exit(code=int(ExitCode.FAILURE))
        if report.warnings:
            op.warning(
                "Provisioning completed with warnings.",
                warnings=report.warnings,
                context=context,
            )
            return
        op.success("Provisioning completed.", changed=len(report.steps), context=context)


# ----------------------------------------------------------------------
# Server lifecycle
@server_app.command("start")
def server_start(
    ctx: typer.Context,
    wait: bool = typer.Option(
        True,
        "--wait/--no-wait",
        help="Wait until the service port accepts connections.",
    ),
) -> None:
    """Start the server through the SDP init script."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "server start",
        args={"wait": wait},
        target=_target(runtime),
    ) as op:
        try:
            result = runtime.controller.start(op)
        except P4dError as exc:
            _command_error(op, f"Server start failed: {exc}", rc=ExitCode.PROVIDER)
        if not result.ok:
            _command_error(
                op,
                f"Server start failed: {result.summary()}",
                rc=ExitCode.PROVIDER,
            )
        if wait and not runtime.controller.wait_ready(config.server.ready_timeout):
            _command_error(
                op,
                f"Server did not accept connections on port {config.server.port}.",
                rc=ExitCode.PROVIDER,
            )
        console.print(f"[green]Server started on {config.server.p4port}.[/green]")
        op.success("Server started.", changed=1)


@server_app.command("stop")
def server_stop(
    ctx: typer.Context,
    timeout: float | None = TIMEOUT_OPTION,
) -> None:
    """Stop the server, escalating to SIGKILL after the timeout."""
    runtime = _get_runtime(ctx)
    limit = runtime.config.server.shutdown_timeout if timeout is None else timeout
    with runtime.logger.operation(
        "server stop",
        args={"timeout": limit},
        target=_target(runtime),
    ) as op:
        result = runtime.controller.stop(limit, op)
        if result.critical:
            _command_error(
                op,
                f"Server processes survived SIGKILL: {result.remaining}",
                rc=ExitCode.SHUTDOWN_CRITICAL,
            )
        context = {
            "strategy": result.strategy,
            "escalated": result.escalated,
            "port_killed": result.port_killed,
        }
        console.print("[green]Server stopped.[/green]")
        if result.warnings:
            op.warning("Server stopped with warnings.", warnings=result.warnings, context=context)
            return
        op.success("Server stopped.", changed=1, context=context)


@server_app.command("status")
def server_status(ctx: typer.Context) -> None:
    """Report whether the server is running (exit 1 when stopped)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server status",
        target=_target(runtime),
    ) as op:
        state = runtime.controller.status()
        console.print(f"Instance {runtime.config.instance}: {state.value}")
        op.success(f"Server is {state.value}.", changed=0, context={"state": state.value})
    if state is ServerState.STOPPED:
        raise typer.Exit(code=int(ExitCode.FAILURE))
    if state is ServerState.UNKNOWN:
        raise typer.Exit(code=int(ExitCode.PROVIDER))


# ----------------------------------------------------------------------
# TLS
def _format_tls_status(severity: TLSValidationSeverity) -> str:
    if severity is TLSValidationSeverity.OK:
        return "[green]OK[/green]"
    if severity is TLSValidationSeverity.WARNING:
        return "[yellow]WARN[/yellow]"
    return "[red]ERROR[/red]"


def _render_tls_report(report: TLSValidationReport, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=report.to_dict())
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Message")
    for finding in report.findings:
        table.add_row(
            f"{finding.scope}:{finding.check}",
            _format_tls_status(finding.severity),
            finding.message,
        )
    console.print(table)
    if report.fingerprint:
        console.print(f"SHA-256 fingerprint: {report.fingerprint}")


@tls_app.command("setup")
def tls_setup(
    ctx: typer.Context,
    force: bool = typer.Option(
        False,
        "--force",
        help="Provision TLS even when the configured port is not ssl-prefixed.",
    ),
) -> None:
    """Ensure certificate material exists with the required ownership and modes."""
    runtime = _get_runtime(ctx)
    requested = force or runtime.state_machine().ssl_requested()
    with runtime.logger.operation(
        "tls setup",
        args={"force": force},
        target=_target(runtime),
    ) as op:
        try:
            outcome = runtime.tls.ensure(requested, op)
        except TLSProvisioningError as exc:
            runtime.logger.banner("TLS setup FAILED", str(exc), ok=False)
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        if not requested:
            console.print("TLS is not enabled for this instance; nothing to do.")
            op.success("TLS not requested.", changed=0)
            return
        body = "\n".join(
            [
                f"Source: {outcome.source}",
                f"Directory: {runtime.tls.material.ssl_dir}",
                f"SHA-256 fingerprint: {outcome.fingerprint}",
                *outcome.warnings,
            ]
        )
        runtime.logger.banner("TLS setup PASSED", body, ok=True)
        context = {"source": outcome.source, "fingerprint": outcome.fingerprint}
        if outcome.warnings:
            op.warning("TLS ready with warnings.", warnings=outcome.warnings, context=context)
            return
        op.success("TLS ready.", changed=1, context=context)


@tls_app.command("verify")
def tls_verify(
    ctx: typer.Context,
    ssl_dir: Path | None = typer.Option(
        None,
        "--ssl-dir",
        file_okay=False,
        help="Directory holding certificate.txt and privatekey.txt (defaults to tls.ssl_dir).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Validate presence, permissions, pairing and expiry of the TLS material."""
    runtime = _get_runtime(ctx)
    material = TLSMaterial(ssl_dir) if ssl_dir is not None else runtime.tls.material
    with runtime.logger.operation(
        "tls verify",
        args={"ssl_dir": str(material.ssl_dir), "json": json_output},
        target=_target(runtime),
    ) as op:
        report = TLSValidator(runtime.config.tls.validation).validate(material)
        _render_tls_report(report, json_output=json_output)
        errors = report.messages(TLSValidationSeverity.ERROR)
        warnings = report.messages(TLSValidationSeverity.WARNING)
        context = {"report": report.to_dict()}
        if errors:
            op.error(
                "TLS validation failed.",
                errors=errors,
                warnings=warnings,
                rc=int(ExitCode.VALIDATION),
                context=context,
            )
            raise typer.Exit(code=int(ExitCode.VALIDATION))
        if warnings:
            op.warning(
                "TLS validation completed with warnings.",
                warnings=warnings,
                context=context,
            )
            return
        op.success("TLS validation successful.", context=context)


@tls_app.command("fingerprint")
def tls_fingerprint(
    ctx: typer.Context,
    certificate: Path | None = typer.Option(
        None,
        "--cert",
        dir_okay=False,
        help="Certificate to fingerprint (defaults to the instance certificate).",
    ),
) -> None:
    """Print the SHA-256 fingerprint clients need to trust the server."""
    runtime = _get_runtime(ctx)
    path = certificate or runtime.tls.material.certificate
    with runtime.logger.operation(
        "tls fingerprint",
        args={"cert": str(path)},
        target=_target(runtime),
    ) as op:
        try:
            fingerprint = certificate_fingerprint(path)
        except TLSProvisioningError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        console.print(fingerprint)
        op.success("Reported certificate fingerprint.", changed=0, context={"sha256": fingerprint})


# ----------------------------------------------------------------------
# Backups
@backup_app.command("run")
def backup_run(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Run the incremental backup pipeline once."""
    runtime = _get_runtime(ctx)
    destination = runtime.config.backups.destination
    with runtime.logger.operation(
        "backup run",
        args={"destination": str(destination) if destination else None, "json": json_output},
        target={"kind": "backup", "instance": runtime.config.instance},
    ) as op:
        try:
            report = runtime.backup_job().run(op)
        except LockHeldError as exc:
            _command_error(op, f"Another backup is already running: {exc}", rc=ExitCode.ENVIRONMENT)
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        if json_output:
            console.print_json(data=report.to_dict())
        code = report.exit_code
        context = report.to_dict()
        if code is ExitCode.OK:
            if report.warnings:
                op.warning(
                    "Backup completed with warnings.",
                    warnings=report.warnings,
                    context=context,
                )
            else:
                op.success("Backup completed.", changed=1, context=context)
            return
        message = (
            "Backup failed integrity verification."
            if code is ExitCode.INTEGRITY
            else "Backup completed with errors."
        )
        op.error(
            message,
            errors=[*report.errors, *report.integrity_failures],
            warnings=report.warnings,
            rc=int(code),
            context=context,
        )
        raise typer.Exit(code=int(code))


@backup_app.command("schedule")
def backup_schedule(ctx: typer.Context) -> None:
    """Install or refresh the crontab line running ``helixctl backup run``."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup schedule",
        args={"schedule": runtime.config.backups.schedule},
        target={"kind": "backup", "instance": runtime.config.instance},
    ) as op:
        try:
            changed = schedule_backup(runtime.config, runtime.templates, runtime.cron, op)
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except CronError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        state = "installed" if changed else "already up to date"
        console.print(f"Backup schedule {state} ({runtime.config.backups.schedule}).")
        op.success(f"Backup schedule {state}.", changed=int(changed))


# ----------------------------------------------------------------------
# Configuration
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
