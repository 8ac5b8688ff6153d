"""Tests for the provisioning state machine."""
from __future__ import annotations

import dataclasses
import json
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml
from conftest import FakeRunner, make_key_pair

from helixctl.config import AppConfig
from helixctl.layout import InstanceLayout
from helixctl.logging import StructuredLogger
from helixctl.process import ProcessController
from helixctl.providers.p4d import P4dProvider
from helixctl.providers.sdp import SdpProvider
from helixctl.provisioning import (
    ProvisioningError,
    ProvisioningState,
    ProvisioningStateMachine,
    critical_configurables,
    generate_password,
)
from helixctl.templates import TemplateEngine
from helixctl.tls import TLSProvisioner

GENERATED = "Gen3ratedPassw0rdXyz"


class _NoPids:
    name = "port-owner"

    def resolve(self) -> list[int]:
        return []


def _noop_chown(path: Path, user: str, group: str | None) -> None:
    return None


def _machine(
    config: AppConfig,
    layout: InstanceLayout,
    runner: FakeRunner,
    logger: StructuredLogger,
) -> ProvisioningStateMachine:
    templates = TemplateEngine.with_overrides(None)
    p4d = P4dProvider(layout, runner, config.server.p4port, config.admin_user, config.service_user)
    sdp = SdpProvider(layout, runner, templates, config.service_user)
    controller = ProcessController(
        p4d, layout, port=config.server.port, settle_delay=0, strategies=[], port_strategy=_NoPids()
    )
    tls = TLSProvisioner(
        config.tls, config.server, config.instance, templates, p4d, controller, chown=_noop_chown
    )
    return ProvisioningStateMachine(
        config,
        layout,
        p4d=p4d,
        sdp=sdp,
        controller=controller,
        tls=tls,
        logger=logger,
        chown=_noop_chown,
        password_factory=lambda: GENERATED,
    )


def _prepare_sdp(config: AppConfig, layout: InstanceLayout) -> None:
    layout.sdp_root.mkdir(parents=True)
    (layout.sdp_root / "Version").write_text("Rev. SDP/2024.2\n", encoding="utf-8")
    layout.configure_dir.mkdir(parents=True)
    (layout.configure_dir / "configure_new_server.sh").write_text(
        "p4 configure set filesys.P4ROOT.min=5G\n", encoding="utf-8"
    )
    config.provisioning.bundle_dir.mkdir(parents=True)
    assert config.provisioning.typemap_file is not None
    config.provisioning.typemap_file.write_text("TypeMap:\n", encoding="utf-8")


def _install_control_script(layout: InstanceLayout) -> None:
    layout.bin_dir.mkdir(parents=True, exist_ok=True)
    layout.control_script.write_text("#!/bin/sh\n", encoding="utf-8")


def _mark_provisioned(layout: InstanceLayout) -> None:
    _install_control_script(layout)
    layout.marker_path.write_text("instance: '1'\n", encoding="utf-8")


def _configure_sets(runner: FakeRunner) -> list[str]:
    return [call.args[-1] for call in runner.find("configure", "set")]


def _init_actions(runner: FakeRunner) -> list[str]:
    return [call.args[-1] for call in runner.calls if call.args[0].endswith("_init")]


def _position(runner: FakeRunner, *tokens: str) -> int:
    """Index of the first recorded call matching every token."""
    first = runner.find(*tokens)[0]
    return next(index for index, call in enumerate(runner.calls) if call is first)


def _ssl_config(config: AppConfig) -> AppConfig:
    return dataclasses.replace(
        config, server=dataclasses.replace(config.server, ssl_prefix="ssl:")
    )


def _generate_into(ssl_dir: Path) -> Callable[[tuple[str, ...]], None]:
    pair = make_key_pair()

    def generate(args: tuple[str, ...]) -> None:
        ssl_dir.mkdir(parents=True, exist_ok=True)
        (ssl_dir / "certificate.txt").write_bytes(pair.certificate)
        (ssl_dir / "privatekey.txt").write_bytes(pair.key)

    return generate


def test_generate_password_mixes_character_classes() -> None:
    for _ in range(20):
        password = generate_password()
        assert len(password) == 20
        assert password.isalnum()
        assert any(c.islower() for c in password)
        assert any(c.isupper() for c in password)
        assert any(c.isdigit() for c in password)


def test_detect_state_requires_control_script_and_marker(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    machine = _machine(app_config, layout, fake_runner, logger)
    assert machine.detect_state() is ProvisioningState.UNPROVISIONED

    _install_control_script(layout)
    assert machine.detect_state() is ProvisioningState.PROVISIONING

    layout.marker_path.write_text("instance: '1'\n", encoding="utf-8")
    assert machine.detect_state() is ProvisioningState.PROVISIONED


def test_ssl_requested_from_config_or_vars_file(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    assert _machine(app_config, layout, fake_runner, logger).ssl_requested() is False

    layout.vars_file.parent.mkdir(parents=True)
    layout.vars_file.write_text("export P4PORT=ssl:1666\n", encoding="utf-8")
    assert _machine(app_config, layout, fake_runner, logger).ssl_requested() is True

    layout.vars_file.unlink()
    assert _machine(_ssl_config(app_config), layout, fake_runner, logger).ssl_requested() is True


def test_fresh_provisioning_runs_full_sequence(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    machine = _machine(app_config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        report = machine.run(op)

    assert report.path == "provision"
    assert report.ok, report.errors
    assert report.state is ProvisioningState.PROVISIONED
    assert report.marker_written is True
    assert report.generated_password is True
    marker = yaml.safe_load(layout.marker_path.read_text(encoding="utf-8"))
    assert marker["instance"] == app_config.instance

    mkdirs_cfg = layout.setup_dir / "mkdirs.1.cfg"
    assert f"P4ADMINPASS={GENERATED}" in mkdirs_cfg.read_text(encoding="utf-8")
    assert mkdirs_cfg.stat().st_mode & 0o777 == 0o600
    assert fake_runner.find("mkdirs.sh")
    assert fake_runner.find("-xi")
    assert fake_runner.find("configure_new_server.sh")
    assert fake_runner.find("passwd")[0].args[-3:] == ("-P", GENERATED, app_config.admin_user)
    assert fake_runner.find("live_checkpoint.sh")

    sets = _configure_sets(fake_runner)
    for key, value in critical_configurables(app_config, layout):
        assert f"{key}={value}" in sets
    assert sets[-1] == f"security={app_config.server.security_level}"

    # Provisioning leaves the server stopped; the entry point starts it.
    assert _init_actions(fake_runner) == ["start", "stop"]
    assert "provision.protect" in report.steps
    assert any("Cannot read protect definition" in warning for warning in report.warnings)


def test_generated_password_is_shown_once_but_never_logged(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    machine = _machine(app_config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        machine.run(op)

    console_output = logger.console.file.getvalue()  # type: ignore[attr-defined]
    assert console_output.count(GENERATED) == 1
    raw = (app_config.logs_dir / "operations.jsonl").read_text(encoding="utf-8")
    assert GENERATED not in raw
    assert json.loads(raw)["operation"] == "provision"


def test_supplied_password_is_used(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    config = dataclasses.replace(app_config, admin_password="0123")
    machine = _machine(config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        report = machine.run(op)

    assert report.generated_password is False
    assert fake_runner.find("passwd")[0].args[-3] == "-P"
    assert fake_runner.find("passwd")[0].args[-2] == "0123"


def test_mkdirs_failure_is_fatal(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    fake_runner.on("./mkdirs.sh", returncode=1, stderr="Invalid OSUSER")
    machine = _machine(app_config, layout, fake_runner, logger)

    with pytest.raises(ProvisioningError, match="mkdirs.sh failed"):
        with logger.operation("provision") as op:
            machine.run(op)

    assert not layout.marker_path.exists()
    assert _init_actions(fake_runner) == []


def test_checkpoint_failure_is_a_warning_and_marker_is_written(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    fake_runner.on("live_checkpoint.sh", returncode=1, stderr="checkpoint failed")
    machine = _machine(app_config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        report = machine.run(op)

    assert report.ok, report.errors
    assert report.marker_written is True
    assert layout.marker_path.exists()
    assert "provision.checkpoint failed (exit 1): checkpoint failed" in report.warnings
    assert _configure_sets(fake_runner)[-1] == f"security={app_config.server.security_level}"
    assert _init_actions(fake_runner)[-1] == "stop"


def test_security_failure_leaves_marker_unwritten(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    fake_runner.on("configure", "set", "security=3", returncode=1, stderr="permission denied")
    machine = _machine(app_config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        report = machine.run(op)

    assert report.ok is False
    assert report.marker_written is False
    assert not layout.marker_path.exists()
    assert report.errors == ["provision.security failed (exit 1): permission denied"]
    assert _init_actions(fake_runner)[-1] == "stop"


def test_rerun_after_failed_checkpoint_does_not_repeat_first_run(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    fake_runner.on("live_checkpoint.sh", returncode=1, stderr="checkpoint failed")
    # mkdirs.sh is what creates the control script on a real volume.
    fake_runner.on("mkdirs.sh", action=lambda args: _install_control_script(layout))
    machine = _machine(app_config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        first = machine.run(op)
    with logger.operation("provision") as op:
        second = machine.run(op)

    assert first.path == "provision"
    assert second.path == "reconcile"
    assert len(fake_runner.find("passwd")) == 1
    assert len(fake_runner.find("mkdirs.sh")) == 1
    assert len(fake_runner.find("configure_new_server.sh")) == 1
    assert len(fake_runner.find("-xi")) == 1


def test_resume_skips_destructive_steps_when_security_is_already_set(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    _install_control_script(layout)
    fake_runner.on("configure", "show", stdout="... Name security\n... Value 3\n")
    machine = _machine(app_config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        report = machine.run(op)

    assert report.path == "resume"
    assert report.ok, report.errors
    assert report.state is ProvisioningState.PROVISIONED
    assert report.marker_written is True
    assert layout.marker_path.exists()
    assert "resume.secrets" in report.steps
    assert fake_runner.find("passwd") == []
    assert fake_runner.find("mkdirs.sh") == []
    assert fake_runner.find("configure_new_server.sh") == []
    assert fake_runner.find("-xi") == []
    assert fake_runner.find("live_checkpoint.sh")
    assert _configure_sets(fake_runner) == [
        f"{k}={v}" for k, v in critical_configurables(app_config, layout)
    ]
    assert "resume.typemap" in report.steps


def test_resume_applies_secrets_while_security_is_low(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    _install_control_script(layout)
    machine = _machine(app_config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        report = machine.run(op)

    assert report.path == "resume"
    assert report.ok, report.errors
    assert report.marker_written is True
    assert report.generated_password is True
    assert fake_runner.find("passwd")[0].args[-3:] == ("-P", GENERATED, app_config.admin_user)
    assert _configure_sets(fake_runner)[-1] == f"security={app_config.server.security_level}"
    assert fake_runner.find("mkdirs.sh") == []
    console_output = logger.console.file.getvalue()  # type: ignore[attr-defined]
    assert console_output.count(GENERATED) == 1


def test_resume_with_unreadable_security_level_keeps_secrets(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    _install_control_script(layout)
    fake_runner.on("configure", "show", returncode=1, stderr="Perforce password invalid")
    machine = _machine(app_config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        report = machine.run(op)

    assert report.marker_written is True
    assert fake_runner.find("passwd") == []
    assert "resume: security level could not be read" in report.warnings


def test_ssl_certificate_is_generated_before_first_start_and_trusted_before_use(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    config = _ssl_config(app_config)
    _prepare_sdp(config, layout)
    fake_runner.on("status", returncode=1)
    fake_runner.on("-Gc", action=_generate_into(config.tls.ssl_dir))
    machine = _machine(config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        report = machine.run(op)

    assert report.ok, report.errors
    assert report.tls is not None
    assert report.tls.source == "self-signed"
    assert _position(fake_runner, "-Gc") < _position(fake_runner, "start")
    assert _position(fake_runner, "trust") < _position(fake_runner, "info", "-s")
    assert fake_runner.find("trust")[0].args[-2:] == ("-y", "-f")


def test_ssl_trust_failure_is_not_fatal(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    config = _ssl_config(app_config)
    _prepare_sdp(config, layout)
    fake_runner.on("status", returncode=1)
    fake_runner.on("-Gc", action=_generate_into(config.tls.ssl_dir))
    fake_runner.on("trust", returncode=1, stderr="fingerprint mismatch")
    machine = _machine(config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        report = machine.run(op)

    assert report.ok, report.errors
    assert report.marker_written is True
    assert "provision.trust failed (exit 1): fingerprint mismatch" in report.warnings


def test_unreachable_server_stops_and_raises(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    fake_runner.on("info", "-s", returncode=1, stderr="Connect to server failed")
    machine = _machine(app_config, layout, fake_runner, logger)

    with pytest.raises(ProvisioningError, match="Cannot connect to the server"):
        with logger.operation("provision") as op:
            machine.run(op)

    assert _init_actions(fake_runner) == ["start", "stop"]


def test_start_failure_is_fatal(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    fake_runner.on("start", returncode=1, stderr="license expired")
    machine = _machine(app_config, layout, fake_runner, logger)

    with pytest.raises(ProvisioningError, match="license expired"):
        with logger.operation("provision") as op:
            machine.run(op)


def test_reconcile_is_idempotent_and_never_resets_secrets(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    _mark_provisioned(layout)
    machine = _machine(app_config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        first = machine.run(op)
    first_sets = _configure_sets(fake_runner)
    fake_runner.calls.clear()
    with logger.operation("provision") as op:
        second = machine.run(op)

    assert first.path == second.path == "reconcile"
    assert first.state is ProvisioningState.PROVISIONED
    assert first_sets == _configure_sets(fake_runner)
    assert first_sets == [f"{k}={v}" for k, v in critical_configurables(app_config, layout)]
    assert fake_runner.find("passwd") == []
    assert fake_runner.find("mkdirs.sh") == []
    assert fake_runner.find("live_checkpoint.sh") == []
    # The server was already running, so reconciliation neither starts nor stops it.
    assert _init_actions(fake_runner) == ["status"]


def test_reconcile_starts_and_stops_a_stopped_server(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _prepare_sdp(app_config, layout)
    _mark_provisioned(layout)
    fake_runner.on("status", returncode=1)
    machine = _machine(app_config, layout, fake_runner, logger)

    with logger.operation("provision") as op:
        report = machine.run(op)

    assert "reconcile.temporary-start" in report.steps
    assert _init_actions(fake_runner) == ["status", "start", "stop"]


def test_reconcile_installs_missing_sdp(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    _mark_provisioned(layout)
    machine = _machine(app_config, layout, fake_runner, logger)

    with pytest.raises(ProvisioningError, match="SDP tarball not found"):
        with logger.operation("provision") as op:
            machine.run(op)
