"""Tests for the incremental backup pipeline and its scheduling."""
from __future__ import annotations

import dataclasses
import os
import shutil
import sys
from datetime import datetime
from pathlib import Path

import pytest
from conftest import FakeRunner

from helixctl.backups import (
    CURRENT_LINK,
    HARDLINK_MARKER,
    MANIFEST_NAME,
    STATS_NAME,
    BackupError,
    BackupJob,
    BackupReport,
    backup_cron_line,
    cron_tag,
    format_size,
    mirror_tree,
    resolve_executable,
    schedule_backup,
)
from helixctl.config import AppConfig
from helixctl.exit_codes import ExitCode
from helixctl.layout import InstanceLayout
from helixctl.locking import LockHeldError, LockManager
from helixctl.logging import StructuredLogger
from helixctl.providers.cron import CronProvider
from helixctl.providers.p4d import P4dProvider
from helixctl.providers.sdp import SdpProvider
from helixctl.templates import TemplateEngine


@pytest.fixture
def backup_config(app_config: AppConfig, tmp_path: Path) -> AppConfig:
    return dataclasses.replace(
        app_config,
        backups=dataclasses.replace(app_config.backups, destination=tmp_path / "backup"),
    )


def _job(
    config: AppConfig,
    layout: InstanceLayout,
    runner: FakeRunner,
    logger: StructuredLogger,
) -> BackupJob:
    templates = TemplateEngine.with_overrides(None)
    return BackupJob(
        config,
        layout,
        sdp=SdpProvider(layout, runner, templates, config.service_user),
        p4d=P4dProvider(layout, runner, config.server.p4port),
        templates=templates,
        locks=LockManager(config.runtime_dir),
        logger=logger,
    )


def _seed_instance(layout: InstanceLayout, depot_files: dict[str, str] | None = None) -> None:
    layout.checkpoints_dir.mkdir(parents=True)
    for name in ("p4_1.ckp.5.gz", "p4_1.ckp.5.md5", "p4_1.ckp.6.gz", "p4_1.ckp.6.md5"):
        (layout.checkpoints_dir / name).write_text(name, encoding="utf-8")
    layout.journals_dir.mkdir(parents=True)
    (layout.journals_dir / "p4_1.jnl.5").write_text("journal 5", encoding="utf-8")
    layout.active_journal.parent.mkdir(parents=True)
    layout.active_journal.write_text("@pv@ 0 @db.counters@", encoding="utf-8")
    layout.log_dir.mkdir(parents=True)
    (layout.log_dir / "log").write_text("not matched", encoding="utf-8")
    (layout.log_dir / "checkpoint.log").write_text("ok", encoding="utf-8")
    layout.depot_dir.mkdir(parents=True)
    files = {"depot/main/a.uasset,d/1.1.gz": "A" * 10} if depot_files is None else depot_files
    for relative, content in files.items():
        path = layout.depot_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


def _run(job: BackupJob, logger: StructuredLogger) -> BackupReport:
    with logger.operation("backup run") as op:
        return job.run(op)


def test_job_requires_destination(
    app_config: AppConfig, layout: InstanceLayout, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    with pytest.raises(BackupError, match="No backup destination"):
        _job(app_config, layout, fake_runner, logger)


def test_full_run_builds_latest_snapshot_and_link(
    backup_config: AppConfig,
    layout: InstanceLayout,
    fake_runner: FakeRunner,
    logger: StructuredLogger,
) -> None:
    _seed_instance(layout)
    job = _job(backup_config, layout, fake_runner, logger)

    report = _run(job, logger)

    assert report.exit_code is ExitCode.OK, report.errors
    assert report.integrity_ok
    latest = job.latest
    assert report.checkpoint == "p4_1.ckp.6"
    assert sorted(p.name for p in (latest / "checkpoints").iterdir()) == ["p4_1.ckp.6.gz"]
    assert (latest / "journals" / "p4_1.jnl.5").is_file()
    assert (latest / "journals" / "journal.active").is_file()
    assert (latest / "depot" / "depot/main/a.uasset,d/1.1.gz").read_text() == "A" * 10
    assert (latest / "logs" / "checkpoint.log").is_file()
    assert not (latest / "logs" / "log").exists()
    manifest = (latest / MANIFEST_NAME).read_text(encoding="utf-8")
    assert "Latest Checkpoint: None" in manifest
    assert "Compressed Checkpoint: p4_1.ckp.6.gz" in manifest
    assert "Server Version: Unknown" in manifest
    assert (latest / STATS_NAME).is_file()

    month = report.snapshot_created
    assert month is not None
    snapshot = job.monthly / month
    assert report.snapshot_hardlinked is True
    assert (snapshot / HARDLINK_MARKER).exists()
    assert "Hard-linked" in (snapshot / "snapshot_info.txt").read_text(encoding="utf-8")

    link = job.destination / CURRENT_LINK
    assert link.is_symlink()
    assert os.readlink(link) == "latest"
    assert fake_runner.find("live_checkpoint.sh")
    assert not LockManager(backup_config.runtime_dir).lock_path(job.lock_name).exists()


def test_incremental_update_does_not_touch_snapshot(
    backup_config: AppConfig,
    layout: InstanceLayout,
    fake_runner: FakeRunner,
    logger: StructuredLogger,
) -> None:
    _seed_instance(layout, {"depot/file,v": "first"})
    job = _job(backup_config, layout, fake_runner, logger)
    first = _run(job, logger)
    assert first.snapshot_created is not None

    (layout.depot_dir / "depot/file,v").write_text("second revision", encoding="utf-8")
    second = _run(job, logger)

    assert second.snapshot_created is None
    assert (job.latest / "depot/depot/file,v").read_text() == "second revision"
    snapshot_copy = job.monthly / first.snapshot_created / "depot/depot/file,v"
    assert snapshot_copy.read_text() == "first"


def test_empty_source_depot_is_refused_in_safe_mode(
    backup_config: AppConfig,
    layout: InstanceLayout,
    fake_runner: FakeRunner,
    logger: StructuredLogger,
) -> None:
    _seed_instance(layout, {})
    job = _job(backup_config, layout, fake_runner, logger)
    kept = job.latest / "depot" / "depot/keep,v"
    kept.parent.mkdir(parents=True)
    kept.write_text("previous backup", encoding="utf-8")

    report = _run(job, logger)

    assert report.exit_code is ExitCode.FAILURE
    assert any("is empty" in error for error in report.errors)
    assert kept.read_text() == "previous backup"


def test_safe_mode_keeps_orphans_and_aggressive_mode_removes_them(
    backup_config: AppConfig,
    layout: InstanceLayout,
    fake_runner: FakeRunner,
    logger: StructuredLogger,
) -> None:
    _seed_instance(layout, {"depot/live,v": "x"})
    job = _job(backup_config, layout, fake_runner, logger)
    orphan = job.latest / "depot" / "depot/obliterated,v"
    orphan.parent.mkdir(parents=True)
    orphan.write_text("gone", encoding="utf-8")

    safe = _run(job, logger)
    assert safe.orphaned_files == 1
    assert orphan.exists()

    aggressive_config = dataclasses.replace(
        backup_config, backups=dataclasses.replace(backup_config.backups, safe_mode=False)
    )
    aggressive = _run(_job(aggressive_config, layout, fake_runner, logger), logger)
    assert aggressive.orphaned_files == 0
    assert not orphan.exists()
    # The snapshot taken by the first run still holds the orphan.
    assert safe.snapshot_created is not None
    assert (job.monthly / safe.snapshot_created / "depot/depot/obliterated,v").exists()


def test_retention_keeps_newest_snapshots(
    backup_config: AppConfig,
    layout: InstanceLayout,
    fake_runner: FakeRunner,
    logger: StructuredLogger,
) -> None:
    _seed_instance(layout)
    job = _job(backup_config, layout, fake_runner, logger)
    for month in ("2001-01", "2001-02", "2001-03", "2001-04", "2001-05"):
        (job.monthly / month).mkdir(parents=True)
    (job.monthly / "notes").mkdir()

    report = _run(job, logger)

    current = datetime.now().astimezone().strftime("%Y-%m")
    remaining = sorted(p.name for p in job.monthly.iterdir())
    assert remaining == ["2001-04", "2001-05", current, "notes"]
    assert report.removed_snapshots == ["2001-03", "2001-02", "2001-01"]


def test_concurrent_run_is_rejected_without_touching_destination(
    backup_config: AppConfig,
    layout: InstanceLayout,
    fake_runner: FakeRunner,
    logger: StructuredLogger,
) -> None:
    _seed_instance(layout)
    job = _job(backup_config, layout, fake_runner, logger)

    with job.locks.acquire(job.lock_name):
        with pytest.raises(LockHeldError):
            _run(job, logger)

    assert not job.latest.exists()
    assert fake_runner.calls == []


def test_missing_checkpoint_fails_run(
    backup_config: AppConfig,
    layout: InstanceLayout,
    fake_runner: FakeRunner,
    logger: StructuredLogger,
) -> None:
    _seed_instance(layout)
    for path in layout.checkpoints_dir.iterdir():
        path.unlink()
    fake_runner.on("live_checkpoint.sh", returncode=1, stderr="journal rotation failed")

    report = _run(_job(backup_config, layout, fake_runner, logger), logger)

    assert report.exit_code is ExitCode.FAILURE
    assert "live checkpoint failed: journal rotation failed" in report.errors
    assert "no checkpoint file in backup" in report.integrity_failures


def test_sdp_checkpoint_naming_is_recognised(
    backup_config: AppConfig,
    layout: InstanceLayout,
    fake_runner: FakeRunner,
    logger: StructuredLogger,
) -> None:
    _seed_instance(layout)
    for path in layout.checkpoints_dir.iterdir():
        path.unlink()
    (layout.checkpoints_dir / "checkpoint.1.20261018").write_text("old", encoding="utf-8")
    (layout.checkpoints_dir / "checkpoint.1.20261019").write_text("new", encoding="utf-8")
    (layout.checkpoints_dir / "checkpoint.1.20261019.gz").write_text("new.gz", encoding="utf-8")

    report = _run(_job(backup_config, layout, fake_runner, logger), logger)

    assert report.checkpoint == "checkpoint.1.20261019"
    copied = sorted(p.name for p in (report.destination / "latest" / "checkpoints").iterdir())
    assert copied == ["checkpoint.1.20261019", "checkpoint.1.20261019.gz"]


def test_checkpoint_generations_sort_numerically(
    backup_config: AppConfig,
    layout: InstanceLayout,
    fake_runner: FakeRunner,
    logger: StructuredLogger,
) -> None:
    _seed_instance(layout)
    (layout.checkpoints_dir / "p4_1.ckp.10.gz").write_text("ten", encoding="utf-8")

    report = _run(_job(backup_config, layout, fake_runner, logger), logger)

    assert report.checkpoint == "p4_1.ckp.10"


def test_missing_instance_directory_raises(
    backup_config: AppConfig,
    layout: InstanceLayout,
    fake_runner: FakeRunner,
    logger: StructuredLogger,
) -> None:
    job = _job(backup_config, layout, fake_runner, logger)

    with pytest.raises(BackupError, match="Instance directory"):
        _run(job, logger)

    assert not job.locks.lock_path(job.lock_name).exists()


def test_exit_code_precedence(tmp_path: Path) -> None:
    report = BackupReport(destination=tmp_path)
    assert report.exit_code is ExitCode.OK

    report.integrity_failures.append("missing backup component")
    assert report.exit_code is ExitCode.INTEGRITY

    report.errors.append("depot sync failed")
    assert report.exit_code is ExitCode.FAILURE
    assert report.to_dict()["exit_code"] == 1


def test_mirror_tree_counts_without_delete(tmp_path: Path) -> None:
    source = tmp_path / "src"
    (source / "sub").mkdir(parents=True)
    (source / "sub" / "a").write_text("a", encoding="utf-8")
    dest = tmp_path / "dst"
    (dest / "old").mkdir(parents=True)
    (dest / "old" / "b").write_text("b", encoding="utf-8")

    first = mirror_tree(source, dest)
    second = mirror_tree(source, dest)
    pruned = mirror_tree(source, dest, delete=True)

    assert (first.copied, first.orphaned) == (1, 1)
    assert (second.copied, second.unchanged) == (0, 1)
    assert pruned.deleted == 1
    assert not (dest / "old").exists()


@pytest.mark.parametrize(
    ("size", "expected"),
    [(0, "0B"), (512, "512B"), (1536, "1.5K"), (5 * 1024**2, "5.0M"), (3 * 1024**3, "3.0G")],
)
def test_format_size(size: int, expected: str) -> None:
    assert format_size(size) == expected


def test_backup_cron_line_carries_environment(backup_config: AppConfig) -> None:
    line = backup_cron_line(
        backup_config, TemplateEngine.with_overrides(None), executable="/opt/helix/bin/helixctl"
    )

    assert line.startswith("0 2 * * 0 SDP_INSTANCE=1 ")
    assert f"BACKUP_DESTINATION={backup_config.backups.destination}" in line
    assert "BACKUP_SAFE_MODE=1" in line
    assert "MONTHLY_SNAPSHOTS=3" in line
    assert " /opt/helix/bin/helixctl backup run >> " in line
    assert line.endswith(cron_tag("1"))
    assert "HELIXCTL_CONFIG_FILE" not in line


def test_backup_cron_line_uses_absolute_path_of_running_script(
    backup_config: AppConfig, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    script = tmp_path / "venv" / "bin" / "helixctl"
    script.parent.mkdir(parents=True)
    script.write_text("#!/bin/sh\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(sys, "argv", ["venv/bin/helixctl", "entrypoint"])

    line = backup_cron_line(backup_config, TemplateEngine.with_overrides(None))

    expected = Path.cwd() / "venv" / "bin" / "helixctl"
    assert expected.is_absolute()
    assert f" {expected} backup run >> " in line


def test_resolve_executable_falls_back_to_path_lookup(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(shutil, "which", lambda name: "/usr/local/bin/helixctl")

    assert resolve_executable(argv0="/usr/bin/pytest") == "/usr/local/bin/helixctl"


def test_resolve_executable_fails_when_script_is_missing(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(shutil, "which", lambda name: None)

    with pytest.raises(BackupError, match="Cannot locate the helixctl executable"):
        resolve_executable(argv0="/usr/bin/pytest")


def test_schedule_backup_installs_cron_entry(
    backup_config: AppConfig, fake_runner: FakeRunner, logger: StructuredLogger
) -> None:
    fake_runner.on("crontab", "-l", returncode=1, stderr="no crontab for perforce")

    with logger.operation("backup schedule") as op:
        changed = schedule_backup(
            backup_config,
            TemplateEngine.with_overrides(None),
            CronProvider(fake_runner),
            op,
            executable="/usr/local/bin/helixctl",
        )

    assert changed is True
    assert backup_config.backups.destination is not None
    assert backup_config.backups.destination.is_dir()
    written = fake_runner.find("crontab", "-")[-1].input_text
    assert written is not None
    assert "/usr/local/bin/helixctl backup run" in written
    assert written.count(cron_tag("1")) == 1
