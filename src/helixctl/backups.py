"""Incremental backup pipeline for one Helix Core instance.

The destination holds a mutable ``latest`` mirror (one checkpoint generation,
journals, depot content, recent logs, manifest) plus a bounded set of
``monthly/<YYYY-MM>`` snapshots hard-linked from ``latest`` where the
filesystem allows it. Runs are serialised per instance with a lock file.
"""
from __future__ import annotations

import os
import re
import shlex
import shutil
import sys
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from .config import AppConfig, BackupConfig
from .exit_codes import ExitCode
from .layout import InstanceLayout
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .providers.cron import CronProvider
from .providers.p4d import P4dError, P4dProvider
from .providers.sdp import SdpError, SdpProvider
from .templates import TemplateEngine, TemplateError, write_atomic

LATEST_DIR = "latest"
MONTHLY_DIR = "monthly"
CURRENT_LINK = "current"
MANIFEST_NAME = "backup_manifest.txt"
STATS_NAME = ".backup_stats"
SNAPSHOT_INFO_NAME = "snapshot_info.txt"
HARDLINK_MARKER = ".snapshot_hardlinked"
COMPONENTS = ("checkpoints", "journals", "depot", "logs")

_SNAPSHOT_PATTERN = re.compile(r"^\d{4}-\d{2}$")


class BackupError(RuntimeError):
    """Raised when a backup cannot start or cannot be scheduled."""


@dataclass(slots=True)
class MirrorStats:
    """Counters reported by :func:`mirror_tree`."""

    copied: int = 0
    unchanged: int = 0
    deleted: int = 0
    orphaned: int = 0


@dataclass(slots=True)
class BackupReport:
    """Outcome of one backup run."""

    destination: Path
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    integrity_failures: list[str] = field(default_factory=list)
    checkpoint: str | None = None
    source_depot_files: int = 0
    orphaned_files: int = 0
    snapshot_created: str | None = None
    snapshot_hardlinked: bool = False
    removed_snapshots: list[str] = field(default_factory=list)
    total_size: int = 0

    @property
    def integrity_ok(self) -> bool:
        """True when every copied file passed verification."""
        return not self.integrity_failures

    @property
    def exit_code(self) -> ExitCode:
        """Map the report onto the process exit code."""
        if self.errors:
            return ExitCode.FAILURE
        if not self.integrity_ok:
            return ExitCode.INTEGRITY
        return ExitCode.OK

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly view of the report."""
        return {
            "destination": str(self.destination),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "integrity_ok": self.integrity_ok,
            "integrity_failures": list(self.integrity_failures),
            "checkpoint": self.checkpoint,
            "source_depot_files": self.source_depot_files,
            "orphaned_files": self.orphaned_files,
            "snapshot_created": self.snapshot_created,
            "snapshot_hardlinked": self.snapshot_hardlinked,
            "removed_snapshots": list(self.removed_snapshots),
            "total_size": format_size(self.total_size),
            "exit_code": int(self.exit_code),
        }


# ----------------------------------------------------------------------
# Filesystem helpers
def count_files(root: Path) -> int:
    """Return the number of regular files below *root* (0 when missing)."""
    if not root.is_dir():
        return 0
    return sum(len(files) for _, _, files in os.walk(root))


def tree_size(root: Path) -> int:
    """Return the apparent size in bytes of every file below *root*."""
    if root.is_file():
        return root.stat().st_size
    total = 0
    for current, _, files in os.walk(root):
        for name in files:
            path = Path(current) / name
            if not path.is_symlink():
                total += path.stat().st_size
    return total


def format_size(size: int) -> str:
    """Render *size* the way ``du -h`` does (``512B``, ``1.5K``, ``3.2G``)."""
    value = float(size)
    for unit in ("B", "K", "M", "G", "T"):
        if value < 1024 or unit == "T":
            return f"{int(value)}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{size}B"


def copy_file(source: Path, destination: Path) -> None:
    """Copy *source* over *destination* through a temporary file.

    Replacing instead of rewriting in place keeps hard-linked snapshot copies
    of the previous content intact.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=f".{destination.name}.")
    os.close(fd)
    try:
        shutil.copy2(source, tmp_name)
        os.replace(tmp_name, destination)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _needs_copy(source: Path, destination: Path) -> bool:
    try:
        dest_stat = destination.stat()
    except FileNotFoundError:
        return True
    src_stat = source.stat()
    return (
        src_stat.st_size != dest_stat.st_size
        or int(src_stat.st_mtime) != int(dest_stat.st_mtime)
    )


def mirror_tree(source: Path, destination: Path, *, delete: bool = False) -> MirrorStats:
    """Incrementally mirror *source* into *destination*.

    Files are copied when size or modification time differ. Files present only
    in *destination* are removed when *delete* is set and counted as orphans
    otherwise.
    """
    stats = MirrorStats()
    destination.mkdir(parents=True, exist_ok=True)
    expected: set[Path] = set()

    for current, dirs, files in os.walk(source):
        relative = Path(current).relative_to(source)
        target_dir = destination / relative
        target_dir.mkdir(parents=True, exist_ok=True)
        expected.update(relative / name for name in dirs)
        for name in files:
            expected.add(relative / name)
            src = Path(current) / name
            dst = target_dir / name
            if src.is_symlink():
                continue
            if _needs_copy(src, dst):
                copy_file(src, dst)
                stats.copied += 1
            else:
                stats.unchanged += 1

    for current, dirs, files in os.walk(destination, topdown=False):
        relative = Path(current).relative_to(destination)
        for name in files:
            if relative / name in expected:
                continue
            if delete:
                (Path(current) / name).unlink()
                stats.deleted += 1
            else:
                stats.orphaned += 1
        if delete:
            for name in dirs:
                path = Path(current) / name
                if relative / name not in expected and not any(path.iterdir()):
                    path.rmdir()
    return stats


def _local_now() -> datetime:
    return datetime.now().astimezone()


# ----------------------------------------------------------------------
class BackupJob:
    """Run the incremental backup pipeline under the per-instance lock."""

    def __init__(
        self,
        config: AppConfig,
        layout: InstanceLayout,
        *,
        sdp: SdpProvider,
        p4d: P4dProvider,
        templates: TemplateEngine,
        locks: LockManager,
        logger: StructuredLogger,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        if config.backups.destination is None:
            raise BackupError("No backup destination configured (BACKUP_DESTINATION).")
        self.config = config
        self.settings: BackupConfig = config.backups
        self.layout = layout
        self.sdp = sdp
        self.p4d = p4d
        self.templates = templates
        self.locks = locks
        self.logger = logger
        self._clock = clock
        self.destination: Path = config.backups.destination

    @property
    def lock_name(self) -> str:
        """Name of the lock serialising backups of this instance."""
        return f"backup-{self.layout.instance}"

    @property
    def latest(self) -> Path:
        """Return the incremental backup directory."""
        return self.destination / LATEST_DIR

    @property
    def monthly(self) -> Path:
        """Return the directory holding monthly snapshots."""
        return self.destination / MONTHLY_DIR

    def run(self, op: OperationScope) -> BackupReport:
        """Acquire the lock and execute every pipeline step in order.

        :class:`~helixctl.locking.LockHeldError` propagates before anything
        under the destination is touched.
        """
        with self.locks.acquire(self.lock_name, timeout=0) as handle:
            op.set_lock_wait_ms(handle.wait_ms)
            if handle.stale_pid is not None:
                op.add_step(
                    "backup.lock",
                    status="info",
                    detail=f"discarded stale lock of PID {handle.stale_pid}",
                )
            else:
                op.add_step("backup.lock", status="success", detail=handle.path)
            return self._run_locked(op)

    # ------------------------------------------------------------------
    def _run_locked(self, op: OperationScope) -> BackupReport:
        report = BackupReport(destination=self.destination)
        if not self.layout.root.is_dir():
            raise BackupError(f"Instance directory {self.layout.root} not found.")
        for component in COMPONENTS:
            (self.latest / component).mkdir(parents=True, exist_ok=True)
        self.monthly.mkdir(parents=True, exist_ok=True)
        op.add_step(
            "backup.start",
            status="info",
            detail=f"instance {self.layout.instance} -> {self.destination}",
        )

        self._checkpoint(op, report)
        self._copy_checkpoint(op, report)
        self._sync_journals(op, report)
        self._sync_depot(op, report)
        self._sync_config_and_logs(op, report)
        self._write_manifest(op, report)
        self._snapshot(op, report)
        self._update_current_link(op, report)
        self._enforce_retention(op, report)
        self._verify(op, report)
        self._summarise(op, report)
        return report

    def _checkpoint(self, op: OperationScope, report: BackupReport) -> None:
        try:
            result = self.sdp.live_checkpoint()
        except SdpError as exc:
            self._error(op, report, "backup.checkpoint", str(exc))
            return
        if result.ok:
            op.add_step("backup.checkpoint", status="success", detail="live checkpoint created")
        else:
            message = f"live checkpoint failed: {result.summary()}"
            self._error(op, report, "backup.checkpoint", message)

    def _checkpoint_generations(self) -> list[Path]:
        patterns = (f"checkpoint.{self.layout.instance}.*", f"p4_{self.layout.instance}.ckp.*")
        bases: set[Path] = set()
        for pattern in patterns:
            for path in self.layout.checkpoints_dir.glob(pattern):
                if not path.is_file() or path.name.endswith(".md5"):
                    continue
                bases.add(path.with_name(path.name.removesuffix(".gz")))
        return sorted(bases, key=lambda path: _natural_key(path.name))

    def _copy_checkpoint(self, op: OperationScope, report: BackupReport) -> None:
        generations = self._checkpoint_generations()
        if not generations:
            message = f"no checkpoint files in {self.layout.checkpoints_dir}"
            self._error(op, report, "backup.checkpoint-copy", message)
            return
        base = generations[-1]
        candidates = [path for path in (base, base.with_name(f"{base.name}.gz")) if path.is_file()]
        target_dir = self.latest / "checkpoints"
        try:
            for stale in target_dir.iterdir():
                if stale.is_file() and stale.name not in {path.name for path in candidates}:
                    stale.unlink()
            for source in candidates:
                copy_file(source, target_dir / source.name)
        except OSError as exc:
            self._error(op, report, "backup.checkpoint-copy", f"checkpoint copy failed: {exc}")
            return
        report.checkpoint = base.name
        op.add_step(
            "backup.checkpoint-copy",
            status="success",
            detail=[path.name for path in candidates],
        )

    def _sync_journals(self, op: OperationScope, report: BackupReport) -> None:
        target = self.latest / "journals"
        if self.layout.journals_dir.is_dir():
            try:
                stats = mirror_tree(self.layout.journals_dir, target, delete=True)
            except OSError as exc:
                self._warn(op, report, "backup.journals", f"journal sync failed: {exc}")
            else:
                op.add_step(
                    "backup.journals",
                    status="success",
                    detail=f"{stats.copied} copied, {stats.deleted} removed",
                )
        else:
            message = f"journal directory not found: {self.layout.journals_dir}"
            self._warn(op, report, "backup.journals", message)

        if self.layout.active_journal.is_file():
            try:
                copy_file(self.layout.active_journal, target / "journal.active")
            except OSError as exc:
                message = f"active journal copy failed: {exc}"
                self._warn(op, report, "backup.active-journal", message)
            else:
                op.add_step(
                    "backup.active-journal",
                    status="success",
                    detail=self.layout.active_journal,
                )

    def _sync_depot(self, op: OperationScope, report: BackupReport) -> None:
        source = self.layout.depot_dir
        target = self.latest / "depot"
        if not source.is_dir():
            self._error(op, report, "backup.depot", f"depot directory not found: {source}")
            return
        report.source_depot_files = count_files(source)
        aggressive = not self.settings.safe_mode
        if report.source_depot_files == 0 and not aggressive:
            self._error(
                op,
                report,
                "backup.depot",
                f"source depot {source} is empty; depot mirror skipped to protect the backup "
                "(set backups.safe_mode=false to mirror anyway)",
            )
            return
        try:
            stats = mirror_tree(source, target, delete=aggressive)
        except OSError as exc:
            self._error(op, report, "backup.depot", f"depot sync failed: {exc}")
            return
        report.orphaned_files = stats.orphaned
        op.add_step(
            "backup.depot",
            status="success",
            detail=(
                f"{stats.copied} copied, {stats.unchanged} unchanged, {stats.deleted} removed, "
                f"backup size {format_size(tree_size(target))}"
            ),
        )
        if stats.orphaned:
            op.add_step(
                "backup.depot.orphans",
                status="info",
                detail=f"{stats.orphaned} file(s) in the backup no longer exist in the depot",
            )

    def _sync_config_and_logs(self, op: OperationScope, report: BackupReport) -> None:
        target = self.latest / "logs"
        for path in self.layout.config_files:
            if not path.is_file():
                continue
            try:
                copy_file(path, target / path.name)
            except OSError as exc:
                self._warn(op, report, "backup.config", f"cannot copy {path}: {exc}")

        log_dir = self.layout.log_dir
        if not log_dir.is_dir():
            op.add_step("backup.logs", status="skipped", detail=f"{log_dir} not found")
            return
        cutoff = (self._clock() - timedelta(days=self.settings.log_max_age_days)).timestamp()
        copied = 0
        for path in sorted(log_dir.rglob("*.log")):
            try:
                if not path.is_file() or path.stat().st_mtime < cutoff:
                    continue
                if _needs_copy(path, target / path.name):
                    copy_file(path, target / path.name)
                    copied += 1
            except OSError as exc:
                self._warn(op, report, "backup.logs", f"cannot copy {path}: {exc}")
        op.add_step("backup.logs", status="success", detail=f"{copied} recent log file(s) updated")

    def _write_manifest(self, op: OperationScope, report: BackupReport) -> None:
        checkpoints = sorted(path.name for path in (self.latest / "checkpoints").iterdir())
        plain = [name for name in checkpoints if not name.endswith(".gz")]
        compressed = [name for name in checkpoints if name.endswith(".gz")]
        try:
            server_version = self.p4d.server_version() or "Unknown"
        except P4dError:
            server_version = "Unknown"
        context = {
            "updated_at": self._clock().strftime("%Y-%m-%d %H:%M:%S %Z").strip(),
            "instance": self.layout.instance,
            "p4root": self.layout.p4root,
            "p4port": self.config.server.p4port,
            "server_version": server_version,
            "checkpoint": plain[-1] if plain else None,
            "compressed_checkpoint": compressed[-1] if compressed else None,
            "journal_count": count_files(self.latest / "journals"),
            "depot_size": format_size(tree_size(self.latest / "depot")),
            "log_count": count_files(self.latest / "logs"),
            "total_size": format_size(tree_size(self.latest)),
            "snapshots": self._snapshots(),
        }
        try:
            self.templates.render_to_path(
                "backup/manifest.txt.j2", self.latest / MANIFEST_NAME, context, mode=0o644
            )
        except (TemplateError, OSError) as exc:
            self._error(op, report, "backup.manifest", f"cannot write manifest: {exc}")
            return
        op.add_step("backup.manifest", status="success", detail=self.latest / MANIFEST_NAME)

    def _snapshots(self) -> list[str]:
        if not self.monthly.is_dir():
            return []
        return sorted(
            path.name
            for path in self.monthly.iterdir()
            if path.is_dir() and _SNAPSHOT_PATTERN.match(path.name)
        )

    def _snapshot(self, op: OperationScope, report: BackupReport) -> None:
        now = self._clock()
        month = now.strftime("%Y-%m")
        snapshot = self.monthly / month
        if snapshot.exists():
            op.add_step("backup.snapshot", status="skipped", detail=f"{month} already exists")
            return

        try:
            shutil.copytree(self.latest, snapshot, symlinks=True, copy_function=os.link)
        except (OSError, shutil.Error) as exc:
            op.add_step(
                "backup.snapshot",
                status="info",
                detail=f"hard links unavailable ({exc}); copying",
            )
            shutil.rmtree(snapshot, ignore_errors=True)
            try:
                shutil.copytree(self.latest, snapshot, symlinks=True)
            except (OSError, shutil.Error) as copy_exc:
                shutil.rmtree(snapshot, ignore_errors=True)
                message = f"cannot create snapshot {month}: {copy_exc}"
                self._warn(op, report, "backup.snapshot", message)
                return

        hardlinked = _same_inode(self.latest / MANIFEST_NAME, snapshot / MANIFEST_NAME)
        try:
            if hardlinked:
                (snapshot / HARDLINK_MARKER).touch()
            self.templates.render_to_path(
                "backup/snapshot_info.txt.j2",
                snapshot / SNAPSHOT_INFO_NAME,
                {
                    "created_at": now.strftime("%Y-%m-%d %H:%M:%S %Z").strip(),
                    "month": month,
                    "instance": self.layout.instance,
                    "hardlinked": hardlinked,
                },
                mode=0o644,
            )
        except (TemplateError, OSError) as exc:
            self._warn(op, report, "backup.snapshot-info", f"cannot write snapshot info: {exc}")
        report.snapshot_created = month
        report.snapshot_hardlinked = hardlinked
        kind = "hard-linked" if hardlinked else "full copy"
        op.add_step("backup.snapshot", status="success", detail=f"{month} ({kind})")

    def _update_current_link(self, op: OperationScope, report: BackupReport) -> None:
        link = self.destination / CURRENT_LINK
        tmp_link = self.destination / f".{CURRENT_LINK}.{os.getpid()}"
        try:
            tmp_link.unlink(missing_ok=True)
            tmp_link.symlink_to(LATEST_DIR)
            os.replace(tmp_link, link)
        except OSError as exc:
            tmp_link.unlink(missing_ok=True)
            self._warn(op, report, "backup.current-link", f"cannot update {link}: {exc}")
            return
        op.add_step("backup.current-link", status="success", detail=f"{link} -> {LATEST_DIR}")

    def _enforce_retention(self, op: OperationScope, report: BackupReport) -> None:
        keep = self.settings.monthly_snapshots
        for name in sorted(self._snapshots(), reverse=True)[keep:]:
            try:
                shutil.rmtree(self.monthly / name)
            except OSError as exc:
                self._warn(op, report, "backup.retention", f"cannot remove snapshot {name}: {exc}")
                continue
            report.removed_snapshots.append(name)
        op.add_step(
            "backup.retention",
            status="success",
            detail=f"keeping {keep}, removed {report.removed_snapshots or 'none'}",
        )

    def _verify(self, op: OperationScope, report: BackupReport) -> None:
        required = [self.latest / name for name in ("checkpoints", "journals", "depot")]
        required.append(self.latest / MANIFEST_NAME)
        for path in required:
            if not path.exists():
                report.integrity_failures.append(f"missing backup component: {path}")
        checkpoint_dir = self.latest / "checkpoints"
        if checkpoint_dir.is_dir() and not any(p.is_file() for p in checkpoint_dir.iterdir()):
            report.integrity_failures.append("no checkpoint file in backup")
        if report.source_depot_files > 0 and count_files(self.latest / "depot") == 0:
            report.integrity_failures.append(
                f"backup depot is empty but the source depot has {report.source_depot_files} files"
            )
        if report.integrity_ok:
            op.add_step("backup.integrity", status="success", detail="all components present")
        else:
            detail = "; ".join(report.integrity_failures)
            op.add_step("backup.integrity", status="error", detail=detail)

    def _summarise(self, op: OperationScope, report: BackupReport) -> None:
        report.total_size = tree_size(self.latest)
        stats_path = self.latest / STATS_NAME
        try:
            previous = stats_path.read_text(encoding="utf-8").strip()
        except OSError:
            previous = None
        if previous:
            detail = f"previous {previous}, now {format_size(report.total_size)}"
            op.add_step("backup.size", status="info", detail=detail)
        try:
            write_atomic(stats_path, format_size(report.total_size) + "\n", mode=0o644)
        except OSError as exc:
            self._warn(op, report, "backup.stats", f"cannot write {stats_path}: {exc}")

        ok = report.exit_code is ExitCode.OK
        lines = [
            f"Latest: {self.latest} ({format_size(report.total_size)})",
            f"Checkpoint: {report.checkpoint or 'none'}",
            f"Monthly snapshots: {len(self._snapshots())}",
            f"Safe mode: {'enabled' if self.settings.safe_mode else 'disabled (aggressive)'}",
            f"Integrity: {'PASSED' if report.integrity_ok else 'FAILED'}",
            f"Errors: {len(report.errors)}  Warnings: {len(report.warnings)}",
        ]
        lines.extend(report.errors)
        lines.extend(report.integrity_failures)
        self.logger.banner(f"Backup {'PASSED' if ok else 'FAILED'}", "\n".join(lines), ok=ok)

    @staticmethod
    def _error(op: OperationScope, report: BackupReport, step: str, message: str) -> None:
        report.errors.append(message)
        op.add_step(step, status="error", detail=message)

    @staticmethod
    def _warn(op: OperationScope, report: BackupReport, step: str, message: str) -> None:
        report.warnings.append(message)
        op.add_step(step, status="warning", detail=message)


def _natural_key(name: str) -> list[tuple[int, str]]:
    return [(int(part), "") if part.isdigit() else (0, part) for part in re.split(r"(\d+)", name)]


def _same_inode(first: Path, second: Path) -> bool:
    try:
        return first.stat().st_ino == second.stat().st_ino
    except OSError:
        return False


# ----------------------------------------------------------------------
# Scheduling
def cron_tag(instance: str) -> str:
    """Return the comment that identifies the backup crontab line."""
    return f"# helixctl-backup-{instance}"


def ensure_destination(destination: Path) -> None:
    """Create *destination* and prove it is writable."""
    try:
        destination.mkdir(parents=True, exist_ok=True)
        sentinel = destination / f".helixctl-write-test.{os.getpid()}"
        sentinel.write_text("ok\n", encoding="utf-8")
        sentinel.unlink()
    except OSError as exc:
        raise BackupError(f"Backup destination {destination} is not writable: {exc}") from exc


def resolve_executable(name: str = "helixctl", argv0: str | None = None) -> str:
    """Return the absolute path of the ``helixctl`` console script.

    Cron starts jobs with a minimal ``PATH``, so the crontab line must not
    depend on command lookup. The running script is preferred, then ``PATH``.
    """
    invoked = Path(argv0 if argv0 is not None else sys.argv[0])
    if invoked.name == name and invoked.is_file():
        return str(invoked.absolute())
    found = shutil.which(name)
    if found is not None:
        return str(Path(found).absolute())
    raise BackupError(f"Cannot locate the {name} executable for the backup crontab.")


def backup_cron_line(
    config: AppConfig,
    templates: TemplateEngine,
    *,
    executable: str | None = None,
) -> str:
    """Render the crontab line running ``helixctl backup run`` for this instance.

    Cron does not inherit the container environment, so the settings the
    backup depends on are passed as assignments in front of the command.
    """
    if config.backups.destination is None:
        raise BackupError("No backup destination configured (BACKUP_DESTINATION).")
    assignments = {
        "SDP_INSTANCE": config.instance,
        "BACKUP_DESTINATION": str(config.backups.destination),
        "BACKUP_SAFE_MODE": "1" if config.backups.safe_mode else "0",
        "MONTHLY_SNAPSHOTS": str(config.backups.monthly_snapshots),
        "P4_SSL_PREFIX": config.server.ssl_prefix,
        "P4_PORT": str(config.server.port),
    }
    if config.config_file is not None and config.config_file.is_file():
        assignments["HELIXCTL_CONFIG_FILE"] = str(config.config_file)
    executable = executable or resolve_executable()
    env = " ".join(f"{key}={shlex.quote(value)}" for key, value in assignments.items())
    command = f"{env} {shlex.quote(executable)} backup run"
    try:
        return templates.render_to_string(
            "cron/backup.cron.j2",
            {
                "schedule": config.backups.schedule,
                "command": command,
                "log_file": shlex.quote(str(config.logs_dir / "backup.log")),
                "tag": cron_tag(config.instance),
            },
        ).strip()
    except TemplateError as exc:
        raise BackupError(str(exc)) from exc


def schedule_backup(
    config: AppConfig,
    templates: TemplateEngine,
    cron: CronProvider,
    op: OperationScope,
    *,
    executable: str | None = None,
) -> bool:
    """Validate the destination and install the backup crontab line.

    Returns ``True`` when the crontab changed.
    """
    if config.backups.destination is None:
        raise BackupError("No backup destination configured (BACKUP_DESTINATION).")
    ensure_destination(config.backups.destination)
    op.add_step("backup.schedule.destination", status="success", detail=config.backups.destination)
    line = backup_cron_line(config, templates, executable=executable)
    changed = cron.install(line, tag=cron_tag(config.instance))
    op.add_step(
        "backup.schedule.cron",
        status="success" if changed else "skipped",
        detail=line if changed else "crontab already up to date",
    )
    return changed


__all__ = [
    "BackupError",
    "BackupJob",
    "BackupReport",
    "MirrorStats",
    "backup_cron_line",
    "copy_file",
    "count_files",
    "cron_tag",
    "ensure_destination",
    "format_size",
    "mirror_tree",
    "resolve_executable",
    "schedule_backup",
    "tree_size",
]
