"""Provider for the Server Deployment Package (SDP) scripts and files."""
from __future__ import annotations

import os
import re
import shutil
import tarfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ..commands import CommandError, CommandResult, CommandRunner
from ..layout import InstanceLayout
from ..templates import TemplateEngine

_STORAGE_MIN_PATTERN = re.compile(r"(filesys\.(?:P4ROOT|depot|P4JOURNAL)\.min)=5G")


class SdpError(RuntimeError):
    """Raised when SDP installation or an SDP script fails."""


@dataclass(slots=True)
class SdpProvider:
    """Install the SDP tree and run its per-instance scripts."""

    layout: InstanceLayout
    runner: CommandRunner
    templates: TemplateEngine
    service_user: str = "perforce"

    def is_installed(self) -> bool:
        """Return True when the SDP tree carries its ``Version`` file."""
        return (self.layout.sdp_root / "Version").is_file()

    def installed_version(self) -> str | None:
        """Return the contents of the SDP ``Version`` file, or ``None``."""
        try:
            return (self.layout.sdp_root / "Version").read_text(encoding="utf-8").strip()
        except OSError:
            return None

    def install(self, bundle_dir: Path, tarball: str) -> list[Path]:
        """Unpack the bundled SDP tarball next to the SDP root.

        Returns the helix binaries copied from ``<bundle_dir>/helix_binaries``.
        """
        archive = bundle_dir / tarball
        if not archive.is_file():
            raise SdpError(f"SDP tarball not found: {archive}")
        target = self.layout.sdp_root.parent
        target.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(archive, "r:gz") as handle:
                handle.extractall(target, filter="tar")
        except (tarfile.TarError, OSError) as exc:
            raise SdpError(f"Failed to unpack {archive}: {exc}") from exc

        _make_owner_writable(self.layout.sdp_root)

        copied: list[Path] = []
        binaries = bundle_dir / "helix_binaries"
        if binaries.is_dir():
            destination = self.layout.sdp_root / "helix_binaries"
            destination.mkdir(parents=True, exist_ok=True)
            for source in sorted(binaries.iterdir()):
                if source.is_file():
                    copied.append(Path(shutil.copy2(source, destination / source.name)))
        return copied

    # ------------------------------------------------------------------
    def mkdirs_config_path(self) -> Path:
        """Return the instance's ``mkdirs.<id>.cfg`` path."""
        return self.layout.setup_dir / f"mkdirs.{self.layout.instance}.cfg"

    def write_mkdirs_config(self, template: str, context: Mapping[str, object]) -> Path:
        """Render the instance's ``mkdirs.<id>.cfg``; it holds secrets, so 0600."""
        path = self.mkdirs_config_path()
        self.templates.render_to_path(template, path, context, mode=0o600)
        return path

    def run_mkdirs(self) -> CommandResult:
        """Run ``mkdirs.sh`` for the instance, raising on failure."""
        script = self.layout.setup_dir / "mkdirs.sh"
        if script.exists():
            script.chmod(script.stat().st_mode | 0o111)
        return self._run(
            ["./mkdirs.sh", self.layout.instance],
            cwd=self.layout.setup_dir,
            check=True,
            label="mkdirs.sh",
        )

    def patch_configure_script(self, storage_min: str) -> Path:
        """Lower the 5G storage thresholds in ``configure_new_server.sh``.

        The original script is kept as ``configure_new_server.sh.<stamp>.bak``
        (non-executable). Returns the backup path.
        """
        script = self.layout.configure_dir / "configure_new_server.sh"
        try:
            original = script.read_text(encoding="utf-8")
        except OSError as exc:
            raise SdpError(f"Cannot read {script}: {exc}") from exc

        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        backup = script.with_name(f"{script.name}.{stamp}.bak")
        patched = _STORAGE_MIN_PATTERN.sub(rf"\1={storage_min}", original)
        try:
            os.replace(script, backup)
            backup.chmod(backup.stat().st_mode & ~0o111)
            script.write_text(patched, encoding="utf-8")
            script.chmod(0o755)
        except OSError as exc:
            raise SdpError(f"Failed to patch {script}: {exc}") from exc
        return backup

    def run_configure(self) -> CommandResult:
        """Run ``configure_new_server.sh`` for the instance, raising on failure."""
        return self._run(
            ["./configure_new_server.sh", self.layout.instance],
            cwd=self.layout.configure_dir,
            check=True,
            label="configure_new_server.sh",
        )

    def live_checkpoint(self, *, check: bool = False) -> CommandResult:
        """Take a live checkpoint as the service user."""
        return self._run(
            [self.layout.common_bin / "live_checkpoint.sh", self.layout.instance],
            as_user=self.service_user,
            check=check,
            label="live_checkpoint.sh",
        )

    def install_crontab(self) -> CommandResult:
        """Install the SDP maintenance crontab for the service account."""
        return self._run(
            ["crontab", self.layout.sdp_crontab],
            as_user=self.service_user,
            check=False,
            label="crontab",
        )

    def verify(self, skip: str) -> CommandResult:
        """Run ``verify_sdp.sh`` with the given ``-skip`` list."""
        return self._run(
            [self.layout.common_bin / "verify_sdp.sh", self.layout.instance, "-skip", skip],
            check=False,
            label="verify_sdp.sh",
        )

    def link_broker(self) -> list[Path]:
        """Expose a shared broker binary under per-instance names, when present."""
        links: list[Path] = []
        pairs = (
            (self.layout.common_bin / "p4broker", f"p4broker_{self.layout.instance}"),
            (self.layout.common_bin / "p4broker_init", f"p4broker_{self.layout.instance}_init"),
        )
        if not os.access(pairs[0][0], os.X_OK):
            return links
        self.layout.bin_dir.mkdir(parents=True, exist_ok=True)
        for source, name in pairs:
            if not os.access(source, os.X_OK):
                continue
            link = self.layout.bin_dir / name
            if link.is_symlink() and os.readlink(link) == str(source):
                continue
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(source)
            links.append(link)
        return links

    # ------------------------------------------------------------------
    def _run(
        self,
        args: list[str | os.PathLike[str]],
        *,
        label: str,
        check: bool,
        cwd: Path | None = None,
        as_user: str | None = None,
    ) -> CommandResult:
        try:
            result = self.runner.run(args, cwd=cwd, as_user=as_user)
        except CommandError as exc:
            raise SdpError(str(exc)) from exc
        if check and not result.ok:
            raise SdpError(f"{label} failed (exit {result.returncode}): {result.summary()}")
        return result


def _make_owner_writable(root: Path) -> None:
    for current, dirs, files in os.walk(root):
        for name in (*dirs, *files):
            path = Path(current) / name
            if path.is_symlink():
                continue
            path.chmod(path.stat().st_mode | 0o200)
    if root.exists():
        root.chmod(root.stat().st_mode | 0o200)


__all__ = ["SdpError", "SdpProvider"]
