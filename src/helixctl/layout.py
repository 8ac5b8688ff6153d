"""Filesystem layout of an SDP-managed Helix Core instance."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig

MARKER_NAME = ".helixctl_setup_complete"


@dataclass(frozen=True, slots=True)
class InstanceLayout:
    """Derived paths for one SDP instance.

    All locations follow the SDP conventions: ``/p4/<id>`` is the instance
    root (symlinked into the metadata, depot and log volumes by ``mkdirs.sh``),
    ``/p4/common`` holds shared scripts and ``/hxdepots/p4/<id>/depots`` holds
    versioned file content.
    """

    instance: str
    p4_base: Path
    depots_root: Path
    logs_root: Path
    sdp_root: Path

    @classmethod
    def from_config(cls, config: AppConfig) -> InstanceLayout:
        """Build the layout for the configured instance."""
        return cls(
            instance=config.instance,
            p4_base=config.p4_base,
            depots_root=config.depots_root,
            logs_root=config.logs_root,
            sdp_root=config.sdp_root,
        )

    @property
    def root(self) -> Path:
        """Return the instance root (``/p4/<id>``)."""
        return self.p4_base / self.instance

    @property
    def bin_dir(self) -> Path:
        """Return the instance ``bin`` directory."""
        return self.root / "bin"

    @property
    def common_bin(self) -> Path:
        """Return the shared SDP script directory."""
        return self.p4_base / "common" / "bin"

    @property
    def p4root(self) -> Path:
        """Return the server metadata root (``P4ROOT``)."""
        return self.root / "root"

    @property
    def control_script(self) -> Path:
        """Return the instance wrapper whose presence marks an installed instance."""
        return self.bin_dir / f"p4d_{self.instance}"

    @property
    def init_script(self) -> Path:
        """Return the SDP init script for the server."""
        return self.bin_dir / f"p4d_{self.instance}_init"

    @property
    def client_bin(self) -> Path:
        """Return the instance's p4 client wrapper."""
        return self.bin_dir / f"p4_{self.instance}"

    @property
    def checkpoints_dir(self) -> Path:
        """Return the checkpoint directory."""
        return self.root / "checkpoints"

    @property
    def journals_dir(self) -> Path:
        """Return the rotated journal directory."""
        return self.root / "journals"

    @property
    def active_journal(self) -> Path:
        """Return the live journal file (``P4JOURNAL``)."""
        return self.root / "logs" / "journal"

    @property
    def journal_prefix(self) -> str:
        """Return the checkpoint and journal file prefix."""
        return str(self.checkpoints_dir / f"p4_{self.instance}")

    @property
    def depot_storage_root(self) -> str:
        """Return the value applied to ``server.depot.root``."""
        return str(self.root / "depots")

    @property
    def depot_dir(self) -> Path:
        """Return the physical depot directory inside the depot volume."""
        return self.depots_root / "p4" / self.instance / "depots"

    @property
    def log_dir(self) -> Path:
        """Return the server log directory on the logs volume."""
        return self.logs_root / "p4" / self.instance / "logs"

    @property
    def tmp_dir(self) -> Path:
        """Return the instance temporary directory."""
        return self.root / "tmp"

    @property
    def marker_path(self) -> Path:
        """Return the setup-complete marker file."""
        return self.root / MARKER_NAME

    @property
    def tickets_file(self) -> Path:
        """Return the ``P4TICKETS`` file used by helixctl."""
        return self.root / ".p4tickets"

    @property
    def trust_file(self) -> Path:
        """Return the ``P4TRUST`` file used by helixctl."""
        return self.root / ".p4trust"

    @property
    def pid_files(self) -> tuple[Path, ...]:
        """Return PID file candidates in lookup order."""
        return (
            self.tmp_dir / "p4d.pid",
            self.root / "logs" / "p4d.pid",
            self.root / "p4d.pid",
        )

    @property
    def process_pattern(self) -> str:
        """Return the command-line pattern identifying the daemonised server."""
        return f"{self.bin_dir}/p4d_{self.instance}.*--daemonsafe"

    @property
    def sdp_crontab(self) -> Path:
        """Return the SDP crontab template for the instance."""
        return self.p4_base / f"p4.crontab.{self.instance}"

    @property
    def setup_dir(self) -> Path:
        """Return the SDP directory holding ``mkdirs.sh``."""
        return self.sdp_root / "Server" / "Unix" / "setup"

    @property
    def configure_dir(self) -> Path:
        """Return the SDP directory holding ``configure_new_server.sh``."""
        return self.sdp_root / "Server" / "setup"

    @property
    def vars_file(self) -> Path:
        """Return the SDP environment file written by ``mkdirs.sh``."""
        return self.p4_base / "common" / "config" / f"p4_{self.instance}.vars"

    @property
    def config_files(self) -> tuple[Path, ...]:
        """Return per-instance configuration files worth keeping with backups."""
        return (
            self.control_script,
            self.vars_file,
            self.root / ".p4config",
        )


__all__ = ["InstanceLayout", "MARKER_NAME"]
