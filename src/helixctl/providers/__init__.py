"""Providers wrapping the external tools helixctl drives."""
from __future__ import annotations

from .cron import CronError, CronProvider
from .p4d import P4dError, P4dProvider, parse_ztag
from .sdp import SdpError, SdpProvider

__all__ = [
    "CronError",
    "CronProvider",
    "P4dError",
    "P4dProvider",
    "SdpError",
    "SdpProvider",
    "parse_ztag",
]
