"""Lifecycle control for the managed p4d process.

Starting and querying go through the SDP init script. Stopping is layered:
the init script is asked first, then the controller resolves the server's
PIDs through an ordered chain of strategies (PID files, command-line pattern,
owner of the listening port), waits for them to exit, escalates to
``SIGKILL`` once the timeout passes and finally kills anything still bound to
the service port.
"""
from __future__ import annotations

import os
import re
import signal
import socket
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

import psutil

from .commands import CommandResult
from .layout import InstanceLayout
from .locking import pid_is_running, read_lock_pid
from .logging import OperationScope
from .providers.p4d import P4dError, P4dProvider

MIN_INIT_TIMEOUT = 1.0


class ServerState(str, Enum):
    """Result of a status query."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class PidStrategy(Protocol):
    """One way of locating the server's process IDs."""

    name: str

    def resolve(self) -> list[int]:
        """Return candidate PIDs, or an empty list when nothing matches."""


@dataclass(slots=True)
class PidFileStrategy:
    """Read PIDs recorded in the candidate PID files."""

    paths: Sequence[Path]
    name: str = "pid-file"

    def resolve(self) -> list[int]:
        """Return the PIDs recorded in any candidate file."""
        pids: list[int] = []
        for path in self.paths:
            pid = read_lock_pid(path)
            if pid is not None and pid not in pids:
                pids.append(pid)
        return pids


@dataclass(slots=True)
class PatternStrategy:
    """Match running processes by a regular expression over their command line."""

    pattern: str
    name: str = "pattern"

    def resolve(self) -> list[int]:
        """Return PIDs whose joined command line matches the pattern."""
        regex = re.compile(self.pattern)
        own_pid = os.getpid()
        pids: list[int] = []
        for process in psutil.process_iter(["pid", "cmdline"]):
            cmdline = process.info.get("cmdline") or []
            if process.info["pid"] == own_pid or not cmdline:
                continue
            if regex.search(" ".join(cmdline)):
                pids.append(process.info["pid"])
        return pids


@dataclass(slots=True)
class PortOwnerStrategy:
    """Find processes listening on a TCP port."""

    port: int
    name: str = "port-owner"

    def resolve(self) -> list[int]:
        """Return PIDs listening on the port; empty when sockets cannot be listed."""
        try:
            connections = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied:
            return []
        pids: list[int] = []
        for conn in connections:
            if conn.status != psutil.CONN_LISTEN or conn.pid is None:
                continue
            if conn.laddr and conn.laddr.port == self.port and conn.pid not in pids:
                pids.append(conn.pid)
        return pids


def resolve_pids(
    strategies: Iterable[PidStrategy],
    alive: Callable[[int], bool] = pid_is_running,
) -> tuple[str | None, list[int]]:
    """Return the first strategy yielding live PIDs, with those PIDs."""
    for strategy in strategies:
        pids = [pid for pid in strategy.resolve() if alive(pid)]
        if pids:
            return strategy.name, pids
    return None, []


@dataclass(slots=True)
class StopResult:
    """Outcome of :meth:`ProcessController.stop`."""

    stopped: bool
    strategy: str | None = None
    pids: list[int] = field(default_factory=list)
    remaining: list[int] = field(default_factory=list)
    escalated: bool = False
    port_killed: list[int] = field(default_factory=list)
    removed_pid_files: list[Path] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def critical(self) -> bool:
        """True when server processes survived every stop attempt."""
        return not self.stopped


class ProcessController:
    """Start, stop and query one p4d instance."""

    def __init__(
        self,
        p4d: P4dProvider,
        layout: InstanceLayout,
        *,
        port: int,
        settle_delay: float = 2.0,
        kill_grace: float = 2.0,
        init_timeout: float | None = None,
        strategies: Sequence[PidStrategy] | None = None,
        port_strategy: PidStrategy | None = None,
        signaller: Callable[[int, int], None] = os.kill,
        alive: Callable[[int], bool] = pid_is_running,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.p4d = p4d
        self.layout = layout
        self.port = port
        self.settle_delay = settle_delay
        self.kill_grace = kill_grace
        self.init_timeout = init_timeout
        self.port_strategy = port_strategy or PortOwnerStrategy(port)
        self.strategies = list(strategies) if strategies is not None else [
            PidFileStrategy(layout.pid_files),
            PatternStrategy(layout.process_pattern),
            self.port_strategy,
        ]
        self._signal = signaller
        self._alive = alive
        self._sleep = sleep
        self._clock = clock

    def start(self, op: OperationScope | None = None) -> CommandResult:
        """Run the init script's ``start`` and pause for the settle delay.

        Raises :class:`P4dError` when the script cannot run or outlives
        ``init_timeout``.
        """
        result = self.p4d.init("start", timeout=self.init_timeout)
        if op is not None:
            status = "success" if result.ok else "error"
            op.add_step("server.start", status=status, detail=result.summary())
        if result.ok and self.settle_delay > 0:
            self._sleep(self.settle_delay)
        return result

    def status(self) -> ServerState:
        """Return the server state; failure to run the query is ``UNKNOWN``."""
        try:
            result = self.p4d.init("status", timeout=self.init_timeout)
        except P4dError:
            return ServerState.UNKNOWN
        return ServerState.RUNNING if result.ok else ServerState.STOPPED

    def wait_ready(self, timeout: float, *, host: str = "127.0.0.1") -> bool:
        """Poll a TCP connect to the service port until it answers or *timeout* passes."""
        deadline = self._clock() + timeout
        while True:
            try:
                with socket.create_connection((host, self.port), timeout=1.0):
                    return True
            except OSError:
                if self._clock() >= deadline:
                    return False
            self._sleep(1.0)

    def stop(self, timeout: float, op: OperationScope | None = None) -> StopResult:
        """Stop the server, escalating to ``SIGKILL`` after *timeout* seconds."""
        result = StopResult(stopped=False)

        # The init script runs inside the same deadline as the PID polling.
        deadline = self._clock() + timeout
        try:
            init_result = self.p4d.init("stop", timeout=max(timeout, MIN_INIT_TIMEOUT))
        except P4dError as exc:
            result.warnings.append(f"init stop could not run: {exc}")
            self._step(op, "server.stop.init", "warning", str(exc))
        else:
            if init_result.ok:
                self._step(op, "server.stop.init", "success", None)
            else:
                message = f"init stop exited {init_result.returncode}: {init_result.summary()}"
                result.warnings.append(message)
                self._step(op, "server.stop.init", "warning", message)

        strategy, pids = resolve_pids(self.strategies, self._alive)
        result.strategy = strategy
        result.pids = list(pids)

        terminated = False
        while True:
            live = self._live(self._tracked(result))
            if not live:
                break
            if not terminated:
                self._send(live, signal.SIGTERM)
                terminated = True
                self._step(op, "server.stop.sigterm", "info", live)
            if self._clock() >= deadline:
                break
            self._sleep(1.0)

        live = self._live(self._tracked(result))
        if live:
            result.escalated = True
            self._send(live, signal.SIGKILL)
            self._step(op, "server.stop.sigkill", "warning", live)
            self._wait_gone(live)

        port_pids = self._live(self.port_strategy.resolve())
        if port_pids:
            result.port_killed = port_pids
            self._send(port_pids, signal.SIGKILL)
            self._step(op, "server.stop.port-owner", "warning", port_pids)
            self._wait_gone(port_pids)

        result.remaining = self._live(self._tracked(result) + port_pids)
        if result.remaining:
            self._step(
                op,
                "server.stop",
                "critical",
                f"processes still running after SIGKILL: {result.remaining}",
            )
            return result

        result.stopped = True
        for path in self.layout.pid_files:
            if path.exists():
                path.unlink(missing_ok=True)
                result.removed_pid_files.append(path)
        self._step(op, "server.stop", "success", f"stopped via {strategy or 'init script'}")
        return result

    # ------------------------------------------------------------------
    def _tracked(self, result: StopResult) -> list[int]:
        _, fresh = resolve_pids(self.strategies, self._alive)
        for pid in fresh:
            if pid not in result.pids:
                result.pids.append(pid)
        return list(result.pids)

    def _live(self, pids: Iterable[int]) -> list[int]:
        return [pid for pid in dict.fromkeys(pids) if self._alive(pid)]

    def _send(self, pids: Iterable[int], signum: int) -> None:
        for pid in pids:
            try:
                self._signal(pid, signum)
            except (ProcessLookupError, PermissionError):
                continue

    def _wait_gone(self, pids: list[int]) -> None:
        deadline = self._clock() + self.kill_grace
        while self._live(pids) and self._clock() < deadline:
            self._sleep(0.2)

    @staticmethod
    def _step(op: OperationScope | None, step: str, status: str, detail: object) -> None:
        if op is not None:
            op.add_step(step, status=status, detail=detail)


__all__ = [
    "PatternStrategy",
    "PidFileStrategy",
    "PidStrategy",
    "PortOwnerStrategy",
    "ProcessController",
    "ServerState",
    "StopResult",
    "resolve_pids",
]
