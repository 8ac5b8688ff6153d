"""Container entry point: provision, start, idle until signalled, stop."""
from __future__ import annotations

import signal
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from types import FrameType

from .backups import BackupError
from .config import AppConfig
from .exit_codes import ExitCode
from .locking import LockHeldError, LockManager
from .logging import OperationScope, StructuredLogger
from .process import ProcessController, StopResult
from .provisioning import ProvisioningError, ProvisioningStateMachine, ProvisionReport
from .providers.cron import CronError
from .providers.p4d import P4dError

HANDLED_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


class SignalHandler:
    """Turn termination signals into a :class:`threading.Event`.

    Handlers only record the signal and set the event; all shutdown work
    happens on the main flow once :meth:`wait` returns.
    """

    def __init__(
        self,
        signals: Iterable[signal.Signals] = HANDLED_SIGNALS,
        *,
        poll_interval: float = 1.0,
    ) -> None:
        self.signals = tuple(signals)
        self.poll_interval = poll_interval
        self.event = threading.Event()
        self.received: signal.Signals | None = None
        self._previous: dict[signal.Signals, object] = {}

    def install(self) -> None:
        """Install the handlers, remembering the previous ones."""
        for signum in self.signals:
            self._previous[signum] = signal.signal(signum, self._handle)

    def restore(self) -> None:
        """Reinstate the handlers that were active before :meth:`install`."""
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)  # type: ignore[arg-type]
        self._previous.clear()

    def trigger(self, signum: signal.Signals = signal.SIGTERM) -> None:
        """Request shutdown as if *signum* had been delivered."""
        self.received = signum
        self.event.set()

    @property
    def triggered(self) -> bool:
        """True once a shutdown signal has been received."""
        return self.event.is_set()

    def wait(self) -> signal.Signals | None:
        """Block until a handled signal arrives and return it."""
        while not self.event.wait(self.poll_interval):
            continue
        return self.received

    def __enter__(self) -> SignalHandler:
        """Install the handlers for the duration of the block."""
        self.install()
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Restore the previous handlers."""
        self.restore()

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        self.trigger(signal.Signals(signum))


@dataclass(slots=True)
class EntryOutcome:
    """What happened during one entry point run."""

    exit_code: ExitCode = ExitCode.OK
    provision: ProvisionReport | None = None
    ready: bool = False
    signal_name: str | None = None
    stop: StopResult | None = None
    warnings: list[str] = field(default_factory=list)


class EntryOrchestrator:
    """Sequence provisioning, startup, idling and shutdown for the container."""

    def __init__(
        self,
        config: AppConfig,
        *,
        machine: ProvisioningStateMachine,
        controller: ProcessController,
        locks: LockManager,
        logger: StructuredLogger,
        signals: SignalHandler,
        schedule_backup: Callable[[OperationScope], bool] | None = None,
    ) -> None:
        self.config = config
        self.machine = machine
        self.controller = controller
        self.locks = locks
        self.logger = logger
        self.signals = signals
        self.schedule_backup = schedule_backup

    def run(self) -> EntryOutcome:
        """Provision, start, wait for a signal, then stop the server."""
        outcome = EntryOutcome()
        with self.signals:
            self._startup(outcome)
            if outcome.exit_code is not ExitCode.OK or not outcome.ready:
                return outcome
            received = self.signals.wait()
            outcome.signal_name = received.name if received is not None else None
            self._shutdown(outcome)
        return outcome

    # ------------------------------------------------------------------
    def _startup(self, outcome: EntryOutcome) -> None:
        with self.logger.operation(
            "entrypoint start",
            args={"instance": self.config.instance},
            target={"kind": "instance", "name": self.config.instance},
        ) as op:
            try:
                with self.locks.acquire("provision", timeout=0) as handle:
                    op.set_lock_wait_ms(handle.wait_ms)
                    report = self.machine.run(op)
            except LockHeldError as exc:
                self._fail(op, outcome, str(exc), ExitCode.ENVIRONMENT)
                return
            except ProvisioningError as exc:
                self._fail(op, outcome, f"Provisioning failed: {exc}", ExitCode.PROVIDER)
                return
            outcome.provision = report
            outcome.warnings.extend(report.warnings)
            outcome.warnings.extend(report.errors)

            if self.signals.triggered:
                op.warning("Termination requested during provisioning; not starting.")
                return

            if self.config.backups.destination is not None and self.schedule_backup is not None:
                try:
                    self.schedule_backup(op)
                except (BackupError, CronError) as exc:
                    message = f"Backup schedule not installed: {exc}"
                    outcome.warnings.append(message)
                    op.add_step("backup.schedule", status="warning", detail=message)

            try:
                result = self.controller.start(op)
            except P4dError as exc:
                self._fail(op, outcome, f"Server start failed: {exc}", ExitCode.PROVIDER)
                return
            if not result.ok:
                message = f"Server start failed: {result.summary()}"
                self._fail(op, outcome, message, ExitCode.PROVIDER)
                return

            timeout = self.config.server.ready_timeout
            if not self.controller.wait_ready(timeout):
                message = (
                    f"Server did not accept connections on port {self.config.server.port} "
                    f"within {timeout:g}s"
                )
                self.controller.stop(self.config.server.shutdown_timeout, op)
                self._fail(op, outcome, message, ExitCode.PROVIDER)
                return

            outcome.ready = True
            op.add_step("entrypoint.ready", status="success", detail=self.config.server.p4port)
            if outcome.warnings:
                op.warning("Server running with warnings.", warnings=outcome.warnings)
            else:
                op.success("Server running.")
        self.logger.echo(
            f"Helix Core instance {self.config.instance} is running on "
            f"{self.config.server.p4port}; waiting for a termination signal.",
            style="green",
        )

    def _shutdown(self, outcome: EntryOutcome) -> None:
        with self.logger.operation(
            "entrypoint stop",
            args={"signal": outcome.signal_name},
            target={"kind": "instance", "name": self.config.instance},
        ) as op:
            op.add_step("entrypoint.signal", status="info", detail=outcome.signal_name)
            outcome.stop = self.controller.stop(self.config.server.shutdown_timeout, op)
            if outcome.stop.critical:
                outcome.exit_code = ExitCode.SHUTDOWN_CRITICAL
                message = (
                    "Server processes survived SIGKILL: "
                    f"{outcome.stop.remaining}; operator intervention required."
                )
                op.error(message, rc=int(outcome.exit_code))
                self.logger.banner("SHUTDOWN CRITICAL", message, ok=False)
                return
            if outcome.stop.warnings:
                op.warning("Server stopped with warnings.", warnings=outcome.stop.warnings)
            else:
                op.success("Server stopped.")

    @staticmethod
    def _fail(op: OperationScope, outcome: EntryOutcome, message: str, code: ExitCode) -> None:
        outcome.exit_code = code
        op.error(message, rc=int(code))


__all__ = ["EntryOrchestrator", "EntryOutcome", "HANDLED_SIGNALS", "SignalHandler"]
