"""
Graceful shutdown for the settlement worker.

On SIGTERM/SIGINT the registered callbacks run phase by phase:
1. Stop new work (sweeps stop, the API stops listening)
2. Drain in-flight settlements, force-cancelling after the drain timeout
3. Close outbound connections (feeds, executor)
4. Flush data (metrics)
5. Cleanup (ledger, event bus)

A failing or hanging callback is recorded and the sequence moves on.
"""

import asyncio
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Optional

import structlog

log = structlog.get_logger()

ShutdownCallback = Callable[[], Coroutine[Any, Any, None]]

_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class ShutdownPhase(str, Enum):
    RUNNING = "running"
    SIGNAL_RECEIVED = "signal_received"
    STOPPING_NEW_WORK = "stopping_new_work"
    DRAINING_SETTLEMENTS = "draining_settlements"
    CLOSING_CONNECTIONS = "closing_connections"
    FLUSHING_DATA = "flushing_data"
    CLEANUP = "cleanup"
    COMPLETED = "completed"


# Progress flag raised once each phase has run.
_PHASE_FLAGS = {
    ShutdownPhase.DRAINING_SETTLEMENTS: "settlements_drained",
    ShutdownPhase.CLOSING_CONNECTIONS: "connections_closed",
    ShutdownPhase.FLUSHING_DATA: "data_flushed",
    ShutdownPhase.CLEANUP: "database_closed",
}


@dataclass
class ShutdownProgress:
    """Where the shutdown is, reported on /status while it runs."""

    phase: ShutdownPhase = ShutdownPhase.RUNNING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    signal_received: Optional[str] = None
    in_flight_settlements: int = 0
    settlements_drained: bool = False
    connections_closed: bool = False
    data_flushed: bool = False
    database_closed: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def is_shutting_down(self) -> bool:
        return self.phase not in (ShutdownPhase.RUNNING, ShutdownPhase.COMPLETED)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.completed_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        def stamp(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "phase": self.phase.value,
            "started_at": stamp(self.started_at),
            "completed_at": stamp(self.completed_at),
            "signal_received": self.signal_received,
            "in_flight_settlements": self.in_flight_settlements,
            "settlements_drained": self.settlements_drained,
            "connections_closed": self.connections_closed,
            "data_flushed": self.data_flushed,
            "database_closed": self.database_closed,
            "duration_seconds": self.duration_seconds,
            "errors": list(self.errors),
        }


class ShutdownManager:
    """Runs registered shutdown callbacks in phase order.

    Usage:
        manager = ShutdownManager(timeout_seconds=30.0, drain_timeout_seconds=60.0)
        manager.on_stop_new_work(api.stop)
        manager.set_in_flight_tracker(lambda: scanner.in_flight_count, scanner.cancel_pending)
        manager.on_cleanup(ledger.stop)
        manager.install_signal_handlers()
        await manager.wait_for_shutdown()
    """

    DEFAULT_TIMEOUT_SECONDS = 30.0
    DEFAULT_DRAIN_TIMEOUT_SECONDS = 60.0
    DRAIN_POLL_INTERVAL_SECONDS = 0.5
    FORCE_CANCEL_TIMEOUT_SECONDS = 5.0

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        drain_timeout_seconds: float = DEFAULT_DRAIN_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the manager.

        Args:
            timeout_seconds: Limit for each individual callback.
            drain_timeout_seconds: Limit for in-flight settlements to finish.
        """
        self._timeout = timeout_seconds
        self._drain_timeout = drain_timeout_seconds
        self._progress = ShutdownProgress()
        self._shutdown_event = asyncio.Event()
        self._log = log.bind(component="shutdown_manager")

        self._callbacks: dict[ShutdownPhase, list[ShutdownCallback]] = {
            ShutdownPhase.STOPPING_NEW_WORK: [],
            **{phase: [] for phase in _PHASE_FLAGS},
        }

        self._in_flight_count: Optional[Callable[[], int]] = None
        self._force_cancel: Optional[ShutdownCallback] = None

    @property
    def progress(self) -> ShutdownProgress:
        return self._progress

    @property
    def is_shutting_down(self) -> bool:
        return self._progress.is_shutting_down

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    # ============ Registration ============

    def on_stop_new_work(self, callback: ShutdownCallback) -> None:
        self._callbacks[ShutdownPhase.STOPPING_NEW_WORK].append(callback)

    def on_drain_settlements(self, callback: ShutdownCallback) -> None:
        """Runs before the in-flight count is polled."""
        self._callbacks[ShutdownPhase.DRAINING_SETTLEMENTS].append(callback)

    def on_close_connections(self, callback: ShutdownCallback) -> None:
        self._callbacks[ShutdownPhase.CLOSING_CONNECTIONS].append(callback)

    def on_flush_data(self, callback: ShutdownCallback) -> None:
        self._callbacks[ShutdownPhase.FLUSHING_DATA].append(callback)

    def on_cleanup(self, callback: ShutdownCallback) -> None:
        self._callbacks[ShutdownPhase.CLEANUP].append(callback)

    def set_in_flight_tracker(
        self,
        get_count: Callable[[], int],
        force_cancel: Optional[ShutdownCallback] = None,
    ) -> None:
        """Register how to count, and if needed cancel, running settlements."""
        self._in_flight_count = get_count
        self._force_cancel = force_cancel

    # ============ Signals ============

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or self._running_loop()
        if loop is None:
            self._log.warning("no_event_loop_for_signal_handlers")
            return

        for sig in _SIGNALS:
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(self._handle_signal(s)))
        self._log.info("signal_handlers_installed", signals=[sig.name for sig in _SIGNALS])

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or self._running_loop()
        if loop is None:
            return
        for sig in _SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except (ValueError, RuntimeError):
                pass

    @staticmethod
    def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    async def _handle_signal(self, sig: signal.Signals) -> None:
        self._log.info("shutdown_signal_received", signal=sig.name)
        self._progress.signal_received = sig.name
        await self.shutdown()

    def trigger_shutdown(self) -> None:
        """Start the shutdown from synchronous code."""
        loop = self._running_loop()
        if loop is None:
            self._log.warning("no_event_loop_for_shutdown_trigger")
            return
        loop.create_task(self.shutdown())

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    # ============ Sequence ============

    async def shutdown(self) -> None:
        """Run every phase once; later calls while running are ignored."""
        if self._progress.is_shutting_down:
            self._log.warning("shutdown_already_in_progress")
            return

        self._progress.started_at = datetime.now(timezone.utc)
        self._progress.phase = ShutdownPhase.SIGNAL_RECEIVED
        self._log.info(
            "graceful_shutdown_starting",
            timeout_seconds=self._timeout,
            drain_timeout_seconds=self._drain_timeout,
        )

        try:
            await self._run_phase(ShutdownPhase.STOPPING_NEW_WORK)
            await self._run_phase(ShutdownPhase.DRAINING_SETTLEMENTS)
            await self._drain()
            await self._run_phase(ShutdownPhase.CLOSING_CONNECTIONS)
            await self._run_phase(ShutdownPhase.FLUSHING_DATA)
            await self._run_phase(ShutdownPhase.CLEANUP)
        except Exception as e:
            self._log.error("shutdown_error", phase=self._progress.phase.value, error=str(e))
            self._progress.errors.append(f"Error in {self._progress.phase.value}: {e}")
        finally:
            self._progress.phase = ShutdownPhase.COMPLETED
            self._progress.completed_at = datetime.now(timezone.utc)
            self._shutdown_event.set()
            self._log.info(
                "graceful_shutdown_completed",
                duration_seconds=self._progress.duration_seconds,
                errors=len(self._progress.errors),
            )

    async def _run_phase(self, phase: ShutdownPhase) -> None:
        callbacks = self._callbacks[phase]
        self._progress.phase = phase
        self._log.info("shutdown_phase_starting", phase=phase.value, callback_count=len(callbacks))

        for index, callback in enumerate(callbacks):
            name = getattr(callback, "__name__", f"callback_{index}")
            try:
                await asyncio.wait_for(callback(), timeout=self._timeout)
            except asyncio.TimeoutError:
                self._log.warning("shutdown_callback_timeout", phase=phase.value, callback=name)
                self._progress.errors.append(f"Timeout: {name}")
            except Exception as e:
                self._log.warning("shutdown_callback_error", phase=phase.value, callback=name, error=str(e))
                self._progress.errors.append(f"Error in {name}: {e}")

        # The drain flag is raised by _drain once the in-flight count settles.
        flag = _PHASE_FLAGS.get(phase)
        if flag and phase != ShutdownPhase.DRAINING_SETTLEMENTS:
            setattr(self._progress, flag, True)

    async def _drain(self) -> None:
        """Poll the in-flight count until it hits zero or the drain timeout passes."""
        if self._in_flight_count is None:
            self._progress.settlements_drained = True
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._drain_timeout

        while True:
            count = self._in_flight_count()
            self._progress.in_flight_settlements = count
            if count == 0:
                self._log.info("all_settlements_drained")
                break

            if loop.time() >= deadline:
                self._log.warning(
                    "drain_timeout_reached",
                    remaining_settlements=count,
                    timeout_seconds=self._drain_timeout,
                )
                await self._cancel_remaining(count)
                self._progress.errors.append(f"Drain timeout: {count} settlements remaining")
                break

            self._log.debug("waiting_for_settlements_to_drain", in_flight=count)
            await asyncio.sleep(self.DRAIN_POLL_INTERVAL_SECONDS)

        self._progress.settlements_drained = True

    async def _cancel_remaining(self, count: int) -> None:
        if self._force_cancel is None:
            return
        self._log.info("force_cancelling_remaining_settlements", count=count)
        try:
            await asyncio.wait_for(self._force_cancel(), timeout=self.FORCE_CANCEL_TIMEOUT_SECONDS)
        except Exception as e:
            self._log.error("force_cancel_failed", error=str(e))
            self._progress.errors.append(f"Force cancel failed: {e}")
