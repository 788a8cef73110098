"""Expiration Scanner - periodic sweeps that settle wagers past their deadline.

Two cadences:
- coarse sweep (every ~15s): bulk-freezes every live wager past its
  deadline, then resolves the matched ones and refunds the unmatched ones
- fine sweep (every ~1s, crypto only): claims matched crypto wagers whose
  deadline is inside a small window around now, waits for the exact
  deadline, then resolves them so the decision price is as close to the
  deadline as possible

Both sweeps go through the engine's claim, so they never settle the same
wager twice. Failures are logged and the wager is left for the next cycle.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from arbiter.core.config import ConfigManager
from arbiter.core.lifecycle import BaseComponent, HealthCheckResult
from arbiter.core.retry import ArbiterError
from arbiter.domain.wager import Wager, utcnow
from arbiter.services.ledger import Ledger
from arbiter.services.metrics import MetricsEmitter
from arbiter.services.settlement import SettlementEngine, Trigger

log = structlog.get_logger()

DEFAULT_COARSE_INTERVAL_SECONDS = 15.0
DEFAULT_FINE_INTERVAL_SECONDS = 1.0
DEFAULT_FINE_LOOKBACK_SECONDS = 5.0
DEFAULT_FINE_LOOKAHEAD_SECONDS = 2.0
DEFAULT_MAX_ALIGN_WAIT_SECONDS = 2.0
DEFAULT_BATCH_LIMIT = 100


@dataclass(frozen=True)
class ScannerSettings:
    """Sweep cadences and windows."""

    coarse_interval_seconds: float = DEFAULT_COARSE_INTERVAL_SECONDS
    fine_interval_seconds: float = DEFAULT_FINE_INTERVAL_SECONDS
    fine_lookback_seconds: float = DEFAULT_FINE_LOOKBACK_SECONDS
    fine_lookahead_seconds: float = DEFAULT_FINE_LOOKAHEAD_SECONDS
    max_align_wait_seconds: float = DEFAULT_MAX_ALIGN_WAIT_SECONDS
    batch_limit: int = DEFAULT_BATCH_LIMIT
    fine_enabled: bool = True

    @classmethod
    def from_config(cls, config: ConfigManager, prefix: str = "scanner") -> "ScannerSettings":
        return cls(
            coarse_interval_seconds=config.get_float(
                f"{prefix}.coarse_interval_seconds", DEFAULT_COARSE_INTERVAL_SECONDS
            ),
            fine_interval_seconds=config.get_float(
                f"{prefix}.fine_interval_seconds", DEFAULT_FINE_INTERVAL_SECONDS
            ),
            fine_lookback_seconds=config.get_float(
                f"{prefix}.fine_lookback_seconds", DEFAULT_FINE_LOOKBACK_SECONDS
            ),
            fine_lookahead_seconds=config.get_float(
                f"{prefix}.fine_lookahead_seconds", DEFAULT_FINE_LOOKAHEAD_SECONDS
            ),
            max_align_wait_seconds=config.get_float(
                f"{prefix}.max_align_wait_seconds", DEFAULT_MAX_ALIGN_WAIT_SECONDS
            ),
            batch_limit=config.get_int(f"{prefix}.batch_limit", DEFAULT_BATCH_LIMIT),
            fine_enabled=config.get_bool(f"{prefix}.fine_enabled", default=True),
        )


@dataclass
class SweepReport:
    """Counts from one coarse sweep."""

    frozen: int = 0
    resolved: int = 0
    refunded: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class ExpirationScanner(BaseComponent):
    """Runs the coarse and fine sweeps as background tasks."""

    def __init__(
        self,
        ledger: Ledger,
        engine: SettlementEngine,
        settings: Optional[ScannerSettings] = None,
        metrics: Optional[MetricsEmitter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(name="expiration_scanner")
        self._ledger = ledger
        self._engine = engine
        self._settings = settings or ScannerSettings()
        self._metrics = metrics
        self._clock = clock
        self._log = log.bind(component="expiration_scanner")

        self._stop_event = asyncio.Event()
        self._loops: list[asyncio.Task] = []
        self._pending: dict[str, asyncio.Task] = {}
        # Claimed by the fine sweep but not yet handed to settle_claimed.
        self._awaiting_deadline: dict[str, Wager] = {}
        self._sweeps_running = 0

        self._counters: dict[str, int] = {
            "coarse_sweeps": 0,
            "fine_sweeps": 0,
            "frozen": 0,
            "resolved": 0,
            "refunded": 0,
            "failed": 0,
            "skipped": 0,
            "fine_scheduled": 0,
            "fine_released": 0,
        }
        self._last_coarse_sweep: Optional[datetime] = None

    @property
    def settings(self) -> ScannerSettings:
        return self._settings

    @property
    def in_flight_count(self) -> int:
        """Fine-sweep settlements scheduled or running, plus active sweeps."""
        return len(self._pending) + self._sweeps_running

    def stats(self) -> dict[str, Any]:
        return {
            **self._counters,
            "in_flight": self.in_flight_count,
            "last_coarse_sweep": self._last_coarse_sweep.isoformat() if self._last_coarse_sweep else None,
        }

    async def _do_start(self) -> None:
        self._stop_event.clear()
        self._loops = [asyncio.create_task(self._coarse_loop(), name="coarse_sweep")]
        if self._settings.fine_enabled:
            self._loops.append(asyncio.create_task(self._fine_loop(), name="fine_sweep"))
        self._log.info(
            "scanner_started",
            coarse_interval=self._settings.coarse_interval_seconds,
            fine_interval=self._settings.fine_interval_seconds,
            fine_enabled=self._settings.fine_enabled,
        )

    def request_stop(self) -> None:
        """Stop scheduling new work; deadline waits wake up and release their claims."""
        self._stop_event.set()

    async def _do_stop(self) -> None:
        self.request_stop()
        for task in self._loops:
            await task
        self._loops = []
        if self._pending:
            await asyncio.gather(*self._pending.values(), return_exceptions=True)
        self._log.info("scanner_stopped", **self._counters)

    async def _do_health_check(self) -> HealthCheckResult:
        crashed = [task.get_name() for task in self._loops if task.done()]
        if crashed and not self._stop_event.is_set():
            return HealthCheckResult.unhealthy("Sweep loop exited", loops=crashed)
        return HealthCheckResult.healthy("Sweeps running", **self.stats())

    async def cancel_pending(self) -> None:
        """Cancel fine-sweep settlements still waiting or running.

        Claims of settlements that never reached the settle step are
        released, including tasks cancelled before their first run.
        """
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self._log.warning("fine_settlements_cancelled", count=len(tasks))

        while self._awaiting_deadline:
            _, wager = self._awaiting_deadline.popitem()
            if await self._engine.release_claim(wager):
                self._counters["fine_released"] += 1
                self._log.info("fine_settlement_released", wager_id=wager.wager_id)

    # ============ Coarse sweep ============

    async def run_coarse_sweep(self) -> SweepReport:
        """Freeze expired wagers, then resolve or refund the frozen backlog."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        report = SweepReport()
        self._sweeps_running += 1

        try:
            report.frozen = await self._ledger.freeze_expired(self._clock())
            if report.frozen:
                self._log.info("wagers_frozen", count=report.frozen)
                if self._metrics:
                    self._metrics.record_frozen(report.frozen)

            pending = await self._ledger.list_pending_cancelled(limit=self._settings.batch_limit)
            for wager in pending:
                await self._process_frozen(wager, report)
        finally:
            self._sweeps_running -= 1

        duration = loop.time() - started
        self._counters["coarse_sweeps"] += 1
        for key, value in report.to_dict().items():
            self._counters[key] += value
        self._last_coarse_sweep = self._clock()
        if self._metrics:
            self._metrics.record_sweep_duration("coarse", duration)

        if report.frozen or pending:
            self._log.info("sweep_completed", sweep="coarse", duration_seconds=round(duration, 3), **report.to_dict())
        return report

    async def _process_frozen(self, wager: Wager, report: SweepReport) -> None:
        try:
            result = await self._engine.process_frozen(wager, Trigger.COARSE_SWEEP)
        except ArbiterError as e:
            report.failed += 1
            self._log.warning(
                "sweep_settlement_failed",
                wager_id=wager.wager_id,
                matched=wager.is_matched,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        if not result.processed:
            report.skipped += 1
        elif result.action == "resolved":
            report.resolved += 1
        else:
            report.refunded += 1

    # ============ Fine sweep ============

    async def run_fine_sweep(self) -> int:
        """Claim crypto wagers at their deadline and schedule their settlement.

        Returns:
            Number of settlements scheduled.
        """
        now = self._clock()
        due = await self._ledger.list_due_crypto(
            now - timedelta(seconds=self._settings.fine_lookback_seconds),
            now + timedelta(seconds=self._settings.fine_lookahead_seconds),
            limit=self._settings.batch_limit,
        )
        self._counters["fine_sweeps"] += 1

        scheduled = 0
        for wager in due:
            if self._stop_event.is_set():
                break
            if wager.wager_id in self._pending:
                continue
            if not await self._engine.claim(wager, Trigger.FINE_SWEEP):
                continue

            self._awaiting_deadline[wager.wager_id] = wager
            task = asyncio.create_task(self._settle_at_deadline(wager), name=f"settle:{wager.wager_id}")
            self._pending[wager.wager_id] = task
            task.add_done_callback(lambda _t, wid=wager.wager_id: self._pending.pop(wid, None))
            scheduled += 1

        if scheduled:
            self._counters["fine_scheduled"] += scheduled
            self._log.info("fine_settlements_scheduled", count=scheduled)
        if self._metrics:
            self._metrics.update_in_flight(self.in_flight_count)
        return scheduled

    async def _settle_at_deadline(self, wager: Wager) -> None:
        try:
            delay = (wager.expiry_time - self._clock()).total_seconds()
            if delay > 0:
                delay = min(delay, self._settings.max_align_wait_seconds)
                if await self._wait_for_stop(delay):
                    self._awaiting_deadline.pop(wager.wager_id, None)
                    await self._engine.release_claim(wager)
                    self._counters["fine_released"] += 1
                    self._log.info("fine_settlement_released", wager_id=wager.wager_id)
                    return

            self._awaiting_deadline.pop(wager.wager_id, None)
            result = await self._engine.settle_claimed(wager, Trigger.FINE_SWEEP)
            self._counters["resolved"] += 1
            self._log.debug("fine_settlement_done", wager_id=wager.wager_id, status=result.status)
        except asyncio.CancelledError:
            if self._awaiting_deadline.pop(wager.wager_id, None) is not None:
                await self._engine.release_claim(wager)
            raise
        except ArbiterError as e:
            self._counters["failed"] += 1
            self._log.warning(
                "fine_settlement_failed",
                wager_id=wager.wager_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        except Exception as e:
            self._counters["failed"] += 1
            self._log.error("fine_settlement_error", wager_id=wager.wager_id, error=str(e))
        finally:
            if self._metrics:
                self._metrics.update_in_flight(len(self._pending))

    # ============ Loops ============

    async def _wait_for_stop(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _coarse_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_coarse_sweep()
            except Exception as e:
                self._log.error("sweep_loop_error", sweep="coarse", error=str(e))
            if await self._wait_for_stop(self._settings.coarse_interval_seconds):
                break

    async def _fine_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_fine_sweep()
            except Exception as e:
                self._log.error("sweep_loop_error", sweep="fine", error=str(e))
            if await self._wait_for_stop(self._settings.fine_interval_seconds):
                break
