"""
Arbiter application lifecycle and component wiring.

Builds every component from configuration and owns startup/shutdown.
Graceful shutdown order:
1. Stop the sweeps and the HTTP server (no new settlements)
2. Wait for in-flight settlements to finish
3. Close executor, price feed and results clients
4. Flush metrics
5. Close the ledger and the event bus
"""
import asyncio
from pathlib import Path
from typing import Any, Callable, Optional

from arbiter import __version__
from arbiter.core.config import ConfigManager
from arbiter.core.events import EventBus
from arbiter.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from arbiter.core.logging import get_logger, setup_logging
from arbiter.core.shutdown import ShutdownManager, ShutdownProgress
from arbiter.domain.fees import FeeSchedule, PayoutCalculator
from arbiter.integrations.executor import RelayExecutor, SettlementExecutor, SimulatedExecutor
from arbiter.integrations.quotes import BinanceQuoteSource, CoinMarketCapQuoteSource, QuoteSource
from arbiter.integrations.results import HttpResultSource, ResultSource
from arbiter.services.api import DEFAULT_PORT, SettlementApi
from arbiter.services.expiration import ExpirationScanner, ScannerSettings, SweepReport
from arbiter.services.ledger import Ledger
from arbiter.services.metrics import MetricsEmitter
from arbiter.services.notifications import Notifier
from arbiter.services.settlement import SettlementEngine, SettlementSettings
from arbiter.services.stats import StatsAccumulator

DEFAULT_CONFIG_PATH = Path("config/default.toml")


class ArbiterApp(BaseComponent):
    """Main Arbiter application.

    Usage:
        app = ArbiterApp(ConfigManager(Path("config/default.toml")))
        await app.run_forever()  # until SIGTERM/SIGINT
    """

    def __init__(self, config: Optional[ConfigManager] = None) -> None:
        """Initialize the application.

        Args:
            config: Loaded configuration. Defaults to config/default.toml
                when present, environment variables otherwise.
        """
        super().__init__(name="ArbiterApp")

        if config is None:
            config = ConfigManager(DEFAULT_CONFIG_PATH if DEFAULT_CONFIG_PATH.exists() else None)
        self._config = config

        setup_logging(
            level=self._config.get_str("arbiter.log_level", "INFO"),
            json_output=self._config.get_bool("arbiter.log_json", False),
            log_file=self._config.get_str("arbiter.log_file") or None,
        )
        self._log = get_logger("app")

        self._dry_run = self._config.get_bool("arbiter.dry_run", True)
        self._event_bus = EventBus(redis_url=self._config.get_str("redis.url", "redis://localhost:6379"))
        self._metrics = MetricsEmitter()
        self._shutdown_manager = ShutdownManager(
            timeout_seconds=self._config.get_float("shutdown.timeout_seconds", 30.0),
            drain_timeout_seconds=self._config.get_float("shutdown.drain_timeout_seconds", 60.0),
        )

        self._ledger = Ledger(config=self._config)
        self._executor = self._build_executor()
        self._quotes = self._build_quote_source()
        self._results = self._build_result_source()

        self._engine = SettlementEngine(
            ledger=self._ledger,
            executor=self._executor,
            calculator=PayoutCalculator(FeeSchedule.from_config(self._config)),
            settings=SettlementSettings.from_config(self._config),
            quote_source=self._quotes,
            result_source=self._results,
            stats=StatsAccumulator(self._ledger),
            notifier=Notifier(self._ledger),
            event_bus=self._event_bus,
            metrics=self._metrics,
        )
        self._scanner = ExpirationScanner(
            ledger=self._ledger,
            engine=self._engine,
            settings=ScannerSettings.from_config(self._config),
            metrics=self._metrics,
        )
        self._api = SettlementApi(
            engine=self._engine,
            scanner=self._scanner,
            ledger=self._ledger,
            metrics=self._metrics,
            host=self._config.get_str("api.host", "0.0.0.0"),
            port=self._config.get_int("api.port", DEFAULT_PORT),
            extra_status=self._shutdown_status,
        )

    @property
    def config(self) -> ConfigManager:
        return self._config

    @property
    def engine(self) -> SettlementEngine:
        return self._engine

    @property
    def scanner(self) -> ExpirationScanner:
        return self._scanner

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    @property
    def metrics(self) -> MetricsEmitter:
        return self._metrics

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def shutdown_progress(self) -> ShutdownProgress:
        return self._shutdown_manager.progress

    # ============ Wiring ============

    def _build_executor(self) -> SettlementExecutor:
        relay_url = self._config.get_str("executor.relay_url")
        if self._dry_run:
            return SimulatedExecutor()
        if not relay_url:
            raise ValueError("executor.relay_url is required when arbiter.dry_run is false")
        return RelayExecutor(
            relay_url=relay_url,
            api_key=self._config.get_str("executor.api_key") or None,
            timeout=self._config.get_float("settlement.executor_timeout_seconds", 30.0),
        )

    def _build_quote_source(self) -> QuoteSource:
        provider = self._config.get_str("quotes.provider", "binance").lower()
        timeout = self._config.get_float("settlement.feed_timeout_seconds", 10.0)
        if provider == "coinmarketcap":
            api_key = self._config.get_str("quotes.api_key")
            if not api_key:
                raise ValueError("quotes.api_key is required for the coinmarketcap provider")
            return CoinMarketCapQuoteSource(api_key=api_key, timeout=timeout)
        if provider == "binance":
            return BinanceQuoteSource(
                quote_asset=self._config.get_str("quotes.quote_asset", "USDT"),
                timeout=timeout,
            )
        raise ValueError(f"Unknown quotes.provider: {provider!r}")

    def _build_result_source(self) -> Optional[ResultSource]:
        base_url = self._config.get_str("results.base_url")
        if not base_url:
            return None
        return HttpResultSource(
            base_url=base_url,
            api_key=self._config.get_str("results.api_key") or None,
            timeout=self._config.get_float("settlement.feed_timeout_seconds", 10.0),
        )

    # ============ Lifecycle ============

    async def _open_connections(self) -> None:
        await self._ledger.start()

        try:
            await self._event_bus.connect()
            self._log.info("event_bus_connected")
        except Exception as e:
            self._log.warning(
                "event_bus_connection_failed",
                error=str(e),
                message="Running without event bus",
            )

        await self._executor.connect()
        await self._quotes.connect()
        if self._results is not None:
            await self._results.connect()

    async def _close_connections(self) -> None:
        await self._executor.close()
        await self._quotes.close()
        if self._results is not None:
            await self._results.close()

    async def _do_start(self) -> None:
        self._log.info(
            "starting_arbiter",
            version=__version__,
            dry_run=self._dry_run,
            database=self._ledger.db_path,
        )

        await self._open_connections()
        await self._scanner.start()
        await self._api.start()

        self._configure_shutdown_manager()
        self._shutdown_manager.install_signal_handlers()

        self._log.info(
            "arbiter_started",
            dry_run=self._dry_run,
            authority=self._executor.authority,
            port=self._api.port,
        )

    def _configure_shutdown_manager(self) -> None:
        self._shutdown_manager.on_stop_new_work(self._wrap_callback(self._scanner.request_stop))
        self._shutdown_manager.on_stop_new_work(self._api.stop)

        self._shutdown_manager.set_in_flight_tracker(
            get_count=lambda: self._scanner.in_flight_count,
            force_cancel=self._scanner.cancel_pending,
        )

        self._shutdown_manager.on_close_connections(self._scanner.stop)
        self._shutdown_manager.on_close_connections(self._close_connections)

        self._shutdown_manager.on_flush_data(self._flush_metrics)

        self._shutdown_manager.on_cleanup(self._ledger.stop)
        self._shutdown_manager.on_cleanup(self._cleanup_event_bus)

    def _wrap_callback(self, callback: Callable[[], Any]) -> Callable[[], Any]:
        """Wrap a callback to handle both sync and async functions."""
        async def wrapped() -> None:
            result = callback()
            if asyncio.iscoroutine(result):
                await result
        return wrapped

    async def _flush_metrics(self) -> None:
        self._metrics.update_uptime(self.uptime_seconds)
        self._log.info("metrics_flushed")

    async def _cleanup_event_bus(self) -> None:
        if self._event_bus.is_connected:
            await self._event_bus.disconnect()
            self._log.info("event_bus_disconnected")

    async def _do_stop(self) -> None:
        self._log.info("stopping_arbiter")

        if self._shutdown_manager.progress.is_shutting_down:
            await self._shutdown_manager.wait_for_shutdown()
        elif not self._shutdown_manager.shutdown_event.is_set():
            await self._shutdown_manager.shutdown()

        self._shutdown_manager.remove_signal_handlers()

        self._log.info(
            "arbiter_stopped",
            shutdown_progress=self._shutdown_manager.progress.to_dict(),
        )

    async def _do_health_check(self) -> HealthCheckResult:
        if self._shutdown_manager.is_shutting_down:
            return HealthCheckResult.degraded(
                message=f"Shutting down: {self._shutdown_manager.progress.phase.value}",
                uptime_seconds=self.uptime_seconds,
            )

        issues = []
        if not self._event_bus.is_connected:
            issues.append("event_bus_disconnected")
        for component in (self._ledger, self._scanner, self._api):
            result = await component.health_check()
            if result.status == HealthStatus.UNHEALTHY:
                issues.append(f"{component.name}_unhealthy")

        if issues:
            return HealthCheckResult.degraded(
                message=f"Issues: {', '.join(issues)}",
                uptime_seconds=self.uptime_seconds,
            )
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds, dry_run=self._dry_run)

    def _shutdown_status(self) -> dict[str, Any]:
        status: dict[str, Any] = {"uptime_seconds": round(self.uptime_seconds, 1)}
        if self._shutdown_manager.is_shutting_down:
            status["shutdown"] = self._shutdown_manager.progress.to_dict()
        return status

    async def run_forever(self) -> None:
        """Run until SIGTERM/SIGINT, then shut down gracefully."""
        await self.start()

        try:
            while not self._shutdown_manager.shutdown_event.is_set():
                self._metrics.update_uptime(self.uptime_seconds)
                try:
                    await asyncio.wait_for(
                        self._shutdown_manager.shutdown_event.wait(),
                        timeout=1.0,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop()

    async def run_sweep_once(self) -> SweepReport:
        """Run a single coarse sweep without starting the loops or the API."""
        await self._open_connections()
        try:
            return await self._scanner.run_coarse_sweep()
        finally:
            await self._close_connections()
            await self._ledger.stop()
            await self._cleanup_event_bus()
