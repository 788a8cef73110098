"""
Prometheus metrics emission for Arbiter.

All metrics use the 'arbiter_' prefix.
"""
from decimal import Decimal
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from arbiter import __version__


class MetricsEmitter:
    """Prometheus metrics emission (emit only, no reading).

    Usage:
        emitter = MetricsEmitter()
        emitter.record_settlement("crypto", "win", "fine_sweep", simulated=False)
        metrics_output = emitter.get_metrics()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialize MetricsEmitter.

        Args:
            registry: Optional custom registry (a fresh one if not provided)
        """
        self._registry = registry or CollectorRegistry()

        self._info = Info(
            "arbiter",
            "Arbiter settlement worker information",
            registry=self._registry,
        )
        self._info.info({
            "version": __version__,
            "component": "arbiter",
        })

        self._uptime = Gauge(
            "arbiter_uptime_seconds",
            "Process uptime in seconds",
            registry=self._registry,
        )

        self._settlements_total = Counter(
            "arbiter_settlements_total",
            "Settlements executed",
            ["wager_type", "outcome", "trigger", "simulated"],
            registry=self._registry,
        )

        self._settlement_volume = Counter(
            "arbiter_settlement_volume_sol",
            "Stake volume settled in SOL",
            ["outcome"],
            registry=self._registry,
        )

        self._platform_fees = Counter(
            "arbiter_platform_fees_sol",
            "Platform fees collected in SOL",
            registry=self._registry,
        )

        self._failures_total = Counter(
            "arbiter_settlement_failures_total",
            "Settlement operations that failed",
            ["operation", "reason"],
            registry=self._registry,
        )

        self._claims_contended = Counter(
            "arbiter_claims_contended_total",
            "Claim attempts that lost to another trigger",
            ["trigger"],
            registry=self._registry,
        )

        self._accepted_total = Counter(
            "arbiter_wagers_accepted_total",
            "Wagers matched",
            ["wager_type"],
            registry=self._registry,
        )

        self._cancelled_total = Counter(
            "arbiter_wagers_cancelled_total",
            "Wagers cancelled by their creator",
            ["wager_type"],
            registry=self._registry,
        )

        self._frozen_total = Counter(
            "arbiter_wagers_frozen_total",
            "Wagers frozen by the expiration sweep",
            registry=self._registry,
        )

        self._sweep_duration = Histogram(
            "arbiter_sweep_duration_seconds",
            "Expiration sweep duration in seconds",
            ["sweep"],
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self._registry,
        )

        self._in_flight = Gauge(
            "arbiter_settlements_in_flight",
            "Fine-sweep settlements currently running",
            registry=self._registry,
        )

        self._api_requests = Counter(
            "arbiter_api_requests_total",
            "HTTP requests served",
            ["endpoint", "status"],
            registry=self._registry,
        )

    def record_settlement(
        self,
        wager_type: str,
        outcome: str,
        trigger: str,
        simulated: bool = False,
        amount: Optional[Decimal] = None,
        platform_fee: Optional[Decimal] = None,
    ) -> None:
        """Record an executed settlement.

        Args:
            wager_type: "crypto" or "sports"
            outcome: Outcome kind (win, draw, cancel, expire)
            trigger: What started it (request, coarse_sweep, fine_sweep)
            simulated: Whether the receipt was simulated
            amount: Per-side stake
            platform_fee: Platform fee taken
        """
        self._settlements_total.labels(
            wager_type=wager_type,
            outcome=outcome,
            trigger=trigger,
            simulated=str(simulated).lower(),
        ).inc()
        if amount is not None:
            self._settlement_volume.labels(outcome=outcome).inc(float(amount))
        if platform_fee:
            self._platform_fees.inc(float(platform_fee))

    def record_failure(self, operation: str, reason: str) -> None:
        """Record a failed settlement operation.

        Args:
            operation: Engine operation (accept, resolve, refund, ...)
            reason: Error class name
        """
        self._failures_total.labels(operation=operation, reason=reason).inc()

    def record_contended_claim(self, trigger: str) -> None:
        self._claims_contended.labels(trigger=trigger).inc()

    def record_accepted(self, wager_type: str) -> None:
        self._accepted_total.labels(wager_type=wager_type).inc()

    def record_cancelled(self, wager_type: str) -> None:
        self._cancelled_total.labels(wager_type=wager_type).inc()

    def record_frozen(self, count: int) -> None:
        if count > 0:
            self._frozen_total.inc(count)

    def record_sweep_duration(self, sweep: str, seconds: float) -> None:
        self._sweep_duration.labels(sweep=sweep).observe(seconds)

    def update_in_flight(self, count: int) -> None:
        self._in_flight.set(count)

    def update_uptime(self, seconds: float) -> None:
        self._uptime.set(seconds)

    def record_api_request(self, endpoint: str, status: int) -> None:
        self._api_requests.labels(endpoint=endpoint, status=str(status)).inc()

    def get_metrics(self) -> str:
        """Get Prometheus metrics output.

        Returns:
            Metrics in Prometheus text format
        """
        return generate_latest(self._registry).decode("utf-8")

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry
