"""Services - business logic with single responsibility."""

from arbiter.services.metrics import MetricsEmitter
from arbiter.services.ledger import Ledger
from arbiter.services.stats import StatsAccumulator
from arbiter.services.notifications import Notifier
from arbiter.services.settlement import SettlementEngine, SettlementSettings, Trigger
from arbiter.services.expiration import ExpirationScanner, ScannerSettings
from arbiter.services.api import SettlementApi

__all__ = [
    "MetricsEmitter",
    "Ledger",
    "StatsAccumulator",
    "Notifier",
    "SettlementEngine",
    "SettlementSettings",
    "Trigger",
    "ExpirationScanner",
    "ScannerSettings",
    "SettlementApi",
]
