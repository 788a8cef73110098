"""Clients for external collaborators: escrow relay, price feeds, sports results."""

from arbiter.integrations.executor import RelayExecutor, SettlementExecutor, SimulatedExecutor
from arbiter.integrations.quotes import BinanceQuoteSource, CoinMarketCapQuoteSource, QuoteSource
from arbiter.integrations.results import HttpResultSource, ResultSource

__all__ = [
    "SettlementExecutor",
    "RelayExecutor",
    "SimulatedExecutor",
    "QuoteSource",
    "CoinMarketCapQuoteSource",
    "BinanceQuoteSource",
    "ResultSource",
    "HttpResultSource",
]
