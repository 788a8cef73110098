"""
Shared pytest fixtures for Arbiter tests.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from arbiter.domain.fees import FeeSchedule, PayoutCalculator
from arbiter.integrations.executor import SimulatedExecutor
from arbiter.services.ledger import Ledger
from arbiter.services.metrics import MetricsEmitter
from arbiter.services.settlement import SettlementEngine, SettlementSettings
from tests.helpers import (
    ACCEPTOR_ADDRESS,
    ACCEPTOR_ID,
    CREATOR_ADDRESS,
    CREATOR_ID,
    TREASURY_ADDRESS,
    FixedClock,
)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest_asyncio.fixture
async def ledger(tmp_path):
    """A connected ledger on a fresh SQLite file, with both test users."""
    store = Ledger(db_path=str(tmp_path / "arbiter.db"))
    await store.start()
    await store.upsert_user(CREATOR_ID, CREATOR_ADDRESS)
    await store.upsert_user(ACCEPTOR_ID, ACCEPTOR_ADDRESS)
    yield store
    await store.stop()


@pytest.fixture
def calculator() -> PayoutCalculator:
    return PayoutCalculator(FeeSchedule())


@pytest.fixture
def executor() -> SimulatedExecutor:
    return SimulatedExecutor()


@pytest.fixture
def quote_source():
    """Quote source answering 105 for every symbol."""
    source = MagicMock()
    source.name = "stub"
    source.price_of = AsyncMock(return_value=Decimal("105"))
    return source


@pytest.fixture
def result_source():
    """Result source reporting a Lakers win."""
    source = MagicMock()
    source.result_of = AsyncMock(return_value="Lakers")
    return source


@pytest.fixture
def mock_event_bus():
    """Mock EventBus for unit tests."""
    bus = MagicMock()
    bus.is_connected = True
    bus.publish = AsyncMock()
    return bus


@pytest.fixture
def metrics() -> MetricsEmitter:
    return MetricsEmitter()


@pytest.fixture
def settings() -> SettlementSettings:
    return SettlementSettings(
        treasury_address=TREASURY_ADDRESS,
        dry_run=True,
        executor_timeout_seconds=1.0,
        feed_timeout_seconds=1.0,
    )


@pytest.fixture
def engine(
    ledger,
    executor,
    calculator,
    settings,
    quote_source,
    result_source,
    mock_event_bus,
    metrics,
    clock,
) -> SettlementEngine:
    return SettlementEngine(
        ledger=ledger,
        executor=executor,
        calculator=calculator,
        settings=settings,
        quote_source=quote_source,
        result_source=result_source,
        event_bus=mock_event_bus,
        metrics=metrics,
        clock=clock,
    )
