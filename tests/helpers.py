"""
Builders and constants shared across Arbiter tests.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from arbiter.domain.wager import (
    Position,
    PredictionDirection,
    Wager,
    WagerKind,
    WagerStatus,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

CREATOR_ID = "user-alice"
CREATOR_ADDRESS = "AliceWa11et111111111111111111111111111111111"
ACCEPTOR_ID = "user-bob"
ACCEPTOR_ADDRESS = "BobWa11et11111111111111111111111111111111111"
TREASURY_ADDRESS = "TreasuryWa11et1111111111111111111111111111"


class FixedClock:
    """Settable clock for deterministic deadline checks."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def crypto_wager(**overrides: Any) -> Wager:
    """An open BTC "above 100" wager expiring an hour after NOW."""
    fields: dict[str, Any] = dict(
        wager_id="w-crypto-1",
        wager_type=WagerKind.CRYPTO,
        creator_id=CREATOR_ID,
        creator_address=CREATOR_ADDRESS,
        amount=Decimal("1"),
        expiry_time=NOW + timedelta(hours=1),
        token_symbol="BTC",
        prediction_type=PredictionDirection.ABOVE,
        target_price=Decimal("100"),
        creator_position=Position.ABOVE,
    )
    fields.update(overrides)
    return Wager(**fields)


def sports_wager(**overrides: Any) -> Wager:
    """An open Lakers-vs-Celtics wager backing the Lakers."""
    fields: dict[str, Any] = dict(
        wager_id="w-sports-1",
        wager_type=WagerKind.SPORTS,
        creator_id=CREATOR_ID,
        creator_address=CREATOR_ADDRESS,
        amount=Decimal("2"),
        expiry_time=NOW + timedelta(hours=1),
        sport="basketball",
        team1="Lakers",
        team2="Celtics",
        prediction="Lakers",
        creator_position=Position.HOME,
    )
    fields.update(overrides)
    return Wager(**fields)


def matched(wager: Wager, status: WagerStatus = WagerStatus.ACTIVE) -> Wager:
    """Fill in acceptor fields as a successful accept would."""
    wager.status = status
    wager.acceptor_id = ACCEPTOR_ID
    wager.acceptor_address = ACCEPTOR_ADDRESS
    wager.opponent_position = wager.creator_position.complement if wager.creator_position else None
    wager.stakes_recorded = True
    return wager
