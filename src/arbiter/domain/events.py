"""Event payload dataclasses for EventBus publishing.

Event Channel Naming Convention:
- wager.accepted - Wager matched, both stakes in escrow
- wager.settled - Resolution, draw or refund executed
- wager.cancelled - Creator cancelled an unmatched wager
- settlement.failed - Settlement attempt failed and was left for retry
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from arbiter.domain.fees import SettlementBreakdown

CHANNEL_WAGER_ACCEPTED = "wager.accepted"
CHANNEL_WAGER_SETTLED = "wager.settled"
CHANNEL_WAGER_CANCELLED = "wager.cancelled"
CHANNEL_SETTLEMENT_FAILED = "settlement.failed"


def _stamp(timestamp: Optional[datetime]) -> str:
    return (timestamp or datetime.now(timezone.utc)).isoformat()


@dataclass(frozen=True)
class WagerAcceptedEvent:
    """Published to: wager.accepted"""

    wager_id: str
    wager_type: str
    creator_id: str
    acceptor_id: str
    amount: str
    signature: str
    simulated: bool
    timestamp: str

    @classmethod
    def create(
        cls,
        wager_id: str,
        wager_type: str,
        creator_id: str,
        acceptor_id: str,
        amount: object,
        signature: str,
        simulated: bool = False,
        timestamp: Optional[datetime] = None,
    ) -> "WagerAcceptedEvent":
        return cls(
            wager_id=wager_id,
            wager_type=wager_type,
            creator_id=creator_id,
            acceptor_id=acceptor_id,
            amount=str(amount),
            signature=signature,
            simulated=simulated,
            timestamp=_stamp(timestamp),
        )

    def to_dict(self) -> dict:
        return {
            "wager_id": self.wager_id,
            "wager_type": self.wager_type,
            "creator_id": self.creator_id,
            "acceptor_id": self.acceptor_id,
            "amount": self.amount,
            "signature": self.signature,
            "simulated": self.simulated,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class WagerSettledEvent:
    """Settlement executed event payload.

    Published to: wager.settled

    Attributes:
        wager_id: External wager identifier.
        wager_type: "crypto" or "sports".
        outcome: Outcome kind ("win", "draw", "cancel", "expire").
        status: Stored status after settlement.
        trigger: What started the settlement ("request", "coarse_sweep", "fine_sweep").
        winner_id: Winning user (None for draws and refunds).
        resolution_value: Price or result the decision was based on.
        breakdown: Fee and payout amounts (strings for Decimal serialization).
        signature: Transaction signature.
        simulated: Whether the transaction was simulated (dry run).
        timestamp: When the settlement was recorded (ISO format).
    """

    wager_id: str
    wager_type: str
    outcome: str
    status: str
    trigger: str
    breakdown: dict
    signature: str
    timestamp: str
    winner_id: Optional[str] = None
    resolution_value: Optional[str] = None
    simulated: bool = False

    @classmethod
    def create(
        cls,
        wager_id: str,
        wager_type: str,
        status: str,
        trigger: str,
        breakdown: SettlementBreakdown,
        signature: str,
        winner_id: Optional[str] = None,
        resolution_value: Optional[str] = None,
        simulated: bool = False,
        timestamp: Optional[datetime] = None,
    ) -> "WagerSettledEvent":
        return cls(
            wager_id=wager_id,
            wager_type=wager_type,
            outcome=breakdown.kind.value,
            status=status,
            trigger=trigger,
            breakdown=breakdown.to_dict(),
            signature=signature,
            timestamp=_stamp(timestamp),
            winner_id=winner_id,
            resolution_value=resolution_value,
            simulated=simulated,
        )

    def to_dict(self) -> dict:
        return {
            "wager_id": self.wager_id,
            "wager_type": self.wager_type,
            "outcome": self.outcome,
            "status": self.status,
            "trigger": self.trigger,
            "winner_id": self.winner_id,
            "resolution_value": self.resolution_value,
            "breakdown": self.breakdown,
            "signature": self.signature,
            "simulated": self.simulated,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class WagerCancelledEvent:
    """Published to: wager.cancelled"""

    wager_id: str
    wager_type: str
    cancelled_by: str
    timestamp: str

    @classmethod
    def create(
        cls,
        wager_id: str,
        wager_type: str,
        cancelled_by: str,
        timestamp: Optional[datetime] = None,
    ) -> "WagerCancelledEvent":
        return cls(
            wager_id=wager_id,
            wager_type=wager_type,
            cancelled_by=cancelled_by,
            timestamp=_stamp(timestamp),
        )

    def to_dict(self) -> dict:
        return {
            "wager_id": self.wager_id,
            "wager_type": self.wager_type,
            "cancelled_by": self.cancelled_by,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class SettlementFailedEvent:
    """Settlement failed event payload.

    Published to: settlement.failed

    Attributes:
        wager_id: External wager identifier.
        operation: Engine operation that failed ("resolve", "refund", ...).
        reason: Error message describing the failure.
        error_type: Exception class name.
        retryable: Whether the wager was left in place for another attempt.
        timestamp: When the failure occurred (ISO format).
    """

    wager_id: str
    operation: str
    reason: str
    error_type: str
    retryable: bool
    timestamp: str

    @classmethod
    def create(
        cls,
        wager_id: str,
        operation: str,
        error: Exception,
        retryable: bool,
        timestamp: Optional[datetime] = None,
    ) -> "SettlementFailedEvent":
        return cls(
            wager_id=wager_id,
            operation=operation,
            reason=str(error),
            error_type=type(error).__name__,
            retryable=retryable,
            timestamp=_stamp(timestamp),
        )

    def to_dict(self) -> dict:
        return {
            "wager_id": self.wager_id,
            "operation": self.operation,
            "reason": self.reason,
            "error_type": self.error_type,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
        }
