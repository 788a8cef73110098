"""
Wager domain model and lifecycle state machine.

A wager moves open -> active -> {resolved, cancelled, expired}. The sweep
may relabel a live wager `cancelled` as a freeze marker before deciding
whether it is resolved (matched) or refunded (unmatched), so `cancelled`
is allowed to move on to `resolved` or `expired`. Nothing ever moves back
to `open` or `active`.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from arbiter.core.retry import InvalidState

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    """Render a timestamp in the fixed-width UTC form stored in the ledger.

    Fixed width keeps lexical and chronological ordering identical, which
    the deadline queries rely on.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_ts(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp (a trailing Z is accepted) as aware UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class WagerKind(str, Enum):
    """Wager kind, which selects the outcome source."""
    CRYPTO = "crypto"
    SPORTS = "sports"


class WagerStatus(str, Enum):
    """Authoritative wager status."""
    OPEN = "open"
    ACTIVE = "active"
    MATCHED = "matched"  # legacy alias of active written by older clients
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ResolutionStatus(str, Enum):
    """Settlement claim marker. Unset (None) means unclaimed."""
    PROCESSING = "processing"
    COMPLETED = "completed"


class PredictionDirection(str, Enum):
    """Comparison applied to a crypto wager's target price."""
    ABOVE = "above"
    BELOW = "below"


class Position(str, Enum):
    """Side of a wager as the escrow program sees it."""
    ABOVE = "above"
    BELOW = "below"
    HOME = "home"
    AWAY = "away"

    @property
    def complement(self) -> "Position":
        return _COMPLEMENTS[self]


_COMPLEMENTS = {
    Position.ABOVE: Position.BELOW,
    Position.BELOW: Position.ABOVE,
    Position.HOME: Position.AWAY,
    Position.AWAY: Position.HOME,
}


class Side(str, Enum):
    """Party of a wager."""
    CREATOR = "creator"
    ACCEPTOR = "acceptor"


# Statuses a wager may be in while its deadline has not been handled yet
LIVE_STATUSES = (WagerStatus.OPEN, WagerStatus.ACTIVE, WagerStatus.MATCHED)

# Statuses in which both stakes are in escrow
MATCHED_STATUSES = (WagerStatus.ACTIVE, WagerStatus.MATCHED)

# Statuses from which a matched wager may be resolved
RESOLVABLE_STATUSES = (WagerStatus.ACTIVE, WagerStatus.MATCHED, WagerStatus.CANCELLED)

TRANSITIONS: dict[WagerStatus, frozenset[WagerStatus]] = {
    WagerStatus.OPEN: frozenset({WagerStatus.ACTIVE, WagerStatus.CANCELLED}),
    WagerStatus.ACTIVE: frozenset({WagerStatus.CANCELLED, WagerStatus.RESOLVED}),
    WagerStatus.MATCHED: frozenset(
        {WagerStatus.ACTIVE, WagerStatus.CANCELLED, WagerStatus.RESOLVED}
    ),
    WagerStatus.CANCELLED: frozenset({WagerStatus.RESOLVED, WagerStatus.EXPIRED}),
    WagerStatus.RESOLVED: frozenset(),
    WagerStatus.EXPIRED: frozenset(),
}


def can_transition(current: WagerStatus, target: WagerStatus) -> bool:
    """Check whether `current -> target` is an edge of the lifecycle graph.

    Staying in the same status is allowed (metadata-only bookkeeping writes).
    """
    if current == target:
        return True
    return target in TRANSITIONS[current]


def ensure_transition(current: WagerStatus, target: WagerStatus) -> None:
    """Raise InvalidState unless `current -> target` is allowed."""
    if not can_transition(current, target):
        raise InvalidState(
            f"Wager cannot move from {current.value} to {target.value}"
        )


def creator_position_for(
    kind: WagerKind,
    prediction_type: Optional[str] = None,
    prediction: Optional[str] = None,
    team1: Optional[str] = None,
) -> Position:
    """Derive the creator's escrow position from the prediction payload.

    Crypto: the comparison direction. Sports: home if the creator backed
    team1, away otherwise.
    """
    if kind == WagerKind.CRYPTO:
        return Position(PredictionDirection(prediction_type).value)
    if prediction is not None and team1 is not None and _same_team(prediction, team1):
        return Position.HOME
    return Position.AWAY


def _same_team(a: str, b: str) -> bool:
    return a.strip().casefold() == b.strip().casefold()


@dataclass
class Wager:
    """A two-party staked prediction held in on-chain escrow."""
    wager_id: str
    wager_type: WagerKind
    creator_id: str
    amount: Decimal
    expiry_time: datetime
    status: WagerStatus = WagerStatus.OPEN
    id: Optional[int] = None
    creator_address: Optional[str] = None
    acceptor_id: Optional[str] = None
    acceptor_address: Optional[str] = None
    escrow_address: Optional[str] = None
    creator_position: Optional[Position] = None
    opponent_position: Optional[Position] = None

    # Crypto payload
    token_symbol: Optional[str] = None
    prediction_type: Optional[PredictionDirection] = None
    target_price: Optional[Decimal] = None

    # Sports payload
    sport: Optional[str] = None
    team1: Optional[str] = None
    team2: Optional[str] = None
    prediction: Optional[str] = None

    # Outcome
    winner_id: Optional[str] = None
    winner_position: Optional[Position] = None
    resolution_value: Optional[str] = None
    on_chain_signature: Optional[str] = None
    accept_signature: Optional[str] = None
    resolution_time: Optional[datetime] = None
    is_draw: bool = False
    settlement_simulated: bool = False

    # Processing metadata
    expiry_processed: bool = False
    refund_processed: bool = False
    resolution_status: Optional[ResolutionStatus] = None
    stakes_recorded: bool = False
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    refund_signature: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def total_stake(self) -> Decimal:
        """Total pot held in escrow once matched."""
        return self.amount * 2

    @property
    def is_matched(self) -> bool:
        """Whether an acceptor has staked (regardless of status label)."""
        return bool(self.acceptor_id or self.acceptor_address)

    @property
    def is_settled(self) -> bool:
        """Whether the one settlement call for this wager already happened."""
        return self.resolution_status == ResolutionStatus.COMPLETED or self.refund_processed

    @property
    def is_claimed(self) -> bool:
        return self.resolution_status == ResolutionStatus.PROCESSING

    def is_past_deadline(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expiry_time

    def party(self, side: Side) -> tuple[Optional[str], Optional[str]]:
        """Return (user id, wallet address) of one side."""
        if side == Side.CREATOR:
            return self.creator_id, self.creator_address
        return self.acceptor_id, self.acceptor_address

    def position_of(self, side: Side) -> Optional[Position]:
        if side == Side.CREATOR:
            return self.creator_position
        return self.opponent_position

    @property
    def subject(self) -> str:
        """Short human description used in notifications."""
        if self.wager_type == WagerKind.CRYPTO:
            return self.token_symbol or "crypto"
        return f"{self.team1} vs {self.team2}"
