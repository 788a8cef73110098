"""Fee and payout arithmetic for wager settlement.

All amounts are in native token units (SOL) and are truncated to lamport
precision, so nothing is ever paid out that the escrow does not hold.

Outcome kinds:
- win: platform takes a percentage of the pot, winner gets the rest
  minus the network fee
- draw: no platform fee, each party gets its stake back minus half the
  network fee
- cancel / expire: unmatched wager, creator gets the stake back minus
  the network fee
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any

from arbiter.core.config import ConfigManager
from arbiter.core.retry import InvalidRequest

DEFAULT_PLATFORM_FEE_PERCENT = Decimal("4")
DEFAULT_NETWORK_FEE = Decimal("0.000005")
DEFAULT_PRECISION = 9  # lamports

ZERO = Decimal("0")


class OutcomeKind(str, Enum):
    """Settlement kind, which selects the fee rule."""
    WIN = "win"
    DRAW = "draw"
    CANCEL = "cancel"
    EXPIRE = "expire"


@dataclass(frozen=True)
class FeeSchedule:
    """Fee configuration injected into the payout calculator.

    Attributes:
        platform_fee_percent: Percentage of the pot taken on a win (4 = 4%).
        network_fee: Fixed transaction fee charged per settlement.
        precision: Decimal places amounts are truncated to.
    """

    platform_fee_percent: Decimal = DEFAULT_PLATFORM_FEE_PERCENT
    network_fee: Decimal = DEFAULT_NETWORK_FEE
    precision: int = DEFAULT_PRECISION

    @classmethod
    def from_config(cls, config: ConfigManager, prefix: str = "settlement") -> "FeeSchedule":
        return cls(
            platform_fee_percent=config.get_decimal(
                f"{prefix}.platform_fee_percent", default=DEFAULT_PLATFORM_FEE_PERCENT
            ),
            network_fee=config.get_decimal(
                f"{prefix}.network_fee", default=DEFAULT_NETWORK_FEE
            ),
            precision=config.get_int(f"{prefix}.lamport_precision", default=DEFAULT_PRECISION),
        )


@dataclass(frozen=True)
class SettlementBreakdown:
    """Amounts moved by one settlement.

    Payouts that do not apply to the outcome kind are zero.
    """

    kind: OutcomeKind
    amount: Decimal
    total_stake: Decimal
    platform_fee: Decimal
    network_fee: Decimal
    winner_payout: Decimal = ZERO
    creator_payout: Decimal = ZERO
    acceptor_payout: Decimal = ZERO

    @property
    def distributed(self) -> Decimal:
        """Everything that leaves the escrow, fees included."""
        return (
            self.platform_fee
            + self.network_fee
            + self.winner_payout
            + self.creator_payout
            + self.acceptor_payout
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "amount": str(self.amount),
            "total_stake": str(self.total_stake),
            "platform_fee": str(self.platform_fee),
            "network_fee": str(self.network_fee),
            "winner_payout": str(self.winner_payout),
            "creator_payout": str(self.creator_payout),
            "acceptor_payout": str(self.acceptor_payout),
        }


class PayoutCalculator:
    """Computes settlement amounts for each outcome kind."""

    def __init__(self, schedule: FeeSchedule) -> None:
        self._schedule = schedule
        self._quantum = Decimal(1).scaleb(-schedule.precision)

    @property
    def schedule(self) -> FeeSchedule:
        return self._schedule

    def _truncate(self, value: Decimal) -> Decimal:
        if value <= ZERO:
            return ZERO
        return value.quantize(self._quantum, rounding=ROUND_DOWN)

    def calculate(self, amount: Decimal, kind: OutcomeKind) -> SettlementBreakdown:
        """Compute the breakdown for a wager with per-side stake `amount`.

        Raises:
            InvalidRequest: If amount is not positive.
        """
        amount = Decimal(amount)
        if amount <= ZERO:
            raise InvalidRequest(f"Stake must be positive, got {amount}")

        total = amount * 2
        network_fee = self._schedule.network_fee

        if kind == OutcomeKind.WIN:
            platform_fee = self._truncate(total * self._schedule.platform_fee_percent / 100)
            return SettlementBreakdown(
                kind=kind,
                amount=amount,
                total_stake=total,
                platform_fee=platform_fee,
                network_fee=network_fee,
                winner_payout=self._truncate(total - platform_fee - network_fee),
            )

        if kind == OutcomeKind.DRAW:
            each = self._truncate(amount - network_fee / 2)
            return SettlementBreakdown(
                kind=kind,
                amount=amount,
                total_stake=total,
                platform_fee=ZERO,
                network_fee=network_fee,
                creator_payout=each,
                acceptor_payout=each,
            )

        # Unmatched wager: only the creator's stake is in escrow
        return SettlementBreakdown(
            kind=kind,
            amount=amount,
            total_stake=amount,
            platform_fee=ZERO,
            network_fee=network_fee,
            creator_payout=self._truncate(amount - network_fee),
        )

    def win(self, amount: Decimal) -> SettlementBreakdown:
        return self.calculate(amount, OutcomeKind.WIN)

    def draw(self, amount: Decimal) -> SettlementBreakdown:
        return self.calculate(amount, OutcomeKind.DRAW)

    def refund(self, amount: Decimal, kind: OutcomeKind = OutcomeKind.EXPIRE) -> SettlementBreakdown:
        if kind not in (OutcomeKind.CANCEL, OutcomeKind.EXPIRE):
            raise InvalidRequest(f"Not a refund outcome: {kind.value}")
        return self.calculate(amount, kind)
