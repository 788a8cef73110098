"""Per-user running aggregates updated after settlements."""

from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

ZERO = Decimal("0")
WIN_RATE_QUANTUM = Decimal("0.01")


class StatsEvent(str, Enum):
    """What happened to one party.

    ACCEPTANCE is bookkeeping only (both staked, no winner yet) and touches
    nothing but the wagered total.
    """
    ACCEPTANCE = "acceptance"
    WIN = "win"
    LOSS = "loss"
    DRAW = "draw"


def compute_win_rate(total_won: Decimal, total_lost: Decimal) -> Decimal:
    """Won share of decided volume as a percentage (0 when nothing decided)."""
    decided = total_won + total_lost
    if decided <= ZERO:
        return ZERO
    return (total_won / decided * 100).quantize(WIN_RATE_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class UserStats:
    """Aggregates for one wallet."""
    total_wagered: Decimal = ZERO
    total_won: Decimal = ZERO
    total_lost: Decimal = ZERO
    win_rate: Decimal = ZERO
    streak_count: int = 0

    def apply(self, event: StatsEvent, amount: Decimal, record_stake: bool = True) -> "UserStats":
        """Return the aggregates after `event` for a stake of `amount`.

        Args:
            event: Event for this party.
            amount: Per-side stake of the wager.
            record_stake: Add the stake to total_wagered. False when the
                stake was already counted at acceptance.
        """
        total_wagered = self.total_wagered + amount if record_stake else self.total_wagered
        total_won = self.total_won
        total_lost = self.total_lost
        streak = self.streak_count

        if event == StatsEvent.WIN:
            total_won += amount
            streak += 1
        elif event == StatsEvent.LOSS:
            total_lost += amount
            streak = 0

        return replace(
            self,
            total_wagered=total_wagered,
            total_won=total_won,
            total_lost=total_lost,
            win_rate=compute_win_rate(total_won, total_lost),
            streak_count=streak,
        )
