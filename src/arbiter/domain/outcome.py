"""
Outcome determination for crypto and sports wagers.

Pure functions: the engine fetches the price or result, these decide who
won. Price comparisons are strict, so a price exactly at the target does
not satisfy the creator's prediction.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from arbiter.core.retry import InvalidRequest
from arbiter.domain.wager import (
    Position,
    PredictionDirection,
    Side,
    Wager,
    WagerKind,
)

DRAW_RESULTS = frozenset({"draw", "tie"})


@dataclass(frozen=True)
class Outcome:
    """Decided outcome of a matched wager."""
    is_draw: bool
    winner: Optional[Side]
    winning_position: Optional[Position]
    resolution_value: str

    @classmethod
    def draw(cls, resolution_value: str) -> "Outcome":
        return cls(is_draw=True, winner=None, winning_position=None, resolution_value=resolution_value)

    @property
    def loser(self) -> Optional[Side]:
        if self.winner is None:
            return None
        return Side.ACCEPTOR if self.winner == Side.CREATOR else Side.CREATOR


def prediction_holds(direction: PredictionDirection, target: Decimal, price: Decimal) -> bool:
    """True when `price` satisfies the creator's prediction."""
    if direction == PredictionDirection.ABOVE:
        return price > target
    return price < target


def _winning(wager: Wager, creator_wins: bool, value: str) -> Outcome:
    winner = Side.CREATOR if creator_wins else Side.ACCEPTOR
    return Outcome(
        is_draw=False,
        winner=winner,
        winning_position=wager.position_of(winner),
        resolution_value=value,
    )


def crypto_outcome(wager: Wager, price: Decimal) -> Outcome:
    """Decide a crypto wager from the settlement price."""
    if wager.wager_type != WagerKind.CRYPTO:
        raise InvalidRequest(f"Wager {wager.wager_id} is not a crypto wager")
    if wager.prediction_type is None or wager.target_price is None:
        raise InvalidRequest(f"Wager {wager.wager_id} has no price prediction")
    creator_wins = prediction_holds(wager.prediction_type, wager.target_price, price)
    return _winning(wager, creator_wins, str(price))


def is_draw_result(result: str) -> bool:
    return result.strip().casefold() in DRAW_RESULTS


def sports_outcome(wager: Wager, result: str) -> Outcome:
    """Decide a sports wager from the reported result.

    `result` is the winning team's name, or "draw"/"tie".
    """
    if wager.wager_type != WagerKind.SPORTS:
        raise InvalidRequest(f"Wager {wager.wager_id} is not a sports wager")
    if is_draw_result(result):
        return Outcome.draw(result)
    creator_wins = (
        wager.prediction is not None
        and result.strip().casefold() == wager.prediction.strip().casefold()
    )
    return _winning(wager, creator_wins, result)
