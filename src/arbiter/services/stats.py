"""Stats Accumulator - applies settlement outcomes to user aggregates."""

from typing import Optional

import structlog

from arbiter.domain.outcome import Outcome
from arbiter.domain.stats import StatsEvent, UserStats
from arbiter.domain.wager import Side, Wager
from arbiter.services.ledger import Ledger

log = structlog.get_logger()


class StatsAccumulator:
    """Updates per-user totals through the ledger's locked read-modify-write.

    Acceptance only counts the stake. Resolution counts the win or loss,
    plus the stake if acceptance never recorded it.
    """

    def __init__(self, ledger: Ledger) -> None:
        self._ledger = ledger
        self._log = log.bind(component="stats_accumulator")

    async def _apply(
        self,
        user_id: Optional[str],
        event: StatsEvent,
        wager: Wager,
        record_stake: bool,
    ) -> Optional[UserStats]:
        if not user_id:
            return None

        updated = await self._ledger.adjust_user_stats(
            user_id,
            lambda stats: stats.apply(event, wager.amount, record_stake=record_stake),
        )
        if updated is None:
            self._log.warning(
                "user_stats_missing",
                user_id=user_id,
                wager_id=wager.wager_id,
                stats_event=event.value,
            )
            return None

        self._log.debug(
            "user_stats_updated",
            user_id=user_id,
            wager_id=wager.wager_id,
            stats_event=event.value,
            total_wagered=str(updated.total_wagered),
            win_rate=str(updated.win_rate),
            streak=updated.streak_count,
        )
        return updated

    async def record_acceptance(self, wager: Wager) -> None:
        """Count the stake for both parties of a newly matched wager."""
        for side in (Side.CREATOR, Side.ACCEPTOR):
            user_id, _ = wager.party(side)
            await self._apply(user_id, StatsEvent.ACCEPTANCE, wager, record_stake=True)

    async def record_resolution(self, wager: Wager, outcome: Outcome, record_stake: bool) -> None:
        """Apply a decided outcome to both parties.

        Args:
            wager: The resolved wager.
            outcome: Winner or draw.
            record_stake: Also count the stake (acceptance did not).
        """
        for side in (Side.CREATOR, Side.ACCEPTOR):
            user_id, _ = wager.party(side)
            if outcome.is_draw:
                event = StatsEvent.DRAW
            elif outcome.winner == side:
                event = StatsEvent.WIN
            else:
                event = StatsEvent.LOSS
            await self._apply(user_id, event, wager, record_stake=record_stake)
