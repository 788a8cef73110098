"""Notifier - writes user-facing notification records for wager events.

Records are write-once; delivery (push, email, in-app) is handled by
whatever reads the notifications table.
"""

from enum import Enum
from typing import Any, Optional

import structlog

from arbiter.domain.fees import OutcomeKind, SettlementBreakdown
from arbiter.domain.outcome import Outcome
from arbiter.domain.wager import Side, Wager
from arbiter.services.ledger import Ledger

log = structlog.get_logger()


class NotificationType(str, Enum):
    """Notification types understood by the frontend."""
    WAGER_MATCHED = "wager_matched"
    WAGER_RESOLVED = "wager_resolved"
    WAGER_EXPIRED = "wager_expired"
    WAGER_CANCELLED = "wager_cancelled"


class Notifier:
    """Creates notification records from settlement results."""

    def __init__(self, ledger: Ledger) -> None:
        self._ledger = ledger
        self._log = log.bind(component="notifier")

    async def notify(
        self,
        user_id: Optional[str],
        user_address: Optional[str],
        type: NotificationType,
        title: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> Optional[int]:
        if not user_id and not user_address:
            return None
        notification_id = await self._ledger.insert_notification(
            user_id=user_id,
            user_address=user_address,
            type=type.value,
            title=title,
            message=message,
            data=data,
        )
        self._log.debug("notification_created", user_id=user_id, type=type.value)
        return notification_id

    def _payload(self, wager: Wager, **extra: Any) -> dict[str, Any]:
        return {
            "wager_id": wager.wager_id,
            "wager_type": wager.wager_type.value,
            "amount": str(wager.amount),
            **extra,
        }

    async def wager_matched(self, wager: Wager, signature: str) -> None:
        """Tell both parties their wager is live."""
        for side in (Side.CREATOR, Side.ACCEPTOR):
            user_id, address = wager.party(side)
            await self.notify(
                user_id,
                address,
                NotificationType.WAGER_MATCHED,
                "Wager Matched!",
                f"Your {wager.wager_type.value} wager on {wager.subject} has been matched "
                f"for {wager.amount} SOL.",
                self._payload(wager, signature=signature, side=side.value),
            )

    async def wager_resolved(
        self,
        wager: Wager,
        outcome: Outcome,
        breakdown: SettlementBreakdown,
        signature: str,
    ) -> None:
        """Tell both parties the result (draws and wins alike)."""
        base = self._payload(
            wager,
            signature=signature,
            resolution_value=outcome.resolution_value,
            is_draw=outcome.is_draw,
            breakdown=breakdown.to_dict(),
        )

        if outcome.is_draw:
            for side in (Side.CREATOR, Side.ACCEPTOR):
                user_id, address = wager.party(side)
                payout = breakdown.creator_payout if side == Side.CREATOR else breakdown.acceptor_payout
                await self.notify(
                    user_id,
                    address,
                    NotificationType.WAGER_RESOLVED,
                    "Wager Draw!",
                    f"Your {wager.wager_type.value} wager on {wager.subject} ended in a draw. "
                    f"You've been refunded {payout} SOL.",
                    {**base, "payout": str(payout)},
                )
            return

        winner_id, winner_address = wager.party(outcome.winner)
        await self.notify(
            winner_id,
            winner_address,
            NotificationType.WAGER_RESOLVED,
            "Wager Resolved!",
            f"Your {wager.wager_type.value} wager on {wager.subject} has been resolved. "
            f"You won {breakdown.winner_payout} SOL!",
            {**base, "won": True, "payout": str(breakdown.winner_payout)},
        )

        loser_id, loser_address = wager.party(outcome.loser)
        await self.notify(
            loser_id,
            loser_address,
            NotificationType.WAGER_RESOLVED,
            "Wager Resolved",
            f"Your {wager.wager_type.value} wager on {wager.subject} has been resolved. "
            f"You lost {wager.amount} SOL.",
            {**base, "won": False},
        )

    async def wager_refunded(self, wager: Wager, breakdown: SettlementBreakdown, signature: str) -> None:
        """Tell the creator an unmatched wager was refunded."""
        if breakdown.kind == OutcomeKind.CANCEL:
            type_, title, verb = NotificationType.WAGER_CANCELLED, "Wager Cancelled!", "has been cancelled"
        else:
            type_, title, verb = NotificationType.WAGER_EXPIRED, "Wager Expired!", "has expired"

        await self.notify(
            wager.creator_id,
            wager.creator_address,
            type_,
            title,
            f"Your {wager.wager_type.value} wager {verb} and you've been refunded "
            f"{breakdown.creator_payout} SOL.",
            self._payload(
                wager,
                signature=signature,
                payout=str(breakdown.creator_payout),
                breakdown=breakdown.to_dict(),
            ),
        )
