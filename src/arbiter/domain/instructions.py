"""Escrow program instructions issued by the settlement engine.

Each instruction kind is its own frozen dataclass carrying exactly the
arguments the program needs, so the set of things the worker can ask the
chain to do is closed.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from arbiter.domain.fees import SettlementBreakdown
from arbiter.domain.wager import Position


class InstructionKind(str, Enum):
    """Escrow program entry points."""
    ACCEPT = "accept_wager"
    RESOLVE = "resolve_wager"
    CANCEL = "cancel_wager"
    EXPIRE = "expire_wager"
    DRAW = "handle_draw"


@dataclass(frozen=True)
class EscrowAccounts:
    """Accounts touched by an instruction.

    The escrow account is optional: the relay derives it from the wager id
    when the record does not carry one.
    """
    escrow: Optional[str] = None
    creator: Optional[str] = None
    acceptor: Optional[str] = None
    treasury: Optional[str] = None

    def to_dict(self) -> dict[str, str]:
        accounts: dict[str, str] = {}
        if self.escrow:
            accounts["wager"] = self.escrow
        if self.creator:
            accounts["creator"] = self.creator
        if self.acceptor:
            accounts["acceptor"] = self.acceptor
        if self.treasury:
            accounts["treasury"] = self.treasury
        return accounts


@dataclass(frozen=True)
class _Instruction:
    wager_id: str
    accounts: EscrowAccounts

    kind: ClassVar[InstructionKind]

    def args(self) -> dict[str, Any]:
        return {"wager_id": self.wager_id}


@dataclass(frozen=True)
class AcceptInstruction(_Instruction):
    """Move the acceptor's stake into escrow."""
    amount: Decimal

    kind: ClassVar[InstructionKind] = InstructionKind.ACCEPT

    def args(self) -> dict[str, Any]:
        return {"wager_id": self.wager_id, "amount": str(self.amount)}


@dataclass(frozen=True)
class ResolveInstruction(_Instruction):
    """Pay the winning position and the platform fee."""
    winner_position: Position
    breakdown: SettlementBreakdown

    kind: ClassVar[InstructionKind] = InstructionKind.RESOLVE

    def args(self) -> dict[str, Any]:
        return {
            "wager_id": self.wager_id,
            "winner_position": self.winner_position.value,
            "breakdown": self.breakdown.to_dict(),
        }


@dataclass(frozen=True)
class DrawInstruction(_Instruction):
    """Return both stakes minus the split network fee."""
    breakdown: SettlementBreakdown

    kind: ClassVar[InstructionKind] = InstructionKind.DRAW

    def args(self) -> dict[str, Any]:
        return {"wager_id": self.wager_id, "breakdown": self.breakdown.to_dict()}


@dataclass(frozen=True)
class CancelInstruction(_Instruction):
    """Refund a manually cancelled, unmatched wager to its creator."""
    breakdown: SettlementBreakdown

    kind: ClassVar[InstructionKind] = InstructionKind.CANCEL

    def args(self) -> dict[str, Any]:
        return {"wager_id": self.wager_id, "breakdown": self.breakdown.to_dict()}


@dataclass(frozen=True)
class ExpireInstruction(_Instruction):
    """Refund an unmatched wager whose deadline passed."""
    breakdown: SettlementBreakdown

    kind: ClassVar[InstructionKind] = InstructionKind.EXPIRE

    def args(self) -> dict[str, Any]:
        return {"wager_id": self.wager_id, "breakdown": self.breakdown.to_dict()}


SettlementInstruction = Union[
    AcceptInstruction,
    ResolveInstruction,
    DrawInstruction,
    CancelInstruction,
    ExpireInstruction,
]


@dataclass(frozen=True)
class ExecutionReceipt:
    """Result of a submitted instruction.

    `simulated` receipts come from dry-run execution and never represent
    funds that moved on chain.
    """
    signature: str
    simulated: bool = False
