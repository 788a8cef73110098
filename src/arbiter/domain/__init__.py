"""Domain models - pure data structures and rules with no I/O dependencies."""

from arbiter.domain.events import (
    SettlementFailedEvent,
    WagerAcceptedEvent,
    WagerCancelledEvent,
    WagerSettledEvent,
)
from arbiter.domain.fees import FeeSchedule, OutcomeKind, PayoutCalculator, SettlementBreakdown
from arbiter.domain.instructions import (
    AcceptInstruction,
    CancelInstruction,
    DrawInstruction,
    EscrowAccounts,
    ExecutionReceipt,
    ExpireInstruction,
    InstructionKind,
    ResolveInstruction,
    SettlementInstruction,
)
from arbiter.domain.outcome import Outcome, crypto_outcome, sports_outcome
from arbiter.domain.stats import StatsEvent, UserStats
from arbiter.domain.wager import (
    Position,
    PredictionDirection,
    ResolutionStatus,
    Side,
    Wager,
    WagerKind,
    WagerStatus,
    can_transition,
)

__all__ = [
    # Event payloads for EventBus publishing
    "WagerAcceptedEvent",
    "WagerSettledEvent",
    "WagerCancelledEvent",
    "SettlementFailedEvent",
    # Fees
    "FeeSchedule",
    "OutcomeKind",
    "PayoutCalculator",
    "SettlementBreakdown",
    # Instructions
    "InstructionKind",
    "EscrowAccounts",
    "AcceptInstruction",
    "ResolveInstruction",
    "DrawInstruction",
    "CancelInstruction",
    "ExpireInstruction",
    "SettlementInstruction",
    "ExecutionReceipt",
    # Outcomes
    "Outcome",
    "crypto_outcome",
    "sports_outcome",
    # Stats
    "StatsEvent",
    "UserStats",
    # Wager
    "Wager",
    "WagerKind",
    "WagerStatus",
    "ResolutionStatus",
    "Position",
    "PredictionDirection",
    "Side",
    "can_transition",
]
