"""Settlement Engine - drives wagers through their lifecycle and settles them.

This service:
- Creates open wagers and matches them with an acceptor
- Decides outcomes from the price feed or the results source
- Computes the fee breakdown and submits exactly one escrow instruction
  per settlement
- Reconciles the ledger after the chain call, then updates stats,
  notifications and events on a best-effort basis

Concurrency:
Any number of triggers (HTTP requests, the coarse sweep, the fine sweep)
may race on the same wager. The only coordination is the ledger's
compare-and-set: a trigger must win the claim (resolution_status
None -> processing) before it does any expensive work, and losers return
a no-op result. The terminal write is only made after the executor
confirmed, and only if the claim is still held.

Failure handling:
- feed or executor failure: claim released, wager untouched, error raised
- executor success but terminal write failed: claim left in place and
  reconciliation_required logged, since the chain already moved funds
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from arbiter.core.config import ConfigManager
from arbiter.core.events import EventBus
from arbiter.core.retry import (
    ArbiterError,
    ExecutorError,
    InvalidParticipant,
    InvalidRequest,
    InvalidState,
    NotFound,
    QuoteUnavailable,
    ResultUnavailable,
    StoreError,
    is_retryable,
)
from arbiter.domain.events import (
    CHANNEL_SETTLEMENT_FAILED,
    CHANNEL_WAGER_ACCEPTED,
    CHANNEL_WAGER_CANCELLED,
    CHANNEL_WAGER_SETTLED,
    SettlementFailedEvent,
    WagerAcceptedEvent,
    WagerCancelledEvent,
    WagerSettledEvent,
)
from arbiter.domain.fees import OutcomeKind, PayoutCalculator, SettlementBreakdown
from arbiter.domain.instructions import (
    AcceptInstruction,
    CancelInstruction,
    DrawInstruction,
    EscrowAccounts,
    ExecutionReceipt,
    ExpireInstruction,
    ResolveInstruction,
    SettlementInstruction,
)
from arbiter.domain.outcome import Outcome, crypto_outcome, sports_outcome
from arbiter.domain.wager import (
    LIVE_STATUSES,
    RESOLVABLE_STATUSES,
    PredictionDirection,
    ResolutionStatus,
    Wager,
    WagerKind,
    WagerStatus,
    creator_position_for,
    ensure_transition,
    parse_ts,
    utcnow,
)
from arbiter.integrations.executor import SettlementExecutor
from arbiter.integrations.quotes import QuoteSource
from arbiter.integrations.results import ResultSource
from arbiter.services.ledger import Ledger
from arbiter.services.metrics import MetricsEmitter
from arbiter.services.notifications import Notifier
from arbiter.services.stats import StatsAccumulator

log = structlog.get_logger()

DEFAULT_EXECUTOR_TIMEOUT_SECONDS = 30.0
DEFAULT_FEED_TIMEOUT_SECONDS = 10.0


class Trigger(str, Enum):
    """What started a settlement."""
    REQUEST = "request"
    COARSE_SWEEP = "coarse_sweep"
    FINE_SWEEP = "fine_sweep"


@dataclass(frozen=True)
class SettlementSettings:
    """Engine configuration.

    Attributes:
        treasury_address: Account receiving platform fees.
        dry_run: Executor is simulated; receipts are stored as simulated.
        executor_timeout_seconds: Bound on one escrow instruction.
        feed_timeout_seconds: Bound on one price/result lookup.
        allow_early_manual_resolution: Request-driven resolution may run
            before the wager's deadline.
    """

    treasury_address: Optional[str] = None
    dry_run: bool = True
    executor_timeout_seconds: float = DEFAULT_EXECUTOR_TIMEOUT_SECONDS
    feed_timeout_seconds: float = DEFAULT_FEED_TIMEOUT_SECONDS
    allow_early_manual_resolution: bool = True

    @classmethod
    def from_config(cls, config: ConfigManager, prefix: str = "settlement") -> "SettlementSettings":
        return cls(
            treasury_address=config.get_str(f"{prefix}.treasury_address") or None,
            dry_run=config.get_bool("arbiter.dry_run", default=True),
            executor_timeout_seconds=config.get_float(
                f"{prefix}.executor_timeout_seconds", DEFAULT_EXECUTOR_TIMEOUT_SECONDS
            ),
            feed_timeout_seconds=config.get_float(
                f"{prefix}.feed_timeout_seconds", DEFAULT_FEED_TIMEOUT_SECONDS
            ),
            allow_early_manual_resolution=config.get_bool(
                f"{prefix}.allow_early_manual_resolution", default=True
            ),
        )


@dataclass
class SettlementResult:
    """Outcome of one engine operation.

    `processed` is False for no-ops (the wager was already handled or
    another trigger holds the claim).
    """

    wager_id: str
    wager_type: str
    action: str
    status: str
    processed: bool = True
    reason: Optional[str] = None
    signature: Optional[str] = None
    simulated: bool = False
    winner_id: Optional[str] = None
    winner_position: Optional[str] = None
    resolution_value: Optional[str] = None
    is_draw: bool = False
    breakdown: Optional[SettlementBreakdown] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def noop(cls, wager: Wager, reason: str) -> "SettlementResult":
        return cls(
            wager_id=wager.wager_id,
            wager_type=wager.wager_type.value,
            action="noop",
            status=wager.status.value,
            processed=False,
            reason=reason,
            signature=wager.on_chain_signature or wager.refund_signature,
            simulated=wager.settlement_simulated,
            winner_id=wager.winner_id,
            winner_position=wager.winner_position.value if wager.winner_position else None,
            resolution_value=wager.resolution_value,
            is_draw=wager.is_draw,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": True,
            "wager_id": self.wager_id,
            "wager_type": self.wager_type,
            "action": self.action,
            "status": self.status,
            "processed": self.processed,
        }
        if self.reason:
            data["message"] = self.reason
        if self.signature:
            data["on_chain_signature"] = self.signature
            data["simulated"] = self.simulated
        if self.action == "resolved" or (not self.processed and self.status == WagerStatus.RESOLVED.value):
            data["winner_id"] = self.winner_id
            data["winner_position"] = self.winner_position
            data["resolution_value"] = self.resolution_value
            data["is_draw"] = self.is_draw
        if self.breakdown is not None:
            data["breakdown"] = self.breakdown.to_dict()
        data.update(self.extra)
        return data


class SettlementEngine:
    """Orchestrates wager state transitions and on-chain settlement."""

    def __init__(
        self,
        ledger: Ledger,
        executor: SettlementExecutor,
        calculator: PayoutCalculator,
        settings: SettlementSettings,
        quote_source: Optional[QuoteSource] = None,
        result_source: Optional[ResultSource] = None,
        stats: Optional[StatsAccumulator] = None,
        notifier: Optional[Notifier] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsEmitter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the settlement engine.

        Args:
            ledger: Record store (single source of truth).
            executor: Escrow instruction executor.
            calculator: Fee and payout calculator.
            settings: Engine configuration.
            quote_source: Price source for crypto wagers.
            result_source: Results source for sports wagers.
            stats: Stats accumulator (defaults to one over the ledger).
            notifier: Notification writer (defaults to one over the ledger).
            event_bus: Optional EventBus for settlement events.
            metrics: Optional MetricsEmitter.
            clock: Source of "now" (UTC).
        """
        self._ledger = ledger
        self._executor = executor
        self._calculator = calculator
        self._settings = settings
        self._quotes = quote_source
        self._results = result_source
        self._stats = stats or StatsAccumulator(ledger)
        self._notifier = notifier or Notifier(ledger)
        self._event_bus = event_bus
        self._metrics = metrics
        self._clock = clock
        self._log = log.bind(component="settlement_engine")

    @property
    def settings(self) -> SettlementSettings:
        return self._settings

    @property
    def authority(self) -> str:
        return self._executor.authority

    # ============ Create ============

    async def create_wager(self, wager_type: str, data: dict[str, Any]) -> SettlementResult:
        """Validate and store a new open wager.

        Raises:
            InvalidRequest: Missing/invalid fields or duplicate wager id.
        """
        kind = self._parse_kind(wager_type)
        if not isinstance(data, dict):
            raise InvalidRequest("wager_data must be an object")

        creator_id = self._required_str(data, "creator_id")
        amount = self._positive_decimal(data.get("amount"), "amount")
        expiry_raw = data.get("expiry_time") or data.get("expires_at")
        if not expiry_raw:
            raise InvalidRequest("Missing required field: expiry_time")
        try:
            expiry_time = parse_ts(expiry_raw)
        except (TypeError, ValueError) as e:
            raise InvalidRequest(f"Invalid expiry_time: {expiry_raw!r}", cause=e) from e
        if expiry_time <= self._clock():
            raise InvalidRequest("expiry_time must be in the future")

        wager = Wager(
            wager_id=str(data.get("wager_id") or uuid.uuid4()),
            wager_type=kind,
            creator_id=creator_id,
            creator_address=data.get("creator_address") or None,
            amount=amount,
            expiry_time=expiry_time,
            escrow_address=data.get("escrow_address") or None,
        )

        if kind == WagerKind.CRYPTO:
            wager.token_symbol = self._required_str(data, "token_symbol").upper()
            direction = str(data.get("prediction_type", "")).lower()
            try:
                wager.prediction_type = PredictionDirection(direction)
            except ValueError as e:
                raise InvalidRequest(
                    f"prediction_type must be 'above' or 'below', got {data.get('prediction_type')!r}",
                    cause=e,
                ) from e
            wager.target_price = self._positive_decimal(data.get("target_price"), "target_price")
            wager.creator_position = creator_position_for(kind, prediction_type=direction)
        else:
            wager.sport = self._required_str(data, "sport")
            wager.team1 = self._required_str(data, "team1")
            wager.team2 = self._required_str(data, "team2")
            wager.prediction = self._required_str(data, "prediction")
            teams = {wager.team1.strip().casefold(), wager.team2.strip().casefold()}
            if wager.prediction.strip().casefold() not in teams:
                raise InvalidRequest("prediction must name team1 or team2")
            wager.creator_position = creator_position_for(
                kind, prediction=wager.prediction, team1=wager.team1
            )

        await self._ledger.upsert_user(wager.creator_id, wager.creator_address)
        await self._ledger.insert_wager(wager)
        self._log.info(
            "wager_created",
            wager_id=wager.wager_id,
            wager_type=kind.value,
            creator_id=wager.creator_id,
            amount=str(wager.amount),
            expiry_time=wager.expiry_time.isoformat(),
        )
        return SettlementResult(
            wager_id=wager.wager_id,
            wager_type=kind.value,
            action="created",
            status=WagerStatus.OPEN.value,
        )

    # ============ Accept ============

    async def accept_wager(
        self,
        wager_id: str,
        acceptor_id: str,
        wager_type: Optional[str] = None,
        acceptor_address: Optional[str] = None,
    ) -> SettlementResult:
        """Match an open wager with its acceptor.

        The wager is claimed (resolution_status PROCESSING) before the
        escrow accept instruction runs, so a second accept, a cancel or an
        expiry freeze cannot interleave with it. The claim is released if
        the instruction fails and cleared with the match otherwise.

        Raises:
            NotFound: No such wager, or the acceptor has no known wallet.
            InvalidState: Wager is not open or its deadline passed.
            InvalidParticipant: Acceptor is the creator.
            ExecutorError: Accept instruction failed (claim released).
        """
        if not acceptor_id:
            raise InvalidRequest("Missing required field: acceptor_id")
        wager = await self._load(wager_id, wager_type)

        if wager.status in (WagerStatus.ACTIVE, WagerStatus.MATCHED) and wager.acceptor_id == acceptor_id:
            return SettlementResult.noop(wager, "Wager already accepted")
        if wager.status != WagerStatus.OPEN:
            raise InvalidState(f"Wager {wager_id} is {wager.status.value}, not open")
        if wager.is_past_deadline(self._clock()):
            raise InvalidState(f"Wager {wager_id} has expired")

        if acceptor_id == wager.creator_id or (
            acceptor_address and acceptor_address == wager.creator_address
        ):
            raise InvalidParticipant("Cannot accept your own wager")

        if acceptor_address:
            await self._ledger.upsert_user(acceptor_id, acceptor_address)
        else:
            user = await self._ledger.get_user(acceptor_id)
            if user is None or not user.wallet_address:
                raise NotFound(f"No wallet known for user {acceptor_id}")
            acceptor_address = user.wallet_address

        if acceptor_address == wager.creator_address:
            raise InvalidParticipant("Cannot accept your own wager")

        ensure_transition(wager.status, WagerStatus.ACTIVE)
        claimed = await self._ledger.compare_and_set(
            wager.wager_id,
            wager.wager_type,
            changes={"resolution_status": ResolutionStatus.PROCESSING},
            expect={"status": WagerStatus.OPEN, "acceptor_id": None, "resolution_status": None},
        )
        if not claimed:
            self._log.info("accept_contended", wager_id=wager.wager_id, acceptor_id=acceptor_id)
            raise InvalidState(f"Wager {wager_id} is already being accepted or is no longer open")
        wager.resolution_status = ResolutionStatus.PROCESSING

        instruction = AcceptInstruction(
            wager_id=wager.wager_id,
            accounts=EscrowAccounts(
                escrow=wager.escrow_address,
                creator=wager.creator_address,
                acceptor=acceptor_address,
            ),
            amount=wager.amount,
        )

        try:
            receipt = await self._execute(instruction)
        except ExecutorError as e:
            await self.release_claim(wager)
            await self._record_failure(wager, "accept", e)
            raise

        opponent_position = wager.creator_position.complement if wager.creator_position else None
        extra = dict(wager.extra)
        if receipt.simulated:
            extra["accept_simulated"] = True

        changes = {
            "status": WagerStatus.ACTIVE,
            "acceptor_id": acceptor_id,
            "acceptor_address": acceptor_address,
            "opponent_position": opponent_position,
            "accept_signature": receipt.signature,
            "stakes_recorded": True,
            "resolution_status": None,
            "extra": extra,
        }
        await self._reconcile(
            wager,
            "accept",
            receipt,
            changes,
            expect={"status": WagerStatus.OPEN, "resolution_status": ResolutionStatus.PROCESSING},
        )

        wager.status = WagerStatus.ACTIVE
        wager.resolution_status = None
        wager.acceptor_id = acceptor_id
        wager.acceptor_address = acceptor_address
        wager.opponent_position = opponent_position
        wager.accept_signature = receipt.signature
        wager.stakes_recorded = True

        self._log.info(
            "wager_accepted",
            wager_id=wager.wager_id,
            acceptor_id=acceptor_id,
            signature=receipt.signature,
            simulated=receipt.simulated,
        )

        await self._best_effort("stats", self._stats.record_acceptance(wager), wager)
        await self._best_effort("notify", self._notifier.wager_matched(wager, receipt.signature), wager)
        await self._publish(
            CHANNEL_WAGER_ACCEPTED,
            WagerAcceptedEvent.create(
                wager_id=wager.wager_id,
                wager_type=wager.wager_type.value,
                creator_id=wager.creator_id,
                acceptor_id=acceptor_id,
                amount=wager.amount,
                signature=receipt.signature,
                simulated=receipt.simulated,
            ).to_dict(),
        )
        if self._metrics:
            self._metrics.record_accepted(wager.wager_type.value)

        return SettlementResult(
            wager_id=wager.wager_id,
            wager_type=wager.wager_type.value,
            action="accepted",
            status=WagerStatus.ACTIVE.value,
            signature=receipt.signature,
            simulated=receipt.simulated,
        )

    # ============ Resolve ============

    async def resolve_wager(
        self,
        wager_id: str,
        wager_type: Optional[str] = None,
        trigger: Trigger = Trigger.REQUEST,
    ) -> SettlementResult:
        """Decide and settle a matched wager.

        Raises:
            NotFound: No such wager.
            InvalidState: Wager is not matched (or too early, when early
                manual resolution is disabled).
            QuoteUnavailable / ResultUnavailable: Feed could not answer.
            ExecutorError: Escrow instruction failed; wager left active.
            StoreError: Chain succeeded but the ledger write failed.
        """
        wager = await self._load(wager_id, wager_type)

        if wager.is_settled or wager.status in (WagerStatus.RESOLVED, WagerStatus.EXPIRED):
            return SettlementResult.noop(wager, "Wager already processed")
        if wager.is_claimed:
            return SettlementResult.noop(wager, "Settlement already in progress")
        if not wager.is_matched or wager.status not in RESOLVABLE_STATUSES:
            raise InvalidState(f"Wager {wager_id} is {wager.status.value}, not active")
        if (
            trigger == Trigger.REQUEST
            and not self._settings.allow_early_manual_resolution
            and not wager.is_past_deadline(self._clock())
        ):
            raise InvalidState(f"Wager {wager_id} cannot be resolved before its deadline")

        if not await self.claim(wager, trigger):
            return SettlementResult.noop(wager, "Settlement claimed by another trigger")

        return await self.settle_claimed(wager, trigger)

    async def claim(self, wager: Wager, trigger: Trigger) -> bool:
        """Take the exclusive right to settle a matched wager.

        Returns:
            False if another trigger already holds or finished the claim.
        """
        won = await self._ledger.compare_and_set(
            wager.wager_id,
            wager.wager_type,
            changes={"resolution_status": ResolutionStatus.PROCESSING},
            expect={"resolution_status": None, "status": RESOLVABLE_STATUSES},
        )
        if won:
            wager.resolution_status = ResolutionStatus.PROCESSING
            self._log.debug("claim_acquired", wager_id=wager.wager_id, trigger=trigger.value)
        else:
            self._log.info("claim_contended", wager_id=wager.wager_id, trigger=trigger.value)
            if self._metrics:
                self._metrics.record_contended_claim(trigger.value)
        return won

    async def release_claim(self, wager: Wager) -> bool:
        """Give a claim back so the wager can be retried."""
        try:
            released = await self._ledger.compare_and_set(
                wager.wager_id,
                wager.wager_type,
                changes={"resolution_status": None},
                expect={"resolution_status": ResolutionStatus.PROCESSING},
            )
        except StoreError as e:
            self._log.error("claim_release_failed", wager_id=wager.wager_id, error=str(e))
            return False
        if released:
            wager.resolution_status = None
        return released

    async def settle_claimed(self, wager: Wager, trigger: Trigger) -> SettlementResult:
        """Settle a wager whose claim this caller holds.

        The claim is released on any failure before the chain call and kept
        if the chain call succeeded but the ledger write did not.
        """
        try:
            outcome = await self._determine_outcome(wager)
        except ArbiterError as e:
            await self.release_claim(wager)
            await self._record_failure(wager, "resolve", e)
            raise
        except Exception as e:
            await self.release_claim(wager)
            error = self._feed_error(wager, e)
            await self._record_failure(wager, "resolve", error)
            raise error from e

        if outcome.is_draw:
            breakdown = self._calculator.draw(wager.amount)
        else:
            breakdown = self._calculator.win(wager.amount)

        instruction: SettlementInstruction
        accounts = EscrowAccounts(
            escrow=wager.escrow_address,
            creator=wager.creator_address,
            acceptor=wager.acceptor_address,
            treasury=self._settings.treasury_address,
        )
        if outcome.is_draw:
            instruction = DrawInstruction(
                wager_id=wager.wager_id, accounts=accounts, breakdown=breakdown
            )
        else:
            if outcome.winning_position is None:
                await self.release_claim(wager)
                raise InvalidState(f"Wager {wager.wager_id} has no positions recorded")
            instruction = ResolveInstruction(
                wager_id=wager.wager_id,
                accounts=accounts,
                winner_position=outcome.winning_position,
                breakdown=breakdown,
            )

        self._log_breakdown(wager, instruction, breakdown, trigger)

        try:
            receipt = await self._execute(instruction)
        except ExecutorError as e:
            await self.release_claim(wager)
            await self._record_failure(wager, "resolve", e)
            raise

        winner_id = wager.party(outcome.winner)[0] if outcome.winner else None
        stakes_already_recorded = wager.stakes_recorded
        resolved_at = self._clock()

        ensure_transition(wager.status, WagerStatus.RESOLVED)
        await self._reconcile(
            wager,
            "resolve",
            receipt,
            changes={
                "status": WagerStatus.RESOLVED,
                "resolution_status": ResolutionStatus.COMPLETED,
                "winner_id": winner_id,
                "winner_position": outcome.winning_position,
                "resolution_value": outcome.resolution_value,
                "on_chain_signature": receipt.signature,
                "resolution_time": resolved_at,
                "is_draw": outcome.is_draw,
                "settlement_simulated": receipt.simulated,
                "expiry_processed": True,
                "stakes_recorded": True,
            },
            expect={
                "resolution_status": ResolutionStatus.PROCESSING,
                "status": RESOLVABLE_STATUSES,
            },
        )

        wager.status = WagerStatus.RESOLVED
        wager.resolution_status = ResolutionStatus.COMPLETED
        wager.winner_id = winner_id
        wager.winner_position = outcome.winning_position
        wager.resolution_value = outcome.resolution_value
        wager.on_chain_signature = receipt.signature
        wager.resolution_time = resolved_at
        wager.is_draw = outcome.is_draw
        wager.settlement_simulated = receipt.simulated
        wager.expiry_processed = True
        wager.stakes_recorded = True

        self._log.info(
            "wager_resolved",
            wager_id=wager.wager_id,
            wager_type=wager.wager_type.value,
            trigger=trigger.value,
            winner_id=winner_id,
            is_draw=outcome.is_draw,
            resolution_value=outcome.resolution_value,
            signature=receipt.signature,
            simulated=receipt.simulated,
        )

        await self._best_effort(
            "stats",
            self._stats.record_resolution(wager, outcome, record_stake=not stakes_already_recorded),
            wager,
        )
        await self._best_effort(
            "notify",
            self._notifier.wager_resolved(wager, outcome, breakdown, receipt.signature),
            wager,
        )
        await self._announce_settlement(wager, breakdown, receipt, trigger, winner_id, outcome)

        return SettlementResult(
            wager_id=wager.wager_id,
            wager_type=wager.wager_type.value,
            action="resolved",
            status=WagerStatus.RESOLVED.value,
            signature=receipt.signature,
            simulated=receipt.simulated,
            winner_id=winner_id,
            winner_position=outcome.winning_position.value if outcome.winning_position else None,
            resolution_value=outcome.resolution_value,
            is_draw=outcome.is_draw,
            breakdown=breakdown,
        )

    # ============ Cancel ============

    async def cancel_wager(
        self,
        wager_id: str,
        requester_address: str,
        wager_type: Optional[str] = None,
    ) -> SettlementResult:
        """Cancel an unmatched wager on behalf of its creator.

        Only the status flips here; the refund runs on the next sweep.

        Raises:
            NotFound: No such wager.
            InvalidState: Wager is not open.
            InvalidParticipant: Requester is not the creator.
        """
        if not requester_address:
            raise InvalidRequest("Missing required field: cancelling_address")
        wager = await self._load(wager_id, wager_type)

        if (
            wager.status == WagerStatus.CANCELLED
            and wager.cancelled_by == requester_address
        ):
            return SettlementResult.noop(wager, "Wager already cancelled")
        if wager.status != WagerStatus.OPEN:
            raise InvalidState(f"Wager {wager_id} is {wager.status.value}, only open wagers can be cancelled")

        await self._authorize_creator(wager, requester_address)

        cancelled_at = self._clock()
        ensure_transition(wager.status, WagerStatus.CANCELLED)
        changed = await self._ledger.compare_and_set(
            wager.wager_id,
            wager.wager_type,
            changes={
                "status": WagerStatus.CANCELLED,
                "cancelled_by": requester_address,
                "cancelled_at": cancelled_at,
            },
            expect={"status": WagerStatus.OPEN, "acceptor_id": None, "resolution_status": None},
        )
        if not changed:
            raise InvalidState(f"Wager {wager_id} is no longer open")

        self._log.info("wager_cancelled", wager_id=wager.wager_id, cancelled_by=requester_address)

        await self._publish(
            CHANNEL_WAGER_CANCELLED,
            WagerCancelledEvent.create(
                wager_id=wager.wager_id,
                wager_type=wager.wager_type.value,
                cancelled_by=requester_address,
                timestamp=cancelled_at,
            ).to_dict(),
        )
        if self._metrics:
            self._metrics.record_cancelled(wager.wager_type.value)

        return SettlementResult(
            wager_id=wager.wager_id,
            wager_type=wager.wager_type.value,
            action="cancelled",
            status=WagerStatus.CANCELLED.value,
            reason="Refund will be processed shortly",
        )

    async def _authorize_creator(self, wager: Wager, requester_address: str) -> None:
        if wager.creator_address:
            if requester_address == wager.creator_address:
                return
        else:
            creator = await self._ledger.get_user(wager.creator_id)
            if creator is not None and creator.wallet_address == requester_address:
                return
        self._log.warning(
            "cancel_rejected",
            wager_id=wager.wager_id,
            requester=requester_address,
        )
        raise InvalidParticipant("Only the wager creator can cancel this wager")

    # ============ Refund / Expiry ============

    async def refund_wager(
        self,
        wager_id: str,
        wager_type: Optional[str] = None,
        trigger: Trigger = Trigger.COARSE_SWEEP,
    ) -> SettlementResult:
        """Return the creator's stake for a cancelled, unmatched wager.

        A creator-cancelled wager is refunded with the cancel instruction
        and stays `cancelled`; a sweep-frozen one uses the expire
        instruction and becomes `expired`.
        """
        wager = await self._load(wager_id, wager_type)

        if wager.is_settled or wager.status in (WagerStatus.RESOLVED, WagerStatus.EXPIRED):
            return SettlementResult.noop(wager, "Wager already processed")
        if wager.is_claimed:
            return SettlementResult.noop(wager, "Settlement already in progress")
        if wager.is_matched:
            raise InvalidState(f"Wager {wager_id} is matched and must be resolved, not refunded")
        if wager.status != WagerStatus.CANCELLED:
            raise InvalidState(f"Wager {wager_id} is {wager.status.value}, not cancelled")

        claimed = await self._ledger.compare_and_set(
            wager.wager_id,
            wager.wager_type,
            changes={"resolution_status": ResolutionStatus.PROCESSING},
            expect={
                "resolution_status": None,
                "status": WagerStatus.CANCELLED,
                "refund_processed": False,
                "acceptor_id": None,
            },
        )
        if not claimed:
            self._log.info("claim_contended", wager_id=wager.wager_id, trigger=trigger.value)
            if self._metrics:
                self._metrics.record_contended_claim(trigger.value)
            return SettlementResult.noop(wager, "Refund claimed by another trigger")
        wager.resolution_status = ResolutionStatus.PROCESSING

        kind = OutcomeKind.CANCEL if wager.cancelled_by else OutcomeKind.EXPIRE
        breakdown = self._calculator.refund(wager.amount, kind)
        accounts = EscrowAccounts(escrow=wager.escrow_address, creator=wager.creator_address)
        instruction: SettlementInstruction
        if kind == OutcomeKind.CANCEL:
            instruction = CancelInstruction(wager_id=wager.wager_id, accounts=accounts, breakdown=breakdown)
            final_status = WagerStatus.CANCELLED
        else:
            instruction = ExpireInstruction(wager_id=wager.wager_id, accounts=accounts, breakdown=breakdown)
            final_status = WagerStatus.EXPIRED

        self._log_breakdown(wager, instruction, breakdown, trigger)

        try:
            receipt = await self._execute(instruction)
        except ExecutorError as e:
            await self.release_claim(wager)
            await self._record_failure(wager, "refund", e)
            raise

        ensure_transition(wager.status, final_status)
        await self._reconcile(
            wager,
            "refund",
            receipt,
            changes={
                "status": final_status,
                "resolution_status": ResolutionStatus.COMPLETED,
                "refund_processed": True,
                "expiry_processed": True,
                "refund_signature": receipt.signature,
                "settlement_simulated": receipt.simulated,
            },
            expect={
                "resolution_status": ResolutionStatus.PROCESSING,
                "status": WagerStatus.CANCELLED,
            },
        )

        wager.status = final_status
        wager.resolution_status = ResolutionStatus.COMPLETED
        wager.refund_processed = True
        wager.expiry_processed = True
        wager.refund_signature = receipt.signature
        wager.settlement_simulated = receipt.simulated

        self._log.info(
            "wager_refunded",
            wager_id=wager.wager_id,
            kind=kind.value,
            trigger=trigger.value,
            refund=str(breakdown.creator_payout),
            signature=receipt.signature,
            simulated=receipt.simulated,
        )

        await self._best_effort(
            "notify",
            self._notifier.wager_refunded(wager, breakdown, receipt.signature),
            wager,
        )
        await self._announce_settlement(wager, breakdown, receipt, trigger, None, None)

        return SettlementResult(
            wager_id=wager.wager_id,
            wager_type=wager.wager_type.value,
            action="refunded",
            status=final_status.value,
            signature=receipt.signature,
            simulated=receipt.simulated,
            breakdown=breakdown,
        )

    async def mark_refund_processed(
        self,
        wager_id: str,
        refund_signature: Optional[str] = None,
        wager_type: Optional[str] = None,
    ) -> SettlementResult:
        """Record a refund executed outside the worker.

        Idempotent: a second call reports the wager as already marked.
        """
        wager = await self._load(wager_id, wager_type)
        if wager.refund_processed:
            return SettlementResult.noop(wager, "Refund already marked processed")
        if wager.is_matched:
            raise InvalidState(f"Wager {wager_id} is matched; matched wagers are not refunded")
        if wager.status not in (WagerStatus.CANCELLED, WagerStatus.EXPIRED):
            raise InvalidState(f"Wager {wager_id} is {wager.status.value}, not cancelled or expired")

        changes: dict[str, Any] = {
            "refund_processed": True,
            "expiry_processed": True,
            "resolution_status": ResolutionStatus.COMPLETED,
        }
        if refund_signature:
            changes["refund_signature"] = refund_signature

        marked = await self._ledger.compare_and_set(
            wager.wager_id,
            wager.wager_type,
            changes=changes,
            expect={
                "refund_processed": False,
                "resolution_status": None,
                "status": (WagerStatus.CANCELLED, WagerStatus.EXPIRED),
            },
        )
        if not marked:
            current = await self._load(wager_id, wager_type)
            if current.refund_processed:
                return SettlementResult.noop(current, "Refund already marked processed")
            raise InvalidState(f"Wager {wager_id} refund is in progress")

        self._log.info("refund_marked_processed", wager_id=wager.wager_id, signature=refund_signature)
        return SettlementResult(
            wager_id=wager.wager_id,
            wager_type=wager.wager_type.value,
            action="refund_marked",
            status=wager.status.value,
            signature=refund_signature,
        )

    async def handle_expired(
        self,
        wager_id: str,
        wager_type: Optional[str] = None,
        trigger: Trigger = Trigger.REQUEST,
    ) -> SettlementResult:
        """Freeze one wager past its deadline and settle it.

        Matched wagers go to resolution, unmatched ones to refund.
        """
        wager = await self._load(wager_id, wager_type)

        if wager.is_settled or wager.status in (WagerStatus.RESOLVED, WagerStatus.EXPIRED):
            return SettlementResult.noop(wager, "Wager already processed")
        if not wager.is_past_deadline(self._clock()):
            raise InvalidState(f"Wager {wager_id} has not expired yet")
        if wager.is_claimed:
            return SettlementResult.noop(wager, "Settlement already in progress")

        if wager.status in LIVE_STATUSES:
            frozen = await self._ledger.compare_and_set(
                wager.wager_id,
                wager.wager_type,
                changes={"status": WagerStatus.CANCELLED},
                expect={"status": wager.status, "expiry_processed": False, "resolution_status": None},
            )
            if frozen:
                self._log.info("wager_frozen", wager_id=wager.wager_id, previous=wager.status.value)
            wager = await self._load(wager_id, wager_type)

        return await self.process_frozen(wager, trigger)

    async def process_frozen(self, wager: Wager, trigger: Trigger) -> SettlementResult:
        """Route a frozen (cancelled-labelled) wager to resolution or refund."""
        if wager.is_matched:
            return await self.resolve_wager(wager.wager_id, wager.wager_type.value, trigger=trigger)
        return await self.refund_wager(wager.wager_id, wager.wager_type.value, trigger=trigger)

    # ============ Helpers ============

    async def _load(self, wager_id: str, wager_type: Optional[str]) -> Wager:
        if not wager_id:
            raise InvalidRequest("Missing required field: wager_id")
        kind = self._parse_kind(wager_type) if wager_type else None
        wager = await self._ledger.get_wager(wager_id, kind)
        if wager is None:
            raise NotFound(f"Wager {wager_id} not found")
        return wager

    async def _determine_outcome(self, wager: Wager) -> Outcome:
        timeout = self._settings.feed_timeout_seconds

        if wager.wager_type == WagerKind.CRYPTO:
            if self._quotes is None:
                raise QuoteUnavailable("No quote source configured")
            symbol = wager.token_symbol or ""
            try:
                price = await asyncio.wait_for(self._quotes.price_of(symbol), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise QuoteUnavailable(f"Price lookup for {symbol} timed out", cause=e) from e
            self._log.info("price_fetched", wager_id=wager.wager_id, symbol=symbol, price=str(price))
            return crypto_outcome(wager, price)

        if self._results is None:
            raise ResultUnavailable("No result source configured")
        try:
            result = await asyncio.wait_for(
                self._results.result_of(wager.sport or "", wager.team1 or "", wager.team2 or ""),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ResultUnavailable(f"Result lookup for {wager.subject} timed out", cause=e) from e
        self._log.info("result_fetched", wager_id=wager.wager_id, result=result)
        return sports_outcome(wager, result)

    @staticmethod
    def _feed_error(wager: Wager, cause: Exception) -> ArbiterError:
        """Wrap an unexpected feed-side exception in the wager kind's feed error."""
        message = f"Outcome lookup for {wager.subject} failed: {cause!r}"
        if wager.wager_type == WagerKind.CRYPTO:
            return QuoteUnavailable(message, cause=cause)
        return ResultUnavailable(message, cause=cause)

    async def _execute(self, instruction: SettlementInstruction) -> ExecutionReceipt:
        try:
            return await asyncio.wait_for(
                self._executor.execute(instruction),
                timeout=self._settings.executor_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ExecutorError(f"{instruction.kind.value} timed out", cause=e) from e
        except ExecutorError:
            raise
        except Exception as e:
            raise ExecutorError(f"{instruction.kind.value} failed", cause=e) from e

    async def _reconcile(
        self,
        wager: Wager,
        operation: str,
        receipt: ExecutionReceipt,
        changes: dict[str, Any],
        expect: dict[str, Any],
    ) -> None:
        """Write the post-chain state; escalate loudly if it cannot be written."""
        try:
            written = await self._ledger.compare_and_set(
                wager.wager_id, wager.wager_type, changes=changes, expect=expect
            )
        except StoreError as e:
            written = False
            cause: Optional[Exception] = e
        else:
            cause = None

        if written:
            return

        self._log.error(
            "reconciliation_required",
            wager_id=wager.wager_id,
            operation=operation,
            signature=receipt.signature,
            simulated=receipt.simulated,
            error=str(cause) if cause else "precondition no longer held",
        )
        error = StoreError(
            f"{operation} executed on chain ({receipt.signature}) but ledger update failed",
            cause=cause,
        )
        await self._record_failure(wager, operation, error, retryable=False)
        raise error

    def _log_breakdown(
        self,
        wager: Wager,
        instruction: SettlementInstruction,
        breakdown: SettlementBreakdown,
        trigger: Trigger,
    ) -> None:
        self._log.info(
            "settlement_breakdown",
            wager_id=wager.wager_id,
            instruction=instruction.kind.value,
            trigger=trigger.value,
            dry_run=self._settings.dry_run,
            **breakdown.to_dict(),
        )

    async def _announce_settlement(
        self,
        wager: Wager,
        breakdown: SettlementBreakdown,
        receipt: ExecutionReceipt,
        trigger: Trigger,
        winner_id: Optional[str],
        outcome: Optional[Outcome],
    ) -> None:
        await self._publish(
            CHANNEL_WAGER_SETTLED,
            WagerSettledEvent.create(
                wager_id=wager.wager_id,
                wager_type=wager.wager_type.value,
                status=wager.status.value,
                trigger=trigger.value,
                breakdown=breakdown,
                signature=receipt.signature,
                winner_id=winner_id,
                resolution_value=outcome.resolution_value if outcome else None,
                simulated=receipt.simulated,
            ).to_dict(),
        )
        if self._metrics:
            self._metrics.record_settlement(
                wager_type=wager.wager_type.value,
                outcome=breakdown.kind.value,
                trigger=trigger.value,
                simulated=receipt.simulated,
                amount=wager.amount,
                platform_fee=breakdown.platform_fee,
            )

    async def _record_failure(
        self,
        wager: Wager,
        operation: str,
        error: ArbiterError,
        retryable: Optional[bool] = None,
    ) -> None:
        if retryable is None:
            retryable = is_retryable(error)
        self._log.warning(
            "settlement_failed",
            wager_id=wager.wager_id,
            operation=operation,
            error=str(error),
            error_type=type(error).__name__,
            retryable=retryable,
        )
        if self._metrics:
            self._metrics.record_failure(operation, type(error).__name__)
        await self._publish(
            CHANNEL_SETTLEMENT_FAILED,
            SettlementFailedEvent.create(
                wager_id=wager.wager_id,
                operation=operation,
                error=error,
                retryable=retryable,
            ).to_dict(),
        )

    async def _best_effort(self, effect: str, coro: Awaitable[Any], wager: Wager) -> None:
        try:
            await coro
        except Exception as e:
            self._log.warning(
                "side_effect_failed",
                effect=effect,
                wager_id=wager.wager_id,
                error=str(e),
            )

    async def _publish(self, channel: str, payload: dict[str, Any]) -> None:
        if self._event_bus is None or not self._event_bus.is_connected:
            return
        try:
            await self._event_bus.publish(channel, payload)
        except Exception as e:
            self._log.warning("event_publish_failed", channel=channel, error=str(e))

    @staticmethod
    def _parse_kind(wager_type: Optional[str]) -> WagerKind:
        try:
            return WagerKind(str(wager_type).lower())
        except ValueError as e:
            raise InvalidRequest(
                f"wager_type must be 'crypto' or 'sports', got {wager_type!r}", cause=e
            ) from e

    @staticmethod
    def _required_str(data: dict[str, Any], key: str) -> str:
        value = data.get(key)
        if value is None or not str(value).strip():
            raise InvalidRequest(f"Missing required field: {key}")
        return str(value).strip()

    @staticmethod
    def _positive_decimal(value: Any, key: str) -> Decimal:
        if value is None or value == "":
            raise InvalidRequest(f"Missing required field: {key}")
        try:
            number = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise InvalidRequest(f"{key} must be a number, got {value!r}", cause=e) from e
        if not number.is_finite() or number <= 0:
            raise InvalidRequest(f"{key} must be positive, got {value!r}")
        return number
