"""
Unit tests for the settlement executors.

Tests verify:
- Relay payload shape and authority lookup
- Relay rejections surface as ExecutorError
- Simulated receipts are always marked simulated
"""
import json
from decimal import Decimal

import httpx
import pytest

from arbiter.core.retry import ExecutorError
from arbiter.domain.fees import FeeSchedule, PayoutCalculator
from arbiter.domain.instructions import (
    AcceptInstruction,
    EscrowAccounts,
    InstructionKind,
    ResolveInstruction,
)
from arbiter.domain.wager import Position
from arbiter.integrations.executor import RelayExecutor, SimulatedExecutor
from tests.helpers import ACCEPTOR_ADDRESS, CREATOR_ADDRESS, TREASURY_ADDRESS


def resolve_instruction(wager_id: str = "w-1") -> ResolveInstruction:
    return ResolveInstruction(
        wager_id=wager_id,
        accounts=EscrowAccounts(
            escrow="EscrowPda111",
            creator=CREATOR_ADDRESS,
            acceptor=ACCEPTOR_ADDRESS,
            treasury=TREASURY_ADDRESS,
        ),
        winner_position=Position.ABOVE,
        breakdown=PayoutCalculator(FeeSchedule()).win(Decimal("1")),
    )


def relay(handler) -> RelayExecutor:
    return RelayExecutor(
        "https://relay.example",
        api_key="relay-key",
        transport=httpx.MockTransport(handler),
    )


class TestRelayExecutor:
    """Tests for RelayExecutor."""

    @pytest.mark.asyncio
    async def test_execute_posts_instruction(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path == "/authority":
                return httpx.Response(200, json={"authority": "Auth111"})
            return httpx.Response(200, json={"signature": "5igSig"})

        executor = relay(handler)
        await executor.connect()
        receipt = await executor.execute(resolve_instruction())
        await executor.close()

        assert executor.authority == "Auth111"
        assert receipt.signature == "5igSig"
        assert receipt.simulated is False

        post = seen[-1]
        assert post.method == "POST"
        assert post.headers["Authorization"] == "Bearer relay-key"
        payload = json.loads(post.content)
        assert payload["instruction"] == "resolve_wager"
        assert payload["accounts"] == {
            "wager": "EscrowPda111",
            "creator": CREATOR_ADDRESS,
            "acceptor": ACCEPTOR_ADDRESS,
            "treasury": TREASURY_ADDRESS,
        }
        assert payload["args"]["winner_position"] == "above"
        assert payload["args"]["breakdown"]["platform_fee"] == "0.080000000"

    @pytest.mark.asyncio
    async def test_authority_lookup_failure_is_tolerated(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/authority":
                return httpx.Response(500)
            return httpx.Response(200, json={"signature": "sig"})

        executor = relay(handler)
        await executor.connect()
        assert executor.authority == "unknown"
        await executor.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(409, json={"error": "already settled"}),
            httpx.Response(200, json={}),
            httpx.Response(200, text="not json"),
        ],
    )
    async def test_rejections_raise_executor_error(self, response):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/authority":
                return httpx.Response(200, json={"authority": "Auth111"})
            return response

        executor = relay(handler)
        await executor.connect()
        with pytest.raises(ExecutorError):
            await executor.execute(resolve_instruction())
        await executor.close()

    @pytest.mark.asyncio
    async def test_execute_requires_connect(self):
        executor = relay(lambda request: httpx.Response(200, json={"signature": "sig"}))
        with pytest.raises(ExecutorError):
            await executor.execute(resolve_instruction())


class TestSimulatedExecutor:
    """Tests for SimulatedExecutor."""

    @pytest.mark.asyncio
    async def test_receipts_are_marked_simulated(self):
        executor = SimulatedExecutor()
        instruction = AcceptInstruction(
            wager_id="w-1",
            accounts=EscrowAccounts(creator=CREATOR_ADDRESS, acceptor=ACCEPTOR_ADDRESS),
            amount=Decimal("1"),
        )

        receipt = await executor.execute(instruction)

        assert receipt.simulated is True
        assert receipt.signature.startswith("sim_accept_wager_w-1_")
        assert executor.authority == "simulated"
        assert list(executor.submitted) == [instruction]
        assert instruction.kind == InstructionKind.ACCEPT
        assert instruction.accounts.to_dict() == {
            "creator": CREATOR_ADDRESS,
            "acceptor": ACCEPTOR_ADDRESS,
        }

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        executor = SimulatedExecutor(history_size=2)
        for wager_id in ("w-1", "w-2", "w-3"):
            await executor.execute(resolve_instruction(wager_id))

        assert [i.wager_id for i in executor.submitted] == ["w-2", "w-3"]
