"""
Unit tests for the settlement HTTP API.

Tests:
- Settlement endpoints return success payloads
- Error taxonomy maps to HTTP status codes
- Diagnostic endpoints (/health, /status, /metrics)
"""
from datetime import timedelta

import pytest
import pytest_asyncio
from aiohttp import ClientSession
from aiohttp import test_utils

from arbiter.core.retry import ExecutorError, QuoteUnavailable
from arbiter.domain.wager import ResolutionStatus, WagerStatus
from arbiter.services.api import SettlementApi
from arbiter.services.expiration import ExpirationScanner
from tests.helpers import (
    ACCEPTOR_ADDRESS,
    ACCEPTOR_ID,
    CREATOR_ADDRESS,
    CREATOR_ID,
    NOW,
    crypto_wager,
    matched,
    sports_wager,
)


@pytest.fixture
def api(engine, ledger, metrics, clock) -> SettlementApi:
    scanner = ExpirationScanner(ledger=ledger, engine=engine, metrics=metrics, clock=clock)
    return SettlementApi(
        engine=engine,
        scanner=scanner,
        ledger=ledger,
        metrics=metrics,
        extra_status=lambda: {"shutdown": {"phase": "running"}},
    )


@pytest_asyncio.fixture
async def server(api):
    """Serve the API on a free local port."""
    test_server = test_utils.TestServer(api.build_app())
    await test_server.start_server()
    yield test_server
    await test_server.close()


async def post(server, path, body=None, data=None):
    async with ClientSession() as session:
        async with session.post(server.make_url(path), json=body, data=data) as resp:
            return resp.status, await resp.json()


async def get(server, path):
    async with ClientSession() as session:
        async with session.get(server.make_url(path)) as resp:
            if resp.content_type == "application/json":
                return resp.status, await resp.json()
            return resp.status, await resp.text()


class TestSettlementEndpoints:
    """Tests for the settlement endpoints."""

    @pytest.mark.asyncio
    async def test_create_wager(self, server, ledger):
        status, data = await post(
            server,
            "/create-wager",
            {
                "wager_type": "crypto",
                "wager_data": {
                    "wager_id": "w-http",
                    "creator_id": CREATOR_ID,
                    "amount": "1",
                    "expiry_time": "2026-03-01T13:00:00Z",
                    "token_symbol": "SOL",
                    "prediction_type": "above",
                    "target_price": "150",
                },
            },
        )

        assert status == 201
        assert data["success"] is True
        assert data["wager_id"] == "w-http"
        assert (await ledger.get_wager("w-http")).status == WagerStatus.OPEN

    @pytest.mark.asyncio
    async def test_accept_then_resolve(self, server, ledger):
        await ledger.insert_wager(crypto_wager())

        status, accepted = await post(
            server, "/accept-wager", {"wager_id": "w-crypto-1", "acceptor_id": ACCEPTOR_ID}
        )
        assert status == 200
        assert accepted["status"] == "active"
        assert accepted["simulated"] is True

        status, resolved = await post(server, "/resolve-crypto-wager", {"wager_id": "w-crypto-1"})
        assert status == 200
        assert resolved["processed"] is True
        assert resolved["winner_id"] == CREATOR_ID
        assert resolved["resolution_value"] == "105"
        assert resolved["on_chain_signature"].startswith("sim_resolve_wager")

        status, again = await post(server, "/resolve-crypto-wager", {"wager_id": "w-crypto-1"})
        assert status == 200
        assert again["processed"] is False
        assert again["winner_id"] == CREATOR_ID

    @pytest.mark.asyncio
    async def test_resolve_sports(self, server, ledger):
        await ledger.insert_wager(matched(sports_wager()))
        status, data = await post(server, "/resolve-sports-wager", {"wager_id": "w-sports-1"})
        assert status == 200
        assert data["winner_position"] == "home"

    @pytest.mark.asyncio
    async def test_cancel_and_process_cancelled(self, server, ledger):
        await ledger.insert_wager(crypto_wager())

        status, data = await post(
            server, "/cancel-wager", {"wager_id": "w-crypto-1", "cancelling_address": CREATOR_ADDRESS}
        )
        assert status == 200
        assert data["status"] == "cancelled"
        assert data["message"] == "Refund will be processed shortly"

        status, report = await post(server, "/process-cancelled-wagers")
        assert status == 200
        assert report["success"] is True
        assert report["refunded"] == 1
        assert (await ledger.get_wager("w-crypto-1")).refund_processed is True

    @pytest.mark.asyncio
    async def test_handle_expired_and_mark_refund(self, server, ledger):
        await ledger.insert_wager(crypto_wager(expiry_time=NOW - timedelta(seconds=1)))
        await ledger.insert_wager(crypto_wager(wager_id="external", status=WagerStatus.CANCELLED))

        status, data = await post(server, "/handle-expired-wager", {"wager_id": "w-crypto-1"})
        assert status == 200
        assert data["status"] == "expired"

        status, data = await post(
            server, "/mark-refund-processed", {"wager_id": "external", "refund_signature": "sig-1"}
        )
        assert status == 200
        assert data["action"] == "refund_marked"


class TestErrorMapping:
    """Tests for error -> HTTP status mapping."""

    @pytest.mark.asyncio
    async def test_unknown_wager_is_404(self, server):
        status, data = await post(server, "/resolve-crypto-wager", {"wager_id": "nope"})
        assert status == 404
        assert "nope" in data["error"]

    @pytest.mark.asyncio
    async def test_wrong_kind_is_404(self, server, ledger):
        await ledger.insert_wager(matched(crypto_wager()))
        status, _ = await post(server, "/resolve-sports-wager", {"wager_id": "w-crypto-1"})
        assert status == 404

    @pytest.mark.asyncio
    async def test_unauthorized_cancel_is_403(self, server, ledger):
        await ledger.insert_wager(crypto_wager())
        status, _ = await post(
            server, "/cancel-wager", {"wager_id": "w-crypto-1", "cancelling_address": ACCEPTOR_ADDRESS}
        )
        assert status == 403

    @pytest.mark.asyncio
    async def test_wrong_state_is_409(self, server, ledger):
        await ledger.insert_wager(crypto_wager())
        status, _ = await post(server, "/resolve-crypto-wager", {"wager_id": "w-crypto-1"})
        assert status == 409

    @pytest.mark.asyncio
    async def test_missing_field_is_400(self, server):
        status, data = await post(server, "/accept-wager", {"wager_id": "w-crypto-1"})
        assert status == 400
        assert "acceptor_id" in data["error"]

    @pytest.mark.asyncio
    async def test_malformed_json_is_400(self, server):
        status, _ = await post(server, "/accept-wager", data="{not json")
        assert status == 400

    @pytest.mark.asyncio
    async def test_feed_failure_is_502(self, server, ledger, quote_source):
        quote_source.price_of.side_effect = QuoteUnavailable("feed down")
        await ledger.insert_wager(matched(crypto_wager()))

        status, _ = await post(server, "/resolve-crypto-wager", {"wager_id": "w-crypto-1"})

        assert status == 502
        assert (await ledger.get_wager("w-crypto-1")).resolution_status is None

    @pytest.mark.asyncio
    async def test_executor_failure_is_502(self, server, ledger, executor, monkeypatch):
        async def refuse(instruction):
            raise ExecutorError("relay rejected")

        monkeypatch.setattr(executor, "execute", refuse)
        await ledger.insert_wager(crypto_wager())

        status, _ = await post(
            server, "/accept-wager", {"wager_id": "w-crypto-1", "acceptor_id": ACCEPTOR_ID}
        )
        assert status == 502


class TestDiagnostics:
    """Tests for /health, /status and /metrics."""

    @pytest.mark.asyncio
    async def test_health(self, server):
        status, data = await get(server, "/health")
        assert status == 200
        assert data["status"] == "healthy"
        assert data["service"] == "arbiter"
        assert data["authority"] == "simulated"

    @pytest.mark.asyncio
    async def test_status_reports_counts_and_stuck_claims(self, server, ledger, monkeypatch):
        monkeypatch.setattr("arbiter.services.api.STUCK_CLAIM_SECONDS", 0)
        await ledger.insert_wager(crypto_wager(wager_id="open-1"))
        await ledger.insert_wager(
            matched(crypto_wager(wager_id="stuck", resolution_status=ResolutionStatus.PROCESSING))
        )

        status, data = await get(server, "/status")

        assert status == 200
        assert data["environment"] == "dry_run"
        assert data["wagers"] == {"open": 1, "active": 1}
        assert [c["wager_id"] for c in data["stuck_claims"]] == ["stuck"]
        assert data["scanner"]["coarse_sweeps"] == 0
        assert data["shutdown"] == {"phase": "running"}
        assert data["components"]["ledger"]["status"] == "healthy"
        assert data["components"]["ledger"]["details"]["wagers"] == 2
        # served through the test server, so neither loop was started
        assert data["components"]["expiration_scanner"]["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_metrics_after_requests(self, server):
        await get(server, "/health")
        status, text = await get(server, "/metrics")
        assert status == 200
        assert "arbiter_api_requests_total" in text
        assert 'endpoint="/health"' in text
