"""
HTTP API for Arbiter.

Settlement requests from the platform backend plus diagnostic endpoints.

Every settlement endpoint returns `{"success": true, ...}` on success and
`{"error": "..."}` with a non-2xx status on failure:
- 400 malformed request, 403 not allowed, 404 unknown wager/user,
  409 wrong wager state
- 502 price feed, results source or escrow executor failure
- 500 ledger failure
"""

import json
from typing import Any, Awaitable, Callable, Optional

import structlog
from aiohttp import web

from arbiter import __version__
from arbiter.core.lifecycle import BaseComponent, HealthCheckResult
from arbiter.core.retry import ArbiterError, InvalidRequest
from arbiter.domain.wager import WagerKind, utcnow
from arbiter.services.expiration import ExpirationScanner
from arbiter.services.ledger import Ledger
from arbiter.services.metrics import MetricsEmitter
from arbiter.services.settlement import SettlementEngine

log = structlog.get_logger()

SERVICE_NAME = "arbiter"
DEFAULT_PORT = 8000
STUCK_CLAIM_SECONDS = 300

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse the request body as a JSON object."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError) as e:
        raise InvalidRequest("Request body must be valid JSON", cause=e) from e
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body


def require(body: dict[str, Any], *fields: str) -> None:
    missing = [name for name in fields if not body.get(name)]
    if missing:
        raise InvalidRequest(f"Missing required field(s): {', '.join(missing)}")


class SettlementApi(BaseComponent):
    """aiohttp server exposing the settlement operations.

    Usage:
        api = SettlementApi(engine, scanner, ledger, metrics, port=8000)
        await api.start()
        # POST http://localhost:8000/resolve-crypto-wager {"wager_id": "..."}
        await api.stop()
    """

    def __init__(
        self,
        engine: SettlementEngine,
        scanner: ExpirationScanner,
        ledger: Ledger,
        metrics: Optional[MetricsEmitter] = None,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        extra_status: Optional[Callable[[], dict[str, Any]]] = None,
    ) -> None:
        """Initialize the API server.

        Args:
            engine: Settlement engine.
            scanner: Expiration scanner (for on-demand sweeps and counters).
            ledger: Ledger, for status counts.
            metrics: Optional MetricsEmitter for /metrics and request counts.
            host: Host to bind to.
            port: Port to listen on.
            extra_status: Optional callable merged into /status.
        """
        super().__init__(name="settlement_api")
        self._engine = engine
        self._scanner = scanner
        self._ledger = ledger
        self._metrics = metrics
        self._host = host
        self._port = port
        self._extra_status = extra_status
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._log = log.bind(component="settlement_api")

    @property
    def port(self) -> int:
        return self._port

    def build_app(self) -> web.Application:
        """Create the aiohttp application with all routes."""
        app = web.Application(middlewares=[self._error_middleware])
        app.router.add_post("/create-wager", self._handle_create)
        app.router.add_post("/accept-wager", self._handle_accept)
        app.router.add_post("/resolve-crypto-wager", self._handle_resolve_crypto)
        app.router.add_post("/resolve-sports-wager", self._handle_resolve_sports)
        app.router.add_post("/cancel-wager", self._handle_cancel)
        app.router.add_post("/handle-expired-wager", self._handle_expired)
        app.router.add_post("/process-cancelled-wagers", self._handle_process_cancelled)
        app.router.add_post("/mark-refund-processed", self._handle_mark_refund)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/status", self._handle_status)
        app.router.add_get("/metrics", self._handle_metrics)
        return app

    async def _do_start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        self._log.info("api_started", host=self._host, port=self._port)

    async def _do_stop(self) -> None:
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        self._runner = None
        self._site = None
        self._log.info("api_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        if self._site is None:
            return HealthCheckResult.unhealthy("Server not running")
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds, port=self._port)

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        try:
            response = await handler(request)
        except ArbiterError as e:
            self._log.warning(
                "request_failed",
                path=request.path,
                error=str(e),
                error_type=type(e).__name__,
                status=e.http_status,
            )
            response = web.json_response({"error": str(e)}, status=e.http_status)
        except web.HTTPException:
            raise
        except Exception as e:
            self._log.error("request_error", path=request.path, error=str(e))
            response = web.json_response({"error": "Internal server error"}, status=500)

        if self._metrics:
            self._metrics.record_api_request(request.path, response.status)
        return response

    # ============ Settlement endpoints ============

    async def _handle_create(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        require(body, "wager_type", "wager_data")
        result = await self._engine.create_wager(body["wager_type"], body["wager_data"])
        return web.json_response(result.to_dict(), status=201)

    async def _handle_accept(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        require(body, "wager_id", "acceptor_id")
        result = await self._engine.accept_wager(
            body["wager_id"],
            body["acceptor_id"],
            wager_type=body.get("wager_type"),
            acceptor_address=body.get("acceptor_address"),
        )
        return web.json_response(result.to_dict())

    async def _handle_resolve_crypto(self, request: web.Request) -> web.Response:
        return await self._resolve(request, WagerKind.CRYPTO)

    async def _handle_resolve_sports(self, request: web.Request) -> web.Response:
        return await self._resolve(request, WagerKind.SPORTS)

    async def _resolve(self, request: web.Request, kind: WagerKind) -> web.Response:
        body = await read_json(request)
        require(body, "wager_id")
        result = await self._engine.resolve_wager(body["wager_id"], kind.value)
        return web.json_response(result.to_dict())

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        require(body, "wager_id", "cancelling_address")
        result = await self._engine.cancel_wager(
            body["wager_id"],
            body["cancelling_address"],
            wager_type=body.get("wager_type"),
        )
        return web.json_response(result.to_dict())

    async def _handle_expired(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        require(body, "wager_id")
        result = await self._engine.handle_expired(body["wager_id"], wager_type=body.get("wager_type"))
        return web.json_response(result.to_dict())

    async def _handle_process_cancelled(self, request: web.Request) -> web.Response:
        report = await self._scanner.run_coarse_sweep()
        return web.json_response({"success": True, **report.to_dict()})

    async def _handle_mark_refund(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        require(body, "wager_id")
        result = await self._engine.mark_refund_processed(
            body["wager_id"],
            refund_signature=body.get("refund_signature"),
            wager_type=body.get("wager_type"),
        )
        return web.json_response(result.to_dict())

    # ============ Diagnostics ============

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "service": SERVICE_NAME,
            "version": __version__,
            "authority": self._engine.authority,
        })

    async def _handle_status(self, request: web.Request) -> web.Response:
        counts = await self._ledger.count_by_status()
        stuck = await self._ledger.list_stuck_claims(older_than_seconds=STUCK_CLAIM_SECONDS)
        status: dict[str, Any] = {
            "service": SERVICE_NAME,
            "version": __version__,
            "environment": "dry_run" if self._engine.settings.dry_run else "live",
            "authority": self._engine.authority,
            "wagers": counts,
            "stuck_claims": [
                {
                    "wager_id": claim.wager_id,
                    "wager_type": claim.wager_type,
                    "status": claim.status,
                    "claimed_since": claim.claimed_since.isoformat(),
                }
                for claim in stuck
            ],
            "scanner": self._scanner.stats(),
            "components": {
                component.name: (await component.health_check()).to_dict()
                for component in (self._ledger, self._scanner, self)
            },
        }
        if self._extra_status:
            status.update(self._extra_status())
        return web.json_response(status)

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        if self._metrics is None:
            return web.Response(text="# No metrics configured\n", content_type="text/plain")
        return web.Response(text=self._metrics.get_metrics(), content_type="text/plain")
