"""Settlement executors for the escrow program.

RelayExecutor submits instructions to a signing relay that holds the
program authority key and returns the transaction signature.
SimulatedExecutor is used in dry-run mode and returns receipts clearly
marked as simulated.

Submissions are only retried when the request never reached the relay
(connection refused, DNS failure); anything else surfaces as
ExecutorError so the caller decides whether to try again later.
"""

import time
from abc import abstractmethod
from collections import deque
from typing import Optional, Protocol

import httpx
import structlog

from arbiter.core.retry import ExecutorError, NetworkError, retry_network
from arbiter.domain.instructions import ExecutionReceipt, SettlementInstruction

log = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 30.0
SIMULATED_AUTHORITY = "simulated"
SIMULATED_HISTORY_SIZE = 1000


class SettlementExecutor(Protocol):
    """Protocol for anything that can run escrow instructions."""

    @property
    @abstractmethod
    def authority(self) -> str:
        """Signing identity reported on health/status."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def execute(self, instruction: SettlementInstruction) -> ExecutionReceipt:
        """Submit one instruction.

        Raises:
            ExecutorError: The instruction was not confirmed.
        """
        ...


class RelayExecutor:
    """HTTP client for the transaction relay.

    POST /execute {instruction, accounts, args} -> {signature}
    GET /authority -> {authority}
    """

    def __init__(
        self,
        relay_url: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the relay executor.

        Args:
            relay_url: Base URL of the signing relay.
            api_key: Bearer token for the relay.
            timeout: HTTP request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self._base_url = relay_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._authority = "unknown"
        self._log = log.bind(component="relay_executor")

    @property
    def authority(self) -> str:
        return self._authority

    async def connect(self) -> None:
        """Initialize the HTTP client and look up the relay authority."""
        if self._client is not None:
            return

        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers=headers,
        )

        try:
            response = await self._client.get("/authority")
            response.raise_for_status()
            self._authority = str(response.json().get("authority", "unknown"))
        except (httpx.HTTPError, ValueError) as e:
            self._log.warning("authority_lookup_failed", error=str(e))

        self._log.info("relay_executor_connected", base_url=self._base_url, authority=self._authority)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._log.info("relay_executor_closed")

    def _ensure_connected(self) -> httpx.AsyncClient:
        if self._client is None:
            raise ExecutorError("Relay executor not connected")
        return self._client

    @retry_network()
    async def _submit(self, payload: dict) -> httpx.Response:
        client = self._ensure_connected()
        try:
            return await client.post("/execute", json=payload)
        except httpx.ConnectError as e:
            raise NetworkError("Relay unreachable", cause=e) from e

    async def execute(self, instruction: SettlementInstruction) -> ExecutionReceipt:
        payload = {
            "instruction": instruction.kind.value,
            "accounts": instruction.accounts.to_dict(),
            "args": instruction.args(),
        }

        try:
            response = await self._submit(payload)
            response.raise_for_status()
            signature = response.json().get("signature")
        except NetworkError as e:
            raise ExecutorError(f"{instruction.kind.value} not submitted", cause=e) from e
        except httpx.HTTPStatusError as e:
            raise ExecutorError(
                f"{instruction.kind.value} rejected with HTTP {e.response.status_code}",
                cause=e,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ExecutorError(f"{instruction.kind.value} failed", cause=e) from e

        if not signature:
            raise ExecutorError(f"{instruction.kind.value} returned no signature")

        self._log.info(
            "instruction_confirmed",
            instruction=instruction.kind.value,
            wager_id=instruction.wager_id,
            signature=signature,
        )
        return ExecutionReceipt(signature=str(signature), simulated=False)


class SimulatedExecutor:
    """Dry-run executor. Never touches the chain.

    The most recent instructions are kept in `submitted` for inspection.
    """

    def __init__(self, history_size: int = SIMULATED_HISTORY_SIZE) -> None:
        self._log = log.bind(component="simulated_executor")
        self.submitted: deque[SettlementInstruction] = deque(maxlen=history_size)

    @property
    def authority(self) -> str:
        return SIMULATED_AUTHORITY

    async def connect(self) -> None:
        self._log.info("simulated_executor_ready")

    async def close(self) -> None:
        pass

    async def execute(self, instruction: SettlementInstruction) -> ExecutionReceipt:
        self.submitted.append(instruction)
        signature = f"sim_{instruction.kind.value}_{instruction.wager_id}_{int(time.time() * 1000)}"
        self._log.info(
            "instruction_simulated",
            instruction=instruction.kind.value,
            wager_id=instruction.wager_id,
            signature=signature,
        )
        return ExecutionReceipt(signature=signature, simulated=True)
