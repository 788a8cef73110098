"""Sports results source.

GET {base_url}/results?sport=..&team1=..&team2=..
-> {"status": "final", "winner": "<team name>" | "draw"}

Anything other than a final result raises ResultUnavailable so the wager
stays active until the game is decided.
"""

from abc import abstractmethod
from typing import Optional, Protocol

import httpx
import structlog

from arbiter.core.retry import NetworkError, ResultUnavailable, retry_network

log = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 10.0
FINAL_STATUSES = frozenset({"final", "finished", "completed", "ft"})


class ResultSource(Protocol):
    """Protocol for final game results."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def result_of(self, sport: str, team1: str, team2: str) -> str:
        """Winning team name or "draw".

        Raises:
            ResultUnavailable: Game not final or source failed.
        """
        ...


class HttpResultSource:
    """REST client for the results provider."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._log = log.bind(component="result_source")

    async def connect(self) -> None:
        if self._client is not None:
            return
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers=headers,
        )
        self._log.info("result_source_connected", base_url=self._base_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @retry_network()
    async def _get_result(self, params: dict[str, str]) -> dict:
        if self._client is None:
            await self.connect()
        assert self._client is not None
        try:
            response = await self._client.get("/results", params=params)
        except httpx.ConnectError as e:
            raise NetworkError("Results provider unreachable", cause=e) from e
        response.raise_for_status()
        return response.json()

    async def result_of(self, sport: str, team1: str, team2: str) -> str:
        fixture = f"{team1} vs {team2}"
        try:
            data = await self._get_result({"sport": sport, "team1": team1, "team2": team2})
        except NetworkError as e:
            raise ResultUnavailable(f"Results provider unreachable for {fixture}", cause=e) from e
        except httpx.HTTPStatusError as e:
            raise ResultUnavailable(
                f"Results provider returned HTTP {e.response.status_code} for {fixture}", cause=e
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ResultUnavailable(f"Results request failed for {fixture}", cause=e) from e

        if not isinstance(data, dict):
            raise ResultUnavailable(f"Malformed results payload for {fixture}")

        status = str(data.get("status", "")).lower()
        winner = data.get("winner")
        if status not in FINAL_STATUSES or not winner:
            raise ResultUnavailable(f"No final result for {fixture} (status={status or 'unknown'})")

        self._log.debug("result_fetched", sport=sport, fixture=fixture, winner=winner)
        return str(winner)
