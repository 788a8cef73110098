"""Price sources used to settle crypto wagers.

Both sources are REST lookups of the latest price at call time. A missing
or malformed price raises QuoteUnavailable; there is no fallback value.
"""

from abc import abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol

import httpx
import structlog

from arbiter.core.retry import NetworkError, QuoteUnavailable, retry_network

log = structlog.get_logger()

COINMARKETCAP_URL = "https://pro-api.coinmarketcap.com"
BINANCE_REST_URL = "https://api.binance.com"
DEFAULT_TIMEOUT_SECONDS = 10.0


class QuoteSource(Protocol):
    """Protocol for price lookups."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def price_of(self, symbol: str) -> Decimal:
        """Current USD price of `symbol`.

        Raises:
            QuoteUnavailable: No usable price.
        """
        ...


def _to_price(value: Any, symbol: str) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise QuoteUnavailable(f"Malformed price for {symbol}: {value!r}", cause=e) from e
    if not price.is_finite() or price <= 0:
        raise QuoteUnavailable(f"Invalid price for {symbol}: {value!r}")
    return price


class _RestQuoteSource:
    """Shared httpx plumbing for REST price sources."""

    def __init__(
        self,
        base_url: str,
        headers: Optional[dict[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._log = log.bind(component=f"{self.name}_quotes")

    @property
    def name(self) -> str:
        raise NotImplementedError

    async def connect(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers=self._headers,
        )
        self._log.info("quote_source_connected", base_url=self._base_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @retry_network()
    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        if self._client is None:
            await self.connect()
        assert self._client is not None
        try:
            response = await self._client.get(path, params=params)
        except httpx.ConnectError as e:
            raise NetworkError(f"{self.name} unreachable", cause=e) from e
        response.raise_for_status()
        return response.json()

    async def _fetch(self, symbol: str, path: str, params: dict[str, Any]) -> Any:
        try:
            return await self._get_json(path, params)
        except NetworkError as e:
            raise QuoteUnavailable(f"{self.name} unreachable for {symbol}", cause=e) from e
        except httpx.HTTPStatusError as e:
            raise QuoteUnavailable(
                f"{self.name} returned HTTP {e.response.status_code} for {symbol}", cause=e
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise QuoteUnavailable(f"{self.name} request failed for {symbol}", cause=e) from e


class CoinMarketCapQuoteSource(_RestQuoteSource):
    """CoinMarketCap latest-quote lookup (USD)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = COINMARKETCAP_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            base_url,
            headers={"X-CMC_PRO_API_KEY": api_key},
            timeout=timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "coinmarketcap"

    async def price_of(self, symbol: str) -> Decimal:
        symbol = symbol.upper()
        data = await self._fetch(
            symbol,
            "/v1/cryptocurrency/quotes/latest",
            {"symbol": symbol, "convert": "USD"},
        )
        try:
            entry = data["data"][symbol]
            # v2-style responses wrap each symbol in a list
            if isinstance(entry, list):
                entry = entry[0]
            raw = entry["quote"]["USD"]["price"]
        except (KeyError, IndexError, TypeError) as e:
            raise QuoteUnavailable(f"No CoinMarketCap quote for {symbol}", cause=e) from e

        price = _to_price(raw, symbol)
        self._log.debug("price_fetched", symbol=symbol, price=str(price))
        return price


class BinanceQuoteSource(_RestQuoteSource):
    """Binance ticker lookup against a USD stablecoin pair."""

    def __init__(
        self,
        quote_asset: str = "USDT",
        base_url: str = BINANCE_REST_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._quote_asset = quote_asset.upper()
        super().__init__(base_url, timeout=timeout, transport=transport)

    @property
    def name(self) -> str:
        return "binance"

    async def price_of(self, symbol: str) -> Decimal:
        symbol = symbol.upper()
        pair = symbol if symbol.endswith(self._quote_asset) else f"{symbol}{self._quote_asset}"
        data = await self._fetch(symbol, "/api/v3/ticker/price", {"symbol": pair})
        try:
            raw = data["price"]
        except (KeyError, TypeError) as e:
            raise QuoteUnavailable(f"No Binance ticker for {pair}", cause=e) from e

        price = _to_price(raw, symbol)
        self._log.debug("price_fetched", symbol=pair, price=str(price))
        return price
