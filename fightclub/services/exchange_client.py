"""Exchange REST client for the read-only queries the fight core needs.

Mark prices, open positions and open orders per account. Order placement and
signing live in the web app; this client never writes to the exchange.
"""

import asyncio
import logging

import httpx

from fightclub.config import settings

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY = 0.5


class ExchangeError(RuntimeError):
    """Exchange returned an error or an unexpected payload."""


class ExchangeClient:
    """Thin async wrapper around the exchange public/account REST API."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url if base_url is not None else settings.exchange_base_url).rstrip("/")
        self.timeout = timeout or settings.exchange_timeout_seconds
        self._client: httpx.AsyncClient | None = None
        self._mock_mode = not self.base_url
        if self._mock_mode:
            logger.warning("No exchange base URL configured; using mock mode")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def _get(self, path: str, params: dict | None = None, retry_count: int = 0):
        client = await self._get_client()
        try:
            response = await client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429 and retry_count < MAX_RETRIES:
                logger.warning(f"Rate limited on {path} (attempt {retry_count + 1}/{MAX_RETRIES})")
                await asyncio.sleep(RETRY_DELAY)
                return await self._get(path, params, retry_count + 1)
            raise ExchangeError(f"{path} returned HTTP {e.response.status_code}") from e
        except httpx.TransportError as e:
            if retry_count < MAX_RETRIES:
                logger.warning(f"Request to {path} failed: {e} (attempt {retry_count + 1}/{MAX_RETRIES})")
                await asyncio.sleep(RETRY_DELAY)
                return await self._get(path, params, retry_count + 1)
            raise ExchangeError(f"{path} unreachable: {e}") from e

        body = response.json()
        if isinstance(body, dict) and "data" in body:
            if body.get("success") is False:
                raise ExchangeError(f"{path} failed: {body.get('error')}")
            return body["data"]
        return body

    async def get_prices(self) -> list[dict]:
        """All market prices: [{symbol, mark, mid, ...}]."""
        if self._mock_mode:
            return []
        return await self._get("/api/v1/info/prices")

    async def get_mark_price(self, symbol: str) -> float:
        prices = await self.get_prices()
        for p in prices:
            if p.get("symbol") == symbol:
                return float(p["mark"])
        raise ExchangeError(f"Price not found for symbol: {symbol}")

    async def get_positions(self, account: str) -> list[dict]:
        """Open positions for an account.

        Returns a list of dicts with keys: symbol, side ("bid"/"ask"), amount, entry_price.
        """
        if self._mock_mode:
            return []
        raw = await self._get("/api/v1/positions", params={"account": account}) or []
        positions = []
        for pos in raw:
            amount = float(pos.get("amount", 0))
            if abs(amount) < 1e-10:
                continue
            positions.append({
                "symbol": pos["symbol"],
                "side": pos.get("side", "bid"),
                "amount": abs(amount),
                "entry_price": float(pos.get("entry_price", 0)),
            })
        return positions

    async def get_open_orders(self, account: str) -> list[dict]:
        """Open (resting) orders for an account, amounts parsed to floats."""
        if self._mock_mode:
            return []
        raw = await self._get("/api/v1/orders", params={"account": account}) or []
        orders = []
        for o in raw:
            orders.append({
                "order_id": str(o["order_id"]),
                "symbol": o["symbol"],
                "side": o.get("side"),
                "order_type": o.get("order_type"),
                "price": float(o.get("price") or 0),
                "stop_price": float(o["stop_price"]) if o.get("stop_price") else None,
                "initial_amount": float(o.get("initial_amount") or 0),
                "filled_amount": float(o.get("filled_amount") or 0),
                "cancelled_amount": float(o.get("cancelled_amount") or 0),
                "reduce_only": bool(o.get("reduce_only", False)),
            })
        return orders

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
        self._client = None
