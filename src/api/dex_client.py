from __future__ import annotations

import os
import time
from typing import Any, Dict, List, Optional

import requests

from src.errors import LifecycleNotFoundError


class DexHTTPError(Exception):
    """Raised when a DEX API request cannot be satisfied."""


class DexClient:
    """Read-only client for the DEX market-data API with simple retry/backoff.

    Every endpoint answers with a ``{"sync": ..., "data": ...}`` envelope; methods
    return the raw ``data`` member and leave shape validation to the caller.
    """

    RETRY_STATUS = {429, 500, 502, 503, 504}

    def __init__(self, base_url: Optional[str] = None, timeout: float = 5.0, retries: int = 3):
        self.base_url = base_url or os.getenv("DEX_API_URL", "https://dex.api.mainnet.metalx.com/dex/v1")
        self.timeout = timeout
        self.retries = retries
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}{path}"
        backoff = 0.5

        for attempt in range(1, self.retries + 1):
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as exc:  # pragma: no cover - network instability
                if attempt == self.retries:
                    raise DexHTTPError(f"Request failed after {self.retries} attempts: {exc}") from exc
                time.sleep(backoff)
                backoff *= 2
                continue

            if response.status_code in self.RETRY_STATUS:
                if attempt == self.retries:
                    raise DexHTTPError(
                        f"DEX request failed after retries ({response.status_code}): {response.text[:200]}"
                    )
                time.sleep(backoff)
                backoff *= 2
                continue

            if 400 <= response.status_code:
                raise DexHTTPError(f"DEX request failed with status {response.status_code}: {response.text[:200]}")

            try:
                return response.json()
            except ValueError as exc:  # pragma: no cover - unexpected payloads
                raise DexHTTPError("DEX response was not valid JSON") from exc

        raise DexHTTPError("DEX request unexpectedly exhausted retries")

    def _data(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        payload = self._request("GET", path, params=params)
        if not isinstance(payload, dict) or "data" not in payload:
            raise DexHTTPError(f"GET {path} returned no data envelope")
        return payload["data"]

    def get_order_depth(self, symbol: str, step: int = 1, limit: int = 100) -> Dict[str, Any]:
        return self._data("/orders/depth", params={"symbol": symbol, "step": step, "limit": limit})

    def get_recent_trades(self, symbol: str, offset: int = 0, limit: int = 100) -> List[Dict[str, Any]]:
        data = self._data("/trades/recent", params={"symbol": symbol, "offset": offset, "limit": limit})
        return data or []

    def get_ohlcv(
        self, symbol: str, interval: str, from_ms: int, to_ms: int, limit: int = 100
    ) -> List[Dict[str, Any]]:
        params = {"symbol": symbol, "interval": interval, "from": from_ms, "to": to_ms, "limit": limit}
        return self._data("/chart/ohlcv", params=params) or []

    def get_balances(self, account: str) -> List[Dict[str, Any]]:
        return self._data("/account/balances", params={"account": account}) or []

    def get_markets(self) -> List[Dict[str, Any]]:
        return self._data("/markets/all") or []

    def get_open_orders(self, account: str, symbol: str, limit: int = 100) -> List[Dict[str, Any]]:
        params = {"account": account, "symbol": symbol, "offset": 0, "limit": limit}
        return self._data("/orders/open", params=params) or []

    def get_order_lifecycle(self, ordinal_order_id: str) -> Dict[str, Any]:
        """Most recent lifecycle entry for an order; the indexer may lag the chain."""
        data = self._data("/orders/lifecycle", params={"ordinal_order_id": ordinal_order_id})
        if isinstance(data, list):
            data = data[0] if data else None
        if not data:
            raise LifecycleNotFoundError(f"No lifecycle yet for order {ordinal_order_id}")
        return data
