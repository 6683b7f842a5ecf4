from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Protocol

import requests


class ChainRPCError(Exception):
    """Raised when a chain RPC or signer request fails."""


class ChainClient(Protocol):
    def transact(self, actions: List[Dict[str, Any]], blocks_behind: int, expire_seconds: int) -> Dict[str, Any]:
        ...

    def get_transaction(self, transaction_id: str) -> Dict[str, Any]:
        ...

    def get_table_rows(self, code: str, scope: str, table: str, **kwargs: Any) -> Dict[str, Any]:
        ...


class RpcChainClient:
    """JSON RPC client for the chain plus an external signer for ``transact``.

    Reads go straight to the node. Private keys never live in this process: the
    unsigned transaction is posted to ``signer_url`` which signs and broadcasts it
    and answers with the node's push result.
    """

    RETRY_STATUS = {429, 500, 502, 503, 504}

    def __init__(
        self,
        rpc_url: str,
        signer_url: Optional[str] = None,
        timeout: float = 10.0,
        retries: int = 3,
    ) -> None:
        self.rpc_url = rpc_url.rstrip("/")
        self.signer_url = signer_url.rstrip("/") if signer_url else None
        self.timeout = timeout
        self.retries = retries
        self.session = requests.Session()

    def _post(self, url: str, body: Dict[str, Any], retry: bool = True) -> Dict[str, Any]:
        attempts = self.retries if retry else 1
        backoff = 1.0
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.post(url, json=body, timeout=self.timeout)
            except requests.RequestException as exc:
                if attempt == attempts:
                    raise ChainRPCError(f"POST {url} failed: {exc}") from exc
                time.sleep(backoff)
                backoff *= 2
                continue

            if response.status_code in self.RETRY_STATUS and attempt < attempts:
                time.sleep(backoff)
                backoff *= 2
                continue
            if response.status_code >= 400:
                raise ChainRPCError(f"POST {url} failed with status {response.status_code}: {response.text[:300]}")
            try:
                return response.json()
            except ValueError as exc:  # pragma: no cover - unexpected payloads
                raise ChainRPCError(f"POST {url} returned invalid JSON") from exc

        raise ChainRPCError(f"POST {url} exhausted retries")

    def transact(self, actions: List[Dict[str, Any]], blocks_behind: int, expire_seconds: int) -> Dict[str, Any]:
        if not self.signer_url:
            raise ChainRPCError("No signer configured; cannot broadcast transactions")
        body = {"actions": actions, "blocksBehind": blocks_behind, "expireSeconds": expire_seconds}
        # Broadcasting twice could double-execute an order.
        return self._post(f"{self.signer_url}/transact", body, retry=False)

    def get_transaction(self, transaction_id: str) -> Dict[str, Any]:
        return self._post(f"{self.rpc_url}/v1/history/get_transaction", {"id": transaction_id})

    def get_table_rows(self, code: str, scope: str, table: str, **kwargs: Any) -> Dict[str, Any]:
        body: Dict[str, Any] = {"json": True, "code": code, "scope": scope, "table": table, "limit": 100}
        body.update(kwargs)
        return self._post(f"{self.rpc_url}/v1/chain/get_table_rows", body)
