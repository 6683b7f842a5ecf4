from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import requests


class AdvisorHTTPError(Exception):
    """Raised when the advisor endpoint fails or answers without content."""


class AdvisorClient:
    """Minimal OpenAI-compatible chat-completions client with simple retry/backoff."""

    RETRY_STATUS = {429, 500, 502, 503, 504}

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.x.ai/v1",
        model: str = "grok-beta",
        timeout: float = 30.0,
        retries: int = 3,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.retries = retries
        self.session = requests.Session()
        if api_key:
            self.session.headers.update({"Authorization": f"Bearer {api_key}"})

    def complete(self, system: str, user: str, temperature: float = 0.2, max_tokens: int = 100) -> str:
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "n": 1,
        }
        payload = self._post("/chat/completions", body)

        if not isinstance(payload, dict):
            raise AdvisorHTTPError("Advisor response was not a JSON object")
        if payload.get("error"):
            raise AdvisorHTTPError(f"Advisor error: {payload['error']}")
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AdvisorHTTPError("Advisor response had no message content") from exc
        return content or ""

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        backoff = 1.0

        for attempt in range(1, self.retries + 1):
            try:
                response = self.session.post(url, json=body, timeout=self.timeout)
            except requests.RequestException as exc:
                if attempt == self.retries:
                    raise AdvisorHTTPError(f"Advisor request failed after {self.retries} attempts: {exc}") from exc
                time.sleep(backoff)
                backoff *= 2
                continue

            if response.status_code in self.RETRY_STATUS:
                if attempt == self.retries:
                    raise AdvisorHTTPError(
                        f"Advisor request failed after retries ({response.status_code}): {response.text[:200]}"
                    )
                time.sleep(backoff)
                backoff *= 2
                continue

            if response.status_code >= 400:
                raise AdvisorHTTPError(f"Advisor request failed with status {response.status_code}: {response.text[:200]}")

            try:
                return response.json()
            except ValueError as exc:  # pragma: no cover - unexpected payloads
                raise AdvisorHTTPError("Advisor response was not valid JSON") from exc

        raise AdvisorHTTPError("Advisor request unexpectedly exhausted retries")
