# breakout/persistence/state_client.py
from __future__ import annotations

import logging
import random
import time
from typing import Any, Dict, Optional

import requests

from breakout.errors import StateStoreError

log = logging.getLogger("breakout.state")

STATE_PATH = "/api/state"


class StateStoreClient:
    """
    Thin HTTP client for the remote key-value state store.

    GET  /api/state -> flat JSON account snapshot (or null)
    PUT  /api/state -> {"ok": true}

    Auth is a static bearer token. Transient failures (timeouts, connection
    errors, 429/5xx) are retried with exponential backoff; anything else fails
    fast with StateStoreError.
    """

    def __init__(
        self,
        base_url: str,
        password: str = "",
        timeout: float = 15.0,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.password = password or ""
        self.timeout = float(timeout)
        self.max_retries = max(0, int(max_retries))
        self.session = session or requests.Session()

    def _headers(self, json_body: bool = False) -> Dict[str, str]:
        h: Dict[str, str] = {}
        if self.password:
            h["Authorization"] = f"Bearer {self.password}"
        if json_body:
            h["Content-Type"] = "application/json"
        return h

    def _request(self, method: str, body: Any = None) -> Any:
        url = f"{self.base_url}{STATE_PATH}"
        headers = self._headers(json_body=body is not None)

        last_err: Optional[BaseException] = None
        for attempt in range(self.max_retries + 1):
            try:
                r = self.session.request(
                    method, url, json=body, headers=headers, timeout=self.timeout
                )

                if r.status_code == 429:
                    ra = r.headers.get("Retry-After")
                    sleep_s = float(ra) if ra else (0.4 * (2**attempt))
                    sleep_s += random.uniform(0, 0.2)
                    last_err = StateStoreError(f"HTTP 429 on {method} {STATE_PATH}")
                    time.sleep(min(sleep_s, 10.0))
                    continue

                if r.status_code >= 500:
                    last_err = StateStoreError(f"HTTP {r.status_code} on {method} {STATE_PATH}")
                    time.sleep(min(0.4 * (2**attempt), 8.0))
                    continue

                if r.status_code >= 400:
                    raise StateStoreError(f"HTTP {r.status_code} on {method} {STATE_PATH}: {r.text[:200]}")

                return r.json() if r.content else None

            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = e
                time.sleep(min(0.4 * (2**attempt), 8.0))
                continue
            except ValueError as e:
                # body was not JSON
                raise StateStoreError(f"invalid JSON from {method} {STATE_PATH}: {e}") from e
            except requests.RequestException as e:
                # bad URL, redirect loop, broken chunked body: not worth retrying
                raise StateStoreError(f"{method} {STATE_PATH} failed: {e}") from e

        raise StateStoreError(
            f"state request failed after retries: {method} {STATE_PATH} ({last_err})"
        )

    def get(self) -> Optional[Dict[str, Any]]:
        """Latest snapshot, or None when the store is empty. Raises StateStoreError."""
        data = self._request("GET")
        if data is None:
            return None
        if not isinstance(data, dict):
            raise StateStoreError(f"state store returned {type(data).__name__}, expected object")
        return data

    def put(self, snapshot: Dict[str, Any]) -> bool:
        """Whole-snapshot replace. Returns False (and logs) instead of raising."""
        try:
            self._request("PUT", body=snapshot)
            return True
        except StateStoreError as e:
            log.error("state push failed: %s", e)
            return False
