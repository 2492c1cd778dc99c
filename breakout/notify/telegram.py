# breakout/notify/telegram.py
from __future__ import annotations

import logging
from typing import Optional

import requests

log = logging.getLogger("breakout.notify")


class TelegramNotifier:
    """
    Fire-and-forget Telegram Bot API sink.
    send() never raises; failures are logged and reported as False.
    """

    def __init__(
        self,
        token: str,
        chat_id: str,
        base_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.token = token or ""
        self.chat_id = chat_id or ""
        self.base_url = (base_url or "https://api.telegram.org").rstrip("/")
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.token and self.chat_id)

    def send(self, message: str) -> bool:
        if not self.configured:
            log.warning("telegram not configured, dropping message: %s", message[:120])
            return False
        if not message:
            return False

        url = f"{self.base_url}/bot{self.token}/sendMessage"
        payload = {"chat_id": self.chat_id, "text": message, "parse_mode": "HTML"}
        try:
            r = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            log.error("telegram send error: %s", e)
            return False

        try:
            data = r.json()
        except ValueError:
            data = {}

        if r.status_code >= 400 or not (isinstance(data, dict) and data.get("ok")):
            log.error("telegram send failed (HTTP %s): %s", r.status_code, r.text[:300])
            return False
        return True
