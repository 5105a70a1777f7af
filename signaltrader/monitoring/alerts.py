from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

import requests

LOGGER = logging.getLogger(__name__)

LEVEL_PREFIX = {
    "info": "INFO",
    "warning": "WARN",
    "error": "ALERT",
}

RECENT_ALERTS = 200


@dataclass(slots=True)
class AlertConfig:
    enabled: bool = True
    discord_webhook: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    cooldown_seconds: int = 30
    timeout_seconds: float = 10.0


class AlertDispatcher:
    """Fan-out of operator alerts; errors reaching the channels are logged, never raised."""

    def __init__(self, config: AlertConfig):
        self.config = config
        self._last_sent_ts: dict[str, float] = {}
        self.sent: deque[str] = deque(maxlen=RECENT_ALERTS)

    def format(self, *, event: str, message: str, level: str, context: dict[str, Any] | None) -> str:
        prefix = LEVEL_PREFIX.get(level.lower(), level.upper())
        text = f"[{prefix}] {event}: {message}"
        if context:
            text += " | " + " ".join(f"{k}={v}" for k, v in sorted(context.items()))
        return text

    def send(
        self,
        *,
        event: str,
        message: str,
        level: str = "info",
        context: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
    ) -> bool:
        if not self.config.enabled:
            return False
        key = dedupe_key or event
        now = time.monotonic()
        prev = self._last_sent_ts.get(key)
        if prev is not None and (now - prev) < self.config.cooldown_seconds:
            return False
        self._last_sent_ts[key] = now

        text = self.format(event=event, message=message, level=level, context=context)
        self.sent.append(text)
        self._post_discord(text)
        self._post_telegram(text)
        return True

    def _post(self, channel: str, url: str, payload: dict[str, Any]) -> None:
        try:
            response = requests.post(url, json=payload, timeout=self.config.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("%s alert failed: %s", channel, exc)

    def _post_discord(self, text: str) -> None:
        webhook = (self.config.discord_webhook or "").strip()
        if webhook:
            self._post("Discord", webhook, {"content": text})

    def _post_telegram(self, text: str) -> None:
        bot_token = (self.config.telegram_bot_token or "").strip()
        chat_id = (self.config.telegram_chat_id or "").strip()
        if bot_token and chat_id:
            self._post("Telegram", f"https://api.telegram.org/bot{bot_token}/sendMessage", {"chat_id": chat_id, "text": text})
