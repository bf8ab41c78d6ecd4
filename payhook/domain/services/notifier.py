"""
ערוצי שליחה של התראות למפעילים.

ה-Alerting Gate מחליט מתי להתריע; ה-notifier רק מוסר הודעה ליעד.
"""
from __future__ import annotations

import html
from typing import Protocol

import httpx

from payhook.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from payhook.core.exceptions import TelegramError
from payhook.core.logging import get_logger

logger = get_logger(__name__)

_TELEGRAM_API_URL = "https://api.telegram.org"
# מגבלת אורך הודעה של Telegram
_TELEGRAM_MAX_MESSAGE_LENGTH = 4096


class AlertNotifier(Protocol):
    async def send(self, to: str, subject: str, body: str) -> bool:
        ...


def build_alert_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker(
        "telegram_alerts",
        CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=30.0),
    )


class TelegramAlertNotifier:
    """Sends alerts to admin chats through the Telegram Bot API."""

    def __init__(
        self,
        bot_token: str,
        *,
        circuit_breaker: CircuitBreaker | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._bot_token = bot_token
        self._circuit_breaker = circuit_breaker or build_alert_circuit_breaker()
        self._timeout_seconds = timeout_seconds

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    @staticmethod
    def format_message(subject: str, body: str) -> str:
        head = f"<b>{html.escape(subject)}</b>\n\n<pre>"
        text = f"{head}{html.escape(body)}</pre>"
        if len(text) <= _TELEGRAM_MAX_MESSAGE_LENGTH:
            return text

        # קיצוץ ה-body הגולמי לפני escape - קיצוץ אחרי escape חותך ישויות כמו &amp;
        budget = _TELEGRAM_MAX_MESSAGE_LENGTH - len(head) - len("...</pre>")
        kept: list[str] = []
        for char in body:
            escaped = html.escape(char)
            if len(escaped) > budget:
                break
            kept.append(escaped)
            budget -= len(escaped)
        return f"{head}{''.join(kept)}...</pre>"

    async def _post(self, chat_id: str, text: str) -> bool:
        url = f"{_TELEGRAM_API_URL}/bot{self._bot_token}/sendMessage"
        async with httpx.AsyncClient() as client:
            response = await client.post(
                url,
                json={"chat_id": chat_id, "text": text, "parse_mode": "HTML"},
                timeout=self._timeout_seconds,
            )
        if response.status_code != 200:
            raise TelegramError.from_response("sendMessage", response)
        return True

    async def send(self, to: str, subject: str, body: str) -> bool:
        if not self._bot_token:
            logger.warning("Alert bot token not configured, alert not delivered")
            return False

        try:
            return await self._circuit_breaker.execute(
                self._post, to, self.format_message(subject, body)
            )
        except Exception as e:
            logger.error(
                "Telegram alert send error",
                extra_data={"chat_id": to, "error": str(e)},
                exc_info=True,
            )
            return False
