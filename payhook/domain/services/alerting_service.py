"""
Alerting Gate - מחליט מתי כשלון מצדיק התראה למפעיל, ומגביל סערות התראות.

- כל כשלון נרשם ללוג במלואו, תמיד.
- התראה יוצאת רק ברמות high/critical, ולכל מפתח (למשל webhook:<event_type>)
  לכל היותר N התראות בחלון זמן נע.
- כשלון בשליחת ההתראה עצמה נרשם ונבלע - לעולם לא חוזר ל-worker.

מצב ה-throttle הוא אובייקט מקומי לתהליך שמוזרק ל-gate; הוא לא מסונכרן
בין instances ומתאפס ב-restart.
"""
from __future__ import annotations

import enum
import json
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from payhook.core.logging import get_logger
from payhook.domain.services.notifier import AlertNotifier

logger = get_logger(__name__)


class AlertLevel(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


_NOTIFY_LEVELS = frozenset({AlertLevel.HIGH, AlertLevel.CRITICAL})


@dataclass
class AlertThrottleEntry:
    """זמני ההתראות שנשלחו למפתח בתוך החלון הנוכחי"""
    sent_at: deque[float] = field(default_factory=deque)

    @property
    def count(self) -> int:
        return len(self.sent_at)

    @property
    def last_alert_time(self) -> float | None:
        return self.sent_at[-1] if self.sent_at else None


class AlertThrottle:
    """Sliding-window limiter per alert key, with idle-key eviction."""

    def __init__(
        self,
        *,
        window_seconds: float,
        max_per_window: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_per_window = max_per_window
        self._clock = clock
        self._entries: dict[str, AlertThrottleEntry] = {}

    def _evict_expired(self, now: float) -> None:
        cutoff = now - self.window_seconds
        for key in list(self._entries):
            entry = self._entries[key]
            while entry.sent_at and entry.sent_at[0] <= cutoff:
                entry.sent_at.popleft()
            # מחיקת מפתח ריק - מונע גדילה בלתי מוגבלת של המפה
            if not entry.sent_at:
                del self._entries[key]

    def allow(self, key: str) -> bool:
        """True ורושם שליחה אם המפתח עוד לא מיצה את החלון"""
        now = self._clock()
        self._evict_expired(now)

        entry = self._entries.setdefault(key, AlertThrottleEntry())
        if entry.count >= self.max_per_window:
            return False
        entry.sent_at.append(now)
        return True

    def entry(self, key: str) -> AlertThrottleEntry | None:
        self._evict_expired(self._clock())
        return self._entries.get(key)

    def clear(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class FailureDetails:
    event_id: str
    event_type: str
    error_message: str
    retry_count: int
    max_retries: int
    # ההחלטה של ה-RetryPolicy אצל הקורא; ה-gate לא מחשב מיצוי בעצמו
    exhausted: bool = True


class AlertingGate:
    """Rate-limited escalation channel to human operators."""

    def __init__(
        self,
        notifier: AlertNotifier | None,
        recipients: list[str],
        throttle: AlertThrottle,
        *,
        environment: str = "production",
    ) -> None:
        self._notifier = notifier
        self._recipients = recipients
        self._throttle = throttle
        self._environment = environment

    @property
    def throttle(self) -> AlertThrottle:
        return self._throttle

    @staticmethod
    def failure_level(details: FailureDetails) -> AlertLevel:
        return AlertLevel.CRITICAL if details.exhausted else AlertLevel.HIGH

    async def notify_failure(self, key: str, details: FailureDetails) -> bool:
        """
        התראה על כשלון עיבוד אירוע.

        critical כשה-retries מוצו (האירוע תקוע לצמיתות), high לניסיון בודד שנכשל.
        רק critical יוצא החוצה. מחזיר True אם נשלחה התראה לפחות לנמען אחד.
        """
        level = self.failure_level(details)
        logger.error(
            f"ALERT [{level.value.upper()}]: Webhook processing failed",
            extra_data={
                "action": "WEBHOOK_PROCESSING_FAILED",
                "alert_key": key,
                "event_id": details.event_id,
                "event_type": details.event_type,
                "error": details.error_message,
                "retry_count": details.retry_count,
                "max_retries": details.max_retries,
            },
        )

        if level != AlertLevel.CRITICAL:
            return False

        return await self._deliver(
            key,
            subject=f"[CRITICAL] Payment webhook failed: {details.event_type}",
            body=self.format_failure_body(details),
        )

    async def send_alert(
        self,
        level: AlertLevel,
        action: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> bool:
        """התראה כללית (למשל תור לא זמין). רק high/critical יוצאות החוצה."""
        context = context or {}
        log_extra = {"action": action, "alert_level": level.value, **context}
        log_message = f"ALERT [{level.value.upper()}]: {message}"
        if level in _NOTIFY_LEVELS:
            logger.error(log_message, extra_data=log_extra)
        elif level == AlertLevel.WARNING:
            logger.warning(log_message, extra_data=log_extra)
        else:
            logger.info(log_message, extra_data=log_extra)

        if level not in _NOTIFY_LEVELS:
            return False

        return await self._deliver(
            f"{action}:{level.value}",
            subject=f"[{level.value.upper()}] {action}: {message}",
            body=self.format_alert_body(level, action, message, context),
        )

    async def _deliver(self, key: str, *, subject: str, body: str) -> bool:
        if self._notifier is None or not self._recipients:
            logger.warning("Alert channel not configured, notification skipped", extra_data={"alert_key": key})
            return False

        if not self._throttle.allow(key):
            logger.info("Alert throttled", extra_data={"alert_key": key})
            return False

        delivered = False
        for recipient in self._recipients:
            try:
                delivered = await self._notifier.send(recipient, subject, body) or delivered
            except Exception as e:
                logger.error(
                    "Alert delivery failed",
                    extra_data={"alert_key": key, "recipient": recipient, "error": str(e)},
                    exc_info=True,
                )
        return delivered

    def format_failure_body(self, details: FailureDetails) -> str:
        return "\n".join([
            "Payment webhook processing failed",
            "",
            f"Event ID: {details.event_id}",
            f"Event Type: {details.event_type}",
            f"Error: {details.error_message}",
            f"Retry Count: {details.retry_count}/{details.max_retries}",
            "",
            f"Time: {datetime.now(timezone.utc).isoformat()}",
            f"Environment: {self._environment}",
            "",
            "Manual retry:",
            "  POST /api/admin/webhooks/retry",
            f'  {{"event_id": "{details.event_id}"}}',
        ])

    def format_alert_body(
        self,
        level: AlertLevel,
        action: str,
        message: str,
        context: dict[str, Any],
    ) -> str:
        return "\n".join([
            f"Alert: {message}",
            "",
            f"Level: {level.value}",
            f"Action: {action}",
            f"Time: {datetime.now(timezone.utc).isoformat()}",
            f"Environment: {self._environment}",
            "",
            "Context:",
            json.dumps(context, indent=2, ensure_ascii=False, default=str),
        ])
