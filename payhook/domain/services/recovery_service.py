"""
Recovery sweep - מחזיר לעבודה אירועים שנתקעו בגלל קריסה או restart.

- received ישן: נשמר אבל ה-hand-off אבד → מתזמנים מחדש.
- processing ישן: הניסיון נקטע באמצע → נרשם ככשלון ("interrupted"),
  ואז retry או התראה לפי המדיניות.
- failed עם next_attempt_at שעבר: ה-timer של ה-retry אבד עם התהליך → מתזמנים מחדש.
  בסריקת startup גם retries שמועדם עוד לא הגיע, עם היתרה עד המועד.

בטוח להריץ במקביל לעיבוד חי: מפתחות ה-job בתור והמעברים המותנים ב-Event Store
מונעים עיבוד כפול.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhook.core.exceptions import EventNotFoundError, InvalidEventTransitionError
from payhook.core.logging import get_logger
from payhook.db.models.webhook_event import WebhookEventStatus
from payhook.domain.services.alerting_service import AlertingGate, FailureDetails
from payhook.domain.services.event_store import EventStore, as_utc, utcnow
from payhook.domain.services.retry_policy import RetryPolicy

logger = get_logger(__name__)

INTERRUPTED_ERROR = "processing interrupted before completion (worker restart)"

ScheduleFn = Callable[[str, float], Awaitable[object]]


@dataclass
class RecoveryReport:
    resubmitted: list[str] = field(default_factory=list)
    interrupted: list[str] = field(default_factory=list)
    exhausted: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.resubmitted) + len(self.exhausted)

    def to_dict(self) -> dict:
        return {
            "resubmitted": len(self.resubmitted),
            "interrupted": len(self.interrupted),
            "exhausted": len(self.exhausted),
        }


async def recover_stranded_events(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    policy: RetryPolicy,
    alerting: AlertingGate,
    schedule: ScheduleFn,
    stranded_after_seconds: int,
    startup: bool = False,
    batch_size: int = 100,
    clock: Callable[[], datetime] = utcnow,
) -> RecoveryReport:
    """
    startup=True: הסריקה שרצה בעליית תהליך. כל received חוזר לעבודה בלי קשר לגילו,
    וכל retry מתוזמן מתוזמן מחדש עם היתרה עד next_attempt_at - ה-timers
    in-process של התהליך הקודם אבדו איתו.
    """
    report = RecoveryReport()
    now = clock()

    async with session_factory() as db:
        store = EventStore(db)
        # snapshot לפני עדכונים - rollback על מעבר שנכשל מפקיע את האובייקטים בסשן
        stranded = [
            (event.event_id, event.status, event.retry_count)
            for event in await store.list_stranded(
                now - timedelta(seconds=stranded_after_seconds),
                batch_size,
                received_before=now if startup else None,
            )
        ]

        for event_id, status, retry_count in stranded:
            if status == WebhookEventStatus.RECEIVED:
                await schedule(event_id, 0)
                report.resubmitted.append(event_id)
                continue

            failures = retry_count + 1
            retry = policy.should_retry(failures)
            delay = policy.backoff_seconds(failures) if retry else 0
            try:
                failed = await store.mark_failed(
                    event_id,
                    INTERRUPTED_ERROR,
                    next_attempt_at=now + timedelta(seconds=delay) if retry else None,
                )
            except (EventNotFoundError, InvalidEventTransitionError):
                # הניסיון הסתיים בינתיים
                continue
            report.interrupted.append(event_id)

            if retry:
                await schedule(event_id, delay)
                report.resubmitted.append(event_id)
            else:
                report.exhausted.append(event_id)
                await alerting.notify_failure(
                    f"webhook:{failed.event_type}",
                    FailureDetails(
                        event_id=failed.event_id,
                        event_type=failed.event_type,
                        error_message=INTERRUPTED_ERROR,
                        retry_count=failed.retry_count,
                        max_retries=policy.max_retries,
                        exhausted=True,
                    ),
                )

        scheduled = [
            (event.event_id, as_utc(event.next_attempt_at))
            for event in await store.list_due_retries(
                None if startup else now, policy.max_retries, batch_size
            )
        ]
        for event_id, next_attempt_at in scheduled:
            if event_id in report.resubmitted:
                continue
            await schedule(event_id, max(0.0, (next_attempt_at - now).total_seconds()))
            report.resubmitted.append(event_id)

    if report.total or report.interrupted:
        logger.warning(
            "Recovered stranded webhook events",
            extra_data={**report.to_dict(), "startup": startup},
        )
    else:
        logger.info("No stranded webhook events found")
    return report
