"""
Event Store - מקור האמת לסטטוס של כל אירוע webhook.

כל מעבר סטטוס הוא UPDATE מותנה אחד (compare-and-set על הסטטוס הנוכחי),
כך ששני workers שמתחרים על אותו אירוע לא יכולים לתפוס אותו שניהם:
המפסיד מקבל InvalidEventTransitionError ויוצא בלי side effects.

מעברים מותרים:
    received   → processing
    failed     → processing   (כניסה חוזרת ל-retry)
    processing → processed | failed
"""
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payhook.core.exceptions import (
    DuplicateEventError,
    EventNotFoundError,
    InvalidEventTransitionError,
)
from payhook.core.logging import get_logger
from payhook.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from payhook.domain.services.signature_service import PaymentEvent

logger = get_logger(__name__)

_MAX_ERROR_LENGTH = 1000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite מחזיר datetime נאיבי - מנרמלים ל-UTC לפני חישובים"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class EventStore:
    """Durable record of received events: idempotency and audit trail."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_event_id(self, event_id: str) -> WebhookEvent | None:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_received(self, event: PaymentEvent) -> WebhookEvent:
        """
        שמירת אירוע חדש בסטטוס received.

        Raises:
            DuplicateEventError: אם כבר קיימת רשומה עם אותו event_id
                (כולל מקרה של race בין שתי בקשות מקבילות)
        """
        if await self.find_by_event_id(event.id) is not None:
            raise DuplicateEventError(event.id)

        now = utcnow()
        record = WebhookEvent(
            event_id=event.id,
            event_type=event.type,
            payload=event.to_payload(),
            status=WebhookEventStatus.RECEIVED,
            retry_count=0,
            received_at=now,
            updated_at=now,
        )
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            # בקשה מקבילה הקדימה אותנו - ה-unique constraint הוא השומר האחרון
            await self.db.rollback()
            raise DuplicateEventError(event.id) from None

        logger.info(
            "Webhook event persisted",
            extra_data={"event_id": event.id, "event_type": event.type},
        )
        return record

    async def _transition(
        self,
        event_id: str,
        target: WebhookEventStatus,
        condition: Any,
        **values: Any,
    ) -> WebhookEvent:
        result = await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id, condition)
            .values(status=target, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            existing = await self.find_by_event_id(event_id)
            if existing is None:
                raise EventNotFoundError(event_id)
            raise InvalidEventTransitionError(event_id, existing.status.value, target.value)

        await self.db.commit()
        record = await self.find_by_event_id(event_id)
        if record is None:
            raise EventNotFoundError(event_id)
        return record

    async def mark_processing(
        self,
        event_id: str,
        *,
        max_retries: int | None = None,
    ) -> WebhookEvent:
        """
        תפיסת אירוע לעיבוד.

        כשמועבר max_retries, אירוע failed נכנס מחדש רק אם retry_count < max_retries.
        בלי max_retries (retry ידני של מפעיל) כל אירוע failed מותר.
        """
        retry_entry = WebhookEvent.status == WebhookEventStatus.FAILED
        if max_retries is not None:
            retry_entry = and_(retry_entry, WebhookEvent.retry_count < max_retries)

        return await self._transition(
            event_id,
            WebhookEventStatus.PROCESSING,
            or_(WebhookEvent.status == WebhookEventStatus.RECEIVED, retry_entry),
            next_attempt_at=None,
        )

    async def mark_processed(self, event_id: str) -> WebhookEvent:
        return await self._transition(
            event_id,
            WebhookEventStatus.PROCESSED,
            WebhookEvent.status == WebhookEventStatus.PROCESSING,
            processed_at=utcnow(),
            next_attempt_at=None,
        )

    async def mark_failed(
        self,
        event_id: str,
        error_message: str,
        *,
        next_attempt_at: datetime | None = None,
    ) -> WebhookEvent:
        """סימון ניסיון כושל - מגדיל retry_count ושומר את סיבת הכשלון האחרונה"""
        return await self._transition(
            event_id,
            WebhookEventStatus.FAILED,
            WebhookEvent.status == WebhookEventStatus.PROCESSING,
            retry_count=WebhookEvent.retry_count + 1,
            error_message=error_message[:_MAX_ERROR_LENGTH],
            next_attempt_at=next_attempt_at,
        )

    async def list_failed_for_retry(self, max_retries: int, limit: int) -> list[WebhookEvent]:
        """אירועים כושלים שעוד לא מיצו את ה-retries, הישנים ראשונים"""
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.FAILED,
                WebhookEvent.retry_count < max_retries,
            )
            .order_by(WebhookEvent.received_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_failed(self, limit: int) -> list[WebhookEvent]:
        """כל האירועים הכושלים, החדשים ראשונים (תצוגת אדמין)"""
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.status == WebhookEventStatus.FAILED)
            .order_by(WebhookEvent.received_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_stranded(
        self,
        older_than: datetime,
        limit: int,
        *,
        received_before: datetime | None = None,
    ) -> list[WebhookEvent]:
        """
        אירועים שנתקעו ב-received/processing (למשל אחרי קריסת תהליך).

        received_before מרחיב את החיפוש לשורות received צעירות יותר (סריקת startup,
        שבה hand-off של כל received שנשמר לפני הקריסה אבד).
        """
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                or_(
                    and_(
                        WebhookEvent.status == WebhookEventStatus.RECEIVED,
                        WebhookEvent.updated_at < (received_before or older_than),
                    ),
                    and_(
                        WebhookEvent.status == WebhookEventStatus.PROCESSING,
                        WebhookEvent.updated_at < older_than,
                    ),
                )
            )
            .order_by(WebhookEvent.received_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_due_retries(
        self,
        now: datetime | None,
        max_retries: int,
        limit: int,
    ) -> list[WebhookEvent]:
        """
        retries מתוזמנים שמועדם עבר - ייתכן שה-timer שלהם אבד עם התהליך.
        now=None: כל ה-retries המתוזמנים, גם אלו שמועדם עוד לא הגיע.
        """
        conditions = [
            WebhookEvent.status == WebhookEventStatus.FAILED,
            WebhookEvent.retry_count < max_retries,
            WebhookEvent.next_attempt_at.is_not(None),
        ]
        if now is not None:
            conditions.append(WebhookEvent.next_attempt_at <= now)
        result = await self.db.execute(
            select(WebhookEvent)
            .where(*conditions)
            .order_by(WebhookEvent.next_attempt_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        result = await self.db.execute(
            select(WebhookEvent.status, func.count(WebhookEvent.id))
            .group_by(WebhookEvent.status)
        )
        counts = {s.value: 0 for s in WebhookEventStatus}
        for row_status, count in result.all():
            counts[row_status.value] = count
        return counts
