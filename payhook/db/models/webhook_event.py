"""
Webhook Event Model - רשומה עמידה לכל אירוע תשלום שהתקבל.

event_id (המזהה שהמעבד מקצה) הוא מפתח ה-idempotency: ייחודי בטבלה,
ומשלוח חוזר של אותו אירוע לא יוצר רשומה שנייה.
השורות לא נמחקות ע"י ה-pipeline - נשמרות לביקורת ולהרצה חוזרת.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, JSON, String

from payhook.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEvent(Base):
    """Inbound payment event with processing status and retry tracking"""

    __tablename__ = "payment_webhook_events"

    id = Column(Integer, primary_key=True)

    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(120), nullable=False)
    payload = Column(JSON, nullable=False)

    status = Column(
        SQLEnum(WebhookEventStatus, name="webhook_event_status"),
        nullable=False,
        default=WebhookEventStatus.RECEIVED,
    )
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(String(1000), nullable=True)

    received_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    # מועד הניסיון הבא המתוכנן - None כשאין retry ממתין
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_payment_webhook_events_status_received", "status", "received_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent {self.event_id} type={self.event_type} "
            f"status={self.status.value if self.status else None} retries={self.retry_count}>"
        )
