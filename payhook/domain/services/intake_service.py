"""
Intake Orchestrator - persist-first.

1. אימות חתימה (כשלון → InvalidSignatureError, שום דבר לא נשמר)
2. בדיקת כפילות לפי event_id (כפילות → "received, duplicate", בלי hand-off)
3. שמירה בסטטוס received
4. hand-off לעיבוד אסינכרוני - התשובה לשולח לא תלויה בתוצאת העיבוד
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession

from payhook.core.exceptions import DuplicateEventError
from payhook.core.logging import get_logger
from payhook.domain.services.event_store import EventStore
from payhook.domain.services.signature_service import SignatureVerifier

if TYPE_CHECKING:
    from payhook.pipeline import WebhookPipeline

logger = get_logger(__name__)


@dataclass(frozen=True)
class IntakeResult:
    event_id: str
    event_type: str
    duplicate: bool

    def to_response(self) -> dict:
        return {"received": True, "duplicate": self.duplicate, "event_id": self.event_id}


class WebhookIntakeService:
    """Top-level entry point for inbound payment webhooks."""

    def __init__(self, db: AsyncSession, verifier: SignatureVerifier, pipeline: "WebhookPipeline"):
        self.db = db
        self.verifier = verifier
        self.pipeline = pipeline

    async def receive(self, raw_body: bytes, signature_header: str | None) -> IntakeResult:
        """אימות + שמירה. לא מפעיל עיבוד - הקורא אחראי ל-hand-off."""
        event = self.verifier.verify(raw_body, signature_header)
        store = EventStore(self.db)

        existing = await store.find_by_event_id(event.id)
        if existing is not None:
            logger.info(
                "Duplicate webhook delivery acknowledged",
                extra_data={
                    "event_id": event.id,
                    "event_type": event.type,
                    "existing_status": existing.status.value,
                },
            )
            return IntakeResult(event_id=event.id, event_type=event.type, duplicate=True)

        try:
            await store.create_received(event)
        except DuplicateEventError:
            # הפסדנו ב-race מול משלוח מקביל של אותו אירוע
            logger.info(
                "Concurrent duplicate webhook delivery acknowledged",
                extra_data={"event_id": event.id, "event_type": event.type},
            )
            return IntakeResult(event_id=event.id, event_type=event.type, duplicate=True)

        return IntakeResult(event_id=event.id, event_type=event.type, duplicate=False)

    async def handle(self, raw_body: bytes, signature_header: str | None) -> IntakeResult:
        """receive + hand-off, לקוראים שאינם HTTP"""
        result = await self.receive(raw_body, signature_header)
        if not result.duplicate:
            await self.pipeline.hand_off(result.event_id)
        return result
