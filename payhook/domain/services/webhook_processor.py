"""
Webhook Processor - ניסיון עיבוד בודד של אירוע שמור.

received/failed → processing → processed, או → failed עם retry מתוזמן,
או → failed סופי + התראה כשה-retries מוצו.

ה-processor לא מתזמן בעצמו: הוא מחזיר ProcessingOutcome, והקורא
(Celery task או ה-dispatcher ה-in-process) מתזמן את הניסיון הבא.
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhook.core.exceptions import (
    EventNotFoundError,
    HandlerTimeoutError,
    InvalidEventTransitionError,
)
from payhook.core.logging import bind_event_id, get_logger
from payhook.domain.services.alerting_service import AlertingGate, FailureDetails
from payhook.domain.services.event_router import EventRouter
from payhook.domain.services.event_store import EventStore, utcnow
from payhook.domain.services.retry_policy import RetryPolicy

logger = get_logger(__name__)


class OutcomeStatus(str, enum.Enum):
    PROCESSED = "processed"
    RETRY = "retry"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ProcessingOutcome:
    event_id: str
    status: OutcomeStatus
    retry_count: int = 0
    retry_delay_seconds: int | None = None
    error: str | None = None

    @property
    def should_retry(self) -> bool:
        return self.status == OutcomeStatus.RETRY

    @property
    def is_terminal(self) -> bool:
        return self.status != OutcomeStatus.RETRY

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "retry_delay_seconds": self.retry_delay_seconds,
            "error": self.error,
        }


def _describe_error(error: Exception) -> str:
    text = str(error)
    return f"{type(error).__name__}: {text}" if text else type(error).__name__


class WebhookProcessor:
    """Runs one processing attempt for a stored event."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        router: EventRouter,
        alerting: AlertingGate,
        policy: RetryPolicy,
        *,
        handler_timeout_seconds: float,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._router = router
        self._alerting = alerting
        self._policy = policy
        self._handler_timeout_seconds = handler_timeout_seconds
        self._clock = clock

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def process(self, event_id: str, *, force: bool = False) -> ProcessingOutcome:
        """
        ניסיון עיבוד אחד.

        force=True (retry ידני של מפעיל) מאפשר כניסה מחדש גם לאירוע שמיצה retries.
        """
        with bind_event_id(event_id):
            async with self._session_factory() as db:
                store = EventStore(db)
                try:
                    event = await store.mark_processing(
                        event_id,
                        max_retries=None if force else self._policy.max_retries,
                    )
                except EventNotFoundError:
                    logger.error("Webhook event not found for processing")
                    return ProcessingOutcome(event_id, OutcomeStatus.SKIPPED, error="not_found")
                except InvalidEventTransitionError as e:
                    # worker אחר כבר תפס את האירוע, או שהוא כבר עובד - יוצאים בלי side effects
                    logger.info(
                        "Webhook event not claimable, skipping",
                        extra_data={"current_status": e.current_status},
                    )
                    return ProcessingOutcome(event_id, OutcomeStatus.SKIPPED, error=e.current_status)

                event_type = event.event_type
                payload = event.payload
                attempt = event.retry_count + 1

                logger.info(
                    "Processing webhook event",
                    extra_data={"event_type": event_type, "attempt": attempt},
                )

                try:
                    await asyncio.wait_for(
                        self._router.dispatch(event_type, payload),
                        timeout=self._handler_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    error = _describe_error(
                        HandlerTimeoutError(event_type, self._handler_timeout_seconds)
                    )
                except Exception as e:
                    error = _describe_error(e)
                else:
                    await store.mark_processed(event_id)
                    logger.info(
                        "Webhook event processed",
                        extra_data={"event_type": event_type, "attempt": attempt},
                    )
                    return ProcessingOutcome(
                        event_id, OutcomeStatus.PROCESSED, retry_count=event.retry_count
                    )

                return await self._record_failure(
                    store, event_id, event_type, error, failures=event.retry_count + 1
                )

    async def _record_failure(
        self,
        store: EventStore,
        event_id: str,
        event_type: str,
        error: str,
        *,
        failures: int,
    ) -> ProcessingOutcome:
        if self._policy.should_retry(failures):
            delay = self._policy.backoff_seconds(failures)
            failed = await store.mark_failed(
                event_id,
                error,
                next_attempt_at=self._clock() + timedelta(seconds=delay),
            )
            logger.warning(
                "Webhook event processing failed, retry scheduled",
                extra_data={
                    "event_type": event_type,
                    "retry_count": failed.retry_count,
                    "max_retries": self._policy.max_retries,
                    "retry_in_seconds": delay,
                    "error": error,
                },
            )
            return ProcessingOutcome(
                event_id,
                OutcomeStatus.RETRY,
                retry_count=failed.retry_count,
                retry_delay_seconds=delay,
                error=error,
            )

        failed = await store.mark_failed(event_id, error)
        logger.error(
            "Webhook event permanently failed, retries exhausted",
            extra_data={
                "event_type": event_type,
                "retry_count": failed.retry_count,
                "max_retries": self._policy.max_retries,
                "error": error,
            },
        )
        await self._alerting.notify_failure(
            f"webhook:{event_type}",
            FailureDetails(
                event_id=event_id,
                event_type=event_type,
                error_message=error,
                retry_count=failed.retry_count,
                max_retries=self._policy.max_retries,
                exhausted=True,
            ),
        )
        return ProcessingOutcome(
            event_id,
            OutcomeStatus.EXHAUSTED,
            retry_count=failed.retry_count,
            error=error,
        )
