"""
Webhook Pipeline - הרכבה מפורשת של כל רכיבי ה-pipeline בעליית התהליך.

build_pipeline() בונה פעם אחת: verifier, router, alerting gate (עם מצב
ה-throttle המקומי לתהליך), processor, תור עמיד (אם זמין) ו-dispatcher
in-process כגיבוי. ה-handle נשמר ב-app.state ומוזרק ל-routes.
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhook.core.exceptions import EventNotFoundError, InvalidEventTransitionError
from payhook.core.logging import get_logger, log_async_operation
from payhook.db.models.webhook_event import WebhookEventStatus
from payhook.domain.services.alerting_service import AlertingGate, AlertLevel, AlertThrottle
from payhook.domain.services.event_router import EventRouter, load_event_handlers
from payhook.domain.services.event_store import EventStore
from payhook.domain.services.notifier import AlertNotifier, TelegramAlertNotifier
from payhook.domain.services.recovery_service import RecoveryReport, recover_stranded_events
from payhook.domain.services.retry_policy import RetryPolicy
from payhook.domain.services.signature_service import SignatureVerifier
from payhook.domain.services.webhook_processor import (
    OutcomeStatus,
    ProcessingOutcome,
    WebhookProcessor,
)
from payhook.workers.in_process import InProcessDispatcher
from payhook.workers.queue import WebhookQueue

logger = get_logger(__name__)


class PipelineMode(str, enum.Enum):
    QUEUE = "queue"
    IN_PROCESS = "in_process"


@dataclass(frozen=True)
class HandOffResult:
    event_id: str
    mode: PipelineMode
    deduplicated: bool = False


class WebhookPipeline:
    """Process-scoped handle over every pipeline component."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        verifier: SignatureVerifier,
        router: EventRouter,
        alerting: AlertingGate,
        processor: WebhookProcessor,
        queue: WebhookQueue,
        dispatcher: InProcessDispatcher,
        stranded_after_seconds: int,
        recovery_interval_seconds: int = 0,
    ) -> None:
        self.session_factory = session_factory
        self.verifier = verifier
        self.router = router
        self.alerting = alerting
        self.processor = processor
        self.queue = queue
        self.dispatcher = dispatcher
        self.stranded_after_seconds = stranded_after_seconds
        self.recovery_interval_seconds = recovery_interval_seconds
        self._recovery_task: asyncio.Task | None = None

    @property
    def policy(self) -> RetryPolicy:
        return self.processor.policy

    @property
    def mode(self) -> PipelineMode:
        return PipelineMode.QUEUE if self.queue.available else PipelineMode.IN_PROCESS

    @property
    def degraded(self) -> bool:
        """in-process: retries מתוזמנים לא שורדים restart"""
        return self.mode == PipelineMode.IN_PROCESS

    async def schedule(self, event_id: str, delay_seconds: float = 0) -> HandOffResult:
        """תור אם זמין; אחרת (או אם השליחה נכשלה) - dispatcher in-process"""
        if self.queue.available:
            countdown = int(delay_seconds) if delay_seconds > 0 else None
            result = await self.queue.enqueue(event_id, countdown=countdown)
            if result.queued:
                return HandOffResult(event_id, PipelineMode.QUEUE, result.deduplicated)
            logger.warning(
                "Queue enqueue failed, falling back to in-process execution",
                extra_data={"event_id": event_id},
            )

        self.dispatcher.submit(event_id, delay_seconds)
        return HandOffResult(event_id, PipelineMode.IN_PROCESS)

    async def hand_off(self, event_id: str) -> HandOffResult | None:
        """
        העברת אירוע חדש לעיבוד. לא זורק לעולם - האירוע כבר שמור,
        וסריקת השחזור תאסוף אותו אם ה-hand-off נכשל.
        """
        try:
            return await self.schedule(event_id)
        except Exception as e:
            logger.error(
                "Webhook hand-off failed, event left for recovery sweep",
                extra_data={"event_id": event_id, "error": str(e)},
                exc_info=True,
            )
            return None

    async def follow_up(self, outcome: ProcessingOutcome) -> None:
        """תזמון ה-retry הבא, או שחרור מפתח ה-job אחרי תוצאה סופית"""
        if outcome.should_retry:
            await self.schedule(outcome.event_id, outcome.retry_delay_seconds or 0)
        elif outcome.status != OutcomeStatus.SKIPPED:
            await self.queue.release(outcome.event_id)

    @log_async_operation("retry_failed_webhook_events")
    async def retry_failed_events(self, max_to_retry: int = 10) -> int:
        """
        שחזור ידני: ניסיון מיידי לאירועים כושלים שעוד לא מיצו retries,
        הישנים ראשונים, בלי לחכות ל-backoff. מחזיר כמה אירועים נוסו בפועל.
        """
        async with self.session_factory() as db:
            event_ids = [
                event.event_id
                for event in await EventStore(db).list_failed_for_retry(
                    self.policy.max_retries, max_to_retry
                )
            ]

        retried = 0
        for event_id in event_ids:
            self.dispatcher.cancel_scheduled(event_id)
            outcome = await self.processor.process(event_id)
            if outcome.status == OutcomeStatus.SKIPPED:
                continue
            retried += 1
            await self.follow_up(outcome)

        logger.info(
            "Manual retry of failed webhook events completed",
            extra_data={"candidates": len(event_ids), "retried": retried},
        )
        return retried

    async def retry_event(self, event_id: str) -> ProcessingOutcome:
        """
        retry ידני לאירוע בודד - מותר גם אחרי מיצוי ה-retries.

        Raises:
            EventNotFoundError: אירוע לא קיים
            InvalidEventTransitionError: האירוע כבר עובד או בעיבוד כרגע
        """
        async with self.session_factory() as db:
            event = await EventStore(db).find_by_event_id(event_id)
            if event is None:
                raise EventNotFoundError(event_id)
            status = event.status

        if status not in (WebhookEventStatus.FAILED, WebhookEventStatus.RECEIVED):
            raise InvalidEventTransitionError(
                event_id, status.value, WebhookEventStatus.PROCESSING.value
            )

        self.dispatcher.cancel_scheduled(event_id)
        outcome = await self.processor.process(event_id, force=True)
        await self.follow_up(outcome)
        logger.info("Manual webhook event retry", extra_data=outcome.to_dict())
        return outcome

    async def recover_stranded_events(self, *, startup: bool = False) -> RecoveryReport:
        return await recover_stranded_events(
            self.session_factory,
            policy=self.policy,
            alerting=self.alerting,
            schedule=self.schedule,
            stranded_after_seconds=self.stranded_after_seconds,
            startup=startup,
        )

    def start_periodic_recovery(self) -> bool:
        """
        במצב in-process אין Celery beat - הסריקה רצה כ-task ברקע של התהליך.
        מחזיר True אם הלולאה הופעלה.
        """
        if self.mode != PipelineMode.IN_PROCESS or self.recovery_interval_seconds <= 0:
            return False
        if self._recovery_task is None or self._recovery_task.done():
            self._recovery_task = asyncio.create_task(self._recovery_loop())
        return True

    async def _recovery_loop(self) -> None:
        while True:
            await asyncio.sleep(self.recovery_interval_seconds)
            try:
                await self.recover_stranded_events()
            except Exception as e:
                logger.error(
                    "Periodic webhook recovery sweep failed",
                    extra_data={"error": str(e)},
                    exc_info=True,
                )

    async def queue_metrics(self) -> dict[str, Any]:
        metrics = await self.queue.metrics()
        metrics["mode"] = self.mode.value
        metrics["in_process_pending"] = self.dispatcher.pending_count
        return metrics

    async def close(self) -> None:
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            await asyncio.gather(self._recovery_task, return_exceptions=True)
            self._recovery_task = None
        await self.dispatcher.shutdown()
        await self.queue.close()


def build_alerting_gate(
    settings,
    notifier: AlertNotifier | None = None,
    *,
    clock: Callable[[], float] | None = None,
) -> AlertingGate:
    if notifier is None and settings.ALERT_TELEGRAM_BOT_TOKEN:
        notifier = TelegramAlertNotifier(settings.ALERT_TELEGRAM_BOT_TOKEN)

    throttle_kwargs = {"clock": clock} if clock is not None else {}
    return AlertingGate(
        notifier,
        settings.alert_chat_ids,
        AlertThrottle(
            window_seconds=settings.ALERT_THROTTLE_WINDOW_SECONDS,
            max_per_window=settings.ALERT_THROTTLE_MAX_PER_WINDOW,
            **throttle_kwargs,
        ),
        environment=settings.ENVIRONMENT,
    )


def build_event_router(settings) -> EventRouter:
    router = EventRouter()
    load_event_handlers(router, settings.WEBHOOK_EVENT_HANDLERS_MODULE)
    return router


async def build_pipeline(
    settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    router: EventRouter | None = None,
    alerting: AlertingGate | None = None,
    queue: WebhookQueue | None = None,
) -> WebhookPipeline:
    """אתחול מפורש של ה-pipeline. נקרא פעם אחת ב-startup."""
    router = router if router is not None else build_event_router(settings)
    alerting = alerting if alerting is not None else build_alerting_gate(settings)
    policy = RetryPolicy.from_settings(settings)

    processor = WebhookProcessor(
        session_factory,
        router,
        alerting,
        policy,
        handler_timeout_seconds=settings.WEBHOOK_HANDLER_TIMEOUT_SECONDS,
    )
    dispatcher = InProcessDispatcher(
        processor,
        concurrency=settings.WEBHOOK_WORKER_CONCURRENCY,
        rate_limit_per_second=settings.WEBHOOK_WORKER_RATE_LIMIT_PER_SECOND,
    )
    if queue is None:
        queue = await WebhookQueue.connect(settings)

    pipeline = WebhookPipeline(
        session_factory=session_factory,
        verifier=SignatureVerifier(
            settings.STRIPE_WEBHOOK_SECRET,
            tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        ),
        router=router,
        alerting=alerting,
        processor=processor,
        queue=queue,
        dispatcher=dispatcher,
        stranded_after_seconds=settings.WEBHOOK_STRANDED_AFTER_SECONDS,
        recovery_interval_seconds=settings.WEBHOOK_RECOVERY_INTERVAL_SECONDS,
    )

    if pipeline.mode == PipelineMode.IN_PROCESS:
        await alerting.send_alert(
            AlertLevel.WARNING,
            "WEBHOOK_QUEUE_UNAVAILABLE",
            "Durable queue unavailable, webhook processing runs in-process "
            "(scheduled retries are restored by the startup and periodic recovery sweeps)",
            {"queue_enabled": settings.WEBHOOK_QUEUE_ENABLED},
        )
    logger.info(
        "Webhook pipeline initialized",
        extra_data={
            "mode": pipeline.mode.value,
            "max_retries": policy.max_retries,
            "handled_kinds": [kind.value for kind in router.registered_kinds],
        },
    )
    return pipeline
