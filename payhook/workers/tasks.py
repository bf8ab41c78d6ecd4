"""
Celery Tasks for Payment Webhook Processing

The worker side of the durable queue: one task per stored event, plus a
periodic recovery sweep. Retry scheduling uses Celery's native retry with
the countdown computed by the retry policy, so the job keeps its id (the
event id) across attempts.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass

from celery.signals import worker_process_init
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhook.core.config import settings
from payhook.core.logging import get_logger, set_correlation_id
from payhook.core.redis_client import redis_connection
from payhook.db.database import task_session_factory
from payhook.domain.services.alerting_service import AlertingGate
from payhook.domain.services.event_router import EventRouter
from payhook.domain.services.recovery_service import recover_stranded_events
from payhook.domain.services.retry_policy import RetryPolicy
from payhook.domain.services.webhook_processor import ProcessingOutcome, WebhookProcessor
from payhook.pipeline import build_alerting_gate, build_event_router
from payhook.workers.celery_app import celery_app
from payhook.workers.queue import PROCESS_TASK_NAME, WebhookQueue, make_celery_publisher

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@dataclass
class WorkerContext:
    """
    רכיבים ברמת תהליך ה-worker.

    נבנים פעם אחת לכל תהליך, כך שמצב ה-throttle של ההתראות נשמר בין tasks.
    ה-session factory לא כאן - הוא נוצר מחדש לכל task (event loop חדש).
    """
    router: EventRouter
    alerting: AlertingGate
    policy: RetryPolicy
    handler_timeout_seconds: float

    def build_processor(self, session_factory: async_sessionmaker[AsyncSession]) -> WebhookProcessor:
        return WebhookProcessor(
            session_factory,
            self.router,
            self.alerting,
            self.policy,
            handler_timeout_seconds=self.handler_timeout_seconds,
        )


_worker_context: WorkerContext | None = None


@worker_process_init.connect
def init_worker_context(**_kwargs) -> WorkerContext:
    global _worker_context
    _worker_context = WorkerContext(
        router=build_event_router(settings),
        alerting=build_alerting_gate(settings),
        policy=RetryPolicy.from_settings(settings),
        handler_timeout_seconds=settings.WEBHOOK_HANDLER_TIMEOUT_SECONDS,
    )
    logger.info(
        "Webhook worker context initialized",
        extra_data={"handled_kinds": [k.value for k in _worker_context.router.registered_kinds]},
    )
    return _worker_context


def get_worker_context() -> WorkerContext:
    if _worker_context is None:
        return init_worker_context()
    return _worker_context


def _task_queue(redis) -> WebhookQueue:
    return WebhookQueue(
        redis,
        make_celery_publisher(celery_app, settings.WEBHOOK_QUEUE_NAME),
        queue_name=settings.WEBHOOK_QUEUE_NAME,
        job_key_ttl_seconds=settings.WEBHOOK_JOB_KEY_TTL_SECONDS,
    )


@celery_app.task(
    bind=True,
    name=PROCESS_TASK_NAME,
    max_retries=None,  # מספר הניסיונות נקבע ע"י RetryPolicy, לא ע"י Celery
    acks_late=True,
    rate_limit=f"{settings.WEBHOOK_WORKER_RATE_LIMIT_PER_SECOND}/s",
)
def process_webhook_event(self, event_id: str):
    """ניסיון עיבוד אחד לאירוע שמור; כשלון זמני → retry עם backoff"""
    context = get_worker_context()

    async def _process() -> ProcessingOutcome:
        async with task_session_factory() as session_factory:
            outcome = await context.build_processor(session_factory).process(event_id)

        if outcome.is_terminal:
            async with redis_connection(settings.CELERY_BROKER_URL) as redis:
                await _task_queue(redis).release(event_id)
        return outcome

    outcome = run_async(_process())
    if outcome.should_retry:
        raise self.retry(countdown=outcome.retry_delay_seconds)
    return outcome.to_dict()


@celery_app.task(name="payhook.workers.tasks.recover_stranded_webhook_events")
def recover_stranded_webhook_events():
    """סריקה תקופתית - אירועים שנתקעו חוזרים לתור"""
    context = get_worker_context()

    async def _recover():
        async with task_session_factory() as session_factory:
            async with redis_connection(settings.CELERY_BROKER_URL) as redis:
                queue = _task_queue(redis)

                async def _schedule(event_id: str, delay_seconds: float):
                    result = await queue.enqueue(
                        event_id, countdown=int(delay_seconds) if delay_seconds > 0 else None
                    )
                    if not result.queued:
                        logger.error(
                            "Failed to requeue stranded webhook event",
                            extra_data={"event_id": event_id},
                        )
                    return result

                report = await recover_stranded_events(
                    session_factory,
                    policy=context.policy,
                    alerting=context.alerting,
                    schedule=_schedule,
                    stranded_after_seconds=settings.WEBHOOK_STRANDED_AFTER_SECONDS,
                )
        return report.to_dict()

    return run_async(_recover())
