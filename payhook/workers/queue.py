"""
Queue Adapter - התור העמיד (Celery על Redis) שמפריד בין קבלה לעיבוד.

הזמינות נבדקת פעם אחת בעליית התהליך (connect) ונשמרת ב-handle.
כל job נשלח עם event_id כ-task_id וכמפתח dedup ב-Redis (SET NX EX),
כך ששליחה שנייה של אותו אירוע לפני שהראשונה הסתיימה היא no-op.
המפתח משוחרר רק כשהאירוע מגיע לתוצאה סופית.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable

import redis.asyncio as aioredis

from payhook.core.logging import get_logger
from payhook.core.redis_client import connect_redis

logger = get_logger(__name__)

PROCESS_TASK_NAME = "payhook.workers.tasks.process_webhook_event"
_JOB_KEY_PREFIX = "payhook:webhook_job"

Publisher = Callable[[str, int | None], None]


def job_key(event_id: str) -> str:
    return f"{_JOB_KEY_PREFIX}:{event_id}"


@dataclass(frozen=True)
class EnqueueResult:
    queued: bool
    job_id: str | None = None
    deduplicated: bool = False


def make_celery_publisher(celery_app: Any, queue_name: str) -> Publisher:
    """שליחת ה-task לפי שם - בלי import של מודול ה-tasks"""
    def _publish(event_id: str, countdown: int | None) -> None:
        celery_app.send_task(
            PROCESS_TASK_NAME,
            args=[event_id],
            task_id=event_id,
            queue=queue_name,
            countdown=countdown,
        )
    return _publish


class WebhookQueue:
    """Durable job queue with job-key deduplication, or an unavailable stub."""

    def __init__(
        self,
        redis: aioredis.Redis | None,
        publish: Publisher | None,
        *,
        queue_name: str,
        job_key_ttl_seconds: int,
    ) -> None:
        self._redis = redis
        self._publish = publish
        self._queue_name = queue_name
        self._job_key_ttl_seconds = job_key_ttl_seconds

    @property
    def available(self) -> bool:
        return self._redis is not None and self._publish is not None

    @classmethod
    def unavailable(cls, queue_name: str = "") -> "WebhookQueue":
        return cls(None, None, queue_name=queue_name, job_key_ttl_seconds=0)

    @classmethod
    async def connect(cls, settings, celery_app: Any = None) -> "WebhookQueue":
        """בדיקת זמינות חד-פעמית בעליית התהליך"""
        if not settings.WEBHOOK_QUEUE_ENABLED:
            logger.warning("Webhook queue disabled by configuration, using in-process mode")
            return cls.unavailable(settings.WEBHOOK_QUEUE_NAME)

        redis = await connect_redis(
            settings.CELERY_BROKER_URL,
            timeout_seconds=settings.WEBHOOK_QUEUE_CONNECT_TIMEOUT_SECONDS,
        )
        if redis is None:
            return cls.unavailable(settings.WEBHOOK_QUEUE_NAME)

        if celery_app is None:
            from payhook.workers.celery_app import celery_app

        logger.info("Webhook queue available", extra_data={"queue": settings.WEBHOOK_QUEUE_NAME})
        return cls(
            redis,
            make_celery_publisher(celery_app, settings.WEBHOOK_QUEUE_NAME),
            queue_name=settings.WEBHOOK_QUEUE_NAME,
            job_key_ttl_seconds=settings.WEBHOOK_JOB_KEY_TTL_SECONDS,
        )

    async def enqueue(self, event_id: str, countdown: int | None = None) -> EnqueueResult:
        if not self.available:
            return EnqueueResult(queued=False)

        try:
            acquired = await self._redis.set(
                job_key(event_id), "1", nx=True, ex=self._job_key_ttl_seconds
            )
        except (aioredis.RedisError, OSError) as e:
            logger.error(
                "Failed to reserve webhook job key",
                extra_data={"event_id": event_id, "error": str(e)},
            )
            return EnqueueResult(queued=False)

        if not acquired:
            logger.debug("Webhook job already queued", extra_data={"event_id": event_id})
            return EnqueueResult(queued=True, job_id=event_id, deduplicated=True)

        try:
            # send_task חוסם (רשת) - מריצים ב-thread כדי לא לעצור את ה-event loop
            await asyncio.to_thread(self._publish, event_id, countdown)
        except Exception as e:
            logger.error(
                "Failed to publish webhook job",
                extra_data={"event_id": event_id, "error": str(e)},
                exc_info=True,
            )
            await self.release(event_id)
            return EnqueueResult(queued=False)

        logger.info(
            "Webhook job queued",
            extra_data={"event_id": event_id, "countdown": countdown},
        )
        return EnqueueResult(queued=True, job_id=event_id)

    async def release(self, event_id: str) -> None:
        """שחרור מפתח ה-dedup אחרי תוצאה סופית"""
        if self._redis is None:
            return
        try:
            await self._redis.delete(job_key(event_id))
        except (aioredis.RedisError, OSError) as e:
            # המפתח יפוג לבד לפי ה-TTL
            logger.warning(
                "Failed to release webhook job key",
                extra_data={"event_id": event_id, "error": str(e)},
            )

    async def metrics(self) -> dict[str, Any]:
        if not self.available:
            return {"available": False, "queue": self._queue_name, "waiting": None}
        try:
            waiting = await self._redis.llen(self._queue_name)
        except (aioredis.RedisError, OSError) as e:
            logger.warning("Failed to read queue metrics", extra_data={"error": str(e)})
            waiting = None
        return {"available": True, "queue": self._queue_name, "waiting": waiting}

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Webhook queue connection closed")
