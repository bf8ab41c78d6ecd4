"""
In-process dispatcher - מצב degraded כשהתור העמיד לא זמין.

אותה סמנטיקה של retry/backoff כמו ב-Celery, אבל timers של retry חיים
בזיכרון התהליך: restart מאבד אותם (next_attempt_at נשמר ב-DB; סריקת
ה-startup מתזמנת אותם מחדש, והסריקה התקופתית של ה-pipeline משלימה).

כל עבודה היא asyncio.Task במאגר חסום (semaphore + rate limit); כשלון
של task נלכד ב-done callback ונרשם ללוג, לא נזרק לשום מקום.
"""
from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Callable

from payhook.core.logging import get_logger
from payhook.domain.services.webhook_processor import WebhookProcessor

logger = get_logger(__name__)


class DispatchRateLimiter:
    """Sliding window: at most `max_per_second` acquisitions per rolling second."""

    def __init__(
        self,
        max_per_second: int,
        *,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max = max_per_second
        self._window = window_seconds
        self._clock = clock
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                while self._timestamps and self._timestamps[0] <= now - self._window:
                    self._timestamps.popleft()
                if len(self._timestamps) < self._max:
                    self._timestamps.append(now)
                    return
                await asyncio.sleep(self._timestamps[0] + self._window - now)


class InProcessDispatcher:
    """Bounded asyncio worker pool running the processor directly."""

    def __init__(
        self,
        processor: WebhookProcessor,
        *,
        concurrency: int,
        rate_limit_per_second: int,
    ) -> None:
        self._processor = processor
        self._semaphore = asyncio.Semaphore(concurrency)
        self._rate_limiter = DispatchRateLimiter(rate_limit_per_second)
        self._tasks: dict[str, asyncio.Task] = {}
        self._running: set[str] = set()
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    def is_scheduled(self, event_id: str) -> bool:
        return event_id in self._tasks

    def submit(self, event_id: str, delay_seconds: float = 0) -> asyncio.Task | None:
        """
        תזמון עיבוד. אירוע שכבר ממתין לא מתוזמן פעמיים.

        מחזיר את ה-task, או None אם האירוע כבר ממתין או שה-dispatcher נסגר.
        """
        if self._closed:
            logger.warning(
                "In-process dispatcher closed, event not scheduled",
                extra_data={"event_id": event_id},
            )
            return None

        if event_id in self._tasks:
            logger.debug("Event already scheduled in-process", extra_data={"event_id": event_id})
            return None

        task = asyncio.create_task(
            self._run(event_id, delay_seconds), name=f"webhook:{event_id}"
        )
        self._tasks[event_id] = task
        task.add_done_callback(lambda t: self._on_done(event_id, t))
        logger.info(
            "Webhook event scheduled in-process",
            extra_data={"event_id": event_id, "delay_seconds": delay_seconds},
        )
        return task

    def cancel_scheduled(self, event_id: str) -> bool:
        """ביטול retry ממתין (לפני retry ידני) - רק אם הוא עוד לא רץ"""
        task = self._tasks.get(event_id)
        if task is None or task.done() or event_id in self._running:
            return False
        task.cancel()
        return True

    async def _run(self, event_id: str, delay_seconds: float) -> None:
        if delay_seconds > 0:
            await asyncio.sleep(delay_seconds)

        await self._rate_limiter.acquire()
        async with self._semaphore:
            self._running.add(event_id)
            try:
                # ביטול באמצע ניסיון היה משאיר את האירוע ב-processing
                outcome = await asyncio.shield(self._processor.process(event_id))
            finally:
                self._running.discard(event_id)

        if outcome.should_retry:
            # ה-task הנוכחי עדיין רשום; מסירים לפני תזמון ה-retry
            self._tasks.pop(event_id, None)
            self.submit(event_id, outcome.retry_delay_seconds or 0)

    def _on_done(self, event_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(event_id) is task:
            del self._tasks[event_id]

        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "In-process webhook task failed",
                extra_data={"event_id": event_id, "error": str(error)},
                exc_info=error,
            )

    async def drain(self) -> None:
        """המתנה עד שאין עבודות ממתינות (כולל retries שנוצרו בדרך)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        self._closed = True
        pending = list(self._tasks.values())
        if pending:
            logger.warning(
                "Dropping in-process webhook retries on shutdown",
                extra_data={"pending": len(pending), "event_ids": list(self._tasks)},
            )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
