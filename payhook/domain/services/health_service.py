"""
שירות בדיקת בריאות - בדיקות תלויות (DB, broker של Celery, מצב ה-pipeline).

מספק שתי רמות בדיקה:
- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקת התלויות + האם ה-pipeline רץ על התור העמיד או ב-degraded
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhook.core.config import settings
from payhook.core.logging import get_logger

if TYPE_CHECKING:
    from payhook.pipeline import WebhookPipeline

logger = get_logger(__name__)

# סטטוסים אפשריים לתשובת readiness
_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"
_CHECK_DISABLED = "disabled"

# הודעות שגיאה מסוננות - ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_CELERY = "error: celery_unavailable"
_ERROR_PIPELINE = "error: pipeline_not_initialized"


async def _check_db(session_factory: async_sessionmaker[AsyncSession]) -> str:
    """בדיקת חיבור למסד הנתונים באמצעות שאילתה קלה."""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_celery() -> str:
    """בדיקת זמינות ה-broker של Celery (Redis) באמצעות PING."""
    if not settings.WEBHOOK_QUEUE_ENABLED:
        return _CHECK_DISABLED
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("בדיקת בריאות Celery נכשלה", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def check_readiness(pipeline: WebhookPipeline | None) -> dict[str, Any]:
    """
    בדיקת מוכנות מקיפה.

    מחזיר dict עם סטטוס כללי ופירוט לכל תלות:
    - status: "healthy" אם הכל תקין, "degraded" אחרת (כולל מצב in-process)
    - db / celery: "ok", "disabled" או "error: ..."
    - pipeline_mode: "queue" / "in_process"
    """
    if pipeline is None:
        logger.warning("בדיקת מוכנות - ה-pipeline לא אותחל")
        return {"status": _STATUS_DEGRADED, "pipeline_mode": _ERROR_PIPELINE}

    checks = {
        "db": await _check_db(pipeline.session_factory),
        "celery": await _check_celery(),
    }
    mode = pipeline.mode.value

    all_ok = all(v in (_CHECK_OK, _CHECK_DISABLED) for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok and not pipeline.degraded else _STATUS_DEGRADED

    if overall_status != _STATUS_HEALTHY:
        logger.warning(
            "בדיקת מוכנות - המערכת במצב degraded",
            extra_data={**checks, "pipeline_mode": mode},
        )

    return {"status": overall_status, **checks, "pipeline_mode": mode}
