"""
Admin Webhook Endpoints - ניטור ושחזור ידני של אירועי תשלום ללא גישה ישירה ל-DB.

1. שאילתת אירועים כושלים וסיכום לפי סטטוס
2. מצב התור (עמיד / in-process)
3. retry ידני - לאירוע בודד או לאצווה של כושלים
"""
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from payhook.api.dependencies.admin_auth import require_admin_api_key
from payhook.api.dependencies.pipeline import get_pipeline
from payhook.core.logging import get_logger
from payhook.db.database import get_db
from payhook.domain.services.event_store import EventStore
from payhook.pipeline import WebhookPipeline

logger = get_logger(__name__)

router = APIRouter()

_AUTH_RESPONSES = {
    401: {"description": "חסר מפתח API"},
    403: {"description": "מפתח API שגוי"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class FailedEventResponse(BaseModel):
    """אירוע כושל בודד"""
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    event_type: str
    retry_count: int
    error_message: str | None
    received_at: datetime | None
    updated_at: datetime | None
    next_attempt_at: datetime | None = Field(
        description="מועד ה-retry הבא; None אם ה-retries מוצו"
    )


class EventSummaryResponse(BaseModel):
    """ספירה לפי סטטוס"""
    received: int = 0
    processing: int = 0
    processed: int = 0
    failed: int = 0
    total: int = 0


class QueueStatusResponse(BaseModel):
    """מצב התור"""
    mode: str = Field(description="queue | in_process")
    available: bool
    queue: str
    waiting: int | None = Field(description="jobs ממתינים ב-broker (None אם לא ידוע)")
    in_process_pending: int


class RetryRequest(BaseModel):
    """בקשת retry ידני"""
    event_id: str | None = Field(
        default=None,
        description="אירוע בודד (מותר גם אחרי מיצוי retries). ללא ערך - אצווה של כושלים",
    )
    max_events: int = Field(default=10, ge=1, le=100)


class RetryOutcomeResponse(BaseModel):
    event_id: str
    status: str
    retry_count: int
    retry_delay_seconds: int | None
    error: str | None


class RetryResponse(BaseModel):
    """תוצאת retry ידני"""
    retried: int
    outcome: RetryOutcomeResponse | None = None


# ─── 1. אירועים כושלים ──────────────────────────────────────────────────────

@router.get(
    "/failed",
    response_model=list[FailedEventResponse],
    summary="שאילתת אירועים כושלים",
    description="האירועים הכושלים האחרונים, החדשים ראשונים.",
    responses={200: {"description": "רשימת אירועים כושלים"}, **_AUTH_RESPONSES},
)
async def get_failed_events(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    limit: int = Query(default=20, ge=1, le=100, description="מספר אירועים מקסימלי"),
) -> list[FailedEventResponse]:
    events = await EventStore(db).list_failed(limit)
    return [FailedEventResponse.model_validate(event) for event in events]


@router.get(
    "/summary",
    response_model=EventSummaryResponse,
    summary="סיכום כמותי של אירועים",
    description="ספירה לפי סטטוס של כל אירועי התשלום השמורים.",
    responses={200: {"description": "סיכום כמותי"}, **_AUTH_RESPONSES},
)
async def get_event_summary(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> EventSummaryResponse:
    counts = await EventStore(db).count_by_status()
    return EventSummaryResponse(**counts, total=sum(counts.values()))


# ─── 2. מצב התור ────────────────────────────────────────────────────────────

@router.get(
    "/queue",
    response_model=QueueStatusResponse,
    summary="מצב התור",
    description=(
        "האם העיבוד רץ על התור העמיד או במצב in-process (degraded), "
        "וכמה jobs ממתינים."
    ),
    responses={200: {"description": "מצב התור"}, **_AUTH_RESPONSES},
)
async def get_queue_status(
    _: None = Depends(require_admin_api_key),
    pipeline: WebhookPipeline = Depends(get_pipeline),
) -> QueueStatusResponse:
    return QueueStatusResponse(**await pipeline.queue_metrics())


# ─── 3. retry ידני ──────────────────────────────────────────────────────────

@router.post(
    "/retry",
    response_model=RetryResponse,
    summary="retry ידני לאירועים כושלים",
    description=(
        "עם event_id: ניסיון מיידי לאירוע בודד, גם אם מיצה retries. "
        "בלי event_id: ניסיון מיידי לעד max_events אירועים כושלים שעוד לא מיצו retries, "
        "הישנים ראשונים."
    ),
    responses={
        200: {"description": "ה-retry בוצע"},
        404: {"description": "אירוע לא נמצא"},
        409: {"description": "האירוע כבר עובד או בעיבוד כרגע"},
        **_AUTH_RESPONSES,
    },
)
async def retry_failed_events(
    request: RetryRequest,
    _: None = Depends(require_admin_api_key),
    pipeline: WebhookPipeline = Depends(get_pipeline),
) -> RetryResponse:
    if request.event_id:
        outcome = await pipeline.retry_event(request.event_id)
        logger.info(
            "retry ידני לאירוע תשלום",
            extra_data={"event_id": request.event_id, "status": outcome.status.value},
        )
        return RetryResponse(
            retried=1,
            outcome=RetryOutcomeResponse(**outcome.to_dict()),
        )

    retried = await pipeline.retry_failed_events(request.max_events)
    return RetryResponse(retried=retried)
