"""
Payment Provider Webhook Handler (Stripe).

התשובה לספק נשלחת מיד אחרי שהאירוע נשמר; העיבוד עצמו רץ אחרי התשובה
(BackgroundTasks → תור עמיד או dispatcher in-process), כך שזמן התגובה
וקוד הסטטוס לא תלויים בתוצאת העיבוד.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from payhook.api.dependencies.pipeline import get_pipeline
from payhook.core.logging import get_logger
from payhook.db.database import get_db
from payhook.domain.services.intake_service import WebhookIntakeService
from payhook.pipeline import WebhookPipeline

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/webhook",
    summary="Payment Provider Webhook",
    description="קבלת אירועי תשלום חתומים מ-Stripe. מחזיר 200 ברגע שהאירוע נשמר.",
    responses={
        200: {"description": "האירוע התקבל (חדש או כפילות)"},
        401: {"description": "חתימה חסרה או לא תקינה - שום דבר לא נשמר"},
        503: {"description": "ה-pipeline לא אותחל"},
    },
    tags=["Webhooks"],
)
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    pipeline: WebhookPipeline = Depends(get_pipeline),
) -> dict:
    """
    קבלת אירוע תשלום.

    1. אימות חתימה על ה-body הגולמי (כשלון → 401)
    2. idempotency לפי event id - כפילות מאושרת בלי עיבוד נוסף
    3. שמירה בסטטוס received
    4. hand-off לעיבוד אחרי שליחת התשובה
    """
    body = await request.body()
    intake = WebhookIntakeService(db, pipeline.verifier, pipeline)
    result = await intake.receive(body, stripe_signature)

    if not result.duplicate:
        background_tasks.add_task(pipeline.hand_off, result.event_id)
        logger.info(
            "Payment webhook accepted",
            extra_data={"event_id": result.event_id, "event_type": result.event_type},
        )

    return result.to_response()
