"""
Payhook - Main FastAPI Application
"""
from fastapi import FastAPI
from starlette.responses import JSONResponse

from payhook.core.config import settings
from payhook.core.logging import setup_logging, get_logger
from payhook.core.middleware import setup_middleware, setup_exception_handlers
from payhook.api.routes import router as api_router
from payhook.db.database import AsyncSessionLocal, engine, Base
from payhook.domain.services.health_service import check_readiness
from payhook.pipeline import build_pipeline

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "קבלת אירועי תשלום חתומים מספק התשלומים."},
    {
        "name": "admin",
        "description": "ניטור ושחזור ידני: אירועים כושלים, מצב התור ו-retry.",
    },
    {"name": "Health", "description": "בדיקות liveness ו-readiness."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "קליטת webhooks של תשלומים עם אימות חתימה, idempotency, "
        "עיבוד אסינכרוני עם retry/backoff והתראות למפעיל."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and the webhook pipeline on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    app.state.pipeline = await build_pipeline(settings, AsyncSessionLocal)
    # אירועים שנתקעו בהרצה הקודמת (hand-off שאבד, retry שה-timer שלו אבד)
    await app.state.pipeline.recover_stranded_events(startup=True)
    app.state.pipeline.start_periodic_recovery()


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.close()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description=(
        "בדיקה קלה שהתהליך חי ומגיב. "
        "לא בודק תלויות חיצוניות - כדי למנוע restart מיותר בגלל כשלון DB/Redis."
    ),
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe - התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקת DB, broker של Celery ומצב ה-pipeline. "
        "status=degraded גם כשהעיבוד רץ in-process; 503 רק כשה-DB לא זמין "
        "או שה-pipeline לא אותחל (אי אפשר לשמור אירועים)."
    ),
    responses={
        200: {
            "description": "אפשר לקבל אירועים",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "db": "ok",
                        "celery": "ok",
                        "pipeline_mode": "queue",
                    }
                }
            },
        },
        503: {
            "description": "אי אפשר לשמור אירועים",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "error: db_unavailable",
                        "celery": "ok",
                        "pipeline_mode": "queue",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness probe - בדיקת התלויות."""
    result = await check_readiness(getattr(app.state, "pipeline", None))
    status_code = 200 if result.get("db") == "ok" else 503
    return JSONResponse(content=result, status_code=status_code)
