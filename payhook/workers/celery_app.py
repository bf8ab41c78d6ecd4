"""
Celery Application Configuration
"""
from celery import Celery

from payhook.core.config import settings

celery_app = Celery(
    "payhook",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["payhook.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # ה-handler מוגבל ב-WEBHOOK_HANDLER_TIMEOUT_SECONDS; המגבלה הקשיחה רק עוטפת אותו
    task_time_limit=int(settings.WEBHOOK_HANDLER_TIMEOUT_SECONDS) + 60,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WEBHOOK_WORKER_CONCURRENCY,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_routes={
        "payhook.workers.tasks.process_webhook_event": {"queue": settings.WEBHOOK_QUEUE_NAME},
        "payhook.workers.tasks.recover_stranded_webhook_events": {"queue": settings.WEBHOOK_QUEUE_NAME},
    },
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # איסוף אירועים שנתקעו (hand-off שאבד, worker שקרס באמצע, retry שה-timer שלו אבד)
    "recover-stranded-webhook-events": {
        "task": "payhook.workers.tasks.recover_stranded_webhook_events",
        "schedule": float(settings.WEBHOOK_RECOVERY_INTERVAL_SECONDS),
    },
}
