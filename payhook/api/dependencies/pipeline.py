"""
הזרקת ה-WebhookPipeline שנבנה ב-startup ל-routes.
"""
from fastapi import HTTPException, Request, status

from payhook.pipeline import WebhookPipeline


def get_pipeline(request: Request) -> WebhookPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="webhook pipeline not initialized",
        )
    return pipeline
