"""
Database Models
"""
from payhook.db.models.webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "WebhookEvent",
    "WebhookEventStatus",
]
