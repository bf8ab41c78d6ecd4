"""
Domain Services
"""
from payhook.domain.services.signature_service import SignatureVerifier
from payhook.domain.services.event_store import EventStore
from payhook.domain.services.event_router import EventRouter
from payhook.domain.services.retry_policy import RetryPolicy
from payhook.domain.services.alerting_service import AlertingGate
from payhook.domain.services.webhook_processor import WebhookProcessor
from payhook.domain.services.intake_service import WebhookIntakeService

__all__ = [
    "SignatureVerifier",
    "EventStore",
    "EventRouter",
    "RetryPolicy",
    "AlertingGate",
    "WebhookProcessor",
    "WebhookIntakeService",
]
