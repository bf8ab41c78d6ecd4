"""
Event Router - טבלת dispatch מסוג אירוע ל-handler של לוגיקת ה-billing.

כל סוג אירוע מסווג ל-EventKind: אחד הסוגים המטופלים, IGNORED (ידוע
ומדולג במכוון) או UNKNOWN (סוג חדש מהמעבד). IGNORED ו-UNKNOWN הם no-op
מוצלח, כך שסוגי אירועים חדשים לא שוברים את ה-pipeline.
"""
from __future__ import annotations

import enum
import importlib
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from payhook.core.logging import get_logger

logger = get_logger(__name__)

BillingHandler = Callable[[dict[str, Any]], Awaitable[None]]


class EventKind(str, enum.Enum):
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    IGNORED = "ignored"
    UNKNOWN = "unknown"

    @property
    def is_handled(self) -> bool:
        return self not in (EventKind.IGNORED, EventKind.UNKNOWN)


# אירועים שהמעבד שולח ואין לנו מה לעשות איתם
IGNORED_EVENT_TYPES = frozenset({
    "customer.created",
    "customer.updated",
    "customer.deleted",
    "payment_intent.created",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "payment_method.attached",
    "payment_method.detached",
    "charge.succeeded",
    "charge.failed",
    "charge.refunded",
    "invoice.created",
    "invoice.updated",
    "invoice.finalized",
    "invoice.sent",
    "invoice.upcoming",
    "subscription_schedule.created",
    "subscription_schedule.updated",
    "setup_intent.created",
    "setup_intent.succeeded",
    "price.created",
    "price.updated",
    "product.created",
    "product.updated",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
})

_HANDLED_BY_TYPE = {kind.value: kind for kind in EventKind if kind.is_handled}


def classify_event_type(event_type: str) -> EventKind:
    if event_type in _HANDLED_BY_TYPE:
        return _HANDLED_BY_TYPE[event_type]
    if event_type in IGNORED_EVENT_TYPES:
        return EventKind.IGNORED
    return EventKind.UNKNOWN


@dataclass(frozen=True)
class DispatchResult:
    kind: EventKind
    handled: bool


class EventRouter:
    """Maps event kinds to billing handlers. Handlers succeed or raise."""

    def __init__(self) -> None:
        self._handlers: dict[EventKind, BillingHandler] = {}

    def register(self, kind: EventKind, handler: BillingHandler) -> None:
        if not kind.is_handled:
            raise ValueError(f"cannot register a handler for {kind.name}")
        if kind in self._handlers:
            raise ValueError(f"handler already registered for {kind.value}")
        self._handlers[kind] = handler

    def on(self, kind: EventKind) -> Callable[[BillingHandler], BillingHandler]:
        """Decorator form of register()"""
        def decorator(handler: BillingHandler) -> BillingHandler:
            self.register(kind, handler)
            return handler
        return decorator

    @property
    def registered_kinds(self) -> list[EventKind]:
        return list(self._handlers)

    async def dispatch(self, event_type: str, payload: dict[str, Any]) -> DispatchResult:
        kind = classify_event_type(event_type)

        if kind == EventKind.UNKNOWN:
            # סוג חדש מהמעבד - ננטר בלוגים, לא נכשיל
            logger.warning(
                "Unknown webhook event type acknowledged as no-op",
                extra_data={"event_type": event_type},
            )
            return DispatchResult(kind=kind, handled=False)

        if kind == EventKind.IGNORED:
            logger.debug("Ignored webhook event type", extra_data={"event_type": event_type})
            return DispatchResult(kind=kind, handled=False)

        handler = self._handlers.get(kind)
        if handler is None:
            logger.warning(
                "No handler registered for webhook event kind",
                extra_data={"event_type": event_type},
            )
            return DispatchResult(kind=kind, handled=False)

        await handler(payload)
        return DispatchResult(kind=kind, handled=True)


def load_event_handlers(router: EventRouter, module_path: str) -> None:
    """
    מייבא מודול handlers וקורא ל-register_handlers(router) שלו.

    נכשל מהר בעליית התהליך אם המודול חסר או לא חושף register_handlers.
    """
    if not module_path:
        logger.warning("WEBHOOK_EVENT_HANDLERS_MODULE not set, all events will be no-ops")
        return

    module = importlib.import_module(module_path)
    register = getattr(module, "register_handlers", None)
    if not callable(register):
        raise ValueError(f"{module_path} does not define register_handlers(router)")

    register(router)
    logger.info(
        "Webhook event handlers registered",
        extra_data={
            "module": module_path,
            "kinds": [kind.value for kind in router.registered_kinds],
        },
    )
