"""
בדיקות ל-Event Router - סיווג סוגי אירועים ו-dispatch ל-handlers.
"""
import sys
import types

import pytest

from payhook.domain.services.event_router import (
    EventKind,
    EventRouter,
    classify_event_type,
    load_event_handlers,
)


class TestClassify:

    @pytest.mark.unit
    @pytest.mark.parametrize("kind", [k for k in EventKind if k.is_handled])
    def test_handled_types_map_to_their_kind(self, kind: EventKind) -> None:
        assert classify_event_type(kind.value) == kind

    @pytest.mark.unit
    @pytest.mark.parametrize("event_type", ["charge.succeeded", "invoice.created", "customer.created"])
    def test_known_irrelevant_types_are_ignored(self, event_type: str) -> None:
        assert classify_event_type(event_type) == EventKind.IGNORED

    @pytest.mark.unit
    @pytest.mark.parametrize("event_type", ["radar.early_fraud_warning.created", "", "unknown"])
    def test_new_types_are_unknown(self, event_type: str) -> None:
        assert classify_event_type(event_type) == EventKind.UNKNOWN


class TestDispatch:

    @pytest.mark.unit
    async def test_dispatch_calls_registered_handler_with_payload(self) -> None:
        router = EventRouter()
        received = []

        @router.on(EventKind.INVOICE_PAID)
        async def on_invoice_paid(payload: dict) -> None:
            received.append(payload)

        result = await router.dispatch("invoice.paid", {"id": "evt_1"})

        assert result.kind == EventKind.INVOICE_PAID
        assert result.handled
        assert received == [{"id": "evt_1"}]

    @pytest.mark.unit
    async def test_unknown_type_is_a_successful_noop(self) -> None:
        result = await EventRouter().dispatch("brand.new.type", {})

        assert result.kind == EventKind.UNKNOWN
        assert not result.handled

    @pytest.mark.unit
    async def test_handled_kind_without_handler_is_a_noop(self) -> None:
        result = await EventRouter().dispatch("invoice.payment_failed", {})

        assert result.kind == EventKind.INVOICE_PAYMENT_FAILED
        assert not result.handled

    @pytest.mark.unit
    async def test_handler_errors_propagate(self) -> None:
        router = EventRouter()

        async def failing(payload: dict) -> None:
            raise ValueError("billing down")

        router.register(EventKind.CHECKOUT_SESSION_COMPLETED, failing)

        with pytest.raises(ValueError, match="billing down"):
            await router.dispatch("checkout.session.completed", {})


class TestRegistration:

    @pytest.mark.unit
    @pytest.mark.parametrize("kind", [EventKind.IGNORED, EventKind.UNKNOWN])
    def test_cannot_register_for_unhandled_kinds(self, kind: EventKind) -> None:
        async def handler(payload: dict) -> None:
            return None

        with pytest.raises(ValueError):
            EventRouter().register(kind, handler)

    @pytest.mark.unit
    def test_duplicate_registration_is_rejected(self) -> None:
        router = EventRouter()

        async def handler(payload: dict) -> None:
            return None

        router.register(EventKind.INVOICE_PAID, handler)
        with pytest.raises(ValueError):
            router.register(EventKind.INVOICE_PAID, handler)
        assert router.registered_kinds == [EventKind.INVOICE_PAID]


class TestLoadEventHandlers:

    @pytest.fixture
    def handlers_module(self):
        module = types.ModuleType("payhook_test_handlers")

        def register_handlers(router: EventRouter) -> None:
            async def on_subscription_deleted(payload: dict) -> None:
                return None

            router.register(EventKind.SUBSCRIPTION_DELETED, on_subscription_deleted)

        module.register_handlers = register_handlers
        sys.modules[module.__name__] = module
        yield module.__name__
        sys.modules.pop(module.__name__, None)

    @pytest.mark.unit
    def test_loads_handlers_from_module(self, handlers_module: str) -> None:
        router = EventRouter()
        load_event_handlers(router, handlers_module)
        assert router.registered_kinds == [EventKind.SUBSCRIPTION_DELETED]

    @pytest.mark.unit
    def test_empty_module_path_leaves_router_empty(self) -> None:
        router = EventRouter()
        load_event_handlers(router, "")
        assert router.registered_kinds == []

    @pytest.mark.unit
    def test_module_without_register_handlers_fails_fast(self) -> None:
        with pytest.raises(ValueError):
            load_event_handlers(EventRouter(), "payhook.core.config")

    @pytest.mark.unit
    def test_missing_module_fails_fast(self) -> None:
        with pytest.raises(ImportError):
            load_event_handlers(EventRouter(), "payhook.no_such_handlers_module")
