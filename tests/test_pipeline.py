"""
בדיקות ל-WebhookPipeline - hand-off, retry ידני, שחרור מפתחות job בתור.
"""
import pytest

from payhook.core.exceptions import EventNotFoundError, InvalidEventTransitionError
from payhook.db.models.webhook_event import WebhookEventStatus
from payhook.domain.services.event_router import EventKind
from payhook.domain.services.event_store import EventStore
from payhook.domain.services.signature_service import PaymentEvent
from payhook.domain.services.webhook_processor import OutcomeStatus, ProcessingOutcome
from payhook.pipeline import PipelineMode, build_pipeline
from payhook.workers.queue import WebhookQueue, job_key


class SwitchableHandler:
    """נכשל כל עוד failing=True"""

    def __init__(self) -> None:
        self.failing = True
        self.calls = 0

    async def __call__(self, payload: dict) -> None:
        self.calls += 1
        if self.failing:
            raise RuntimeError("ledger locked")


async def _store(session_factory, event_id: str) -> None:
    async with session_factory() as db:
        await EventStore(db).create_received(
            PaymentEvent(id=event_id, type="invoice.paid", data={"object": {}})
        )


async def _load(session_factory, event_id: str):
    async with session_factory() as db:
        return await EventStore(db).find_by_event_id(event_id)


class TestHandOff:

    @pytest.mark.unit
    async def test_in_process_mode_is_degraded(self, pipeline) -> None:
        assert pipeline.mode == PipelineMode.IN_PROCESS
        assert pipeline.degraded

    @pytest.mark.unit
    async def test_hand_off_in_process(self, session_factory, pipeline) -> None:
        await _store(session_factory, "evt_handoff")

        result = await pipeline.hand_off("evt_handoff")
        await pipeline.dispatcher.drain()

        assert result.mode == PipelineMode.IN_PROCESS
        assert (await _load(session_factory, "evt_handoff")).status == WebhookEventStatus.PROCESSED

    @pytest.mark.unit
    async def test_hand_off_never_raises(self, pipeline, monkeypatch) -> None:
        async def broken_schedule(event_id: str, delay_seconds: float = 0):
            raise RuntimeError("event loop closing")

        monkeypatch.setattr(pipeline, "schedule", broken_schedule)

        assert await pipeline.hand_off("evt_any") is None

    @pytest.mark.unit
    async def test_queue_metrics_include_mode(self, pipeline) -> None:
        metrics = await pipeline.queue_metrics()

        assert metrics["mode"] == "in_process"
        assert metrics["available"] is False
        assert metrics["in_process_pending"] == 0


class TestRetryFailedEvents:

    @pytest.mark.unit
    async def test_retries_failed_events_immediately(self, session_factory, pipeline, router) -> None:
        handler = SwitchableHandler()
        router.register(EventKind.INVOICE_PAID, handler)
        for event_id in ("evt_a", "evt_b"):
            await _store(session_factory, event_id)
            await pipeline.processor.process(event_id)

        handler.failing = False
        retried = await pipeline.retry_failed_events()

        assert retried == 2
        for event_id in ("evt_a", "evt_b"):
            event = await _load(session_factory, event_id)
            assert event.status == WebhookEventStatus.PROCESSED
            assert event.retry_count == 1

    @pytest.mark.unit
    async def test_respects_max_to_retry(self, session_factory, pipeline, router) -> None:
        handler = SwitchableHandler()
        router.register(EventKind.INVOICE_PAID, handler)
        for event_id in ("evt_a", "evt_b", "evt_c"):
            await _store(session_factory, event_id)
            await pipeline.processor.process(event_id)

        handler.failing = False
        assert await pipeline.retry_failed_events(max_to_retry=1) == 1

        # הישן ביותר נוסה ראשון
        assert (await _load(session_factory, "evt_a")).status == WebhookEventStatus.PROCESSED
        assert (await _load(session_factory, "evt_c")).status == WebhookEventStatus.FAILED

    @pytest.mark.unit
    async def test_nothing_to_retry(self, pipeline) -> None:
        assert await pipeline.retry_failed_events() == 0

    @pytest.mark.unit
    async def test_exhausted_events_are_not_batch_retried(
        self, session_factory, pipeline, router
    ) -> None:
        router.register(EventKind.INVOICE_PAID, SwitchableHandler())
        await _store(session_factory, "evt_dead")
        for _ in range(3):
            await pipeline.processor.process("evt_dead")

        assert await pipeline.retry_failed_events() == 0


class TestRetryEvent:

    @pytest.mark.unit
    async def test_unknown_event_raises_not_found(self, pipeline) -> None:
        with pytest.raises(EventNotFoundError):
            await pipeline.retry_event("evt_missing")

    @pytest.mark.unit
    async def test_processed_event_cannot_be_retried(self, session_factory, pipeline) -> None:
        await _store(session_factory, "evt_done")
        await pipeline.processor.process("evt_done")

        with pytest.raises(InvalidEventTransitionError):
            await pipeline.retry_event("evt_done")

    @pytest.mark.unit
    async def test_exhausted_event_can_be_forced(self, session_factory, pipeline, router) -> None:
        handler = SwitchableHandler()
        router.register(EventKind.INVOICE_PAID, handler)
        await _store(session_factory, "evt_dead")
        for _ in range(3):
            await pipeline.processor.process("evt_dead")

        handler.failing = False
        outcome = await pipeline.retry_event("evt_dead")

        assert outcome.status == OutcomeStatus.PROCESSED
        assert (await _load(session_factory, "evt_dead")).status == WebhookEventStatus.PROCESSED


class TestQueueMode:

    @pytest.fixture
    def published(self) -> list:
        return []

    @pytest.fixture
    async def queued_pipeline(
        self, pipeline_settings, session_factory, router, alerting, fake_redis, published
    ):
        queue = WebhookQueue(
            fake_redis,
            lambda event_id, countdown: published.append((event_id, countdown)),
            queue_name="payment-webhooks",
            job_key_ttl_seconds=600,
        )
        webhook_pipeline = await build_pipeline(
            pipeline_settings, session_factory, router=router, alerting=alerting, queue=queue,
        )
        yield webhook_pipeline
        await webhook_pipeline.close()

    @pytest.mark.unit
    async def test_schedule_uses_whole_second_countdown(self, queued_pipeline, published) -> None:
        result = await queued_pipeline.schedule("evt_q", 5.7)

        assert result.mode == PipelineMode.QUEUE
        assert published == [("evt_q", 5)]
        assert not queued_pipeline.degraded

    @pytest.mark.unit
    async def test_terminal_outcome_releases_job_key(self, queued_pipeline, fake_redis) -> None:
        await queued_pipeline.schedule("evt_q")

        await queued_pipeline.follow_up(ProcessingOutcome("evt_q", OutcomeStatus.PROCESSED))

        assert await fake_redis.get(job_key("evt_q")) is None

    @pytest.mark.unit
    async def test_skipped_outcome_keeps_job_key(self, queued_pipeline, fake_redis) -> None:
        await queued_pipeline.schedule("evt_q")

        await queued_pipeline.follow_up(ProcessingOutcome("evt_q", OutcomeStatus.SKIPPED))

        assert await fake_redis.get(job_key("evt_q")) == "1"
