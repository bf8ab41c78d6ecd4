"""
בדיקות ל-Queue Adapter - dedup לפי event_id, כשלון שליחה, זמינות.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from payhook.workers.queue import (
    PROCESS_TASK_NAME,
    WebhookQueue,
    job_key,
    make_celery_publisher,
)


class RecordingPublisher:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[tuple[str, int | None]] = []

    def __call__(self, event_id: str, countdown: int | None) -> None:
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.published.append((event_id, countdown))


def _queue(redis, publisher) -> WebhookQueue:
    return WebhookQueue(redis, publisher, queue_name="payment-webhooks", job_key_ttl_seconds=600)


class TestEnqueue:

    @pytest.mark.unit
    async def test_enqueue_publishes_and_reserves_job_key(self, fake_redis) -> None:
        publisher = RecordingPublisher()
        queue = _queue(fake_redis, publisher)

        result = await queue.enqueue("evt_1", countdown=60)

        assert result.queued
        assert result.job_id == "evt_1"
        assert not result.deduplicated
        assert publisher.published == [("evt_1", 60)]
        assert await fake_redis.get(job_key("evt_1")) == "1"
        assert fake_redis._ttls[job_key("evt_1")] == 600

    @pytest.mark.unit
    async def test_second_enqueue_of_same_event_is_deduplicated(self, fake_redis) -> None:
        publisher = RecordingPublisher()
        queue = _queue(fake_redis, publisher)

        await queue.enqueue("evt_1")
        second = await queue.enqueue("evt_1")

        assert second.queued
        assert second.deduplicated
        assert publisher.published == [("evt_1", None)]

    @pytest.mark.unit
    async def test_release_allows_requeue(self, fake_redis) -> None:
        publisher = RecordingPublisher()
        queue = _queue(fake_redis, publisher)

        await queue.enqueue("evt_1")
        await queue.release("evt_1")
        await queue.enqueue("evt_1")

        assert len(publisher.published) == 2

    @pytest.mark.unit
    async def test_publish_failure_releases_key_and_reports_not_queued(self, fake_redis) -> None:
        queue = _queue(fake_redis, RecordingPublisher(fail=True))

        result = await queue.enqueue("evt_1")

        assert not result.queued
        assert await fake_redis.get(job_key("evt_1")) is None

    @pytest.mark.unit
    async def test_unavailable_queue_never_queues(self) -> None:
        queue = WebhookQueue.unavailable("payment-webhooks")

        assert not queue.available
        assert not (await queue.enqueue("evt_1")).queued
        await queue.release("evt_1")
        assert await queue.metrics() == {
            "available": False, "queue": "payment-webhooks", "waiting": None,
        }


class TestMetricsAndClose:

    @pytest.mark.unit
    async def test_metrics_report_waiting_jobs(self, fake_redis) -> None:
        fake_redis._lists["payment-webhooks"] = ["a", "b", "c"]

        metrics = await _queue(fake_redis, RecordingPublisher()).metrics()

        assert metrics == {"available": True, "queue": "payment-webhooks", "waiting": 3}

    @pytest.mark.unit
    async def test_close_closes_connection_and_disables_queue(self, fake_redis) -> None:
        queue = _queue(fake_redis, RecordingPublisher())

        await queue.close()

        assert fake_redis.closed
        assert not queue.available


class TestConnect:

    @pytest.mark.unit
    async def test_disabled_by_configuration(self, pipeline_settings) -> None:
        queue = await WebhookQueue.connect(pipeline_settings)
        assert not queue.available

    @pytest.mark.unit
    async def test_unreachable_broker_gives_unavailable_queue(self, pipeline_settings) -> None:
        enabled = pipeline_settings.model_copy(update={"WEBHOOK_QUEUE_ENABLED": True})

        with patch("payhook.workers.queue.connect_redis", AsyncMock(return_value=None)):
            queue = await WebhookQueue.connect(enabled, celery_app=MagicMock())

        assert not queue.available

    @pytest.mark.unit
    async def test_reachable_broker_gives_available_queue(self, pipeline_settings, fake_redis) -> None:
        enabled = pipeline_settings.model_copy(update={"WEBHOOK_QUEUE_ENABLED": True})
        celery_app = MagicMock()

        with patch("payhook.workers.queue.connect_redis", AsyncMock(return_value=fake_redis)):
            queue = await WebhookQueue.connect(enabled, celery_app=celery_app)
        await queue.enqueue("evt_1", countdown=30)

        assert queue.available
        celery_app.send_task.assert_called_once_with(
            PROCESS_TASK_NAME,
            args=["evt_1"],
            task_id="evt_1",
            queue=enabled.WEBHOOK_QUEUE_NAME,
            countdown=30,
        )


@pytest.mark.unit
def test_celery_publisher_uses_event_id_as_task_id() -> None:
    celery_app = MagicMock()

    make_celery_publisher(celery_app, "payment-webhooks")("evt_9", None)

    celery_app.send_task.assert_called_once_with(
        PROCESS_TASK_NAME,
        args=["evt_9"],
        task_id="evt_9",
        queue="payment-webhooks",
        countdown=None,
    )
