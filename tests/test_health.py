"""
בדיקות ל-health endpoints ולשירות בדיקת הבריאות.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from payhook.core.config import settings
from payhook.domain.services import health_service
from payhook.main import app


class TestLiveness:

    @pytest.mark.unit
    async def test_health_returns_healthy(self, test_client) -> None:
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestReadiness:

    @pytest.mark.unit
    async def test_in_process_mode_is_ready_but_degraded(self, test_client) -> None:
        """ה-DB זמין - אפשר לקבל אירועים גם בלי התור העמיד."""
        response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {
            "status": "degraded",
            "db": "ok",
            "celery": "disabled",
            "pipeline_mode": "in_process",
        }

    @pytest.mark.unit
    async def test_missing_pipeline_returns_503(self, test_client) -> None:
        pipeline = app.state.pipeline
        del app.state.pipeline
        try:
            response = await test_client.get("/health/ready")
        finally:
            app.state.pipeline = pipeline

        assert response.status_code == 503
        assert response.json()["pipeline_mode"] == "error: pipeline_not_initialized"

    @pytest.mark.unit
    async def test_db_failure_returns_503(self, test_client) -> None:
        with patch.object(health_service, "_check_db", AsyncMock(return_value="error: db_unavailable")):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["db"] == "error: db_unavailable"


class TestCheckCelery:

    @pytest.mark.unit
    async def test_disabled_queue_is_not_checked(self) -> None:
        with patch.object(settings, "WEBHOOK_QUEUE_ENABLED", False):
            assert await health_service._check_celery() == "disabled"

    @pytest.mark.unit
    async def test_reachable_broker(self) -> None:
        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()

        with patch.object(settings, "WEBHOOK_QUEUE_ENABLED", True), \
                patch.object(health_service.aioredis, "from_url", return_value=client):
            assert await health_service._check_celery() == "ok"
        client.aclose.assert_awaited_once()

    @pytest.mark.unit
    async def test_unreachable_broker_is_reported_without_details(self) -> None:
        client = MagicMock()
        client.ping = AsyncMock(side_effect=ConnectionError("redis://:secret@host refused"))
        client.aclose = AsyncMock()

        with patch.object(settings, "WEBHOOK_QUEUE_ENABLED", True), \
                patch.object(health_service.aioredis, "from_url", return_value=client):
            result = await health_service._check_celery()

        assert result == "error: celery_unavailable"
        assert "secret" not in result
