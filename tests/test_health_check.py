"""
בדיקות יחידה ל-Health Check endpoints — liveness ו-readiness.
"""
import pytest
from unittest.mock import AsyncMock, patch

import httpx

from app.core.config import settings


def _patch_checks(*, db="ok", redis="ok", celery="ok", n8n="ok"):
    """מחליף את כל בדיקות התלויות בערכים קבועים"""
    return (
        patch(
            "app.domain.services.health_service._check_db",
            new_callable=AsyncMock,
            return_value=db,
        ),
        patch(
            "app.domain.services.health_service._check_redis",
            new_callable=AsyncMock,
            return_value=redis,
        ),
        patch(
            "app.domain.services.health_service._check_celery",
            new_callable=AsyncMock,
            return_value=celery,
        ),
        patch(
            "app.domain.services.health_service._check_processor_config",
            return_value=n8n,
        ),
    )


# ============================================================================
# Liveness Probe — GET /health
# ============================================================================


class TestLivenessProbe:
    """בדיקות ל-endpoint /health (liveness probe)."""

    @pytest.mark.unit
    async def test_liveness_returns_healthy(self, test_client: httpx.AsyncClient) -> None:
        """liveness probe מחזיר status=healthy תמיד."""
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


# ============================================================================
# Readiness Probe — GET /health/ready
# ============================================================================


class TestReadinessProbe:
    """בדיקות ל-endpoint /health/ready (readiness probe)."""

    @pytest.mark.unit
    async def test_readiness_all_healthy(self, test_client: httpx.AsyncClient) -> None:
        """כשכל התלויות תקינות — status=healthy ו-HTTP 200."""
        db, redis, celery, n8n = _patch_checks()
        with db, redis, celery, n8n:
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["db"] == "ok"
        assert data["redis"] == "ok"
        assert data["celery"] == "ok"
        assert data["n8n"] == "ok"

    @pytest.mark.unit
    async def test_readiness_processor_disabled_is_healthy(
        self, test_client: httpx.AsyncClient
    ) -> None:
        """n8n כבוי זה לא תקלה."""
        db, redis, celery, n8n = _patch_checks(n8n="disabled")
        with db, redis, celery, n8n:
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["n8n"] == "disabled"

    @pytest.mark.unit
    async def test_readiness_db_down(self, test_client: httpx.AsyncClient) -> None:
        """כש-DB לא זמין — status=degraded ו-HTTP 503."""
        db, redis, celery, n8n = _patch_checks(db="error: db_unavailable")
        with db, redis, celery, n8n:
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert "error" in data["db"]
        assert data["redis"] == "ok"

    @pytest.mark.unit
    async def test_readiness_multiple_failures(
        self, test_client: httpx.AsyncClient
    ) -> None:
        """כשכמה תלויות נכשלות — status=degraded ופירוט לכל תלות."""
        db, redis, celery, n8n = _patch_checks(
            redis="error: redis_unavailable",
            celery="error: celery_unavailable",
        )
        with db, redis, celery, n8n:
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert "error" in data["redis"]
        assert "error" in data["celery"]
        assert data["db"] == "ok"


# ============================================================================
# בדיקות יחידה לפונקציות בדיקה פנימיות
# ============================================================================


class TestHealthCheckFunctions:
    """בדיקות ישירות לפונקציות הבדיקה בשירות."""

    @pytest.mark.unit
    async def test_check_db_success(self) -> None:
        """_check_db מחזיר ok כש-DB זמין."""
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock()
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch(
            "app.domain.services.health_service.AsyncSessionLocal",
            return_value=mock_session,
        ):
            from app.domain.services.health_service import _check_db
            result = await _check_db()

        assert result == "ok"

    @pytest.mark.unit
    async def test_check_db_failure_hides_details(self) -> None:
        """_check_db מחזיר error בלי פרטי החיבור."""
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(side_effect=ConnectionError("refused 10.0.0.5:5432"))
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch(
            "app.domain.services.health_service.AsyncSessionLocal",
            return_value=mock_session,
        ):
            from app.domain.services.health_service import _check_db
            result = await _check_db()

        assert result == "error: db_unavailable"

    @pytest.mark.unit
    async def test_check_redis_success(self) -> None:
        """_check_redis מחזיר ok כש-Redis זמין (FakeRedis מה-conftest)."""
        from app.domain.services.health_service import _check_redis
        assert await _check_redis() == "ok"

    @pytest.mark.unit
    async def test_check_redis_failure(self) -> None:
        """_check_redis מחזיר error כש-Redis לא זמין."""
        with patch(
            "app.domain.services.health_service.get_redis",
            new_callable=AsyncMock,
            side_effect=ConnectionError("refused"),
        ):
            from app.domain.services.health_service import _check_redis
            result = await _check_redis()

        assert result.startswith("error:")

    @pytest.mark.unit
    async def test_check_celery_success(self) -> None:
        """_check_celery מחזיר ok כש-Celery broker זמין."""
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(return_value=True)
        mock_client.aclose = AsyncMock()

        with patch(
            "app.domain.services.health_service.aioredis.from_url",
            return_value=mock_client,
        ):
            from app.domain.services.health_service import _check_celery
            result = await _check_celery()

        assert result == "ok"
        mock_client.aclose.assert_awaited_once()

    @pytest.mark.unit
    async def test_check_celery_failure(self) -> None:
        """_check_celery מחזיר error כש-Celery broker לא זמין."""
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        mock_client.aclose = AsyncMock()

        with patch(
            "app.domain.services.health_service.aioredis.from_url",
            return_value=mock_client,
        ):
            from app.domain.services.health_service import _check_celery
            result = await _check_celery()

        assert result.startswith("error:")

    @pytest.mark.unit
    def test_processor_config(self) -> None:
        """תצורת n8n נבדקת בלי לשלוח בקשה ל-workflow."""
        from app.domain.services.health_service import _check_processor_config

        with patch.object(settings, "N8N_ENABLED", False):
            assert _check_processor_config() == "disabled"

        with patch.object(settings, "N8N_ENABLED", True), \
             patch.object(settings, "N8N_WEBHOOK_URL", ""):
            assert _check_processor_config() == "error: n8n_not_configured"

        with patch.object(settings, "N8N_ENABLED", True), \
             patch.object(settings, "N8N_WEBHOOK_URL", "https://n8n.test/hook"):
            assert _check_processor_config() == "ok"
