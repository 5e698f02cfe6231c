"""Tests for HealthService."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from vdrs.services.health_service import (
    HealthService,
    HealthStatus,
    ComponentHealth,
    SystemHealth,
)


class TestHealthStatus:
    """Tests for HealthStatus enum."""

    def test_health_status_values(self):
        """Test health status enum values."""
        assert HealthStatus.HEALTHY.value == "healthy"
        assert HealthStatus.DEGRADED.value == "degraded"
        assert HealthStatus.UNHEALTHY.value == "unhealthy"


class TestSystemHealth:
    """Tests for SystemHealth dataclass."""

    def test_system_health_to_dict(self):
        """Test converting SystemHealth to dictionary."""
        components = [
            ComponentHealth(
                name="database",
                status=HealthStatus.HEALTHY,
                message="OK",
                latency_ms=5.0,
            ),
            ComponentHealth(
                name="storage",
                status=HealthStatus.DEGRADED,
                message="Maintenance worker not running",
                details={"tables": {}},
            ),
        ]
        health = SystemHealth(
            status=HealthStatus.DEGRADED,
            version="0.1.0",
            components=components,
        )

        result = health.to_dict()

        assert result["status"] == "degraded"
        assert result["version"] == "0.1.0"
        assert len(result["components"]) == 2
        assert result["components"][0]["latency_ms"] == 5.0
        assert result["components"][1]["details"] == {"tables": {}}


class TestHealthService:
    """Tests for HealthService."""

    @pytest.fixture
    def health_service(self):
        """Create health service instance."""
        return HealthService()

    @pytest.mark.asyncio
    async def test_check_database_healthy(self, health_service):
        """Test database health check when database is healthy."""
        mock_session = AsyncMock()
        mock_result = MagicMock()
        mock_result.scalar.return_value = 1
        mock_session.execute.return_value = mock_result

        result = await health_service.check_database(mock_session)

        assert result.name == "database"
        assert result.status == HealthStatus.HEALTHY
        assert result.message == "Control database responding"
        assert result.latency_ms is not None
        mock_session.execute.assert_called_once()

    @pytest.mark.asyncio
    async def test_check_database_unhealthy(self, health_service):
        """Test database health check when database fails."""
        mock_session = AsyncMock()
        mock_session.execute.side_effect = Exception("Connection refused")

        result = await health_service.check_database(mock_session)

        assert result.status == HealthStatus.UNHEALTHY
        assert "Connection failed" in result.message

    @pytest.mark.asyncio
    async def test_check_storage_counts_rows(self, health_service, storage, make_record):
        """Storage component reports chunks and rows per table."""
        await storage.telemetry.insert_batch([make_record(), make_record("XYZ-9876")])

        result = health_service.check_storage(storage, maintenance_running=True)

        assert result.status == HealthStatus.HEALTHY
        assert result.details["tables"]["vehicle_telemetry"] == {"chunks": 1, "rows": 2}
        assert result.details["tables"]["vehicle_anomalies"] == {"chunks": 0, "rows": 0}
        assert result.details["tables"]["device_status"] == {"chunks": 0, "rows": 0}

    def test_check_storage_degraded_without_maintenance(self, health_service, storage):
        result = health_service.check_storage(storage, maintenance_running=False)

        assert result.status == HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_readiness_unhealthy_when_database_fails(self, health_service, storage):
        """Test overall status is unhealthy when any component is unhealthy."""
        mock_session = AsyncMock()
        mock_session.execute.side_effect = Exception("Connection refused")

        result = await health_service.get_readiness(mock_session, storage, maintenance_running=False)

        assert result.status == HealthStatus.UNHEALTHY
        assert [c.name for c in result.components] == ["database", "storage"]

    @pytest.mark.asyncio
    async def test_readiness_degraded(self, health_service, storage, db_session):
        """Test overall status is degraded when maintenance is stopped."""
        result = await health_service.get_readiness(db_session, storage, maintenance_running=False)

        assert result.status == HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_readiness_healthy(self, health_service, storage, db_session):
        result = await health_service.get_readiness(db_session, storage)

        assert result.status == HealthStatus.HEALTHY

    def test_liveness(self, health_service):
        """Test liveness check."""
        result = health_service.get_liveness()

        assert result.status == HealthStatus.HEALTHY
        assert result.components[0].name == "application"
