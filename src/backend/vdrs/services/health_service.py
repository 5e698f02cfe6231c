"""Health check service for VDRS."""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from vdrs import __version__
from vdrs.core.metrics import set_db_connected
from vdrs.storage.engine import StorageEngine

logger = structlog.get_logger()


class HealthStatus(str, Enum):
    """Health check status values."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    """Health status of a single component."""

    name: str
    status: HealthStatus
    message: str | None = None
    latency_ms: float | None = None
    details: dict[str, Any] | None = None


@dataclass
class SystemHealth:
    """Overall system health status."""

    status: HealthStatus
    version: str
    components: list[ComponentHealth]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "status": self.status.value,
            "version": self.version,
            "components": [
                {
                    "name": c.name,
                    "status": c.status.value,
                    "message": c.message,
                    "latency_ms": c.latency_ms,
                    "details": c.details,
                }
                for c in self.components
            ],
        }


class HealthService:
    """Service for checking health of system components."""

    VERSION = __version__

    async def check_database(self, session: AsyncSession) -> ComponentHealth:
        """Check control database connectivity and response time."""
        start = time.perf_counter()
        try:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            latency = (time.perf_counter() - start) * 1000
            set_db_connected(True)

            return ComponentHealth(
                name="database",
                status=HealthStatus.HEALTHY,
                message="Control database responding",
                latency_ms=round(latency, 2),
            )
        except Exception as e:
            latency = (time.perf_counter() - start) * 1000
            logger.error("Database health check failed", error=str(e))
            set_db_connected(False)
            return ComponentHealth(
                name="database",
                status=HealthStatus.UNHEALTHY,
                message=f"Connection failed: {str(e)[:100]}",
                latency_ms=round(latency, 2),
            )

    def check_storage(self, storage: StorageEngine, maintenance_running: bool) -> ComponentHealth:
        """Summarise the storage engine; degraded when maintenance is not running."""
        tables = {
            name: {
                "chunks": len(infos),
                "rows": sum(i.row_count for i in infos),
            }
            for name, infos in ((n, t.chunks(include_sizes=False)) for n, t in storage.tables.items())
        }
        status = HealthStatus.HEALTHY if maintenance_running else HealthStatus.DEGRADED
        return ComponentHealth(
            name="storage",
            status=status,
            message="Maintenance running" if maintenance_running else "Maintenance worker not running",
            details={"tables": tables},
        )

    async def get_readiness(self, session: AsyncSession, storage: StorageEngine,
                            maintenance_running: bool = True) -> SystemHealth:
        """Get full readiness status including all dependencies."""
        components = [
            await self.check_database(session),
            self.check_storage(storage, maintenance_running),
        ]

        # Determine overall status
        statuses = [c.status for c in components]
        if HealthStatus.UNHEALTHY in statuses:
            overall_status = HealthStatus.UNHEALTHY
        elif HealthStatus.DEGRADED in statuses:
            overall_status = HealthStatus.DEGRADED
        else:
            overall_status = HealthStatus.HEALTHY

        return SystemHealth(
            status=overall_status,
            version=self.VERSION,
            components=components,
        )

    def get_liveness(self) -> SystemHealth:
        """Get basic liveness status (application is running)."""
        return SystemHealth(
            status=HealthStatus.HEALTHY,
            version=self.VERSION,
            components=[
                ComponentHealth(
                    name="application",
                    status=HealthStatus.HEALTHY,
                    message="Application is running",
                )
            ],
        )


# Singleton instance
health_service = HealthService()
