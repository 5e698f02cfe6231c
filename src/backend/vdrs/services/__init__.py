"""VDRS Services Module."""

from vdrs.services.anomaly_service import AnomalyService
from vdrs.services.geospatial import GeospatialService, NearbyResult
from vdrs.services.health_service import HealthService, health_service
from vdrs.services.maintenance_worker_service import MAINTENANCE_TASKS, MaintenanceWorkerService
from vdrs.services.retention_policy_service import RetentionPolicyService
from vdrs.services.telemetry_ingestion_service import TelemetryIngestionService, TelemetryRecordInput
from vdrs.services.telemetry_query_service import TelemetryQueryService

__all__ = [
    "AnomalyService",
    "GeospatialService",
    "NearbyResult",
    "HealthService",
    "health_service",
    "MAINTENANCE_TASKS",
    "MaintenanceWorkerService",
    "RetentionPolicyService",
    "TelemetryIngestionService",
    "TelemetryRecordInput",
    "TelemetryQueryService",
]
