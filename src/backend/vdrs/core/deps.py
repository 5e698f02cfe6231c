"""Dependency injection utilities for FastAPI."""

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from vdrs.core.config import Settings, get_settings, settings
from vdrs.services.maintenance_worker_service import MaintenanceWorkerService
from vdrs.storage.engine import StorageEngine

# Database engine and session factory
engine = create_async_engine(settings.database_url, echo=settings.debug)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)

# Storage engine and maintenance worker singletons
_storage_engine: StorageEngine | None = None
_maintenance_worker: MaintenanceWorkerService | None = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session."""
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_storage_engine() -> StorageEngine:
    """Get the storage engine singleton. Callable from any context (workers, FastAPI)."""
    global _storage_engine
    if _storage_engine is None:
        _storage_engine = StorageEngine(settings, session_factory=async_session_factory)
    return _storage_engine


def get_maintenance_worker() -> MaintenanceWorkerService:
    """Get the maintenance worker singleton bound to the storage engine."""
    global _maintenance_worker
    if _maintenance_worker is None:
        _maintenance_worker = MaintenanceWorkerService(
            storage=get_storage_engine(),
            session_factory=async_session_factory,
            tenant_id=settings.tenant_id,
            compression_interval=settings.compression_interval_seconds,
            retention_interval=settings.retention_interval_seconds,
            refresh_interval=settings.aggregate_refresh_interval_seconds,
        )
    return _maintenance_worker


DbSession = Annotated[AsyncSession, Depends(get_db)]
Storage = Annotated[StorageEngine, Depends(get_storage_engine)]
AppSettings = Annotated[Settings, Depends(get_settings)]
MaintenanceWorker = Annotated[MaintenanceWorkerService, Depends(get_maintenance_worker)]
