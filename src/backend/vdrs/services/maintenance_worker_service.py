"""Background maintenance worker: compression, retention and aggregate refresh.

Three independent periodic tasks. Each pass loads the tenant's policies
through a fresh database session and drives the storage managers through
their public APIs. A failing pass is logged and retried on the next tick;
nothing here ever raises into a request path.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vdrs.core.metrics import observe_maintenance, set_chunk_counts
from vdrs.services.retention_policy_service import RetentionPolicyService
from vdrs.storage.chunk import ChunkState
from vdrs.storage.engine import StorageEngine
from vdrs.storage.retention import DATA_TYPES, RetentionPolicy

logger = structlog.get_logger()

MAINTENANCE_TASKS = ("compression", "retention", "refresh")


class MaintenanceWorkerService:
    """Runs storage maintenance on independent schedules."""

    def __init__(
        self,
        storage: StorageEngine,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: str = "default",
        compression_interval: float = 3600.0,
        retention_interval: float = 86400.0,
        refresh_interval: float = 300.0,
    ):
        self.storage = storage
        self.session_factory = session_factory
        self.tenant_id = tenant_id
        self.intervals = {
            "compression": compression_interval,
            "retention": retention_interval,
            "refresh": refresh_interval,
        }
        self._passes: dict[str, Callable[[], Awaitable[int]]] = {
            "compression": self.run_compression_pass,
            "retention": self.run_retention_pass,
            "refresh": self.run_refresh_pass,
        }
        self._running = False
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start one loop per maintenance task."""
        if self._running:
            return
        self._running = True

        for name, run_pass in self._passes.items():
            task = asyncio.create_task(
                self._loop(name, run_pass, self.intervals[name]),
                name=f"maintenance-{name}",
            )
            self._tasks.append(task)

        logger.info("Maintenance worker started", tenant_id=self.tenant_id, intervals=self.intervals)

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop all maintenance loops, waiting at most timeout seconds for them to exit."""
        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=timeout)
            if pending:
                logger.warning(
                    "Maintenance tasks did not stop in time",
                    tasks=[task.get_name() for task in pending],
                    timeout=timeout,
                )

        self._tasks.clear()
        logger.info("Maintenance worker stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _loop(self, name: str, run_pass: Callable[[], Awaitable[int]], interval: float) -> None:
        while self._running:
            try:
                await run_pass()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Maintenance pass failed", task=name, error=str(e))
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break

    async def _load_policies(self) -> dict[str, RetentionPolicy]:
        async with self.session_factory() as db:
            service = RetentionPolicyService(db)
            return await service.policies_for_tenant(self.tenant_id, DATA_TYPES)

    async def run_compression_pass(self) -> int:
        """Compress eligible chunks of every table. Returns chunks compressed."""
        started = time.perf_counter()
        failed = False
        compressed = 0
        try:
            policies = await self._load_policies()
            for data_type, policy in policies.items():
                compressed += await self.storage.compression[data_type].scan_and_compress(policy)
        except Exception:
            failed = True
            raise
        finally:
            observe_maintenance("compression", time.perf_counter() - started, failed)
            self._publish_chunk_counts()

        logger.info("Compression pass finished", tenant_id=self.tenant_id, compressed_chunks=compressed)
        return compressed

    async def run_retention_pass(self) -> int:
        """Apply retention to every table. Returns chunks dropped."""
        started = time.perf_counter()
        failed = False
        dropped = 0
        try:
            policies = await self._load_policies()
            for data_type, policy in policies.items():
                dropped += await self.storage.retention[data_type].apply_policy(policy)
        except Exception:
            failed = True
            raise
        finally:
            observe_maintenance("retention", time.perf_counter() - started, failed)
            self._publish_chunk_counts()

        logger.info("Retention pass finished", tenant_id=self.tenant_id, dropped_chunks=dropped)
        return dropped

    async def run_refresh_pass(self) -> int:
        """Refresh every continuous aggregate. Returns buckets changed."""
        started = time.perf_counter()
        failed = False
        changed = 0
        try:
            for name in self.storage.aggregates.names:
                changed += await self.storage.aggregates.refresh(name)
        except Exception:
            failed = True
            raise
        finally:
            observe_maintenance("refresh", time.perf_counter() - started, failed)

        logger.info("Aggregate refresh pass finished", changed_buckets=changed)
        return changed

    async def run_task(self, name: str) -> int:
        """Run one pass on demand (admin API)."""
        return await self._passes[name]()

    def _publish_chunk_counts(self) -> None:
        for name, table in self.storage.tables.items():
            counts = {ChunkState.UNCOMPRESSED.value: 0, ChunkState.COMPRESSED.value: 0}
            for info in table.chunks(include_sizes=False):
                counts[info.state.value] += 1
            set_chunk_counts(name, counts)
