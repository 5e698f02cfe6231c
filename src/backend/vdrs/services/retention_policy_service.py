"""Retention policy service for the control table."""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vdrs.models.retention_policy import RetentionPolicyRecord
from vdrs.storage.errors import PolicyViolationError
from vdrs.storage.retention import DEFAULT_POLICIES, RetentionPolicy, default_policy

logger = structlog.get_logger()


class RetentionPolicyService:
    """Service for retention policy administration."""

    def __init__(self, db: AsyncSession):
        """Initialize retention policy service with database session."""
        self.db = db

    async def list_policies(self, tenant_id: str | None = None) -> list[RetentionPolicyRecord]:
        """List policies, optionally for one tenant."""
        query = select(RetentionPolicyRecord)
        if tenant_id:
            query = query.where(RetentionPolicyRecord.tenant_id == tenant_id)
        query = query.order_by(RetentionPolicyRecord.tenant_id, RetentionPolicyRecord.data_type)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_policy(self, tenant_id: str, data_type: str) -> RetentionPolicyRecord | None:
        result = await self.db.execute(
            select(RetentionPolicyRecord).where(
                RetentionPolicyRecord.tenant_id == tenant_id,
                RetentionPolicyRecord.data_type == data_type,
            )
        )
        return result.scalar_one_or_none()

    async def upsert_policy(
        self,
        tenant_id: str,
        data_type: str,
        retention_days: int,
        compression_days: int,
        regulatory_requirement: str | None = None,
    ) -> RetentionPolicyRecord:
        """Create or replace a policy.

        Raises:
            PolicyViolationError: compression_days exceeds retention_days, or
                the data type is unknown.
        """
        # Builds the domain policy first so invalid combinations never reach the table
        RetentionPolicy.from_days(tenant_id, data_type, retention_days, compression_days, regulatory_requirement)

        record = await self.get_policy(tenant_id, data_type)
        if record is None:
            record = RetentionPolicyRecord(tenant_id=tenant_id, data_type=data_type)
            self.db.add(record)

        record.retention_days = retention_days
        record.compression_days = compression_days
        record.regulatory_requirement = regulatory_requirement

        await self.db.commit()
        await self.db.refresh(record)

        logger.info(
            "Retention policy updated",
            tenant_id=tenant_id,
            data_type=data_type,
            retention_days=retention_days,
            compression_days=compression_days,
        )
        return record

    async def seed_defaults(self) -> int:
        """Seed default policies that don't exist yet. Returns how many were added."""
        added = 0
        for policy in DEFAULT_POLICIES:
            if await self.get_policy(policy.tenant_id, policy.data_type) is None:
                self.db.add(
                    RetentionPolicyRecord(
                        tenant_id=policy.tenant_id,
                        data_type=policy.data_type,
                        retention_days=policy.retention_days,
                        compression_days=policy.compression_days,
                        regulatory_requirement=policy.regulatory_requirement,
                    )
                )
                added += 1

        if added:
            await self.db.commit()
            logger.info("Default retention policies seeded", count=added)
        return added

    async def policy_for(self, tenant_id: str, data_type: str) -> RetentionPolicy:
        """Effective policy for a tenant: its own row, else the default tenant's, else the seed."""
        for candidate in (tenant_id, "default"):
            record = await self.get_policy(candidate, data_type)
            if record is not None:
                try:
                    return record.to_policy()
                except PolicyViolationError as e:
                    logger.error(
                        "Stored retention policy is invalid",
                        tenant_id=candidate,
                        data_type=data_type,
                        error=e.message,
                    )
        return default_policy(tenant_id, data_type)

    async def policies_for_tenant(self, tenant_id: str, data_types: tuple[str, ...]) -> dict[str, RetentionPolicy]:
        return {data_type: await self.policy_for(tenant_id, data_type) for data_type in data_types}
