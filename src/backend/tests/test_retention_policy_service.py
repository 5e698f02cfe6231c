"""Tests for RetentionPolicyService."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from vdrs.models.retention_policy import RetentionPolicyRecord
from vdrs.services.retention_policy_service import RetentionPolicyService
from vdrs.storage.errors import PolicyViolationError
from vdrs.storage.retention import (
    ANOMALY_DATA_TYPE,
    DATA_TYPES,
    DEVICE_STATUS_DATA_TYPE,
    TELEMETRY_DATA_TYPE,
)


class TestRetentionPolicyService:
    """Tests for retention policy administration."""

    @pytest.mark.asyncio
    async def test_seed_defaults_once(self, db_session: AsyncSession):
        service = RetentionPolicyService(db_session)

        assert await service.seed_defaults() == 9
        assert await service.seed_defaults() == 0

        policies = await service.list_policies()
        assert len(policies) == 9

    @pytest.mark.asyncio
    async def test_list_for_one_tenant(self, db_session: AsyncSession):
        service = RetentionPolicyService(db_session)
        await service.seed_defaults()

        policies = await service.list_policies("government")

        assert [(p.data_type, p.retention_days) for p in policies] == [
            (DEVICE_STATUS_DATA_TYPE, 1095),
            (ANOMALY_DATA_TYPE, 3650),
            (TELEMETRY_DATA_TYPE, 3650),
        ]

    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, db_session: AsyncSession):
        service = RetentionPolicyService(db_session)

        created = await service.upsert_policy("acme", TELEMETRY_DATA_TYPE, 90, 7, "Internal audit")
        # The session hands back the same row object on update
        created_retention = created.retention_days
        updated = await service.upsert_policy("acme", TELEMETRY_DATA_TYPE, 180, 14)

        assert created_retention == 90
        assert updated.retention_days == 180
        assert updated.compression_days == 14
        assert updated.regulatory_requirement is None
        assert len(await service.list_policies("acme")) == 1

        stored = await service.get_policy("acme", TELEMETRY_DATA_TYPE)
        assert (stored.retention_days, stored.compression_days) == (180, 14)

    @pytest.mark.asyncio
    async def test_upsert_rejects_compression_after_retention(self, db_session: AsyncSession):
        service = RetentionPolicyService(db_session)

        with pytest.raises(PolicyViolationError):
            await service.upsert_policy("acme", TELEMETRY_DATA_TYPE, 7, 30)

        assert await service.get_policy("acme", TELEMETRY_DATA_TYPE) is None

    @pytest.mark.asyncio
    async def test_upsert_rejects_unknown_data_type(self, db_session: AsyncSession):
        service = RetentionPolicyService(db_session)

        with pytest.raises(PolicyViolationError):
            await service.upsert_policy("acme", "engine_logs", 30, 7)

    @pytest.mark.asyncio
    async def test_policy_for_falls_back(self, db_session: AsyncSession):
        service = RetentionPolicyService(db_session)

        # Nothing stored: seeded constants
        assert (await service.policy_for("acme", TELEMETRY_DATA_TYPE)).retention_days == 730

        await service.upsert_policy("default", TELEMETRY_DATA_TYPE, 400, 10)
        assert (await service.policy_for("acme", TELEMETRY_DATA_TYPE)).retention_days == 400

        await service.upsert_policy("acme", TELEMETRY_DATA_TYPE, 30, 3)
        assert (await service.policy_for("acme", TELEMETRY_DATA_TYPE)).retention_days == 30

    @pytest.mark.asyncio
    async def test_invalid_stored_row_ignored(self, db_session: AsyncSession):
        db_session.add(RetentionPolicyRecord(
            tenant_id="broken", data_type=TELEMETRY_DATA_TYPE, retention_days=5, compression_days=10,
        ))
        await db_session.commit()
        service = RetentionPolicyService(db_session)

        policy = await service.policy_for("broken", TELEMETRY_DATA_TYPE)

        assert policy.retention_days == 730

    @pytest.mark.asyncio
    async def test_policies_for_tenant(self, db_session: AsyncSession):
        service = RetentionPolicyService(db_session)

        policies = await service.policies_for_tenant("default", DATA_TYPES)

        assert set(policies) == set(DATA_TYPES)
        assert policies[ANOMALY_DATA_TYPE].retention_days == 1825
        assert policies[DEVICE_STATUS_DATA_TYPE].retention_days == 365
        assert policies[DEVICE_STATUS_DATA_TYPE].compression_days == 3
