"""Tests for the scheduled free-allowance refresh."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from multichat.services.allowance import JOB_ID, AllowanceRefreshService
from multichat.storage.models import utcnow


class TestAllowanceRefreshService:
    @pytest.mark.asyncio
    async def test_start_schedules_interval_job(self, ledger, billing_config):
        service = AllowanceRefreshService(ledger, billing_config)

        await service.start()
        try:
            assert await service.health_check()
            assert service._scheduler.get_job(JOB_ID) is not None
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_run_once_resets_due_balances(self, ledger, billing_config, db):
        await ledger.debit("alice", 90)
        await db.conn.execute(
            "UPDATE balances SET free_last_reset_at = ? WHERE user_id = ?",
            ((utcnow() - timedelta(days=45)).isoformat(), "alice"),
        )
        await db.conn.commit()
        service = AllowanceRefreshService(ledger, billing_config)

        assert await service.run_once() == 1
        assert (await ledger.get_balance("alice")).free_remaining == 100

    @pytest.mark.asyncio
    async def test_run_once_logs_and_survives_errors(self, billing_config):
        ledger = AsyncMock()
        ledger.refresh_free_allowance.side_effect = RuntimeError("db locked")
        service = AllowanceRefreshService(ledger, billing_config)

        assert await service.run_once() == 0
