"""
Unit tests for the certificate renewal scheduler.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from core.cert_manager import RenewalSweepResult
from core.cert_scheduler import CertScheduler


@pytest.fixture
def cert_manager():
    manager = MagicMock()
    manager.check_renewals = AsyncMock(return_value=RenewalSweepResult(checked=2, renewed=["abc"]))
    return manager


class TestCertScheduler:
    """Test scheduling and manual sweeps."""

    @pytest.mark.asyncio
    async def test_start_registers_jobs(self, cert_manager):
        scheduler = CertScheduler(cert_manager=cert_manager)
        await scheduler.start()
        try:
            jobs = scheduler.get_next_run_times()
            assert set(jobs) == {"cert_renewal_check", "cert_initial_check"}
            assert jobs["cert_renewal_check"]["next_run"] is not None
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, cert_manager):
        scheduler = CertScheduler(cert_manager=cert_manager)
        await scheduler.start()
        try:
            await scheduler.start()
            assert len(scheduler.get_next_run_times()) == 2
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_trigger_returns_summary(self, cert_manager):
        scheduler = CertScheduler(cert_manager=cert_manager)

        result = await scheduler.trigger_renewal_check("ops@example.com")

        cert_manager.check_renewals.assert_awaited_once_with("ops@example.com")
        assert result == {"status": "completed", "checked": 2, "renewed": ["abc"], "failed": [], "skipped": []}

    @pytest.mark.asyncio
    async def test_sweep_errors_are_contained(self, cert_manager):
        cert_manager.check_renewals.side_effect = RuntimeError("database locked")
        scheduler = CertScheduler(cert_manager=cert_manager)

        await scheduler._check_renewals()

        cert_manager.check_renewals.assert_awaited_once()
