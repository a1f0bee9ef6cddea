"""Tests for the daily verification quota gate."""

import pytest

from idverify_bot.admission import DailyLimitGate
from idverify_bot.errors import BackendError


@pytest.mark.asyncio
@pytest.mark.parametrize(("count", "exceeded"), [(0, False), (24, False), (25, True), (40, True)])
async def test_limit_is_reached_at_threshold(backend, count, exceeded):
    """Test limit is reached at threshold."""
    backend.get_recent_verification_count.return_value = count

    assert await DailyLimitGate(backend, 25).is_exceeded() is exceeded


@pytest.mark.asyncio
async def test_counter_failure_fails_open(backend, caplog):
    """Test counter failure fails open."""
    backend.get_recent_verification_count.side_effect = BackendError("down")

    assert await DailyLimitGate(backend, 25).is_exceeded() is False
    assert "Failed to check daily limit" in caplog.text


@pytest.mark.asyncio
async def test_zero_limit_queues_everyone(backend):
    """Test a zero limit sends every request to manual approval."""
    backend.get_recent_verification_count.return_value = 0

    assert await DailyLimitGate(backend, 0).is_exceeded() is True
