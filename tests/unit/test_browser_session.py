import time

import pytest
from structlog.testing import capture_logs

from testsmith.core.config import ValidationConfig
from testsmith.tools.browser import PlaywrightSession


def unstarted_session(step_timeout_ms: int) -> PlaywrightSession:
    # Duration waits never touch the page, so no browser is launched
    return PlaywrightSession("http://app.test", validation_config=ValidationConfig(step_timeout_ms=step_timeout_ms))


@pytest.mark.asyncio
async def test_long_duration_wait_is_clamped_with_a_warning():
    session = unstarted_session(100)

    with capture_logs() as logs:
        started = time.monotonic()
        await session.wait_for(5000)
        elapsed = time.monotonic() - started

    assert elapsed < 2
    clamped = [e for e in logs if e["event"] == "wait_clamped"]
    assert len(clamped) == 1
    assert clamped[0]["log_level"] == "warning"
    assert clamped[0]["requested_ms"] == 5000
    assert clamped[0]["step_timeout_ms"] == 100


@pytest.mark.asyncio
async def test_short_duration_wait_logs_nothing():
    session = unstarted_session(1000)

    with capture_logs() as logs:
        await session.wait_for(100)

    assert [e for e in logs if e["event"] == "wait_clamped"] == []
