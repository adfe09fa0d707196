"""
Expiry sweep tests.

Focus:
- one sweep drops lapsed rate-limit windows and expired store keys left by
  abandoned authorize requests
- live windows and keys survive a sweep
- the app lifespan runs the sweep periodically
"""
from __future__ import annotations

import anyio
import pytest

from mail_auth.ratelimit import RateLimiter
from mail_auth.stores import MemoryBackend


@pytest.fixture
def swept_services(fake_as, oauth_env, clock):
    from web import main

    return main.build_services(
        oauth_env,
        backend=MemoryBackend(clock=clock),
        limiter=RateLimiter(clock_ms=clock.ms),
    )


def test_abandoned_authorize_requests_are_swept(swept_services, clock):
    from web.main import sweep_expired

    for i in range(200):
        swept_services.auth_code.start(f"198.51.100.{i}")
    assert len(swept_services.limiter._windows) == 200
    assert len(swept_services.backend._data) == 400  # state + dedup entry per client

    clock.advance(2 * 3600)
    assert sweep_expired(swept_services) == (200, 400)
    assert swept_services.limiter._windows == {}
    assert swept_services.backend._data == {}


def test_sweep_keeps_live_entries(swept_services, clock):
    from web.main import sweep_expired

    swept_services.auth_code.start("198.51.100.1")
    clock.advance(2 * 3600)
    swept_services.auth_code.start("198.51.100.2")

    assert sweep_expired(swept_services) == (1, 2)
    assert list(swept_services.limiter._windows) == ["oauth_authorize:198.51.100.2"]
    assert len(swept_services.backend._data) == 2


@pytest.mark.anyio
async def test_lifespan_runs_periodic_sweep(monkeypatch, swept_services, clock):
    from web import main

    swept_services.backend.put("oauth_state:abandoned", "x", ttl_seconds=60)
    clock.advance(120)
    monkeypatch.setattr(main, "SWEEP_INTERVAL_SECONDS", 0.01)
    monkeypatch.setattr(main.app.state, "services", swept_services)

    async with main.lifespan(main.app):
        with anyio.fail_after(2):
            while swept_services.backend._data:
                await anyio.sleep(0.01)
    assert swept_services.backend._data == {}
