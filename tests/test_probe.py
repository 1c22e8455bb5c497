from __future__ import annotations

import pytest

from octodoc.resilience.probe import HealthProbe


async def trip_primary(engine, primary_backend) -> None:
    primary_backend.fail_always()
    await engine.sessions.start("504")
    assert engine.mode.is_active()


@pytest.mark.asyncio
async def test_probe_is_idle_while_healthy(engine):
    assert await engine.probe.probe_once() == {}


@pytest.mark.asyncio
async def test_probe_restores_recovered_dependency(engine, scheduler, primary_backend):
    await trip_primary(engine, primary_backend)
    engine.probe.start()

    await scheduler.advance(15)
    assert engine.mode.is_active()
    assert engine.tracker.health("primary-store").consecutive_failures == 4

    primary_backend.recover()
    await scheduler.advance(15)

    assert not engine.mode.is_active()
    assert engine.tracker.health("primary-store").consecutive_failures == 0
    assert engine.probe.running
    engine.probe.stop()
    assert not engine.probe.running


@pytest.mark.asyncio
async def test_probe_only_pings_failing_dependencies(engine, primary_backend, cache_backend):
    await trip_primary(engine, primary_backend)
    cache_calls = cache_backend.calls

    results = await engine.probe.probe_once()

    assert results == {"primary-store": False}
    assert cache_backend.calls == cache_calls


@pytest.mark.asyncio
async def test_override_suppresses_probing(engine, primary_backend):
    await trip_primary(engine, primary_backend)
    engine.mode.set_override(True, "offline showcase")
    primary_backend.recover()
    calls = primary_backend.calls

    assert await engine.probe.probe_once() == {}
    assert primary_backend.calls == calls
    assert engine.mode.is_active()


def test_probe_requires_stores(scheduler):
    with pytest.raises(ValueError):
        HealthProbe([], scheduler)
