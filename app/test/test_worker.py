import asyncio
import datetime as dt

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from tenacity import RetryError, stop_after_attempt, wait_none

import worker
from crud import fetch_recent, prune_expired_samples
from geo_calc import AreaCodeCache, area_codes_for_point
from models import Sample, SampleAreaCode, SampleKind
from trackdata import NOW, seed_device
from worker import check_payload, process_payload, save_with_retry


def run(coro):
    return asyncio.run(coro)


def test_unknown_device_is_dropped(session_factory):
    async def scenario():
        await seed_device(session_factory, rand_id="known")
        async with session_factory() as db:
            return await process_payload(db, {"dev": "ghost", "lat": 1.0, "lon": 2.0, "created": NOW.isoformat()})

    assert run(scenario()) is None


def test_track_and_tracker_events_saved(session_factory):
    cache = AreaCodeCache(maxsize=16)

    async def scenario():
        _, device = await seed_device(session_factory, area_size=1000, rand_id="truck-7")
        async with session_factory() as db:
            await process_payload(db, {"dev": "truck-7", "tracker": "start",
                                       "created": (NOW - dt.timedelta(seconds=30)).isoformat()}, cache)
            track = await process_payload(db, {"dev": "truck-7", "lat": 47.4979, "lon": 19.0402,
                                               "created": NOW.isoformat()}, cache)
            return track, await fetch_recent(db, device.id)

    track, window = run(scenario())
    assert track.point.lat == 47.4979
    assert [s.sample_kind for s in window] == [SampleKind.TRACK, SampleKind.START]
    assert cache.misses == 1


def test_retention_applied_relative_to_the_sample_time(session_factory):
    async def scenario():
        _, device = await seed_device(session_factory, rand_id="old-timer", logs_retention=1)
        async with session_factory() as db:
            for days in (3, 2, 0):
                created = (NOW - dt.timedelta(days=days)).isoformat()
                await process_payload(db, {"dev": "old-timer", "lat": 1.0, "lon": 1.0, "created": created})
            return await fetch_recent(db, device.id)

    window = run(scenario())
    assert len(window) == 1


# ---------------------------------------------------
#                 Retries / transactions
# ---------------------------------------------------
REPORT = {"dev": "trk-1", "lat": 47.5, "lon": 19.0, "created": NOW.isoformat()}


def _flaky_prune(monkeypatch, failures):
    """Retention step that raises a store error on its first `failures` calls."""
    calls = []

    async def prune(db, device, now=None, commit=True):
        calls.append(now)
        if len(calls) <= failures:
            raise OperationalError("DELETE FROM samples", {}, Exception("database is locked"))
        return await prune_expired_samples(db, device, now=now, commit=commit)

    monkeypatch.setattr(worker, "prune_expired_samples", prune)
    return calls


async def _count(factory, model):
    async with factory() as db:
        res = await db.execute(select(func.count()).select_from(model))
        return res.scalar_one()


def test_retried_report_is_stored_once(session_factory, monkeypatch):
    calls = _flaky_prune(monkeypatch, failures=1)
    save_fast = save_with_retry.retry_with(wait=wait_none())

    async def scenario():
        await seed_device(session_factory, area_size=1000, logs_retention=30)
        async with session_factory() as db:
            sample = await save_fast(db, dict(REPORT), AreaCodeCache(maxsize=4))
        return sample, await _count(session_factory, Sample), await _count(session_factory, SampleAreaCode)

    sample, samples, codes = run(scenario())
    assert len(calls) == 2
    assert sample.point.lat == 47.5
    assert samples == 1
    assert codes == len(area_codes_for_point(1000, sample.point))


def test_retry_gives_up_after_last_attempt(session_factory, monkeypatch):
    calls = _flaky_prune(monkeypatch, failures=100)
    save_fast = save_with_retry.retry_with(wait=wait_none(), stop=stop_after_attempt(3))

    async def scenario():
        await seed_device(session_factory, area_size=1000, logs_retention=30)
        async with session_factory() as db:
            with pytest.raises(RetryError):
                await save_fast(db, dict(REPORT))
        return await _count(session_factory, Sample), await _count(session_factory, SampleAreaCode)

    assert run(scenario()) == (0, 0)
    assert len(calls) == 3


def test_non_store_errors_are_not_retried(session_factory, monkeypatch):
    calls = []

    async def prune(db, device, now=None, commit=True):
        calls.append(now)
        raise RuntimeError("bug")

    monkeypatch.setattr(worker, "prune_expired_samples", prune)
    save_fast = save_with_retry.retry_with(wait=wait_none())

    async def scenario():
        await seed_device(session_factory, rand_id="trk-1")
        async with session_factory() as db:
            with pytest.raises(RuntimeError):
                await save_fast(db, dict(REPORT))
        return await _count(session_factory, Sample)

    assert run(scenario()) == 0
    assert len(calls) == 1


# ---------------------------------------------------
#                 Stream record checks
# ---------------------------------------------------
@pytest.mark.parametrize("payload", [
    {"dev": "trk-1", "lat": 1.0, "lon": 2.0, "created": NOW.isoformat()},
    {"dev": "trk-1", "tracker": "start", "created": NOW.isoformat()},
])
def test_storable_records_pass(payload):
    check_payload(payload)


@pytest.mark.parametrize("payload", [
    {"lat": 1.0, "lon": 2.0, "created": NOW.isoformat()},
    {"dev": "trk-1", "lat": 1.0, "lon": 2.0},
    {"dev": "trk-1", "lat": 1.0, "lon": 2.0, "created": "yesterday"},
    {"dev": "trk-1", "lat": 1.0, "lon": 2.0, "created": None},
    {"dev": "trk-1", "lon": 2.0, "created": NOW.isoformat()},
    {"dev": "trk-1", "lat": "north", "lon": 2.0, "created": NOW.isoformat()},
    {"dev": "trk-1", "lat": None, "lon": 2.0, "created": NOW.isoformat()},
    {"dev": "trk-1", "tracker": "pause", "created": NOW.isoformat()},
    ["trk-1", 1.0, 2.0],
])
def test_unstorable_records_rejected(payload):
    with pytest.raises((KeyError, ValueError, TypeError)):
        check_payload(payload)
