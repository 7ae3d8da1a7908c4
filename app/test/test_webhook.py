import asyncio
import json

import pytest
from fastapi.testclient import TestClient

import webhook
from crud import DataUnavailable, save_sample
from database import get_db
from main import app
from models import SampleKind
from trackdata import NOW, at, seed_device


class FakeRedis:
    def __init__(self):
        self.added = []

    def xadd(self, stream, fields):
        self.added.append((stream, fields))
        return b"1-0"


@pytest.fixture
def stream(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(webhook, "r", fake)
    return fake


@pytest.fixture
def client(session_factory):
    async def _get_db():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------
#                    POST /gps
# ---------------------------------------------------
def test_track_report_is_queued(client, stream):
    res = client.post("/gps", json={"dev": "truck-7", "lat": "47.4979", "lon": 19.0402})
    assert res.status_code == 200
    assert res.json() == {"ok": True}

    (name, fields), = stream.added
    assert name == "gps"
    record = json.loads(fields["data"])
    assert record["dev"] == "truck-7"
    assert (record["lat"], record["lon"]) == (47.4979, 19.0402)
    assert "created" in record


def test_tracker_event_is_queued(client, stream):
    res = client.post("/gps", json={"dev": "truck-7", "tracker": "stop"})
    assert res.status_code == 200
    record = json.loads(stream.added[0][1]["data"])
    assert record["tracker"] == "stop"
    assert "lat" not in record


@pytest.mark.parametrize("payload", [
    {"lat": 1, "lon": 2},
    {"dev": "", "lat": 1, "lon": 2},
    {"dev": "x" * 101, "lat": 1, "lon": 2},
    {"dev": 12, "lat": 1, "lon": 2},
    {"dev": "truck-7", "tracker": "pause"},
    {"dev": "truck-7", "lon": 2},
    {"dev": "truck-7", "lat": "north", "lon": 2},
    {"dev": "truck-7", "lat": 91, "lon": 2},
    {"dev": "truck-7", "lat": 1, "lon": -180.01},
])
def test_invalid_reports_rejected(client, stream, payload):
    res = client.post("/gps", json=payload)
    assert res.status_code == 400
    assert stream.added == []


# ---------------------------------------------------
#          GET /devices/{id}/records?loc=lat,lng
# ---------------------------------------------------
def _store(session_factory, area_size, points):
    async def scenario():
        _, device = await seed_device(session_factory, area_size=area_size)
        async with session_factory() as db:
            for p in points:
                await save_sample(db, device, SampleKind.TRACK, p, NOW)
        return device

    return asyncio.run(scenario())


def test_search_records_near_location(client, session_factory):
    near, far = at(10_100.5, 3_500.5), at(15_000.5, 3_500.5)
    device = _store(session_factory, 1000, [near, far])
    query = at(9_900.5, 3_500.5)

    res = client.get(f"/devices/{device.id}/records", params={"loc": f"{query.lat},{query.lng}"})
    assert res.status_code == 200
    body = res.json()
    assert body["device_id"] == device.id
    assert body["search_precision"] == 500
    assert [(r["lat"], r["lng"]) for r in body["records"]] == [(near.lat, near.lng)]


def test_search_unknown_device(client):
    res = client.get("/devices/999/records", params={"loc": "47.5,19.04"})
    assert res.status_code == 404


def test_search_not_indexed_device(client, session_factory):
    device = _store(session_factory, 0, [at(0.5, 0.5)])
    res = client.get(f"/devices/{device.id}/records", params={"loc": "0,0"})
    assert res.status_code == 409


@pytest.mark.parametrize("loc", ["47.5", "47.5;19.0", "north,east", "95,19"])
def test_search_bad_location(client, loc):
    res = client.get("/devices/1/records", params={"loc": loc})
    assert res.status_code == 400


def test_search_store_unavailable(client, session_factory, monkeypatch):
    device = _store(session_factory, 1000, [])

    async def broken(*args, **kw):
        raise DataUnavailable("db down")

    monkeypatch.setattr(webhook, "search_near", broken)
    res = client.get(f"/devices/{device.id}/records", params={"loc": "0.01,0.01"})
    assert res.status_code == 503
