import redis, json, time, asyncio
import datetime as dt
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from config import REDIS_URL
from crud import DataUnavailable, get_device, search_near
from database import get_db
from geo_calc import GeoPoint
from logging_config import get_logger

# Redis connection (binary mode)
r = redis.from_url(REDIS_URL, decode_responses=False)

STREAM = "gps"
MAX_RAND_ID_LEN = 100
TRACKER_EVENTS = ("start", "stop")

router = APIRouter()
logger = get_logger("webhook", "webhook.log")


def _bad_request(msg: str):
    logger.error(msg)
    raise HTTPException(status_code=400, detail=msg)


def parse_point(lat, lon) -> GeoPoint:
    """Raises HTTPException(400) for missing, non-numeric or out of range coordinates."""
    try:
        lat = float(lat)
    except (TypeError, ValueError):
        _bad_request("Missing or invalid latitude (lat) parameter!")
    try:
        lon = float(lon)
    except (TypeError, ValueError):
        _bad_request("Missing or invalid longitude (lon) parameter!")

    point = GeoPoint(lat, lon)
    if not point.valid():
        _bad_request(
            "Invalid geopoint specified by latitude (lat) and longitude (lon) parameters "
            "(valid range: [-90, 90] latitude and [-180, 180] longitude)!"
        )
    return point


def validate_gps_payload(payload: dict) -> dict:
    """Normalized stream record: {"dev", "tracker"} or {"dev", "lat", "lon"}, plus "created"."""
    rand_id = payload.get("dev")
    if not rand_id:
        _bad_request("Missing Device ID (dev) parameter!")
    # It ends up in cache keys and log lines
    if not isinstance(rand_id, str) or len(rand_id) > MAX_RAND_ID_LEN:
        _bad_request("Invalid Device ID (dev) parameter!")

    record = {"dev": rand_id}
    tracker = payload.get("tracker")
    if tracker:
        if tracker not in TRACKER_EVENTS:
            _bad_request("Invalid tracker parameter!")
        record["tracker"] = tracker
    else:
        point = parse_point(payload.get("lat"), payload.get("lon"))
        record["lat"], record["lon"] = point.lat, point.lng

    record["created"] = dt.datetime.now(dt.timezone.utc).isoformat()
    return record


# ---------------------------------------------------
#                GPS TRACKER REPORTS
# ---------------------------------------------------
@router.post("/gps")
async def gps_hook(payload: dict):
    record = validate_gps_payload(payload)

    json_str = json.dumps(record, ensure_ascii=False)

    # Push to Redis inside executor (non-blocking)
    await asyncio.get_event_loop().run_in_executor(
        None,
        r.xadd,
        STREAM,
        {"ts": time.time(), "data": json_str},
    )

    logger.info(f"Sample queued for device {record['dev']}")
    return {"ok": True}


# ---------------------------------------------------
#         SEARCH RECORDS BY LOCATION
# ---------------------------------------------------
@router.get("/devices/{device_id}/records")
async def search_records(device_id: int, loc: str, limit: int = 50, db: AsyncSession = Depends(get_db)):
    coords = loc.strip().split(",")
    if len(coords) != 2:
        _bad_request("Invalid Location!")
    point = parse_point(coords[0], coords[1])

    device = await get_device(db, device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    if not device.indexed:
        raise HTTPException(status_code=409, detail="Device is not indexed (not searchable by location)")

    try:
        rows = await search_near(db, device, point, limit=max(1, min(limit, 500)))
    except DataUnavailable:
        raise HTTPException(status_code=503, detail="Records temporarily unavailable")

    logger.info(f"Location search device={device_id} loc={point} -> {len(rows)} record(s)")
    return {
        "device_id": device_id,
        "search_precision": device.search_precision,
        "records": [
            {"id": s.id, "lat": s.lat, "lng": s.lng, "created": s.created.isoformat()}
            for s in rows
        ],
    }
