# worker.py
import redis
import json
import asyncio
from typing import Optional

from database import AsyncSessionLocal
from models import Sample, SampleKind
from crud import get_device_by_rand_id, prune_expired_samples, save_sample, to_dt
from config import AREA_CODE_CACHE_SIZE, REDIS_URL
from geo_calc import AreaCodeCache, GeoPoint
from tenacity import retry, wait_exponential_jitter, stop_after_attempt, retry_if_exception_type
from sqlalchemy.exc import DBAPIError, OperationalError

from logging_config import get_logger

# ------------ Variable Declaration -----------
logger = get_logger("worker", "worker.log")

r = redis.from_url(REDIS_URL, decode_responses=False)

STREAM = "gps"
GROUP = "worker-group"
CONSUMER = "worker-1"

TRACKER_KINDS = {"start": SampleKind.START, "stop": SampleKind.STOP}

# Parked devices keep reporting the same fix
area_code_cache = AreaCodeCache(AREA_CODE_CACHE_SIZE)


# ---------- Ensure Consumer Group ----------
async def init_group():
    try:
        # Start reading only NEW messages from now → id="$", create stream if missing
        r.xgroup_create(STREAM, GROUP, id="$", mkstream=True)
        logger.info("Consumer group created.")
    except redis.exceptions.ResponseError as e:
        if "BUSYGROUP" in str(e):
            logger.info("Consumer group already exists.")
        else:
            raise


# ---------- Save logic ----------
@retry(
    wait=wait_exponential_jitter(initial=2, max=30),
    stop=stop_after_attempt(7),
    retry=retry_if_exception_type((DBAPIError, OperationalError, OSError)),
)
async def save_with_retry(db, payload: dict, cache: Optional[AreaCodeCache] = None) -> Optional[Sample]:
    rand_id = payload["dev"]
    try:
        return await process_payload(db, payload, cache)
    except Exception as e:
        logger.exception(f"Failure in save_with_retry for device {rand_id}: {e}")
        await db.rollback()
        raise


def check_payload(payload: dict) -> None:
    """Raises KeyError, ValueError or TypeError for a record that can never be stored."""
    payload["dev"]
    if to_dt(payload["created"]) is None:
        raise ValueError(f"invalid created time {payload['created']!r}")

    tracker = payload.get("tracker")
    if tracker:
        TRACKER_KINDS[tracker]
    else:
        float(payload["lat"])
        float(payload["lon"])


async def process_payload(db, payload: dict, cache: Optional[AreaCodeCache] = None) -> Optional[Sample]:
    """
    Persist one validated webhook record and apply the device's logs retention,
    both in one transaction.
    Unknown device ids are dropped silently (the tracker is never told).
    """
    device = await get_device_by_rand_id(db, payload["dev"])
    if device is None:
        logger.warning(f"Skipping sample of unknown device id {payload['dev']!r}")
        return None

    tracker = payload.get("tracker")
    if tracker:
        kind, point = TRACKER_KINDS[tracker], None
    else:
        kind, point = SampleKind.TRACK, GeoPoint(float(payload["lat"]), float(payload["lon"]))

    created = to_dt(payload["created"])
    sample = await save_sample(db, device, kind, point, created, cache=cache, commit=False)
    await prune_expired_samples(db, device, now=created, commit=False)
    await db.commit()
    return sample


# ---------- Main Worker Loop ----------
async def worker():
    logger.info("Worker starting, initializing consumer group...")
    await init_group()

    logger.info("Worker listening for Redis Stream messages...")

    while True:
        try:
            # Blocking read via executor (call will block the threadpool, not the event loop)
            msgs = await asyncio.get_event_loop().run_in_executor(
                None,
                r.xreadgroup,
                GROUP,
                CONSUMER,
                {STREAM: ">"},
                100,
                5000  # block 5 seconds
            )

            if msgs:
                total = sum(len(rec[1]) for rec in msgs)
                logger.info(f"Fetched {total} records from stream")

            for _, records in msgs or []:
                for _id, fields in records:
                    try:
                        try:
                            payload = json.loads(fields[b"data"])
                            check_payload(payload)
                        except (ValueError, KeyError, TypeError) as je:
                            logger.exception(f"Malformed record {_id}: {je}")
                            # ack & delete to avoid poison-pill
                            r.xack(STREAM, GROUP, _id)
                            r.xdel(STREAM, _id)
                            continue

                        async with AsyncSessionLocal() as db:
                            await save_with_retry(db, payload, area_code_cache)

                        r.xack(STREAM, GROUP, _id)
                        r.xdel(STREAM, _id)

                    except Exception as e:
                        # DO NOT ack/delete on processing failure so message can be retried
                        logger.exception(f"Error processing record ID {_id}: {e}")

        except Exception as e:
            logger.exception(f"Worker loop encountered an error: {e}")

        # small sleep to avoid tight loop in case of unexpected fast failures
        await asyncio.sleep(0.1)


if __name__ == "__main__":
    logger.info("Worker starting up...")
    asyncio.run(worker())
