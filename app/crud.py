from typing import Dict, Iterable, List, Optional
import datetime as dt

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError

from config import WINDOW_SIZE
from geo_calc import AreaCodeCache, GeoPoint, area_code_for_point, area_codes_for_point, within
from models import Account, AlertPair, Device, Sample, SampleAreaCode, SampleKind
from logging_config import get_logger

logger = get_logger("crud", "crud.log")

UTC = dt.timezone.utc

# Candidates fetched per page of an exact location search, per requested record
SEARCH_BATCH_FACTOR = 4


class DataUnavailable(Exception):
    """The record store could not be read."""


def to_dt(v):
    if isinstance(v, dt.datetime):
        # ensure tz-aware
        return v if v.tzinfo else v.replace(tzinfo=UTC)

    if isinstance(v, str):
        dt_obj = dt.datetime.fromisoformat(v)
        return dt_obj if dt_obj.tzinfo else dt_obj.replace(tzinfo=UTC)

    if isinstance(v, (int, float)):
        return dt.datetime.fromtimestamp(v, tz=UTC)

    return None


# =====================================================================
# Devices / accounts / pairs
# =====================================================================
async def get_device(db: AsyncSession, device_id: int) -> Optional[Device]:
    return await db.get(Device, device_id)


async def get_device_by_rand_id(db: AsyncSession, rand_id: str) -> Optional[Device]:
    res = await db.execute(select(Device).where(Device.rand_id == rand_id))
    return res.scalar_one_or_none()


async def load_account(db: AsyncSession, account_id: int) -> Optional[Account]:
    return await db.get(Account, account_id)


async def device_names(db: AsyncSession, device_ids: Iterable[int]) -> Dict[int, str]:
    ids = [d for d in device_ids if d is not None]
    if not ids:
        return {}
    res = await db.execute(select(Device.id, Device.name).where(Device.id.in_(ids)))
    return {row.id: row.name for row in res}


async def list_alert_pairs(db: AsyncSession) -> List[AlertPair]:
    res = await db.execute(select(AlertPair).order_by(AlertPair.id))
    return list(res.scalars().all())


# =====================================================================
# Samples
# =====================================================================
async def save_sample(
    db: AsyncSession,
    device: Device,
    kind: SampleKind,
    point: Optional[GeoPoint],
    created: dt.datetime,
    cache: Optional[AreaCodeCache] = None,
    commit: bool = True,
) -> Sample:
    """
    Persist one sample. Track samples of an indexed device get their area codes
    stored alongside; start/stop events never carry a point nor area codes.

    With commit=False the rows are only flushed and the caller owns the
    transaction.
    """
    if kind is SampleKind.TRACK and point is None:
        raise ValueError("track sample without a point")

    sample = Sample(
        device_id=device.id,
        kind=kind.value,
        lat=point.lat if kind is SampleKind.TRACK else None,
        lng=point.lng if kind is SampleKind.TRACK else None,
        created=to_dt(created),
    )
    db.add(sample)
    await db.flush()

    codes: List[int] = []
    if kind is SampleKind.TRACK and device.indexed:
        if cache is not None:
            codes = cache.codes_for(device.area_size, point)
        else:
            codes = area_codes_for_point(device.area_size, point)
        db.add_all(SampleAreaCode(sample_id=sample.id, area_code=c) for c in codes)

    if commit:
        await db.commit()
        await db.refresh(sample)
    else:
        await db.flush()

    logger.info(
        f"Saved {kind.name} sample id={sample.id} device={device.id} area_codes={codes}"
    )
    return sample


async def fetch_recent(
    db: AsyncSession,
    device_id: int,
    limit: int = WINDOW_SIZE,
    area_code: Optional[int] = None,
    offset: int = 0,
) -> List[Sample]:
    """
    Latest samples of the device, newest first, optionally only those stored
    with the given area code. Store errors surface as DataUnavailable.
    """
    q = select(Sample).where(Sample.device_id == device_id)
    if area_code is not None:
        q = q.join(SampleAreaCode, SampleAreaCode.sample_id == Sample.id).where(
            SampleAreaCode.area_code == area_code
        )
    q = q.order_by(Sample.created.desc(), Sample.id.desc()).offset(offset).limit(limit)

    try:
        res = await db.execute(q)
    except SQLAlchemyError as e:
        logger.error(f"Failed to get latest samples for device id: {device_id}: {e}")
        raise DataUnavailable(f"samples of device {device_id}") from e

    return list(res.scalars().all())


async def search_near(
    db: AsyncSession,
    device: Device,
    point: GeoPoint,
    limit: int = 50,
    exact: bool = True,
) -> List[Sample]:
    """
    Records of an indexed device near the point, newest first.

    The area code filter is recall-complete within device.search_precision but
    also returns some farther records; exact=True drops those and pages
    through the candidates until limit records are found.
    """
    if not device.indexed:
        raise ValueError(f"device {device.id} is not indexed")

    code = area_code_for_point(device.area_size, point)
    if not exact:
        return await fetch_recent(db, device.id, limit=limit, area_code=code)

    batch = max(limit, 1) * SEARCH_BATCH_FACTOR
    found: List[Sample] = []
    offset = 0
    while len(found) < limit:
        rows = await fetch_recent(db, device.id, limit=batch, area_code=code, offset=offset)
        found.extend(r for r in rows if within(r.point, point, device.search_precision))
        if len(rows) < batch:
            break
        offset += batch
    return found[:limit]


async def prune_expired_samples(
    db: AsyncSession,
    device: Device,
    now: Optional[dt.datetime] = None,
    commit: bool = True,
) -> int:
    """Delete samples older than the device's logs retention. Returns the count."""
    if not device.del_old_logs:
        return 0

    now = now or dt.datetime.now(UTC)
    cutoff = now - dt.timedelta(days=device.logs_retention)
    expired = select(Sample.id).where(Sample.device_id == device.id, Sample.created < cutoff)

    await db.execute(
        delete(SampleAreaCode)
        .where(SampleAreaCode.sample_id.in_(expired))
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(
        delete(Sample)
        .where(Sample.device_id == device.id, Sample.created < cutoff)
        .execution_options(synchronize_session=False)
    )
    if commit:
        await db.commit()

    if res.rowcount:
        logger.info(f"Pruned {res.rowcount} sample(s) of device {device.id} older than {cutoff}")
    return res.rowcount or 0
