# app/monitor.py
"""
Alert checks for asset / companion device pairs.

Checks that the asset's GPS device keeps reporting, and that the asset is not
reported moving while the companion (e.g. the owner's phone) is not, is silent,
or is far away from it.
"""
import datetime as dt
import enum
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from config import ALERT_MARGIN_M, FIX_LAG_MPS, LIVENESS_MIN, MOVE_THRESHOLD_M, WINDOW_SIZE
from crud import DataUnavailable, to_dt
from geo_calc import distance
from models import AlertPair, Sample

from logging_config import get_logger


logger = get_logger("monitor", "monitor.log")


UTC = dt.timezone.utc

FetchRecent = Callable[[int], Awaitable[Sequence[Sample]]]
Notify = Callable[[AlertPair, "AlertDecision"], Awaitable[None]]


class Verdict(str, enum.Enum):
    NONE = "none"
    DEVICE_SILENT = "device_silent"
    MOVING_WITHOUT_COMPANION = "moving_without_companion"


@dataclass(frozen=True)
class AlertSettings:
    liveness: dt.timedelta = field(default_factory=lambda: dt.timedelta(minutes=LIVENESS_MIN))
    move_threshold_m: int = MOVE_THRESHOLD_M
    base_margin_m: int = ALERT_MARGIN_M
    fix_lag_mps: float = FIX_LAG_MPS   # extra margin per second between the 2 fixes
    window_size: int = WINDOW_SIZE


@dataclass(frozen=True)
class AlertDecision:
    verdict: Verdict
    asset_id: int
    companion_id: Optional[int]
    reason: str
    asset_speed: Optional[float] = None   # m/s
    time_gap_s: Optional[float] = None
    gap_m: Optional[int] = None
    margin_m: Optional[int] = None

    @property
    def alert(self) -> bool:
        return self.verdict is not Verdict.NONE

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict.value,
            "asset_id": self.asset_id,
            "companion_id": self.companion_id,
            "reason": self.reason,
            "asset_speed": self.asset_speed,
            "time_gap_s": self.time_gap_s,
            "gap_m": self.gap_m,
            "margin_m": self.margin_m,
        }


# =====================================================================
# Helpers (sample windows are newest-first)
# =====================================================================
def dev_moved(samples: Sequence[Sample], min_delta_m: int = MOVE_THRESHOLD_M) -> bool:
    """
    Tells if a device moved based on its latest samples.
    At least 2 track samples must be present to report moving.
    """
    first = last = None

    for s in samples:
        p = s.point
        if p is None:
            continue
        if first is None:
            first = p

        if last is not None and distance(last, p) > min_delta_m:
            return True

        last = p

    # Slow movement (e.g. 100 m per minute) never exceeds the threshold
    # between subsequent records, so also compare the first to the last:
    if first is not None and last is not None and distance(first, last) > min_delta_m:
        return True

    return False


def latest_tracks(samples: Sequence[Sample], n: int) -> List[Sample]:
    return [s for s in samples if s.point is not None][:n]


def speed_between(newer: Sample, older: Sample) -> float:
    """Movement speed between 2 track samples in m/s; 0 for a zero time delta."""
    dt_s = (to_dt(newer.created) - to_dt(older.created)).total_seconds()
    if dt_s <= 0:
        return 0.0
    return distance(newer.point, older.point) / dt_s


def alert_margin(
    companion_moved: bool,
    asset_speed: float,
    time_gap_s: float,
    base_m: int = ALERT_MARGIN_M,
    fix_lag_mps: float = FIX_LAG_MPS,
) -> int:
    """
    Max allowed asset - companion distance.

    The base margin grows with the asset speed and the time between the 2
    fixes, plus fix_lag_mps per second for the accuracy lost with age. Only
    when the companion is moving too: a stationary companion must not let
    the asset get kilometers away before the alert goes out.
    """
    margin = base_m
    if companion_moved:
        margin += int(asset_speed * time_gap_s + time_gap_s * fix_lag_mps)
    return margin


def _age(sample: Sample, now: dt.datetime) -> dt.timedelta:
    return now - to_dt(sample.created)


# =====================================================================
# MAIN EVALUATOR
# =====================================================================
async def evaluate_pair(
    asset_id: int,
    companion_id: Optional[int],
    fetch: FetchRecent,
    settings: Optional[AlertSettings] = None,
    now: Optional[dt.datetime] = None,
) -> AlertDecision:
    s = settings or AlertSettings()
    now = now or dt.datetime.now(UTC)
    liveness_min = int(s.liveness.total_seconds() // 60)

    def decide(verdict: Verdict, reason: str, **metrics) -> AlertDecision:
        return AlertDecision(verdict, asset_id, companion_id, reason, **metrics)

    # ---------------------- Asset records ----------------------
    try:
        asset_records = await fetch(asset_id)
    except DataUnavailable as e:
        logger.error(f"[evaluator] Asset {asset_id} records unavailable, skipping: {e}")
        return decide(Verdict.NONE, "asset records unavailable")

    if not asset_records:
        logger.warning(f"[evaluator] No records for asset {asset_id}! Wrong device id?")
        return decide(Verdict.NONE, "no asset records")

    if _age(asset_records[0], now) > s.liveness:
        logger.warning(f"[evaluator] No asset {asset_id} records in the last {liveness_min} minutes!")
        return decide(Verdict.DEVICE_SILENT, "asset gone dark")

    if companion_id is None:
        logger.debug(f"[evaluator] Asset {asset_id} is reporting. No companion device specified.")
        return decide(Verdict.NONE, "liveness only")

    if not dev_moved(asset_records, s.move_threshold_m):
        logger.info(f"[evaluator] Asset {asset_id} is not moving. Ok.")
        return decide(Verdict.NONE, "asset not moving")

    logger.info(f"[evaluator] Asset {asset_id} is moving!")

    # ---------------------- Companion records ----------------------
    try:
        companion_records = await fetch(companion_id)
    except DataUnavailable as e:
        logger.error(f"[evaluator] Companion {companion_id} records unavailable, skipping: {e}")
        return decide(Verdict.NONE, "companion records unavailable")

    if not companion_records or _age(companion_records[0], now) > s.liveness:
        logger.warning(f"[evaluator] No companion {companion_id} records in the last {liveness_min} minutes!")
        return decide(Verdict.MOVING_WITHOUT_COMPANION, "companion silent")

    # Not a gate: the companion may have just started tracking and lack 2 fixes
    companion_moved = dev_moved(companion_records, s.move_threshold_m)
    logger.info(
        f"[evaluator] Companion {companion_id} is {'also' if companion_moved else 'NOT'} moving"
    )

    p1 = next((r for r in companion_records if r.point is not None), None)
    if p1 is None or _age(p1, now) > s.liveness:
        logger.warning(
            f"[evaluator] No companion {companion_id} track record in the last {liveness_min} minutes!"
        )
        return decide(Verdict.MOVING_WITHOUT_COMPANION, "no recent companion fix")

    # ---------------------- Distance check ----------------------
    # The asset moved, so it has at least 2 track records
    c1, c2 = latest_tracks(asset_records, 2)

    speed = speed_between(c1, c2)
    time_gap = abs((to_dt(c1.created) - to_dt(p1.created)).total_seconds())
    gap = distance(c1.point, p1.point)
    margin = alert_margin(companion_moved, speed, time_gap, s.base_margin_m, s.fix_lag_mps)

    logger.debug(f"[evaluator] Asset speed: {speed * 3.6:.1f} km/h")
    logger.debug(f"[evaluator] Delta T between latest asset and companion fixes: {int(time_gap)} s")
    logger.debug(f"[evaluator] Asset - companion distance: {gap} m, alert margin: {margin} m")

    metrics = dict(asset_speed=speed, time_gap_s=time_gap, gap_m=gap, margin_m=margin)
    if gap > margin:
        logger.warning(f"[evaluator] Companion {companion_id} is not moving together with asset {asset_id}!")
        return decide(Verdict.MOVING_WITHOUT_COMPANION, "companion too far", **metrics)

    logger.info(f"[evaluator] Asset {asset_id} and companion {companion_id} are moving together. Ok.")
    return decide(Verdict.NONE, "moving together", **metrics)


async def check_alert(
    pair: AlertPair,
    fetch: FetchRecent,
    notify: Notify,
    settings: Optional[AlertSettings] = None,
    now: Optional[dt.datetime] = None,
) -> AlertDecision:
    """Evaluate one pair and hand a raised alert to the notification sink."""
    logger.info(
        f"[check_alert] pair={pair.id} asset={pair.asset_device_id} companion={pair.companion_device_id}"
    )
    decision = await evaluate_pair(
        pair.asset_device_id, pair.companion_device_id, fetch, settings=settings, now=now
    )

    if decision.alert:
        try:
            await notify(pair, decision)
        except Exception:
            logger.exception(
                f"[check_alert] Error sending {decision.verdict.value} alert for pair {pair.id}"
            )

    return decision
