# app/sweeper.py
"""
Alert sweep: evaluates every configured alert pair. Run once with
`python sweeper.py` from an external cron, or on an interval via start_scheduler().
"""
import asyncio
import datetime as dt
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from alerts import send_alert
from config import SWEEP_INTERVAL_SEC
from crud import device_names, fetch_recent, list_alert_pairs, load_account
from database import AsyncSessionLocal
from models import AlertPair
from monitor import AlertDecision, AlertSettings, Notify, check_alert

from logging_config import get_logger

logger = get_logger("sweeper", "sweeper.log")


def mail_notifier(session_factory=AsyncSessionLocal) -> Notify:
    """Notification sink that mails the pair's account."""

    async def notify(pair: AlertPair, decision: AlertDecision) -> None:
        async with session_factory() as db:
            account = await load_account(db, pair.account_id)
            if account is None:
                logger.error(f"[sweep] Account {pair.account_id} of pair {pair.id} not found")
                return
            names = await device_names(db, [pair.asset_device_id, pair.companion_device_id])

        await send_alert(
            account,
            decision.verdict,
            {
                "asset": names.get(pair.asset_device_id),
                "companion": names.get(pair.companion_device_id),
            },
        )

    return notify


async def _sweep_pair(
    pair: AlertPair,
    session_factory,
    notify: Notify,
    settings: AlertSettings,
    now: Optional[dt.datetime],
) -> Optional[AlertDecision]:
    try:
        async with session_factory() as db:

            async def fetch(device_id: int):
                return await fetch_recent(db, device_id, limit=settings.window_size)

            return await check_alert(pair, fetch, notify, settings=settings, now=now)
    except Exception as e:
        # One pair must never break the others
        logger.exception(f"[sweep] ERROR evaluating pair {pair.id}: {e}")
        return None


async def run_alert_sweep(
    session_factory=AsyncSessionLocal,
    notify: Optional[Notify] = None,
    settings: Optional[AlertSettings] = None,
    now: Optional[dt.datetime] = None,
) -> List[Optional[AlertDecision]]:
    settings = settings or AlertSettings()
    notify = notify or mail_notifier(session_factory)

    try:
        async with session_factory() as db:
            pairs = await list_alert_pairs(db)
    except Exception as e:
        logger.exception(f"[sweep] Failed to load alert pairs: {e}")
        return []

    logger.info(f"[sweep] Loaded {len(pairs)} alert pair{'' if len(pairs) == 1 else 's'}.")

    decisions = await asyncio.gather(
        *(_sweep_pair(p, session_factory, notify, settings, now) for p in pairs)
    )

    raised = sum(1 for d in decisions if d is not None and d.alert)
    logger.info(f"[sweep] Completed: {len(pairs)} evaluated, {raised} alert(s) raised")
    return list(decisions)


def start_scheduler(interval_sec: int = SWEEP_INTERVAL_SEC) -> AsyncIOScheduler:
    """Needs a running event loop (call it from the app's startup)."""
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_alert_sweep,
        "interval",
        seconds=interval_sec,
        id="alert-sweep",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"[sweep] Scheduler started, interval={interval_sec}s")
    return scheduler


if __name__ == "__main__":
    asyncio.run(run_alert_sweep())
