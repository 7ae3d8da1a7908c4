import asyncio
import datetime as dt
import smtplib
from email.message import EmailMessage
from typing import Dict, Optional

import pytz

from config import ALERT_SENDER, APP_URL, SMTP_HOST, SMTP_PASSWORD, SMTP_PORT, SMTP_USER
from models import Account
from monitor import Verdict
from logging_config import get_logger

logger = get_logger("alerts", "alerts.log")

SUBJECT_PREFIX = "[Pair Guardian] ALERT: "

ALERT_MESSAGES = {
    Verdict.DEVICE_SILENT: "Asset GPS device gone dark!",
    Verdict.MOVING_WITHOUT_COMPANION: "Asset is moving without you!",
}

GONE_DARK_MAIL = """Hi {email},

WARNING: POTENTIAL THEFT OR HIJACKING!

This is an alert email to let you know that the GPS device of your asset "{asset}"
has gone dark: nothing was received from it since {when}.

{footer}"""

MOVING_WITHOUT_YOU_MAIL = """Hi {email},

WARNING: POTENTIAL THEFT OR HIJACKING!

This is an alert email to let you know that your asset "{asset}" is moving
without your companion device "{companion}" ({when}).

{footer}"""

MAIL_TEMPLATES = {
    Verdict.DEVICE_SILENT: GONE_DARK_MAIL,
    Verdict.MOVING_WITHOUT_COMPANION: MOVING_WITHOUT_YOU_MAIL,
}


def account_tz(account: Account):
    if account.location_name:
        try:
            return pytz.timezone(account.location_name)
        except pytz.UnknownTimeZoneError:
            logger.warning(f"Unknown timezone {account.location_name!r} for account {account.id}, using UTC")
    return pytz.utc


def build_alert_message(
    account: Account,
    verdict: Verdict,
    device_names: Dict[str, Optional[str]],
    when: dt.datetime,
) -> EmailMessage:
    """
    device_names: {"asset": name, "companion": name or None}
    """
    if verdict not in MAIL_TEMPLATES:
        raise ValueError(f"no alert message for verdict {verdict!r}")

    local = when.astimezone(account_tz(account))
    footer = f"You can visit Pair Guardian here:\n{APP_URL}\n" if APP_URL else ""

    msg = EmailMessage()
    msg["From"] = ALERT_SENDER
    msg["To"] = account.email
    msg["Reply-To"] = ALERT_SENDER
    if account.contact_email:
        msg["Cc"] = account.contact_email
    msg["Subject"] = SUBJECT_PREFIX + ALERT_MESSAGES[verdict]
    msg.set_content(
        MAIL_TEMPLATES[verdict].format(
            email=account.email,
            asset=device_names.get("asset") or "unknown",
            companion=device_names.get("companion") or "unknown",
            when=local.strftime("%Y-%m-%d %H:%M:%S %Z"),
            footer=footer,
        )
    )
    return msg


def _deliver(msg: EmailMessage) -> None:
    with smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT) as s:
        if SMTP_USER:
            s.login(SMTP_USER, SMTP_PASSWORD)
        s.send_message(msg)


async def send_alert(
    account: Account,
    verdict: Verdict,
    device_names: Dict[str, Optional[str]],
    when: Optional[dt.datetime] = None,
) -> None:
    when = when or dt.datetime.now(dt.timezone.utc)
    msg = build_alert_message(account, verdict, device_names, when)

    if not SMTP_HOST:
        logger.warning(f"SMTP_HOST not set, alert not mailed: {msg['Subject']} to={msg['To']}")
        return

    # smtplib blocks: run it in the default executor
    await asyncio.get_event_loop().run_in_executor(None, _deliver, msg)
    logger.info(f"Sent alert email: {ALERT_MESSAGES[verdict]} to={msg['To']}")
