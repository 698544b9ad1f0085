from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

_DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def shop_timezone() -> ZoneInfo:
    name = (os.getenv("SHOP_TIMEZONE") or "Africa/Lagos").strip()
    try:
        return ZoneInfo(name)
    except Exception:
        logger.warning("shop_timezone_invalid name=%s fallback=UTC", name)
        return ZoneInfo("UTC")


def _parse_hours(operating_hours) -> dict:
    if isinstance(operating_hours, dict):
        return operating_hours
    parsed = json.loads(operating_hours)
    if not isinstance(parsed, dict):
        raise ValueError("operating hours must be an object")
    return parsed


def is_shop_open(operating_hours, *, now: datetime | None = None) -> bool:
    """True when the shop accepts orders at `now`.

    No configured hours means always open, and so do hours that fail to
    parse. A day that is missing or flagged closed means closed.
    """
    if not operating_hours:
        return True
    try:
        hours = _parse_hours(operating_hours)
        local = now or datetime.now(shop_timezone())
        day = hours.get(_DAYS[local.weekday()])
        if not isinstance(day, dict) or bool(day.get("closed")):
            return False
        current = local.strftime("%H:%M")
        opens = str(day.get("open") or "00:00")
        closes = str(day.get("close") or "23:59")
        return opens <= current <= closes
    except Exception as e:
        logger.warning("operating_hours_parse_failed err=%s", e)
        return True
