"""Business-hours windows for campaign calling.

A campaign may restrict calling to per-weekday time slots in a given
timezone. Slot bounds are inclusive "HH:MM" strings compared in the
campaign's local time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

from dialer.models.database import DAYS_OF_WEEK, BusinessHoursConfig


@dataclass
class BusinessHoursWindow:
    """The next time calling is allowed."""

    day_name: str  # "Monday"
    start_time: str  # "09:00"
    starts_at: datetime


def _zone(tz_name: str | None) -> ZoneInfo | None:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{tz_name}' in business hours config")
        return None


def is_within_business_hours(
    config: BusinessHoursConfig | None,
    tz_name: str | None = "UTC",
    now: datetime | None = None,
) -> bool:
    """True when calling is currently allowed.

    A missing or disabled config always allows calling. An unknown timezone
    also allows calling rather than blocking a campaign forever.
    """
    if config is None or not config.enabled:
        return True

    zone = _zone(tz_name)
    if zone is None:
        return True

    local = (now or datetime.now(timezone.utc)).astimezone(zone)
    day = DAYS_OF_WEEK[local.weekday()]
    current = local.strftime("%H:%M")

    slots = config.slots_for(day)
    if not slots:
        return False
    return any(slot.start <= current <= slot.end for slot in slots)


def next_business_hours_window(
    config: BusinessHoursConfig | None,
    tz_name: str | None = "UTC",
    now: datetime | None = None,
) -> BusinessHoursWindow | None:
    """Find the start of the next calling window within the coming week."""
    if config is None or not config.enabled:
        return None

    zone = _zone(tz_name)
    if zone is None:
        return None

    local_now = (now or datetime.now(timezone.utc)).astimezone(zone)
    current = local_now.strftime("%H:%M")

    for offset in range(8):
        day_date = local_now + timedelta(days=offset)
        day = DAYS_OF_WEEK[day_date.weekday()]
        for slot in config.slots_for(day):
            if offset == 0:
                if current > slot.end:
                    continue
                if current >= slot.start:
                    return BusinessHoursWindow(day.capitalize(), slot.start, local_now)
            try:
                hours, minutes = (int(p) for p in slot.start.split(":"))
            except ValueError:
                continue
            starts_at = day_date.replace(hour=hours, minute=minutes, second=0, microsecond=0)
            return BusinessHoursWindow(day.capitalize(), slot.start, starts_at)

    return None


def format_next_window(window: BusinessHoursWindow, tz_name: str | None) -> str:
    """Render a window as "Monday at 9:00 AM (Melbourne)"."""
    hours, minutes = (int(p) for p in window.start_time.split(":"))
    period = "PM" if hours >= 12 else "AM"
    display_hour = hours - 12 if hours > 12 else (12 if hours == 0 else hours)
    tz_label = (tz_name or "UTC").split("/")[-1].replace("_", " ")
    return f"{window.day_name} at {display_hour}:{minutes:02d} {period} ({tz_label})"


def outside_hours_message(config: BusinessHoursConfig | None, tz_name: str | None) -> str:
    window = next_business_hours_window(config, tz_name)
    if window is None:
        return "Outside business hours. No calling windows configured for the upcoming week."
    return f"Outside business hours. Next calling window: {format_next_window(window, tz_name)}"
