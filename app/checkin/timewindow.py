#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Civil-timezone day boundaries.

Every "today", "yesterday" and "HH:MM" in the connector is evaluated in one
fixed named zone (Europe/Amsterdam by default), independent of the server
locale. All functions take an aware ``now`` and return aware datetimes.
"""

import datetime
from typing import Tuple
from zoneinfo import ZoneInfo


def get_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def to_local(instant: datetime.datetime, tz: ZoneInfo) -> datetime.datetime:
    return instant.astimezone(tz)


def start_of_local_day(now: datetime.datetime, tz: ZoneInfo) -> datetime.datetime:
    """Local midnight of the civil day containing *now*."""
    local_date = to_local(now, tz).date()
    return datetime.datetime.combine(local_date, datetime.time.min, tzinfo=tz)


def previous_local_day_range(
    now: datetime.datetime, tz: ZoneInfo
) -> Tuple[datetime.datetime, datetime.datetime]:
    """
    ``(start_of_yesterday, start_of_today)`` in the civil zone.

    Built from calendar dates rather than ``today - 24h`` so the range is 23
    or 25 hours long on DST transition days.
    """
    today = to_local(now, tz).date()
    yesterday = today - datetime.timedelta(days=1)
    return (
        datetime.datetime.combine(yesterday, datetime.time.min, tzinfo=tz),
        datetime.datetime.combine(today, datetime.time.min, tzinfo=tz),
    )


def is_anniversary(day: datetime.date, now: datetime.datetime, tz: ZoneInfo) -> bool:
    """True if *day* has the same month and day-of-month as local today."""
    today = to_local(now, tz).date()
    return day.month == today.month and day.day == today.day


def format_local_hhmm(instant: datetime.datetime, tz: ZoneInfo) -> str:
    return to_local(instant, tz).strftime("%H:%M")
