"""
Tests for civil-timezone day boundaries.
"""
import datetime

from app.checkin.timewindow import (
    format_local_hhmm,
    is_anniversary,
    previous_local_day_range,
    start_of_local_day,
)
from tests.conftest import AMSTERDAM, UTC


def utc(y, mo, d, h, mi=0):
    return datetime.datetime(y, mo, d, h, mi, tzinfo=UTC)


def test_start_of_local_day_before_utc_midnight():
    # 23:30 UTC is already 00:30 the next day in Amsterdam
    start = start_of_local_day(utc(2024, 1, 10, 23, 30), AMSTERDAM)
    assert start == utc(2024, 1, 10, 23, 0)
    assert start.astimezone(AMSTERDAM).date() == datetime.date(2024, 1, 11)


def test_start_of_local_day_summer():
    assert start_of_local_day(utc(2024, 7, 1, 12), AMSTERDAM) == utc(2024, 6, 30, 22, 0)


def test_previous_day_range_regular():
    start, end = previous_local_day_range(utc(2024, 3, 15, 8), AMSTERDAM)
    assert start == utc(2024, 3, 13, 23)
    assert end == utc(2024, 3, 14, 23)


def test_previous_day_range_over_dst_switch_is_23_hours():
    # Clocks go forward on 2024-03-31
    start, end = previous_local_day_range(utc(2024, 4, 1, 8), AMSTERDAM)
    assert start == utc(2024, 3, 30, 23)
    assert end == utc(2024, 3, 31, 22)
    assert end - start == datetime.timedelta(hours=23)


def test_is_anniversary_ignores_year():
    birthday = datetime.date(2001, 3, 15)
    assert is_anniversary(birthday, utc(2024, 3, 15, 12), AMSTERDAM) is True
    assert is_anniversary(birthday, utc(1999, 3, 15, 12), AMSTERDAM) is True
    assert is_anniversary(birthday, utc(2024, 3, 16, 12), AMSTERDAM) is False
    assert is_anniversary(birthday, utc(2024, 4, 15, 12), AMSTERDAM) is False


def test_format_local_hhmm_zero_padded():
    assert format_local_hhmm(utc(2024, 3, 15, 7, 5), AMSTERDAM) == "08:05"
    assert format_local_hhmm(utc(2024, 3, 15, 23, 0), AMSTERDAM) == "00:00"
