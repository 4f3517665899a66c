from __future__ import annotations

import datetime

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def time_to_minutes(hhmm: str) -> int:
    """Minutes since midnight for a zero-padded 24-hour "HH:MM" string.

    Raises ValueError for anything that is not two integer fields split by a colon.
    """
    hours, sep, minutes = hhmm.partition(":")
    if not sep:
        raise ValueError(f"Invalid time of day: {hhmm!r}")
    return int(hours) * 60 + int(minutes)


def minutes_to_time(minutes: int) -> str:
    hours, mins = divmod(minutes, 60)
    return f"{hours:02d}:{mins:02d}"


def weekday_name(day: datetime.date) -> str:
    return WEEKDAY_NAMES[day.weekday()]


def date_key(day: datetime.date) -> str:
    # Calendar components only: a datetime keeps its own wall-clock date, never shifted to UTC.
    if isinstance(day, datetime.datetime):
        day = day.date()
    return day.isoformat()


def parse_date_key(value: str) -> datetime.date:
    return datetime.date.fromisoformat(value)
