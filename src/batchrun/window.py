# window.py
from __future__ import annotations

import re
from datetime import time

_HHMM = re.compile(r"^(\d{2}):(\d{2})$")


def parse_hhmm(value: str) -> time:
    """
    Parse a 24hr "hh:mm" string into a time.

    Raises ValueError if the form is wrong or the hour/minute is out of range.
    """
    m = _HHMM.match(value.strip())
    if not m:
        raise ValueError(f"{value!r} must be 24hr time using the form 'hh:mm'")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"{value!r} must be a valid 24hr time (00:00 to 23:59)")
    return time(hour, minute)


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def inside_window(now: time, start: time, end: time) -> bool:
    """
    Decide whether `now` falls inside the daily batch window [start, end).

    A zero-width window (start == end) is always open. A window whose end is
    earlier than its start crosses midnight (e.g. 22:00 - 02:00).
    Seconds are ignored.
    """
    now_min, start_min, end_min = _minutes(now), _minutes(start), _minutes(end)

    if start_min == end_min:
        return True
    if end_min < start_min:
        return now_min >= start_min or now_min < end_min
    return start_min <= now_min < end_min
