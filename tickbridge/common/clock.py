from __future__ import annotations
import re
import time
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

_MT_TIME = re.compile(r"^(\d{4})\.(\d{2})\.(\d{2})[ T](\d{2}):(\d{2}):(\d{2})$")
_NUMERIC = re.compile(r"^\d+(\.\d+)?$")


def now_ms() -> int: return int(time.time() * 1000)
def _dt(ms: int) -> datetime: return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _epoch_to_ms(n: float) -> int:
    # < 1e12 is treated as epoch seconds
    return int(n * 1000) if n < 1e12 else int(n)


def parse_time_to_ms(value: Any) -> Optional[int]:
    """
    Accepts epoch seconds / ms (number or numeric string), MetaTrader
    "YYYY.MM.DD HH:MM:SS" (read as UTC) or ISO 8601. Returns None when unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        return _epoch_to_ms(float(value))

    s = str(value).strip()
    if not s:
        return None
    if _NUMERIC.match(s):
        return _epoch_to_ms(float(s))

    m = _MT_TIME.match(s)
    if m:
        y, mo, d, hh, mm, ss = (int(x) for x in m.groups())
        return int(datetime(y, mo, d, hh, mm, ss, tzinfo=timezone.utc).timestamp() * 1000)

    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


class ClockSource:
    """Wall clock in epoch ms; tests swap in FixedClock."""

    def now_ms(self) -> int:
        return now_ms()


class FixedClock(ClockSource):
    def __init__(self, ms: int):
        self.ms = int(ms)

    def now_ms(self) -> int:
        return self.ms

    def advance(self, ms: int) -> None:
        self.ms += int(ms)


class VenueTime:
    """Epoch ms -> venue-local datetime (market window checks and display)."""

    def __init__(self, tz: str = "Europe/Amsterdam"):
        self.tz_name = tz
        self.tz = ZoneInfo(tz)

    def local(self, ms: int) -> datetime:
        return _dt(ms).astimezone(self.tz)

    def fmt(self, ms: int, pattern: str = "%Y-%m-%d %H:%M:%S") -> str:
        return self.local(ms).strftime(pattern)

    def iso(self, ms: int) -> str:
        return self.local(ms).isoformat()
