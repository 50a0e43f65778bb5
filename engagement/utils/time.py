import time
from datetime import datetime, timezone

MS_PER_HOUR = 60 * 60 * 1000
MS_PER_DAY = 24 * MS_PER_HOUR


def now_ms() -> int:
    return int(time.time() * 1000)

def _iso_to_ms(s: str) -> int:
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)

def parse_timestamp_ms(ts) -> int:
    """
    Epoch milliseconds from whatever the messaging layer sends: epoch ms,
    epoch seconds (values below 10^12), digit strings or ISO-8601 (naive
    means UTC). Missing or unparseable input means "now".
    """
    if ts is None or isinstance(ts, bool):
        return now_ms()
    try:
        if isinstance(ts, (int, float)):
            v = int(ts)
            return v * 1000 if 0 < v < 10**12 else v
        s = str(ts).strip()
        if not s:
            return now_ms()
        if s.isdigit():
            return parse_timestamp_ms(int(s))
        return _iso_to_ms(s)
    except (ValueError, OverflowError):
        return now_ms()

def to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)

def utc_date(ms: int) -> str:
    """YYYY-MM-DD of the UTC calendar day containing `ms`."""
    return to_datetime(ms).strftime("%Y-%m-%d")

def iso_week(ms: int) -> str:
    """ISO-8601 week label, e.g. 2026-W42 (ISO year, not calendar year)."""
    year, week, _ = to_datetime(ms).isocalendar()
    return f"{year}-W{week:02d}"

def whole_days_between(earlier_ms, later_ms: int) -> int:
    """Floor of elapsed days; 0 for missing or future timestamps."""
    if not earlier_ms:
        return 0
    diff = int(later_ms) - int(earlier_ms)
    if diff < 0:
        return 0
    return diff // MS_PER_DAY

def whole_hours_between(earlier_ms, later_ms: int) -> int:
    if not earlier_ms:
        return 0
    diff = int(later_ms) - int(earlier_ms)
    if diff < 0:
        return 0
    return diff // MS_PER_HOUR
