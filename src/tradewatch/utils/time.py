from __future__ import annotations

import time
from datetime import datetime, timezone

# --- fast, allocation-free time helpers ---

def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()

def normalize_epoch_s(ts: float | int) -> float:
    """Accept epoch s / ms / ns and return seconds; ints beyond float range give inf."""
    try:
        ts = float(ts)
    except OverflowError:
        return float("inf")
    if ts > 1e17:  # ns → s
        return ts / 1e9
    if ts > 1e11:  # ms → s
        return ts / 1e3
    return ts

def utc_dt(ts: float | int) -> datetime:
    """Epoch seconds -> timezone-aware UTC datetime."""
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)

def iso_utc(ts: float | int) -> str:
    """Epoch seconds -> ISO-8601 string with millisecond precision and 'Z' suffix."""
    return utc_dt(ts).isoformat(timespec="milliseconds").replace("+00:00", "Z")
