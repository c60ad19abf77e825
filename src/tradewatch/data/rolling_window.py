from __future__ import annotations

from collections import deque
from typing import Iterable, Optional


class RollingWindow:
    """
    Fixed-duration sliding sum over (ts, value) entries for one symbol.

    Invariant: `total` equals the sum of all retained entries, and every retained
    entry has ts >= last_ts - window_seconds.
    Eviction pops from the front only, so it assumes non-decreasing arrival order.
    A late (out-of-order) entry can sit behind newer ones and delay eviction of the
    entries after it; the sum is then overstated until the front catches up.
    """
    __slots__ = ("window_seconds", "entries", "total")

    def __init__(self, window_seconds: float):
        self.window_seconds = float(window_seconds)
        self.entries: deque[tuple[float, float]] = deque()
        self.total: float = 0.0

    def add(self, ts: float, value: float) -> float:
        self.entries.append((ts, value))
        self.total += value
        self.evict(ts)
        return self.total

    def evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        entries = self.entries
        while entries and entries[0][0] < cutoff:
            _, v = entries.popleft()
            self.total -= v
        if not entries:
            # drop accumulated float error once the window drains
            self.total = 0.0

    def span(self) -> Optional[tuple[float, float]]:
        if not self.entries:
            return None
        return self.entries[0][0], self.entries[-1][0]

    def __len__(self) -> int:
        return len(self.entries)


class RollingAggregator:
    """
    Per-symbol rolling notional sums.

    update(symbol, ts, value) appends the entry, evicts everything older than
    ts - window_seconds and returns the post-eviction sum. Inputs are expected to
    be validated by the caller (finite, non-negative value).
    """

    def __init__(self, window_seconds: float):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.window_seconds = float(window_seconds)
        self._windows: dict[str, RollingWindow] = {}

    def update(self, symbol: str, ts: float, value: float) -> float:
        w = self._windows.get(symbol)
        if w is None:
            w = RollingWindow(self.window_seconds)
            self._windows[symbol] = w
        return w.add(ts, value)

    def total(self, symbol: str) -> float:
        w = self._windows.get(symbol)
        return w.total if w is not None else 0.0

    def window_span(self, symbol: str) -> Optional[tuple[float, float]]:
        w = self._windows.get(symbol)
        return w.span() if w is not None else None

    def purge(self, symbol: str) -> None:
        self._windows.pop(symbol, None)

    def purge_missing(self, keep: Iterable[str]) -> list[str]:
        """Drop windows for every symbol not in `keep`; returns the dropped symbols."""
        keep = set(keep)
        dropped = [s for s in self._windows if s not in keep]
        for s in dropped:
            del self._windows[s]
        return dropped

    def symbols(self) -> list[str]:
        return list(self._windows)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._windows
