from __future__ import annotations

from typing import Iterable, Optional


class CooldownGate:
    """
    Per-key last-fired map enforcing a minimum interval between notifications.

    try_acquire() is a synchronous check-and-set: it never awaits, so on a single
    event loop no other task can interleave between the check and the write.
    Callers must acquire *before* starting dispatch I/O; a failed dispatch does not
    release the key.
    """

    def __init__(self) -> None:
        self._store: dict[str, float] = {}  # key -> last fired ts (epoch s)

    def try_acquire(self, key: str, now: float, cooldown_seconds: float) -> bool:
        last = self._store.get(key)
        if cooldown_seconds > 0 and last is not None and (now - last) < cooldown_seconds:
            return False
        self._store[key] = now
        return True

    def last_fired(self, key: str) -> Optional[float]:
        return self._store.get(key)

    def purge(self, key: str) -> None:
        self._store.pop(key, None)

    def purge_missing(self, keep: Iterable[str]) -> list[str]:
        keep = set(keep)
        dropped = [k for k in self._store if k not in keep]
        for k in dropped:
            del self._store[k]
        return dropped

    def clear(self) -> None:
        self._store.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._store

    def __len__(self) -> int:
        return len(self._store)
