from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import structlog

DEFAULT_QUOTE_SUFFIX = "usdt"

# Majors and stable pairs: always liquid, never interesting for volume spikes.
DEFAULT_DENYLIST: frozenset[str] = frozenset({
    "btcusdt",
    "ethusdt",
    "usdcusdt",
    "fdusdusdt",
    "tusdusdt",
    "busdusdt",
    "daiusdt",
    "usdpusdt",
    "eurusdt",
})

SymbolSource = Callable[[], Awaitable[Iterable[str]]]
Callback = Callable[[list[str]], Union[None, Awaitable[Any]]]


def normalize_symbols(
    raw: Iterable[Any],
    *,
    quote_suffix: Optional[str] = None,
    denylist: Iterable[str] = (),
) -> list[str]:
    """Lower-case, strip, drop blanks, filter by quote suffix, exclude denylist, dedup, sort."""
    deny = {d.lower() for d in denylist}
    suffix = quote_suffix.lower() if quote_suffix else None
    out: set[str] = set()
    for s in raw:
        if not isinstance(s, str):
            continue
        s = s.strip().lower()
        if not s or s in deny:
            continue
        if suffix and (not s.endswith(suffix) or s == suffix):
            continue
        out.add(s)
    return sorted(out)


@dataclass(slots=True)
class ReconcileResult:
    changed: bool
    symbols: list[str]
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


async def _call(cb: Optional[Callback], arg: list[str]) -> None:
    if cb is None:
        return
    res = cb(arg)
    if inspect.isawaitable(res):
        await res


class SymbolReconciler:
    """
    Keeps the tracked-symbol set in line with an external source.

    A non-empty pinned list wins over discovery: reconcile() is then a no-op.
    Otherwise each reconcile() fetches, normalises and compares (unordered) with
    the active set. On change: on_removed(removed) runs first (state purge), then
    on_changed(new_set) (stream rebuild).
    """

    def __init__(
        self,
        source: SymbolSource,
        *,
        pinned: Iterable[str] = (),
        on_removed: Optional[Callback] = None,
        on_changed: Optional[Callback] = None,
        quote_suffix: Optional[str] = None,
        denylist: Iterable[str] = (),
        name: str = "symbols",
    ):
        self._source = source
        self._on_removed = on_removed
        self._on_changed = on_changed
        self.quote_suffix = quote_suffix
        self.denylist = frozenset(denylist)
        self._pinned = normalize_symbols(pinned)
        self._active: list[str] = list(self._pinned)
        self._stop = asyncio.Event()
        self._log = structlog.get_logger("reconciler").bind(name=name)

    @property
    def pinned(self) -> bool:
        return bool(self._pinned)

    @property
    def active(self) -> list[str]:
        return list(self._active)

    async def reconcile(self) -> ReconcileResult:
        if self._pinned:
            return ReconcileResult(changed=False, symbols=list(self._active))

        fetched = await self._source()
        desired = normalize_symbols(fetched, quote_suffix=self.quote_suffix, denylist=self.denylist)

        current = set(self._active)
        target = set(desired)
        if current == target:
            return ReconcileResult(changed=False, symbols=list(self._active))

        removed = sorted(current - target)
        added = sorted(target - current)
        self._active = desired
        self._log.info("tracked_symbols_updated", count=len(desired), added=added, removed=removed)

        if removed:
            await _call(self._on_removed, removed)
        await _call(self._on_changed, list(desired))
        return ReconcileResult(changed=True, symbols=list(desired), added=added, removed=removed)

    async def run(self, interval_s: float) -> None:
        """Reconcile every interval_s until stop(); failures are logged and retried next tick."""
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval_s)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.reconcile()
            except Exception as e:
                self._log.error("symbol_refresh_failed", err=str(e), err_type=type(e).__name__)

    def stop(self) -> None:
        self._stop.set()
