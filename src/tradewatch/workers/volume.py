from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from typing import Callable, Optional

from tradewatch.alerts.cooldown import CooldownGate
from tradewatch.alerts.evaluator import evaluate
from tradewatch.alerts.rules import Operator, Rule
from tradewatch.backend.api import SETTINGS_PATH, SYMBOLS_PATH, BackendClient, resolve_threshold_settings
from tradewatch.data.rolling_window import RollingAggregator
from tradewatch.ingest import parser
from tradewatch.ingest.binance_ws import SPOT_WS_URL, BinanceStream, BinanceStreamConfig
from tradewatch.notify.dispatch import VOLUME_TRIGGER_PATH, DispatchClient
from tradewatch.symbols.reconciler import DEFAULT_DENYLIST, DEFAULT_QUOTE_SUFFIX, SymbolReconciler
from tradewatch.utils.time import iso_utc
from tradewatch.utils.types import Market, TradeEvent, VolumeTriggerPayload
from tradewatch.workers.base import DispatchingWorker


@dataclass(slots=True)
class VolumeWorkerConfig:
    """
    market:         "spot" | "futures" (one worker per market, no shared state)
    symbols:        pinned symbol list; non-empty disables backend discovery
    window_seconds: trailing window for the notional sum
    threshold_usd:  initial threshold, replaced by backend settings when present
    cooldown_seconds: min gap between two alerts for the same symbol
    """
    market: Market = "spot"
    ws_url: str = SPOT_WS_URL
    channel: str = "aggTrade"
    symbols: list[str] = field(default_factory=list)
    window_seconds: float = 15 * 60
    threshold_usd: float = 400_000.0
    cooldown_seconds: float = 15 * 60
    symbol_refresh_interval_s: float = 300.0
    settings_refresh_interval_s: float = 60.0
    symbols_path: str = ""
    settings_path: str = SETTINGS_PATH
    trigger_path: str = VOLUME_TRIGGER_PATH
    quote_suffix: Optional[str] = DEFAULT_QUOTE_SUFFIX
    denylist: frozenset[str] = DEFAULT_DENYLIST
    ws_base_delay_s: float = 5.0
    ws_max_delay_s: float = 60.0

    def resolved_symbols_path(self) -> str:
        return self.symbols_path or f"{SYMBOLS_PATH}?market={self.market}"


class VolumeAlertWorker(DispatchingWorker):
    """
    Rolling-notional volume alerts for one market.

    Flow per trade:
      TradeEvent -> RollingAggregator.update -> evaluate(>= threshold)
                 -> CooldownGate.try_acquire(symbol) -> dispatch task

    Owns all of its state (windows, cooldowns, tracked set); nothing is shared
    between the spot and futures instances.
    """

    def __init__(
        self,
        cfg: VolumeWorkerConfig,
        api: BackendClient,
        dispatcher: DispatchClient,
        *,
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__(f"volume-{cfg.market}", dispatcher, clock=clock)
        self.cfg = cfg
        self.api = api
        self.threshold: float = float(cfg.threshold_usd)
        self._settings_marker: Optional[str] = None

        self.aggregator = RollingAggregator(cfg.window_seconds)
        self.cooldowns = CooldownGate()
        self.reconciler = SymbolReconciler(
            self._fetch_symbols,
            pinned=cfg.symbols,
            on_removed=self._purge,
            on_changed=self._apply_symbols,
            quote_suffix=cfg.quote_suffix,
            denylist=cfg.denylist,
            name=self.name,
        )
        self._tracked: set[str] = set(self.reconciler.active)
        self.stream = BinanceStream(
            BinanceStreamConfig(
                base_url=cfg.ws_url,
                channel=cfg.channel,
                base_delay_s=cfg.ws_base_delay_s,
                max_delay_s=cfg.ws_max_delay_s,
            ),
            parser.parse_trade_msg,
            self.handle_trade,
            symbols=self.reconciler.active,
            name=self.name,
        )

        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    # ---------------------------- lifecycle ---------------------------- #

    async def start(self) -> None:
        try:
            await self.reconciler.reconcile()
        except Exception as e:
            # not fatal: the periodic reconcile retries
            self._log.error("symbol_refresh_failed", err=str(e), err_type=type(e).__name__)
        await self.refresh_settings()

        self._tasks = [
            asyncio.create_task(self.stream.run(), name=f"{self.name}-stream"),
            asyncio.create_task(self.reconciler.run(self.cfg.symbol_refresh_interval_s), name=f"{self.name}-symbols"),
            asyncio.create_task(self._settings_loop(), name=f"{self.name}-settings"),
        ]
        self._log.info(
            "volume_worker_started",
            symbols=len(self._tracked),
            pinned=self.reconciler.pinned,
            threshold=self.threshold,
            window_s=self.cfg.window_seconds,
        )

    async def run(self) -> None:
        await self.start()
        await asyncio.gather(*self._tasks)

    async def stop(self) -> None:
        self._stop.set()
        self.reconciler.stop()
        await self.stream.stop()
        for t in self._tasks:
            if not t.done():
                t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.drain(timeout=5.0)

    # ---------------------------- hot path ---------------------------- #

    def rule_for(self, symbol: str) -> Rule:
        return Rule(
            id=symbol,
            symbol=symbol,
            threshold=self.threshold,
            operator=Operator.GTE,
            raw_operator=Operator.GTE.value,
            cooldown_seconds=self.cfg.cooldown_seconds,
        )

    async def handle_trade(self, evt: TradeEvent) -> bool:
        """Returns True when this trade fired a notification."""
        self.stats.events += 1
        sym = evt.symbol
        if sym not in self._tracked:
            # late frame from a subscription that was just rebuilt
            self.stats.dropped += 1
            return False

        value = evt.notional
        if not math.isfinite(value) or value < 0:
            self.stats.dropped += 1
            return False
        ts = evt.ts if math.isfinite(evt.ts) and evt.ts > 0 else self.clock()

        total = self.aggregator.update(sym, ts, value)
        rule = self.rule_for(sym)
        if not evaluate(rule, total):
            return False

        # check-and-set happens before any await: concurrent triggers can't both pass
        if not self.cooldowns.try_acquire(sym, self.clock(), rule.cooldown_seconds):
            self.stats.suppressed += 1
            return False
        self.stats.fired += 1

        span = self.aggregator.window_span(sym) or (ts, ts)
        payload: VolumeTriggerPayload = {
            "symbol": sym,
            "value": round(total, 2),
            "market": self.cfg.market,
            "threshold": rule.threshold,
            "windowSeconds": self.cfg.window_seconds,
            "windowStart": iso_utc(span[0]),
            "windowEnd": iso_utc(span[1]),
            "triggeredAt": iso_utc(self.clock()),
        }
        self._log.info("volume_alert_fired", symbol=sym, value=round(total, 2), threshold=rule.threshold)
        self._spawn_dispatch(payload, self.cfg.trigger_path, symbol=sym, value=round(total, 2))
        return True

    # ---------------------------- settings ---------------------------- #

    async def refresh_settings(self) -> bool:
        """
        Pull settings and apply the threshold if the backend's updatedAt marker moved.
        Applies mid-window; the rolling sums are kept as they are.
        Returns True when a new threshold was applied.
        """
        try:
            raw = await self.api.fetch_settings(self.cfg.settings_path)
        except Exception as e:
            self._log.error("settings_refresh_failed", err=str(e), err_type=type(e).__name__)
            return False

        s = resolve_threshold_settings(raw, self.cfg.market)
        if s is None:
            self._log.warning("settings_missing_threshold", keys=sorted(raw)[:20])
            return False
        if s.updated_at is not None and s.updated_at == self._settings_marker:
            return False
        if s.updated_at is None and s.threshold == self.threshold:
            return False

        old = self.threshold
        self.threshold = s.threshold
        self._settings_marker = s.updated_at
        self._log.info("threshold_updated", old=old, new=s.threshold, updated_at=s.updated_at)
        return True

    async def _settings_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.cfg.settings_refresh_interval_s)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.refresh_settings()
            except Exception as e:
                self._log.error("settings_refresh_failed", err=str(e), err_type=type(e).__name__)

    # ---------------------------- symbols ---------------------------- #

    async def _fetch_symbols(self) -> list[str]:
        return await self.api.fetch_symbols(self.cfg.resolved_symbols_path())

    def _purge(self, removed: list[str]) -> None:
        for sym in removed:
            self.aggregator.purge(sym)
            self.cooldowns.purge(sym)
        self._log.info("symbol_state_purged", symbols=removed)

    async def _apply_symbols(self, symbols: list[str]) -> None:
        self._tracked = set(symbols)
        await self.stream.update_symbols(symbols)

    @property
    def tracked(self) -> list[str]:
        return sorted(self._tracked)
