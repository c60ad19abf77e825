from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional

from tradewatch.alerts.cooldown import CooldownGate
from tradewatch.alerts.evaluator import evaluate
from tradewatch.alerts.rules import Rule, group_by_symbol, resolve_rule
from tradewatch.backend.api import ALERTS_PATH, BackendClient
from tradewatch.ingest import parser
from tradewatch.ingest.binance_ws import SPOT_WS_URL, BinanceStream, BinanceStreamConfig
from tradewatch.notify.dispatch import PRICE_TRIGGER_PATH, DispatchClient
from tradewatch.symbols.reconciler import SymbolReconciler
from tradewatch.utils.time import iso_utc
from tradewatch.utils.types import PriceTriggerPayload, TickerEvent
from tradewatch.workers.base import DispatchingWorker


@dataclass(slots=True)
class PriceAlertConfig:
    ws_url: str = SPOT_WS_URL
    channel: str = "ticker"
    symbols: list[str] = field(default_factory=list)   # pinned; empty = derive from alerts
    alerts_path: str = ALERTS_PATH
    trigger_path: str = PRICE_TRIGGER_PATH
    refresh_interval_s: float = 60.0
    ws_base_delay_s: float = 5.0
    ws_max_delay_s: float = 60.0


class PriceAlertWorker(DispatchingWorker):
    """
    User-defined price alerts on ticker updates.

    Rules come from the backend and are refreshed periodically; the tracked
    symbols are the symbols those rules reference (unless pinned). Cooldowns are
    keyed by rule id since several rules can share a symbol.
    """

    def __init__(
        self,
        cfg: PriceAlertConfig,
        api: BackendClient,
        dispatcher: DispatchClient,
        *,
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__("price-alerts", dispatcher, clock=clock)
        self.cfg = cfg
        self.api = api
        self.cooldowns = CooldownGate()
        self._rules: dict[str, list[Rule]] = {}
        self._last_prices: dict[str, float] = {}

        self.reconciler = SymbolReconciler(
            self._rule_symbols,
            pinned=cfg.symbols,
            on_removed=self._purge,
            on_changed=self._apply_symbols,
            name=self.name,
        )
        self.stream = BinanceStream(
            BinanceStreamConfig(
                base_url=cfg.ws_url,
                channel=cfg.channel,
                base_delay_s=cfg.ws_base_delay_s,
                max_delay_s=cfg.ws_max_delay_s,
            ),
            parser.parse_ticker_msg,
            self.handle_ticker,
            symbols=self.reconciler.active,
            name=self.name,
        )
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    # ---------------------------- lifecycle ---------------------------- #

    async def start(self) -> None:
        await self.refresh_alerts()
        self._tasks = [
            asyncio.create_task(self.stream.run(), name=f"{self.name}-stream"),
            asyncio.create_task(self._refresh_loop(), name=f"{self.name}-refresh"),
        ]
        self._log.info("price_worker_started", rules=self.rule_count, symbols=len(self.stream.symbols))

    async def stop(self) -> None:
        self._stop.set()
        await self.stream.stop()
        for t in self._tasks:
            if not t.done():
                t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.drain(timeout=5.0)

    # ---------------------------- rules ---------------------------- #

    async def refresh_alerts(self) -> bool:
        """
        Reload rules; on failure keep the previous set. Cooldowns survive a
        refresh for rules that still exist. Returns True on a successful load.
        """
        try:
            raw = await self.api.fetch_alerts(self.cfg.alerts_path)
        except Exception as e:
            self._log.error("alerts_refresh_failed", err=str(e), err_type=type(e).__name__)
            return False

        rules = [r for r in (resolve_rule(a) for a in raw) if r is not None]
        self._rules = group_by_symbol(rules)
        dropped = self.cooldowns.purge_missing(r.id for r in rules)
        if dropped:
            self._log.debug("cooldowns_purged", rule_ids=dropped)

        try:
            await self.reconciler.reconcile()
        except Exception as e:
            self._log.error("symbol_refresh_failed", err=str(e), err_type=type(e).__name__)
        return True

    async def _refresh_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.cfg.refresh_interval_s)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.refresh_alerts()
            except Exception as e:
                self._log.error("alerts_refresh_failed", err=str(e), err_type=type(e).__name__)

    async def _rule_symbols(self) -> list[str]:
        return list(self._rules)

    def _purge(self, removed: list[str]) -> None:
        for sym in removed:
            self._last_prices.pop(sym, None)

    async def _apply_symbols(self, symbols: list[str]) -> None:
        await self.stream.update_symbols(symbols)

    @property
    def rule_count(self) -> int:
        return sum(len(v) for v in self._rules.values())

    def rules_for(self, symbol: str) -> list[Rule]:
        return list(self._rules.get(symbol, ()))

    # ---------------------------- hot path ---------------------------- #

    async def handle_ticker(self, evt: TickerEvent) -> int:
        """Returns the number of rules that fired for this update."""
        self.stats.events += 1
        rules = self._rules.get(evt.symbol)
        if not rules:
            return 0

        previous = self._last_prices.get(evt.symbol)
        self._last_prices[evt.symbol] = evt.px

        fired = 0
        for rule in rules:
            if not evaluate(rule, evt.px, previous):
                continue
            if not self.cooldowns.try_acquire(rule.id, self.clock(), rule.cooldown_seconds):
                self.stats.suppressed += 1
                continue
            fired += 1
            self.stats.fired += 1
            payload: PriceTriggerPayload = {
                "alertId": rule.id,
                "symbol": evt.symbol,
                "price": evt.px,
                "triggeredAt": iso_utc(self.clock()),
                "alert": dict(rule.source or {}),
            }
            self._log.info("price_alert_fired", alert_id=rule.id, symbol=evt.symbol, price=evt.px)
            self._spawn_dispatch(payload, self.cfg.trigger_path, alert_id=rule.id, symbol=evt.symbol, price=evt.px)
        return fired

    def last_price(self, symbol: str) -> Optional[float]:
        return self._last_prices.get(symbol)
