from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from tradewatch.utils.backoff import reconnect_delay
from tradewatch.utils.time import utc_now_s

SPOT_WS_URL = "wss://stream.binance.com:9443"
FUTURES_WS_URL = "wss://fstream.binance.com"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    FAILED = "failed"


@dataclass(slots=True)
class BinanceStreamConfig:
    base_url: str = SPOT_WS_URL
    channel: str = "aggTrade"          # "trade" | "aggTrade" | "ticker" | ...
    # reconnect behavior: min(base * 2^(attempts-1), max), never gives up
    base_delay_s: float = 5.0
    max_delay_s: float = 60.0
    # timeouts
    open_timeout_s: float = 10.0
    ping_interval_s: float = 20.0
    # heartbeat / staleness (health only; a quiet stream is not reconnected)
    expect_heartbeat_s: float = 30.0


def build_stream_url(base_url: str, symbols: Iterable[str], channel: str) -> Optional[str]:
    """
    One symbol  -> {base}/ws/{sym}@{channel}           (payload delivered bare)
    Many        -> {base}/stream?streams=a@ch/b@ch    (payload wrapped in {"stream","data"})
    None        -> None
    """
    syms = [s.lower() for s in symbols]
    if not syms:
        return None
    base = base_url.rstrip("/")
    if len(syms) == 1:
        return f"{base}/ws/{syms[0]}@{channel}"
    streams = "/".join(f"{s}@{channel}" for s in syms)
    return f"{base}/stream?streams={streams}"


class BinanceStream:
    """
    One logical Binance subscription over a set of symbols.

    Lifecycle:
      - Disconnected -> Connecting -> Connected -> (Closing | Failed) -> Disconnected
      - Every non-owner close or error schedules a reconnect with capped exponential
        backoff; the attempt counter resets on a successful connect.
      - update_symbols() is an owner-initiated close-then-reconnect with the attempt
        counter pre-reset, so a symbol change never inherits failure backoff.
      - stop() sets closed_by_owner; pending backoff sleeps wake up and exit.

    Inbound frames go through parse_fn; None results are dropped silently.
    Parsed events are awaited one at a time through on_event, so events of one
    connection are never handled concurrently.

    Usage:
        stream = BinanceStream(cfg, parser.parse_trade_msg, worker.handle_trade, symbols=["solusdt"])
        await stream.run()   # runs until stop()
    """

    def __init__(
        self,
        cfg: BinanceStreamConfig,
        parse_fn: Callable[[Any], Optional[Any]],
        on_event: Callable[[Any], Awaitable[None]],
        *,
        symbols: Iterable[str] = (),
        name: str = "binance",
    ):
        self.cfg = cfg
        self.name = name
        self._parse = parse_fn
        self._on_event = on_event
        self._symbols: list[str] = sorted({s.lower() for s in symbols})

        self._log = structlog.get_logger("binance_ws").bind(stream=name)
        self._wake = asyncio.Event()
        self._ws = None
        self._rebuild = False
        self._last_msg_ts: float = 0.0

        self.state: ConnectionState = ConnectionState.DISCONNECTED
        self.attempts: int = 0
        self.closed_by_owner: bool = False

    # ---------------------------- public API ---------------------------- #

    @property
    def symbols(self) -> list[str]:
        return list(self._symbols)

    @property
    def url(self) -> Optional[str]:
        return build_stream_url(self.cfg.base_url, self._symbols, self.cfg.channel)

    async def run(self) -> None:
        while not self.closed_by_owner:
            self._wake.clear()
            self._rebuild = False

            if not self._symbols:
                self._log.warning("ws_no_symbols_waiting")
                await self._wait(None)
                continue

            try:
                await self._connect_and_stream()
            except Exception as e:
                self.state = ConnectionState.FAILED
                self._log.warning("ws_error", err=str(e), err_type=type(e).__name__)
            finally:
                self._ws = None

            if self.closed_by_owner:
                break
            if self._rebuild:
                self._log.info("ws_resubscribe", symbols=self._symbols)
                continue

            self.state = ConnectionState.DISCONNECTED
            delay = self.next_reconnect_delay()
            self._log.info("ws_reconnect_scheduled", delay_s=delay, attempts=self.attempts)
            await self._wait(delay)

        self.state = ConnectionState.DISCONNECTED
        self._log.info("ws_loop_exit")

    async def stop(self) -> None:
        self.closed_by_owner = True
        self._wake.set()
        ws = self._ws
        if ws is not None:
            self.state = ConnectionState.CLOSING
            try:
                await ws.close()
            except Exception as e:
                self._log.debug("ws_close_error", err=str(e))

    async def update_symbols(self, symbols: Iterable[str]) -> bool:
        """
        Swap the subscription set. Returns False when nothing changed.
        An open connection is closed and rebuilt immediately; a pending backoff
        sleep is cut short.
        """
        new = sorted({s.lower() for s in symbols})
        if new == self._symbols:
            return False
        self._symbols = new
        self.attempts = 0
        self._rebuild = True
        self._wake.set()

        ws = self._ws
        if ws is not None:
            self._log.info("ws_closing", reason="symbols-changed", symbols=len(new))
            self.state = ConnectionState.CLOSING
            try:
                await ws.close()
            except Exception as e:
                self._log.debug("ws_close_error", err=str(e))
        return True

    def next_reconnect_delay(self) -> float:
        self.attempts += 1
        return reconnect_delay(self.attempts, self.cfg.base_delay_s, self.cfg.max_delay_s)

    def healthy(self) -> bool:
        """Quick health signal for /healthz."""
        if self.state is not ConnectionState.CONNECTED:
            return False
        return self.last_message_age_s() <= self.cfg.expect_heartbeat_s

    def last_message_age_s(self) -> float:
        return max(0.0, utc_now_s() - self._last_msg_ts) if self._last_msg_ts else float("inf")

    # --------------------------- core internals ------------------------- #

    async def _connect_and_stream(self) -> None:
        """
        Connect, then stream until closed by either side.
        Returns on close; raises on handshake failure or local stream error.
        """
        url = self.url
        if url is None:
            return
        self.state = ConnectionState.CONNECTING
        self._log.info("ws_connecting", url=url, symbols=len(self._symbols))

        async with ws_connect(
            url,
            open_timeout=self.cfg.open_timeout_s,
            ping_interval=self.cfg.ping_interval_s,
        ) as ws:
            self._ws = ws
            # stop() / update_symbols() may have landed during the handshake
            if self.closed_by_owner or self._rebuild:
                return

            self.state = ConnectionState.CONNECTED
            self.attempts = 0
            self._last_msg_ts = utc_now_s()
            self._log.info("ws_connected", symbols=len(self._symbols))

            try:
                await self._stream_loop(ws)
            except Exception:
                self.state = ConnectionState.FAILED
                self._abort(ws)
                raise

    async def _stream_loop(self, ws) -> None:
        while not self.closed_by_owner and not self._rebuild:
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=self._recv_timeout())
            except asyncio.TimeoutError:
                if self.last_message_age_s() > self.cfg.expect_heartbeat_s:
                    self._log.warning("ws_stale_no_messages", age_s=round(self.last_message_age_s(), 3))
                continue
            except ConnectionClosed as e:
                self.state = ConnectionState.CLOSING
                if self.closed_by_owner or self._rebuild:
                    self._log.info("ws_closed_by_owner")
                else:
                    rcvd = getattr(e, "rcvd", None)
                    self._log.warning(
                        "ws_closed",
                        code=getattr(rcvd, "code", None),
                        reason=getattr(rcvd, "reason", None) or str(e),
                    )
                return

            self._last_msg_ts = utc_now_s()

            evt = self._parse(raw)
            if evt is None:
                # acks, unknown event types, garbage: expected noise on a shared stream
                continue

            try:
                await self._on_event(evt)
            except Exception:
                self._log.exception("event_handler_error", symbol=getattr(evt, "symbol", None))

        self._log.info("ws_stream_loop_exit")

    async def _wait(self, timeout: Optional[float]) -> None:
        """Sleep until timeout, stop() or update_symbols(), whichever comes first."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    def _recv_timeout(self) -> float:
        # how long we're okay waiting for a frame before re-checking flags / staleness
        return max(0.5, min(self.cfg.expect_heartbeat_s, 5.0))

    def _abort(self, ws) -> None:
        """Drop the TCP connection without a closing handshake."""
        transport = getattr(ws, "transport", None)
        if transport is not None:
            transport.abort()
