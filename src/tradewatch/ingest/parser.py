from __future__ import annotations

import json
import math
from typing import Any, Optional, Union

from tradewatch.utils.time import normalize_epoch_s, utc_now_s
from tradewatch.utils.types import TickerEvent, TradeEvent

Raw = Union[str, bytes, bytearray, dict]

TRADE_EVENTS = ("trade", "aggTrade")
TICKER_PRICE_FIELDS = ("c", "p", "lastPrice", "price", "w")


def _num(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError, OverflowError):
        return None
    return f if math.isfinite(f) else None


def load(raw: Raw) -> Optional[Any]:
    """Decode a websocket frame; None for anything that isn't valid JSON."""
    if isinstance(raw, dict):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def unwrap(msg: Any) -> tuple[Optional[str], Optional[dict]]:
    """
    Combined streams wrap payloads: {"stream": "solusdt@aggTrade", "data": {...}}.
    Single-stream subscriptions deliver the payload bare.
    Returns (stream_name or None, payload dict or None).
    """
    if not isinstance(msg, dict):
        return None, None
    stream = msg.get("stream")
    data = msg.get("data")
    if isinstance(data, dict):
        return (str(stream) if stream else None), data
    return (str(stream) if stream else None), msg


def _symbol(payload: dict, stream: Optional[str]) -> Optional[str]:
    s = payload.get("s")
    if s:
        return str(s).lower()
    if stream:
        return stream.split("@", 1)[0].lower() or None
    return None


def parse_trade_msg(raw: Raw) -> Optional[TradeEvent]:
    """
    Return TradeEvent for a Binance trade / aggTrade payload; else None.

    Binance trade payload fields:
      - "e": "trade" | "aggTrade"
      - "s": "SOLUSDT"       symbol
      - "p": "142.17"        price (string)
      - "q": "12.5"          quantity (string)
      - "T": 1700000000123   trade time (ms)
      - "E": 1700000000125   event time (ms)
    """
    stream, m = unwrap(load(raw))
    if m is None:
        return None
    ev = m.get("e")
    if ev is not None and ev not in TRADE_EVENTS:
        return None

    sym = _symbol(m, stream)
    px = _num(m.get("p"))
    qty = _num(m.get("q"))
    if not sym or px is None or qty is None or px < 0 or qty < 0:
        return None

    ts = _num(m.get("T"))
    if ts is None:
        ts = _num(m.get("E"))
    ts = normalize_epoch_s(ts) if ts is not None and ts > 0 else utc_now_s()

    return TradeEvent(symbol=sym, px=px, qty=qty, ts=ts)


def parse_ticker_msg(raw: Raw) -> Optional[TickerEvent]:
    """
    Return TickerEvent for a ticker-like payload (24hrTicker, miniTicker, ...); else None.
    Price is the first present of c / p / lastPrice / price / w.
    """
    stream, m = unwrap(load(raw))
    if m is None:
        return None

    sym = _symbol(m, stream)
    px = None
    for f in TICKER_PRICE_FIELDS:
        if m.get(f) not in (None, ""):
            px = _num(m.get(f))
            break
    if not sym or px is None:
        return None

    ts = _num(m.get("E"))
    ts = normalize_epoch_s(ts) if ts is not None and ts > 0 else utc_now_s()
    return TickerEvent(symbol=sym, px=px, ts=ts)
