import json

import pytest

from tradewatch.ingest import parser
from tradewatch.utils.types import TickerEvent, TradeEvent

def test_parse_trade_variants():
    m1 = {"e": "trade", "s": "SOLUSDT", "p": "150.5", "q": "10", "T": 1_700_000_000_000}
    m2 = {"stream": "solusdt@aggTrade", "data": {"e": "aggTrade", "s": "SOLUSDT", "p": "150.5", "q": "10", "T": 1_700_000_000_000}}
    t1 = parser.parse_trade_msg(json.dumps(m1))
    t2 = parser.parse_trade_msg(json.dumps(m2).encode())
    assert isinstance(t1, TradeEvent) and isinstance(t2, TradeEvent)
    assert t1.symbol == "solusdt" and t2.symbol == "solusdt"
    assert t1.px == pytest.approx(150.5)
    assert t1.notional == pytest.approx(1505.0)
    assert t1.ts == pytest.approx(1_700_000_000.0)

def test_parse_trade_symbol_from_stream_name():
    m = {"stream": "dogeusdt@trade", "data": {"e": "trade", "p": "0.1", "q": "5", "T": 1_700_000_000_000}}
    t = parser.parse_trade_msg(m)
    assert t is not None and t.symbol == "dogeusdt"

def test_parse_trade_missing_time_uses_ingestion_time(monkeypatch):
    monkeypatch.setattr(parser, "utc_now_s", lambda: 42.0)
    t = parser.parse_trade_msg({"e": "trade", "s": "X", "p": "1", "q": "1"})
    assert t is not None and t.ts == 42.0

def test_parse_trade_rejects_malformed():
    bad = [
        "not json",
        b"\xff\xfe",
        {"result": None, "id": 1},
        {"e": "kline", "s": "SOLUSDT", "p": "1", "q": "1"},
        {"e": "trade", "s": "SOLUSDT", "p": "abc", "q": "1"},
        {"e": "trade", "s": "SOLUSDT", "p": "NaN", "q": "1"},
        {"e": "trade", "s": "SOLUSDT", "p": "-1", "q": "1"},
        {"e": "trade", "p": "1", "q": "1"},
        [1, 2, 3],
    ]
    for m in bad:
        assert parser.parse_trade_msg(m if not isinstance(m, list) else json.dumps(m)) is None

def test_parse_ticker_price_candidates():
    t = parser.parse_ticker_msg({"e": "24hrTicker", "s": "BNBUSDT", "c": "612.3", "E": 1_700_000_000_000})
    assert isinstance(t, TickerEvent)
    assert t.symbol == "bnbusdt" and t.px == pytest.approx(612.3)

    t2 = parser.parse_ticker_msg({"stream": "bnbusdt@ticker", "data": {"lastPrice": "600"}})
    assert t2 is not None and t2.symbol == "bnbusdt" and t2.px == 600.0

def test_parse_ticker_non_numeric_price_returns_none():
    assert parser.parse_ticker_msg({"s": "BNBUSDT", "c": "n/a"}) is None
    assert parser.parse_ticker_msg({"s": "BNBUSDT"}) is None
    assert parser.parse_ticker_msg("{oops") is None

def test_parse_trade_out_of_range_numbers_never_raise(monkeypatch):
    monkeypatch.setattr(parser, "utc_now_s", lambda: 42.0)
    huge = "9" * 401
    # unusable trade time falls back to event time, then to ingestion time
    t = parser.parse_trade_msg('{"e":"trade","s":"SOLUSDT","p":"1","q":"2","T":%s,"E":1700000000000}' % huge)
    assert t is not None and t.ts == pytest.approx(1_700_000_000.0)
    t = parser.parse_trade_msg('{"e":"trade","s":"SOLUSDT","p":"1","q":"2","T":%s}' % huge)
    assert t is not None and t.ts == 42.0
    assert parser.parse_trade_msg('{"e":"trade","s":"SOLUSDT","p":%s,"q":"2"}' % huge) is None
    assert parser.parse_ticker_msg('{"s":"SOLUSDT","c":%s}' % huge) is None
