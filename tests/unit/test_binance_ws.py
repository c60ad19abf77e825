import asyncio

import pytest

from tradewatch.ingest import parser
from tradewatch.ingest.binance_ws import (
    BinanceStream,
    BinanceStreamConfig,
    ConnectionState,
    build_stream_url,
)
from tradewatch.utils.types import TradeEvent


def _trade(sym="SOLUSDT", p="100.0", q="2", T=1_700_000_000_000):
    return {"e": "aggTrade", "s": sym, "p": p, "q": q, "T": T}


# ---- monkeypatch ws_connect to our FakeConnector ----
@pytest.fixture
def connector(monkeypatch):
    """
    Patch the exact symbol used inside binance_ws.py.
    Tests push scripted sockets into connector.sockets before starting the stream.
    """
    from tests.helpers.fake_ws import FakeConnector
    import tradewatch.ingest.binance_ws as binance_ws

    c = FakeConnector()
    monkeypatch.setattr(binance_ws, "ws_connect", c)
    return c


def _fast_cfg(**kw):
    base = dict(base_url="wss://example.test", channel="aggTrade", base_delay_s=0.01, max_delay_s=0.04,
                expect_heartbeat_s=1.0)
    base.update(kw)
    return BinanceStreamConfig(**base)


def test_build_stream_url_single_and_combined():
    assert build_stream_url("wss://x/", [], "trade") is None
    assert build_stream_url("wss://x/", ["SOLUSDT"], "trade") == "wss://x/ws/solusdt@trade"
    assert build_stream_url("wss://x", ["a", "b"], "aggTrade") == "wss://x/stream?streams=a@aggTrade/b@aggTrade"


def test_reconnect_delay_sequence_caps_and_stays_capped():
    stream = BinanceStream(BinanceStreamConfig(base_delay_s=5.0, max_delay_s=60.0), parser.parse_trade_msg,
                           None, symbols=["a"])
    delays = [stream.next_reconnect_delay() for _ in range(7)]
    assert delays == [5.0, 10.0, 20.0, 40.0, 60.0, 60.0, 60.0]
    assert stream.attempts == 7


@pytest.mark.asyncio
async def test_trades_delivered_and_noise_dropped(connector):
    """
    Verifies: subscription acks, garbage and unknown events are dropped; trades are
    parsed and handed to on_event in order.
    """
    from tests.helpers.fake_ws import FakeWS, wait_until

    ws = FakeWS(scripted=[
        "not json at all",
        {"result": None, "id": 1},
        {"e": "kline", "s": "SOLUSDT"},
        _trade(p="100.0"),
        {"stream": "solusdt@aggTrade", "data": _trade(p="101.0")},
    ])
    connector.sockets.append(ws)

    got = []

    async def on_event(evt):
        got.append(evt)

    stream = BinanceStream(_fast_cfg(), parser.parse_trade_msg, on_event, symbols=["SOLUSDT"])
    task = asyncio.create_task(stream.run())

    await wait_until(lambda: len(got) == 2)
    assert all(isinstance(e, TradeEvent) for e in got)
    assert [e.px for e in got] == [100.0, 101.0]
    assert stream.state is ConnectionState.CONNECTED
    assert stream.healthy() is True
    assert connector.urls == ["wss://example.test/ws/solusdt@aggTrade"]

    await stream.stop()
    await asyncio.wait_for(task, timeout=2.0)
    assert stream.state is ConnectionState.DISCONNECTED
    assert ws.closed


@pytest.mark.asyncio
async def test_server_close_schedules_reconnect_and_resets_attempts(connector):
    from tests.helpers.fake_ws import CLOSE, FakeWS, wait_until

    ws1 = FakeWS(scripted=[CLOSE])
    ws2 = FakeWS()
    connector.sockets.extend([ws1, ws2])

    async def on_event(evt):
        pass

    stream = BinanceStream(_fast_cfg(), parser.parse_trade_msg, on_event, symbols=["solusdt"])
    task = asyncio.create_task(stream.run())

    await wait_until(lambda: len(connector.urls) == 2 and stream.state is ConnectionState.CONNECTED)
    assert stream.attempts == 0

    await stream.stop()
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_handshake_failures_retry_until_connected(connector):
    from tests.helpers.fake_ws import FakeWS, wait_until

    connector.sockets.extend([OSError("refused"), OSError("refused"), OSError("refused"), FakeWS()])

    async def on_event(evt):
        pass

    stream = BinanceStream(_fast_cfg(), parser.parse_trade_msg, on_event, symbols=["solusdt"])
    task = asyncio.create_task(stream.run())

    await wait_until(lambda: stream.state is ConnectionState.CONNECTED)
    assert len(connector.urls) == 4
    assert stream.attempts == 0

    await stream.stop()
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_local_error_aborts_transport_and_reconnects(connector):
    from tests.helpers.fake_ws import FakeWS, wait_until

    ws1 = FakeWS(scripted=[RuntimeError("protocol blew up")])
    ws2 = FakeWS()
    connector.sockets.extend([ws1, ws2])

    async def on_event(evt):
        pass

    stream = BinanceStream(_fast_cfg(), parser.parse_trade_msg, on_event, symbols=["solusdt"])
    task = asyncio.create_task(stream.run())

    await wait_until(lambda: len(connector.urls) == 2 and stream.state is ConnectionState.CONNECTED)
    assert ws1.aborted is True

    await stream.stop()
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_update_symbols_rebuilds_subscription_without_backoff(connector):
    from tests.helpers.fake_ws import FakeWS, wait_until

    ws1, ws2 = FakeWS(), FakeWS()
    connector.sockets.extend([ws1, ws2])

    async def on_event(evt):
        pass

    # a huge base delay proves the rebuild does not go through backoff
    stream = BinanceStream(_fast_cfg(base_delay_s=30.0, max_delay_s=60.0), parser.parse_trade_msg, on_event,
                           symbols=["aaausdt"])
    task = asyncio.create_task(stream.run())
    await wait_until(lambda: stream.state is ConnectionState.CONNECTED)

    stream.attempts = 4  # pretend we inherited failures
    changed = await stream.update_symbols(["bbbusdt", "AAAUSDT"])
    assert changed is True
    assert stream.attempts == 0

    await wait_until(lambda: len(connector.urls) == 2 and stream.state is ConnectionState.CONNECTED)
    assert ws1.closed
    assert connector.urls[1] == "wss://example.test/stream?streams=aaausdt@aggTrade/bbbusdt@aggTrade"

    # same set again is a no-op
    assert await stream.update_symbols(["aaausdt", "bbbusdt"]) is False

    await stream.stop()
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_empty_symbol_set_waits_without_connecting(connector):
    from tests.helpers.fake_ws import wait_until

    async def on_event(evt):
        pass

    stream = BinanceStream(_fast_cfg(), parser.parse_trade_msg, on_event)
    task = asyncio.create_task(stream.run())
    await asyncio.sleep(0.05)
    assert connector.urls == []
    assert stream.state is ConnectionState.DISCONNECTED

    await stream.update_symbols(["solusdt"])
    await wait_until(lambda: stream.state is ConnectionState.CONNECTED)
    assert connector.urls == ["wss://example.test/ws/solusdt@aggTrade"]

    await stream.stop()
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_stop_during_backoff_does_not_revive(connector):
    from tests.helpers.fake_ws import wait_until

    connector.sockets.extend([OSError("down")] * 5)

    async def on_event(evt):
        pass

    stream = BinanceStream(_fast_cfg(base_delay_s=30.0, max_delay_s=60.0), parser.parse_trade_msg, on_event,
                           symbols=["solusdt"])
    task = asyncio.create_task(stream.run())
    await wait_until(lambda: stream.attempts == 1)

    await stream.stop()
    await asyncio.wait_for(task, timeout=1.0)
    assert stream.closed_by_owner is True
    assert len(connector.urls) == 1


@pytest.mark.asyncio
async def test_handler_error_does_not_end_stream(connector):
    from tests.helpers.fake_ws import FakeWS, wait_until

    ws = FakeWS(scripted=[_trade(p="1"), _trade(p="2")])
    connector.sockets.append(ws)
    got = []

    async def on_event(evt):
        if evt.px == 1.0:
            raise ValueError("boom")
        got.append(evt)

    stream = BinanceStream(_fast_cfg(), parser.parse_trade_msg, on_event, symbols=["solusdt"])
    task = asyncio.create_task(stream.run())
    await wait_until(lambda: len(got) == 1)
    assert got[0].px == 2.0
    assert len(connector.urls) == 1

    await stream.stop()
    await asyncio.wait_for(task, timeout=2.0)
