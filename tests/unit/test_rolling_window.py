import random

import pytest

from tradewatch.data.rolling_window import RollingAggregator, RollingWindow

def test_update_returns_running_sum_and_evicts_old_entries():
    agg = RollingAggregator(window_seconds=900)
    assert agg.update("x", 0.0, 150_000) == 150_000
    assert agg.update("x", 60.0, 150_000) == 300_000
    # 0.0 is exactly at the cutoff (900 - 900): retained
    assert agg.update("x", 900.0, 100) == 300_100
    # 0.0 now older than the cutoff: evicted
    assert agg.update("x", 901.0, 0) == pytest.approx(150_100)
    assert agg.window_span("x") == (60.0, 901.0)

def test_symbols_are_independent():
    agg = RollingAggregator(window_seconds=60)
    agg.update("a", 0, 10)
    agg.update("b", 0, 5)
    assert agg.total("a") == 10
    assert agg.total("b") == 5
    assert agg.total("missing") == 0.0
    assert sorted(agg.symbols()) == ["a", "b"]

def test_matches_brute_force_for_monotonic_arrivals():
    rng = random.Random(7)
    agg = RollingAggregator(window_seconds=30)
    seen = []
    ts = 0.0
    for _ in range(500):
        ts += rng.choice([0.0, 0.5, 1.0, 3.0, 12.0])
        v = rng.uniform(0, 1000)
        seen.append((ts, v))
        got = agg.update("s", ts, v)
        expected = sum(val for t, val in seen if t >= ts - 30)
        assert got == pytest.approx(expected, rel=1e-9, abs=1e-6)

def test_window_drains_to_exact_zero():
    w = RollingWindow(10)
    w.add(0.0, 0.1)
    w.add(0.0, 0.2)
    w.evict(100.0)
    assert len(w) == 0
    assert w.total == 0.0
    assert w.span() is None

def test_out_of_order_entry_is_not_evicted_early():
    # front-only eviction: a late old entry behind newer ones stays until the front moves past it
    agg = RollingAggregator(window_seconds=10)
    agg.update("s", 100.0, 1)
    agg.update("s", 50.0, 2)    # late arrival, already outside [90, 100]
    assert agg.total("s") == 3  # known approximation: overstated until the front is evicted
    assert agg.update("s", 111.0, 4) == 4

def test_purge_and_purge_missing():
    agg = RollingAggregator(window_seconds=60)
    for s in ("a", "b", "c"):
        agg.update(s, 0, 1)
    agg.purge("a")
    assert "a" not in agg
    dropped = agg.purge_missing({"c", "d"})
    assert dropped == ["b"]
    assert agg.symbols() == ["c"]

def test_rejects_non_positive_window():
    with pytest.raises(ValueError):
        RollingAggregator(0)
