from tradewatch.alerts.cooldown import CooldownGate

def test_second_acquire_inside_cooldown_is_refused():
    g = CooldownGate()
    assert g.try_acquire("x", 1000.0, 900) is True
    assert g.try_acquire("x", 1899.9, 900) is False
    assert g.last_fired("x") == 1000.0

def test_acquire_at_or_after_cooldown_succeeds():
    g = CooldownGate()
    assert g.try_acquire("x", 1000.0, 900) is True
    assert g.try_acquire("x", 1900.0, 900) is True
    assert g.last_fired("x") == 1900.0

def test_refused_acquire_does_not_extend_window():
    g = CooldownGate()
    g.try_acquire("x", 0.0, 10)
    assert g.try_acquire("x", 5.0, 10) is False
    assert g.try_acquire("x", 10.0, 10) is True

def test_zero_cooldown_never_suppresses():
    g = CooldownGate()
    assert all(g.try_acquire("x", 1.0, 0) for _ in range(5))

def test_keys_are_independent_and_purgeable():
    g = CooldownGate()
    assert g.try_acquire("a", 0, 100)
    assert g.try_acquire("b", 0, 100)
    assert not g.try_acquire("a", 1, 100)
    g.purge("a")
    assert "a" not in g
    assert g.try_acquire("a", 2, 100)
    assert g.purge_missing({"a"}) == ["b"]
    assert len(g) == 1
    g.clear()
    assert len(g) == 0
