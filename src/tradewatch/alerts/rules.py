# src/tradewatch/alerts/rules.py
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

import structlog

log = structlog.get_logger("rules")


class Operator(str, Enum):
    GTE = "greater_or_equal"
    LTE = "less_or_equal"
    EQ = "equal"
    CROSSES_ABOVE = "crosses_above"
    CROSSES_BELOW = "crosses_below"

    @classmethod
    def parse(cls, raw: Any) -> Optional["Operator"]:
        """Map the aliases the backend uses onto an Operator; None if unrecognised."""
        if raw is None:
            return None
        return _ALIASES.get(str(raw).strip().lower())


_ALIASES: dict[str, Operator] = {}
for _op, _names in {
    Operator.GTE: ("above", "greater_than", "gt", "gte", "greater_or_equal", ">", ">="),
    Operator.LTE: ("below", "less_than", "lt", "lte", "less_or_equal", "<", "<="),
    Operator.EQ: ("equal", "equals", "eq", "=", "=="),
    Operator.CROSSES_ABOVE: ("crosses_above", "cross_above"),
    Operator.CROSSES_BELOW: ("crosses_below", "cross_below"),
}.items():
    for _n in _names:
        _ALIASES[_n] = _op


@dataclass(frozen=True, slots=True)
class Rule:
    """
    A resolved alert definition.
    operator is None when the backend sent an operator we don't recognise;
    evaluation then falls back to greater-or-equal.
    """
    id: str
    symbol: str
    threshold: float
    operator: Optional[Operator] = Operator.GTE
    raw_operator: str = "above"
    cooldown_seconds: float = 0.0
    source: Optional[Mapping[str, Any]] = field(default=None, compare=False)  # echoed back on dispatch


# Ordered candidate field names; first usable value wins.
ID_FIELDS: Sequence[str] = ("id", "_id", "uuid")
THRESHOLD_FIELDS: Sequence[str] = ("targetPrice", "price", "threshold", "triggerPrice", "value")
OPERATOR_FIELDS: Sequence[str] = ("operator", "direction", "comparison", "condition", "type")
SYMBOL_FIELDS: Sequence[str] = ("symbol", "asset")
# (field, multiplier to seconds)
COOLDOWN_FIELDS: Sequence[tuple[str, float]] = (
    ("cooldownMs", 0.001),
    ("cooldownSeconds", 1.0),
    ("cooldown", 0.001),
)


def to_finite(v: Any) -> Optional[float]:
    """Numbers and numeric strings -> float; anything else (incl. NaN/inf, huge ints, bools) -> None."""
    if isinstance(v, bool) or v is None:
        return None
    if not isinstance(v, (int, float, str)):
        return None
    try:
        f = float(v.strip() if isinstance(v, str) else v)
    except (ValueError, OverflowError):
        return None
    return f if math.isfinite(f) else None


def first_present(raw: Mapping[str, Any], fields: Sequence[str]) -> Any:
    for f in fields:
        v = raw.get(f)
        if v not in (None, ""):
            return v
    return None


def resolve_threshold(raw: Mapping[str, Any]) -> Optional[float]:
    for f in THRESHOLD_FIELDS:
        v = to_finite(raw.get(f))
        if v is not None:
            return v
    return None


def resolve_cooldown_seconds(raw: Mapping[str, Any]) -> float:
    """First non-zero numeric candidate wins; zero, blank or garbage falls through."""
    for f, mult in COOLDOWN_FIELDS:
        num = to_finite(raw.get(f))
        if num:
            return max(0.0, num * mult)
    return 0.0


def resolve_rule(raw: Mapping[str, Any]) -> Optional[Rule]:
    """
    Turn a loosely-shaped alert object into a Rule.
    Returns None (and logs) if id, symbol or a finite threshold is missing.
    """
    if not isinstance(raw, Mapping):
        log.warning("rule_skipped_not_object", raw=str(raw)[:200])
        return None

    symbol = first_present(raw, SYMBOL_FIELDS)
    if symbol is None:
        log.warning("rule_skipped_no_symbol", alert=dict(raw))
        return None

    rid = first_present(raw, ID_FIELDS)
    if rid is None:
        log.warning("rule_skipped_no_id", alert=dict(raw))
        return None

    threshold = resolve_threshold(raw)
    if threshold is None:
        log.warning("rule_skipped_invalid_threshold", alert_id=str(rid))
        return None

    raw_op = first_present(raw, OPERATOR_FIELDS)
    raw_op = str(raw_op).strip().lower() if raw_op is not None else "above"

    return Rule(
        id=str(rid),
        symbol=str(symbol).strip().lower(),
        threshold=threshold,
        operator=Operator.parse(raw_op),
        raw_operator=raw_op,
        cooldown_seconds=resolve_cooldown_seconds(raw),
        source=dict(raw),
    )


def group_by_symbol(rules: Sequence[Rule]) -> dict[str, list[Rule]]:
    grouped: dict[str, list[Rule]] = {}
    for r in rules:
        grouped.setdefault(r.symbol, []).append(r)
    return grouped
