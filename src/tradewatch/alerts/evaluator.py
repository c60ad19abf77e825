from __future__ import annotations

import math
from typing import Optional

import structlog

from tradewatch.alerts.rules import Operator, Rule

log = structlog.get_logger("evaluator")

EQ_EPSILON = 1e-8


def _defined(v: Optional[float]) -> bool:
    return v is not None and math.isfinite(v)


def evaluate(rule: Rule, current: float, previous: Optional[float] = None) -> bool:
    """
    Check `current` (and for crossing operators, `previous`) against rule.threshold.

    - GTE / LTE:      current >= / <= threshold
    - EQ:             |current - threshold| <= 1e-8
    - CROSSES_ABOVE:  previous < threshold <= current
    - CROSSES_BELOW:  previous > threshold >= current
    Crossing operators are false when previous is unknown.
    An unrecognised operator falls back to GTE with a warning.

    Pure: the caller owns previous-value memory.
    """
    thr = rule.threshold
    op = rule.operator
    if op is None:
        log.warning("unknown_operator_fallback", operator=rule.raw_operator, rule_id=rule.id)
        op = Operator.GTE

    if op is Operator.GTE:
        return current >= thr
    if op is Operator.LTE:
        return current <= thr
    if op is Operator.EQ:
        return abs(current - thr) <= EQ_EPSILON
    if op is Operator.CROSSES_ABOVE:
        return _defined(previous) and previous < thr <= current
    if op is Operator.CROSSES_BELOW:
        return _defined(previous) and previous > thr >= current
    # unreachable with the current enum
    return current >= thr
