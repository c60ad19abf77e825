from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, TypedDict

# ---- ingest-level primitives ----

@dataclass(slots=True)
class TradeEvent:
    symbol: str   # lower-cased, e.g. "solusdt"
    px: float
    qty: float
    ts: float     # epoch seconds

    @property
    def notional(self) -> float:
        return self.px * self.qty

@dataclass(slots=True)
class TickerEvent:
    symbol: str
    px: float
    ts: float

Market = Literal["spot", "futures"]

# ---- outbound payloads (JSON bodies sent to the backend) ----

class VolumeTriggerPayload(TypedDict, total=False):
    symbol: str
    value: float
    market: Market
    threshold: float
    windowSeconds: float
    windowStart: str
    windowEnd: str
    triggeredAt: str

class PriceTriggerPayload(TypedDict, total=False):
    alertId: str
    symbol: str
    price: float
    triggeredAt: str
    alert: dict[str, Any]
