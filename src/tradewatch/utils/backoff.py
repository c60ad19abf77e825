from __future__ import annotations


def reconnect_delay(attempts: int, base: float, cap: float) -> float:
    """
    Capped exponential delay for the n-th consecutive failure (attempts >= 1):
    base, 2*base, 4*base, ... never above cap.
    """
    if attempts <= 1:
        return min(base, cap)
    # guard against float overflow on very long outages
    exp = min(attempts - 1, 62)
    return min(base * (2 ** exp), cap)
