# src/peerlink/delivery/backoff.py
from __future__ import annotations

from typing import Optional, Tuple

from peerlink.delivery.models import PendingMessage

# (max attempts inclusive, minimum wait since last attempt in seconds),
# evaluated top to bottom; the first range containing `attempts` decides.
BACKOFF_TIERS: Tuple[Tuple[Optional[int], float], ...] = (
    (0, 0.0),
    (2, 5 * 60.0),
    (5, 30 * 60.0),
    (10, 2 * 3600.0),
    (None, 6 * 3600.0),
)


def required_wait_s(attempts: int) -> float:
    for upper, wait_s in BACKOFF_TIERS:
        if upper is None or attempts <= upper:
            return wait_s
    return BACKOFF_TIERS[-1][1]


def is_due(msg: PendingMessage, *, now_ms: int) -> bool:
    if msg.attempts <= 0:
        return True
    last = int(msg.last_attempt_ms or 0)
    return (int(now_ms) - last) >= int(required_wait_s(msg.attempts) * 1000)
