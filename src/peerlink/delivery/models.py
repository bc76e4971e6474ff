# src/peerlink/delivery/models.py
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SERVER_QUEUED = "SERVER_QUEUED"
    DELIVERED = "DELIVERED"
    READ = "READ"
    EXPIRED = "EXPIRED"

    @classmethod
    def parse(cls, raw: object) -> Optional["DeliveryStatus"]:
        """Accept our own values and the directory's lowercase spelling."""
        try:
            return cls(str(raw or "").strip().upper())
        except ValueError:
            return None


# Forward-only ordering. EXPIRED is terminal but only reachable from
# PENDING / SERVER_QUEUED, see can_advance().
_RANK = {
    DeliveryStatus.PENDING: 0,
    DeliveryStatus.SERVER_QUEUED: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
}

TERMINAL = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.READ, DeliveryStatus.EXPIRED})


def can_advance(src: DeliveryStatus, dst: DeliveryStatus) -> bool:
    """True if moving src -> dst is forward progress."""
    if src == dst:
        return False
    if src in (DeliveryStatus.EXPIRED, DeliveryStatus.READ):
        return False
    if dst == DeliveryStatus.EXPIRED:
        return src in (DeliveryStatus.PENDING, DeliveryStatus.SERVER_QUEUED)
    return _RANK[dst] > _RANK[src]


@dataclass(frozen=True, slots=True)
class PendingMessage:
    id: str
    recipient_id: str
    recipient_display_name: Optional[str]
    payload: bytes
    kind: str
    created_ms: int
    expires_ms: int
    attempts: int = 0
    last_attempt_ms: Optional[int] = None
    status: DeliveryStatus = DeliveryStatus.PENDING

    @property
    def locate_name(self) -> str:
        return self.recipient_display_name or self.recipient_id

    def with_attempt(self, now_ms: int) -> "PendingMessage":
        return replace(self, attempts=self.attempts + 1, last_attempt_ms=int(now_ms))


@dataclass(frozen=True, slots=True)
class DeliveryStatusRecord:
    message_id: str
    recipient_id: str
    created_ms: int
    delivered_ms: Optional[int] = None
    read_ms: Optional[int] = None
    status: DeliveryStatus = DeliveryStatus.PENDING

    def to_json(self) -> dict:
        return {
            "message_id": self.message_id,
            "recipient_id": self.recipient_id,
            "created_ms": self.created_ms,
            "delivered_ms": self.delivered_ms,
            "read_ms": self.read_ms,
            "status": self.status.value,
        }
