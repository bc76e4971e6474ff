# src/peerlink/net/connection.py
"""
A live session with one peer.

State machine: HANDSHAKING -> OPEN -> CLOSED (terminal). No retries inside a
Connection; callers establish a new one.

  - transport_kind is fixed at construction
  - peer_id is bound at handshake time and cannot change once OPEN
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, Optional

from peerlink.errors import StreamClosed
from peerlink.net.codec import encode_record
from peerlink.net.messages import AnySessionMsg
from peerlink.net.transport import ByteStream, Endpoint, TransportKind


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConnState(str, Enum):
    HANDSHAKING = "HANDSHAKING"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class Connection:
    def __init__(
        self,
        *,
        stream: ByteStream,
        transport_kind: TransportKind,
        peer_id: Optional[str] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._stream = stream
        self._kind = TransportKind(transport_kind)
        self._peer_id = peer_id
        self._clock = clock
        self._lock = threading.Lock()
        self._state = ConnState.HANDSHAKING
        self._close_reason: Optional[str] = None
        self._on_close: list[Callable[["Connection"], None]] = []

        self.display_name: Optional[str] = None
        self.public_key: Optional[bytes] = None
        self.created_ms = clock()
        self.last_activity_ms = self.created_ms

    # -------------------------
    # identity
    # -------------------------

    @property
    def peer_id(self) -> Optional[str]:
        return self._peer_id

    @property
    def transport_kind(self) -> TransportKind:
        return self._kind

    @property
    def stream(self) -> ByteStream:
        return self._stream

    @property
    def remote(self) -> Optional[Endpoint]:
        return self._stream.remote

    @property
    def state(self) -> ConnState:
        return self._state

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    @property
    def is_open(self) -> bool:
        return self._state == ConnState.OPEN

    def mark_open(self, *, peer_id: str, display_name: str, public_key: bytes) -> None:
        with self._lock:
            if self._state != ConnState.HANDSHAKING:
                raise RuntimeError(f"cannot open connection in state {self._state.value}")
            if self._peer_id is not None and self._peer_id != peer_id:
                raise RuntimeError("peer_id is already bound")
            self._peer_id = peer_id
            self.display_name = display_name
            self.public_key = bytes(public_key)
            self._state = ConnState.OPEN
            self.last_activity_ms = self._clock()

    # -------------------------
    # liveness
    # -------------------------

    def touch(self) -> None:
        self.last_activity_ms = self._clock()

    def is_stale(self, *, stale_after_s: float, now_ms: Optional[int] = None) -> bool:
        now = self._clock() if now_ms is None else int(now_ms)
        return (now - self.last_activity_ms) > int(stale_after_s * 1000)

    def on_close(self, fn: Callable[["Connection"], None]) -> None:
        self._on_close.append(fn)

    # -------------------------
    # I/O
    # -------------------------

    def send(self, msg: AnySessionMsg) -> bool:
        """Write one session record. Returns False if the stream is gone."""
        if self._state == ConnState.CLOSED:
            return False
        try:
            self._stream.write(encode_record(msg))
            return True
        except StreamClosed:
            self.close("write_failed")
            return False

    def close(self, reason: str = "closed") -> None:
        with self._lock:
            if self._state == ConnState.CLOSED:
                return
            self._state = ConnState.CLOSED
            self._close_reason = reason
            callbacks = list(self._on_close)
        self._stream.close()
        for fn in callbacks:
            fn(self)

    def __repr__(self) -> str:
        return (
            f"Connection(peer_id={self._peer_id!r}, kind={self._kind.value}, "
            f"state={self._state.value}, remote={self.remote})"
        )
