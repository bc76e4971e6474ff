from __future__ import annotations

from typing import List, Optional

import pytest

from peerlink.net.connection import Connection, ConnState
from peerlink.net.connection_table import ConnectionTable
from peerlink.net.messages import PingMsg
from peerlink.net.transport import Endpoint, TransportKind


class _MemStream:
    def __init__(self) -> None:
        self.written: List[bytes] = []
        self.closed = False

    @property
    def kind(self) -> TransportKind:
        return TransportKind.DIRECT

    @property
    def remote(self) -> Optional[Endpoint]:
        return Endpoint("10.0.0.2", 4000)

    def write(self, data: bytes) -> None:
        self.written.append(bytes(data))

    def read(self, timeout_s: float) -> bytes:
        return b""

    def close(self) -> None:
        self.closed = True


def _open(peer_id: str, *, kind: TransportKind = TransportKind.DIRECT, clock=None) -> Connection:
    kw = {"clock": clock} if clock is not None else {}
    c = Connection(stream=_MemStream(), transport_kind=kind, **kw)
    c.mark_open(peer_id=peer_id, display_name=peer_id, public_key=b"\x01" * 64)
    return c


def test_connection_state_machine_is_forward_only() -> None:
    c = Connection(stream=_MemStream(), transport_kind=TransportKind.RELAY, peer_id="bob")
    assert c.state == ConnState.HANDSHAKING
    with pytest.raises(RuntimeError):
        c.mark_open(peer_id="carol", display_name="Carol", public_key=b"\x01" * 64)

    c.mark_open(peer_id="bob", display_name="Bob", public_key=b"\x01" * 64)
    assert c.is_open
    assert c.transport_kind == TransportKind.RELAY

    c.close("done")
    c.close("again")
    assert c.state == ConnState.CLOSED
    assert c.close_reason == "done"
    assert c.stream.closed
    with pytest.raises(RuntimeError):
        c.mark_open(peer_id="bob", display_name="Bob", public_key=b"\x01" * 64)
    assert c.send(PingMsg(timestamp=1)) is False


def test_duplicate_is_rejected_and_closed() -> None:
    t = ConnectionTable()
    first = _open("bob")
    second = _open("bob", kind=TransportKind.TCP_HOLEPUNCH)

    assert t.add(first)
    assert not t.add(second)
    assert second.state == ConnState.CLOSED
    assert second.close_reason == "duplicate"
    assert t.get("bob") is first
    assert len(t) == 1


def test_explicit_replace_closes_previous() -> None:
    t = ConnectionTable()
    first = _open("bob")
    second = _open("bob")

    assert t.add(first)
    assert t.add(second, replace=True)
    assert first.close_reason == "replaced"
    assert t.get("bob") is second
    assert len(t) == 1


def test_closed_connection_is_evicted() -> None:
    t = ConnectionTable()
    c = _open("bob")
    t.add(c)
    c.close("eof")
    assert t.get("bob") is None
    assert len(t) == 0


def test_only_open_connections_with_peer_id_can_be_added() -> None:
    t = ConnectionTable()
    with pytest.raises(ValueError):
        t.add(Connection(stream=_MemStream(), transport_kind=TransportKind.DIRECT))


def test_close_all_empties_the_table() -> None:
    t = ConnectionTable()
    conns = [_open(p) for p in ("a", "b", "c")]
    for c in conns:
        t.add(c)
    t.close_all("shutdown")
    assert len(t) == 0
    assert all(c.close_reason == "shutdown" for c in conns)


def test_staleness_uses_last_activity() -> None:
    now = [1_000_000]
    c = _open("bob", clock=lambda: now[0])
    now[0] += 89_000
    assert not c.is_stale(stale_after_s=90)
    now[0] += 2_000
    assert c.is_stale(stale_after_s=90)
    c.touch()
    assert not c.is_stale(stale_after_s=90)


def test_establish_lock_is_per_peer() -> None:
    t = ConnectionTable()
    assert t.establish_lock("bob") is t.establish_lock("bob")
    assert t.establish_lock("bob") is not t.establish_lock("carol")
