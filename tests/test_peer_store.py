from __future__ import annotations

from pathlib import Path

from peerlink.net.peer_store import PeerIdentityStore
from peerlink.net.transport import Endpoint
from peerlink.sqlite_db import SqliteDB


def _store(tmp_path: Path) -> PeerIdentityStore:
    return PeerIdentityStore(db=SqliteDB(path=str(tmp_path / "peers.db")))


def test_first_contact_creates_identity(tmp_path: Path) -> None:
    s = _store(tmp_path)
    ident = s.upsert_contact(
        peer_id="bob", display_name="Bob", public_key=b"\x02" * 64, address=Endpoint("198.51.100.2", 4000), address_ts_ms=10
    )
    assert ident is not None
    assert ident.display_name == "Bob"
    assert ident.public_key == b"\x02" * 64
    assert ident.last_known_address == Endpoint("198.51.100.2", 4000)
    assert ident.verification_state == "UNVERIFIED"
    assert not ident.verified and not ident.stale
    assert s.public_key_for("bob") == b"\x02" * 64
    assert s.public_key_for("nobody") is None


def test_public_key_is_set_once(tmp_path: Path) -> None:
    s = _store(tmp_path)
    s.upsert_contact(peer_id="bob", display_name="Bob")
    assert s.public_key_for("bob") is None

    s.upsert_contact(peer_id="bob", public_key=b"\x02" * 64)
    s.upsert_contact(peer_id="bob", public_key=b"\x03" * 64)
    assert s.public_key_for("bob") == b"\x02" * 64


def test_address_updates_are_last_write_wins(tmp_path: Path) -> None:
    s = _store(tmp_path)
    s.upsert_contact(peer_id="bob", address=Endpoint("198.51.100.2", 4000), address_ts_ms=100)

    assert s.update_address("bob", Endpoint("198.51.100.3", 4001), ts_ms=200)
    assert not s.update_address("bob", Endpoint("198.51.100.9", 4009), ts_ms=150)
    assert s.get("bob").last_known_address == Endpoint("198.51.100.3", 4001)

    # upsert with an older address timestamp keeps the newer address
    s.upsert_contact(peer_id="bob", address=Endpoint("198.51.100.4", 4002), address_ts_ms=50)
    assert s.get("bob").last_known_address == Endpoint("198.51.100.3", 4001)

    assert not s.update_address("nobody", Endpoint("198.51.100.3", 1), ts_ms=1)


def test_identities_are_never_deleted_only_marked_stale(tmp_path: Path) -> None:
    s = _store(tmp_path)
    s.upsert_contact(peer_id="bob", display_name="Bob")
    s.upsert_contact(peer_id="alice", display_name="Alice")
    s.mark_stale("bob")

    assert s.get("bob").stale
    assert [p.peer_id for p in s.list_all()] == ["alice", "bob"]

    s.upsert_contact(peer_id="bob")
    assert not s.get("bob").stale
    assert s.get("bob").display_name == "Bob"


def test_blank_peer_id_is_ignored(tmp_path: Path) -> None:
    s = _store(tmp_path)
    assert s.upsert_contact(peer_id="  ") is None
    assert s.list_all() == []


def test_store_survives_reopen(tmp_path: Path) -> None:
    path = str(tmp_path / "peers.db")
    PeerIdentityStore(db=SqliteDB(path=path)).upsert_contact(peer_id="bob", public_key=b"\x02" * 64)
    assert PeerIdentityStore(db=SqliteDB(path=path)).public_key_for("bob") == b"\x02" * 64
