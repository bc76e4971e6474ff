from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import List, Optional

from peerlink.net.transport import Endpoint
from peerlink.sqlite_db import SqliteDB, _now_ms


@dataclass(frozen=True, slots=True)
class PeerIdentity:
    peer_id: str
    display_name: str
    public_key: Optional[bytes]
    last_known_address: Optional[Endpoint]
    address_updated_ms: int
    verified: bool
    verification_in_progress: bool
    verification_state: str
    fingerprint: Optional[str]
    stale: bool
    updated_ts_ms: int


_COLUMNS = (
    "peer_id, display_name, public_key, host, port, address_updated_ms, verified, "
    "verification_in_progress, verification_state, fingerprint, stale, updated_ts_ms"
)


def _row_to_identity(row: sqlite3.Row) -> PeerIdentity:
    addr: Optional[Endpoint] = None
    if row["host"] and row["port"] is not None:
        addr = Endpoint(str(row["host"]), int(row["port"]))
    pk = row["public_key"]
    return PeerIdentity(
        peer_id=str(row["peer_id"]),
        display_name=str(row["display_name"]),
        public_key=bytes(pk) if pk is not None else None,
        last_known_address=addr,
        address_updated_ms=int(row["address_updated_ms"] or 0),
        verified=bool(row["verified"]),
        verification_in_progress=bool(row["verification_in_progress"]),
        verification_state=str(row["verification_state"]),
        fingerprint=str(row["fingerprint"]) if row["fingerprint"] is not None else None,
        stale=bool(row["stale"]),
        updated_ts_ms=int(row["updated_ts_ms"]),
    )


class PeerIdentityStore:
    """Persisted peer identities.

    Rules:
      - created on first contact (handshake or directory lookup)
      - the public key is set once; a different key for the same peer id is
        rejected upstream by the handshake (pubkey_mismatch) and never stored
      - address updates are last-write-wins by timestamp; an older timestamp
        than the stored one is ignored
      - never deleted, only marked stale
    """

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    def get(self, peer_id: str) -> Optional[PeerIdentity]:
        pid = str(peer_id or "").strip()
        if not pid:
            return None
        with self._db.connection() as con:
            row = con.execute(f"SELECT {_COLUMNS} FROM peer_identities WHERE peer_id=?;", (pid,)).fetchone()
            return _row_to_identity(row) if row is not None else None

    def public_key_for(self, peer_id: str) -> Optional[bytes]:
        ident = self.get(peer_id)
        return ident.public_key if ident is not None else None

    def list_all(self) -> List[PeerIdentity]:
        with self._db.connection() as con:
            rows = con.execute(f"SELECT {_COLUMNS} FROM peer_identities ORDER BY peer_id;").fetchall()
            return [_row_to_identity(r) for r in rows]

    def upsert_contact(
        self,
        *,
        peer_id: str,
        display_name: Optional[str] = None,
        public_key: Optional[bytes] = None,
        address: Optional[Endpoint] = None,
        address_ts_ms: Optional[int] = None,
    ) -> Optional[PeerIdentity]:
        pid = str(peer_id or "").strip()
        if not pid:
            return None
        now = _now_ms()
        addr_ts = int(now if address_ts_ms is None else address_ts_ms)

        with self._db.write_tx() as con:
            row = con.execute(
                "SELECT display_name, public_key, address_updated_ms FROM peer_identities WHERE peer_id=?;", (pid,)
            ).fetchone()
            if row is None:
                con.execute(
                    """
                    INSERT INTO peer_identities(peer_id, display_name, public_key, host, port,
                                                address_updated_ms, updated_ts_ms)
                    VALUES(?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        pid,
                        str(display_name or pid),
                        bytes(public_key) if public_key else None,
                        address.host if address else None,
                        int(address.port) if address else None,
                        addr_ts if address else 0,
                        now,
                    ),
                )
            else:
                name = str(display_name) if display_name else str(row["display_name"])
                stored_pk = row["public_key"]
                pk = bytes(stored_pk) if stored_pk is not None else (bytes(public_key) if public_key else None)
                con.execute(
                    "UPDATE peer_identities SET display_name=?, public_key=?, stale=0, updated_ts_ms=? WHERE peer_id=?;",
                    (name, pk, now, pid),
                )
                if address is not None and addr_ts >= int(row["address_updated_ms"] or 0):
                    con.execute(
                        "UPDATE peer_identities SET host=?, port=?, address_updated_ms=? WHERE peer_id=?;",
                        (address.host, int(address.port), addr_ts, pid),
                    )
        return self.get(pid)

    def update_address(self, peer_id: str, address: Endpoint, *, ts_ms: int) -> bool:
        """Last-write-wins address update. Returns True if applied."""
        pid = str(peer_id or "").strip()
        if not pid:
            return False
        with self._db.write_tx() as con:
            cur = con.execute(
                """
                UPDATE peer_identities SET host=?, port=?, address_updated_ms=?, stale=0, updated_ts_ms=?
                WHERE peer_id=? AND address_updated_ms <= ?;
                """,
                (address.host, int(address.port), int(ts_ms), _now_ms(), pid, int(ts_ms)),
            )
            return int(cur.rowcount or 0) > 0

    def set_verification(self, peer_id: str, *, state: str, fingerprint: Optional[str] = None) -> None:
        pid = str(peer_id or "").strip()
        if not pid:
            return
        with self._db.write_tx() as con:
            con.execute(
                """
                UPDATE peer_identities
                SET verification_state=?, verified=?, verification_in_progress=?,
                    fingerprint=COALESCE(?, fingerprint), updated_ts_ms=?
                WHERE peer_id=?;
                """,
                (
                    str(state),
                    1 if state == "VERIFIED" else 0,
                    1 if state == "PENDING" else 0,
                    fingerprint,
                    _now_ms(),
                    pid,
                ),
            )

    def mark_stale(self, peer_id: str) -> None:
        pid = str(peer_id or "").strip()
        if not pid:
            return
        with self._db.write_tx() as con:
            con.execute("UPDATE peer_identities SET stale=1, updated_ts_ms=? WHERE peer_id=?;", (_now_ms(), pid))
