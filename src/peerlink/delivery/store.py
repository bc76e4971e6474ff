# src/peerlink/delivery/store.py
"""
Persistence for the offline delivery queue.

Two tables (see SqliteDB.init_schema):
  - pending_messages: work queue, rows are deleted once DELIVERED/READ/EXPIRED
  - delivery_status: audit trail, rows are kept

Invariants enforced here, in one write transaction each:
  - attempts never decreases, last_attempt_ms never goes backwards
  - status only moves forward (see models.can_advance); backward updates are
    ignored and reported as False
  - reaching DELIVERED/READ updates the record and deletes the pending row
    atomically
"""

from __future__ import annotations

import sqlite3
from typing import Iterable, List, Optional, Protocol

from peerlink.delivery.models import (
    DeliveryStatus,
    DeliveryStatusRecord,
    PendingMessage,
    can_advance,
)
from peerlink.sqlite_db import SqliteDB


class MessageStore(Protocol):
    def insert(self, msg: PendingMessage, record: DeliveryStatusRecord) -> None: ...
    def get_pending(self, message_id: str) -> Optional[PendingMessage]: ...
    def list_pending(self, *, statuses: Optional[Iterable[DeliveryStatus]] = None) -> List[PendingMessage]: ...
    def record_attempt(self, message_id: str, *, now_ms: int) -> Optional[PendingMessage]: ...
    def get_record(self, message_id: str) -> Optional[DeliveryStatusRecord]: ...
    def list_records(self, *, statuses: Optional[Iterable[DeliveryStatus]] = None) -> List[DeliveryStatusRecord]: ...
    def advance(self, message_id: str, status: DeliveryStatus, *, ts_ms: int) -> bool: ...
    def delete_expired(self, now_ms: int) -> List[str]: ...


_PENDING_COLS = (
    "id, recipient_id, recipient_display_name, payload, kind, created_ms, expires_ms, "
    "attempts, last_attempt_ms, status"
)
_RECORD_COLS = "message_id, recipient_id, created_ms, delivered_ms, read_ms, status"


def _row_to_pending(row: sqlite3.Row) -> PendingMessage:
    return PendingMessage(
        id=str(row["id"]),
        recipient_id=str(row["recipient_id"]),
        recipient_display_name=row["recipient_display_name"],
        payload=bytes(row["payload"]),
        kind=str(row["kind"]),
        created_ms=int(row["created_ms"]),
        expires_ms=int(row["expires_ms"]),
        attempts=int(row["attempts"]),
        last_attempt_ms=None if row["last_attempt_ms"] is None else int(row["last_attempt_ms"]),
        status=DeliveryStatus(str(row["status"])),
    )


def _row_to_record(row: sqlite3.Row) -> DeliveryStatusRecord:
    return DeliveryStatusRecord(
        message_id=str(row["message_id"]),
        recipient_id=str(row["recipient_id"]),
        created_ms=int(row["created_ms"]),
        delivered_ms=None if row["delivered_ms"] is None else int(row["delivered_ms"]),
        read_ms=None if row["read_ms"] is None else int(row["read_ms"]),
        status=DeliveryStatus(str(row["status"])),
    )


def _status_filter(statuses: Optional[Iterable[DeliveryStatus]]) -> tuple[str, tuple]:
    if statuses is None:
        return "", ()
    vals = tuple(DeliveryStatus(s).value for s in statuses)
    if not vals:
        return " WHERE 1=0", ()
    return f" WHERE status IN ({','.join('?' for _ in vals)})", vals


class SqliteMessageStore:
    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    def insert(self, msg: PendingMessage, record: DeliveryStatusRecord) -> None:
        with self._db.write_tx() as con:
            con.execute(
                f"INSERT INTO pending_messages({_PENDING_COLS}) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);",
                (
                    msg.id,
                    msg.recipient_id,
                    msg.recipient_display_name,
                    sqlite3.Binary(msg.payload),
                    msg.kind,
                    int(msg.created_ms),
                    int(msg.expires_ms),
                    int(msg.attempts),
                    msg.last_attempt_ms,
                    msg.status.value,
                ),
            )
            con.execute(
                f"INSERT OR REPLACE INTO delivery_status({_RECORD_COLS}) VALUES(?, ?, ?, ?, ?, ?);",
                (
                    record.message_id,
                    record.recipient_id,
                    int(record.created_ms),
                    record.delivered_ms,
                    record.read_ms,
                    record.status.value,
                ),
            )

    def get_pending(self, message_id: str) -> Optional[PendingMessage]:
        with self._db.connection() as con:
            row = con.execute(f"SELECT {_PENDING_COLS} FROM pending_messages WHERE id=?;", (message_id,)).fetchone()
            return _row_to_pending(row) if row is not None else None

    def list_pending(self, *, statuses: Optional[Iterable[DeliveryStatus]] = None) -> List[PendingMessage]:
        where, args = _status_filter(statuses)
        with self._db.connection() as con:
            rows = con.execute(
                f"SELECT {_PENDING_COLS} FROM pending_messages{where} ORDER BY created_ms ASC, id ASC;", args
            ).fetchall()
            return [_row_to_pending(r) for r in rows]

    def record_attempt(self, message_id: str, *, now_ms: int) -> Optional[PendingMessage]:
        with self._db.write_tx() as con:
            con.execute(
                """
                UPDATE pending_messages
                SET attempts = attempts + 1,
                    last_attempt_ms = MAX(COALESCE(last_attempt_ms, 0), ?)
                WHERE id=?;
                """,
                (int(now_ms), message_id),
            )
            row = con.execute(f"SELECT {_PENDING_COLS} FROM pending_messages WHERE id=?;", (message_id,)).fetchone()
            return _row_to_pending(row) if row is not None else None

    def get_record(self, message_id: str) -> Optional[DeliveryStatusRecord]:
        with self._db.connection() as con:
            row = con.execute(f"SELECT {_RECORD_COLS} FROM delivery_status WHERE message_id=?;", (message_id,)).fetchone()
            return _row_to_record(row) if row is not None else None

    def list_records(self, *, statuses: Optional[Iterable[DeliveryStatus]] = None) -> List[DeliveryStatusRecord]:
        where, args = _status_filter(statuses)
        with self._db.connection() as con:
            rows = con.execute(
                f"SELECT {_RECORD_COLS} FROM delivery_status{where} ORDER BY created_ms ASC, message_id ASC;", args
            ).fetchall()
            return [_row_to_record(r) for r in rows]

    def advance(self, message_id: str, status: DeliveryStatus, *, ts_ms: int) -> bool:
        """Move a message forward to `status`. Returns False if it was not forward."""
        dst = DeliveryStatus(status)
        with self._db.write_tx() as con:
            rec = con.execute("SELECT status FROM delivery_status WHERE message_id=?;", (message_id,)).fetchone()
            pend = con.execute("SELECT status FROM pending_messages WHERE id=?;", (message_id,)).fetchone()
            if rec is not None:
                cur = DeliveryStatus(str(rec["status"]))
            elif pend is not None:
                cur = DeliveryStatus(str(pend["status"]))
            else:
                return False
            if not can_advance(cur, dst):
                return False

            if rec is not None:
                con.execute(
                    """
                    UPDATE delivery_status
                    SET status=?,
                        delivered_ms = CASE WHEN ? THEN COALESCE(delivered_ms, ?) ELSE delivered_ms END,
                        read_ms = CASE WHEN ? THEN COALESCE(read_ms, ?) ELSE read_ms END
                    WHERE message_id=?;
                    """,
                    (
                        dst.value,
                        1 if dst in (DeliveryStatus.DELIVERED, DeliveryStatus.READ) else 0,
                        int(ts_ms),
                        1 if dst == DeliveryStatus.READ else 0,
                        int(ts_ms),
                        message_id,
                    ),
                )

            if pend is not None:
                if dst in (DeliveryStatus.DELIVERED, DeliveryStatus.READ, DeliveryStatus.EXPIRED):
                    con.execute("DELETE FROM pending_messages WHERE id=?;", (message_id,))
                else:
                    con.execute("UPDATE pending_messages SET status=? WHERE id=?;", (dst.value, message_id))
            return True

    def delete_expired(self, now_ms: int) -> List[str]:
        """Delete pending rows whose expiry passed; mark their records EXPIRED."""
        with self._db.write_tx() as con:
            rows = con.execute(
                "SELECT id FROM pending_messages WHERE expires_ms < ? ORDER BY id;", (int(now_ms),)
            ).fetchall()
            ids = [str(r["id"]) for r in rows]
            for mid in ids:
                con.execute(
                    """
                    UPDATE delivery_status SET status=?
                    WHERE message_id=? AND status IN (?, ?);
                    """,
                    (
                        DeliveryStatus.EXPIRED.value,
                        mid,
                        DeliveryStatus.PENDING.value,
                        DeliveryStatus.SERVER_QUEUED.value,
                    ),
                )
                con.execute("DELETE FROM pending_messages WHERE id=?;", (mid,))
            return ids
