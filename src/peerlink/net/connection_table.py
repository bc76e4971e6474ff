from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from peerlink.metrics import set_gauge
from peerlink.net.connection import ConnState, Connection
from peerlink.net.net_logging import log_event

log = logging.getLogger("peerlink.session")


class ConnectionTable:
    """At most one live Connection per peer id.

    Concurrency:
      - _lock guards the map
      - establish_lock(peer_id) serializes connection setup for one peer so
        concurrent connect() calls for the same peer produce one Connection

    add(conn) rejects a duplicate (the new connection is closed);
    add(conn, replace=True) closes and replaces the existing one.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conns: Dict[str, Connection] = {}
        self._establish_locks: Dict[str, threading.Lock] = {}

    def establish_lock(self, peer_id: str) -> threading.Lock:
        with self._lock:
            lk = self._establish_locks.get(peer_id)
            if lk is None:
                lk = threading.Lock()
                self._establish_locks[peer_id] = lk
            return lk

    def get(self, peer_id: str) -> Optional[Connection]:
        with self._lock:
            conn = self._conns.get(peer_id)
        if conn is not None and conn.state == ConnState.OPEN:
            return conn
        return None

    def add(self, conn: Connection, *, replace: bool = False) -> bool:
        pid = conn.peer_id
        if not pid or conn.state != ConnState.OPEN:
            raise ValueError("only OPEN connections with a bound peer id can be added")

        conn.on_close(self._evict)
        old: Optional[Connection] = None
        with self._lock:
            cur = self._conns.get(pid)
            if cur is not None and cur is not conn and cur.state == ConnState.OPEN and not replace:
                rejected = True
            else:
                rejected = False
                old = cur if cur is not conn else None
                self._conns[pid] = conn
                set_gauge("connections.open", len(self._conns))

        if rejected:
            log_event(log, "connection_duplicate_rejected", peer_id=pid, kind=conn.transport_kind.value)
            conn.close("duplicate")
            return False

        if old is not None:
            old.close("replaced")
        log_event(log, "connection_added", peer_id=pid, kind=conn.transport_kind.value, replaced=old is not None)
        return True

    def remove(self, peer_id: str, conn: Optional[Connection] = None) -> bool:
        """Drop the entry for peer_id (only if it is `conn`, when given)."""
        with self._lock:
            cur = self._conns.get(peer_id)
            if cur is None or (conn is not None and cur is not conn):
                return False
            del self._conns[peer_id]
            set_gauge("connections.open", len(self._conns))
        return True

    def _evict(self, conn: Connection) -> None:
        if conn.peer_id and self.remove(conn.peer_id, conn):
            log_event(log, "connection_evicted", peer_id=conn.peer_id, reason=conn.close_reason)

    def snapshot(self) -> List[Connection]:
        with self._lock:
            return list(self._conns.values())

    def close_all(self, reason: str = "shutdown") -> None:
        for conn in self.snapshot():
            conn.close(reason)

    def __len__(self) -> int:
        with self._lock:
            return len(self._conns)
