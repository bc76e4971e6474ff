# src/peerlink/sqlite_db.py
from __future__ import annotations

import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def _now_ms() -> int:
    return int(time.time() * 1000)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class SqliteDB:
    """SQLite manager for the PeerLink engine.

    Design goals:
      - single durable DB file for the offline queue, delivery audit trail
        and peer identities
      - cross-thread safe by never sharing connections (one per operation)

    SQLite allows only one writer at a time. Delivery workers, receipt
    handlers and sweeps all write concurrently, so BEGIN IMMEDIATE can
    transiently fail with "database is locked"; write_tx() retries with
    bounded backoff.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str) -> None:
        self.path = str(path)
        self._schema_ready = False

    def ensure_parent_dir(self) -> None:
        if self.path == ":memory:":
            return
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()

        connect_timeout_s = float(_env_int("PEERLINK_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0

        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        # WAL lets receipt handlers read while a delivery worker writes.
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=NORMAL;")
        con.execute("PRAGMA foreign_keys=ON;")
        con.execute("PRAGMA temp_store=MEMORY;")

        busy_ms = _env_int("PEERLINK_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000))
        con.execute(f"PRAGMA busy_timeout={max(0, int(busy_ms))};")
        return con

    def init_schema(self) -> None:
        if self._schema_ready:
            return
        with self.write_tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_messages (
                  id TEXT PRIMARY KEY,
                  recipient_id TEXT NOT NULL,
                  recipient_display_name TEXT,
                  payload BLOB NOT NULL,
                  kind TEXT NOT NULL,
                  created_ms INTEGER NOT NULL,
                  expires_ms INTEGER NOT NULL,
                  attempts INTEGER NOT NULL DEFAULT 0,
                  last_attempt_ms INTEGER,
                  status TEXT NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_pending_status ON pending_messages(status);")
            con.execute("CREATE INDEX IF NOT EXISTS idx_pending_expires ON pending_messages(expires_ms);")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS delivery_status (
                  message_id TEXT PRIMARY KEY,
                  recipient_id TEXT NOT NULL,
                  created_ms INTEGER NOT NULL,
                  delivered_ms INTEGER,
                  read_ms INTEGER,
                  status TEXT NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS peer_identities (
                  peer_id TEXT PRIMARY KEY,
                  display_name TEXT NOT NULL,
                  public_key BLOB,
                  host TEXT,
                  port INTEGER,
                  address_updated_ms INTEGER NOT NULL DEFAULT 0,
                  verified INTEGER NOT NULL DEFAULT 0,
                  verification_in_progress INTEGER NOT NULL DEFAULT 0,
                  verification_state TEXT NOT NULL DEFAULT 'UNVERIFIED',
                  fingerprint TEXT,
                  stale INTEGER NOT NULL DEFAULT 0,
                  updated_ts_ms INTEGER NOT NULL
                );
                """
            )

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            else:
                try:
                    v = int(str(row["value"]))
                except ValueError:
                    v = 0
                if v != self.SCHEMA_VERSION:
                    raise RuntimeError(
                        f"peerlink db at {self.path} has schema {v}, expected {self.SCHEMA_VERSION}"
                    )
        self._schema_ready = True

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg)

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception.

        Lock contention is retried with jittered exponential sleeps until
        PEERLINK_SQLITE_WRITE_DEADLINE_MS passes, then the error propagates.
        """
        deadline_ms = max(250, _env_int("PEERLINK_SQLITE_WRITE_DEADLINE_MS", 30_000))
        deadline_ts = _now_ms() + deadline_ms
        base_sleep = 0.005
        max_sleep = 0.25

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                        raise
                    sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
                    time.sleep(sleep_s * (0.5 + random.random()))
                    attempt += 1

            try:
                yield con
                con.execute("COMMIT;")
            except Exception:
                try:
                    con.execute("ROLLBACK;")
                except sqlite3.Error:
                    pass
                raise
