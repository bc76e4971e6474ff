from __future__ import annotations

from pathlib import Path

import pytest

from peerlink.delivery.backoff import BACKOFF_TIERS, is_due, required_wait_s
from peerlink.delivery.models import DeliveryStatus, DeliveryStatusRecord, PendingMessage, can_advance
from peerlink.delivery.store import SqliteMessageStore
from peerlink.sqlite_db import SqliteDB

NOW = 1_700_000_000_000
DAY_MS = 24 * 3600 * 1000


def _store(tmp_path: Path) -> SqliteMessageStore:
    return SqliteMessageStore(db=SqliteDB(path=str(tmp_path / "msgs.db")))


def _msg(mid: str, *, created: int = NOW, ttl_ms: int = 7 * DAY_MS) -> PendingMessage:
    return PendingMessage(
        id=mid,
        recipient_id="bob",
        recipient_display_name="Bob",
        payload=b"\x00sealed\xff",
        kind="text",
        created_ms=created,
        expires_ms=created + ttl_ms,
    )


def _insert(s: SqliteMessageStore, mid: str, **kw) -> PendingMessage:
    m = _msg(mid, **kw)
    s.insert(m, DeliveryStatusRecord(message_id=mid, recipient_id="bob", created_ms=m.created_ms))
    return m


# ---------------------------------------------------------------------
# models + backoff
# ---------------------------------------------------------------------


def test_status_parse_accepts_directory_spelling() -> None:
    assert DeliveryStatus.parse("delivered") == DeliveryStatus.DELIVERED
    assert DeliveryStatus.parse(" READ ") == DeliveryStatus.READ
    assert DeliveryStatus.parse("bogus") is None
    assert DeliveryStatus.parse(None) is None


@pytest.mark.parametrize(
    "src, dst, ok",
    [
        (DeliveryStatus.PENDING, DeliveryStatus.SERVER_QUEUED, True),
        (DeliveryStatus.PENDING, DeliveryStatus.DELIVERED, True),
        (DeliveryStatus.SERVER_QUEUED, DeliveryStatus.READ, True),
        (DeliveryStatus.DELIVERED, DeliveryStatus.READ, True),
        (DeliveryStatus.DELIVERED, DeliveryStatus.PENDING, False),
        (DeliveryStatus.READ, DeliveryStatus.DELIVERED, False),
        (DeliveryStatus.SERVER_QUEUED, DeliveryStatus.PENDING, False),
        (DeliveryStatus.PENDING, DeliveryStatus.EXPIRED, True),
        (DeliveryStatus.DELIVERED, DeliveryStatus.EXPIRED, False),
        (DeliveryStatus.EXPIRED, DeliveryStatus.DELIVERED, False),
        (DeliveryStatus.PENDING, DeliveryStatus.PENDING, False),
    ],
)
def test_status_only_moves_forward(src: DeliveryStatus, dst: DeliveryStatus, ok: bool) -> None:
    assert can_advance(src, dst) is ok


def test_backoff_tiers() -> None:
    assert BACKOFF_TIERS[0] == (0, 0.0)
    assert required_wait_s(1) == required_wait_s(2) == 300.0
    assert required_wait_s(3) == required_wait_s(5) == 1800.0
    assert required_wait_s(6) == required_wait_s(10) == 7200.0
    assert required_wait_s(11) == required_wait_s(500) == 21600.0


def test_is_due_respects_last_attempt() -> None:
    m = _msg("m")
    assert is_due(m, now_ms=NOW)

    m = m.with_attempt(NOW)
    assert m.attempts == 1
    assert not is_due(m, now_ms=NOW + 299_999)
    assert is_due(m, now_ms=NOW + 300_000)

    m = m.with_attempt(NOW).with_attempt(NOW)
    assert not is_due(m, now_ms=NOW + 300_000)
    assert is_due(m, now_ms=NOW + 1_800_000)


# ---------------------------------------------------------------------
# store
# ---------------------------------------------------------------------


def test_insert_and_read_back(tmp_path: Path) -> None:
    s = _store(tmp_path)
    m = _insert(s, "m-1")
    assert s.get_pending("m-1") == m
    rec = s.get_record("m-1")
    assert rec is not None and rec.status == DeliveryStatus.PENDING
    assert [p.id for p in s.list_pending()] == ["m-1"]


def test_record_attempt_increments(tmp_path: Path) -> None:
    s = _store(tmp_path)
    _insert(s, "m-1")
    m = s.record_attempt("m-1", now_ms=NOW + 5)
    assert m is not None
    assert (m.attempts, m.last_attempt_ms) == (1, NOW + 5)
    m = s.record_attempt("m-1", now_ms=NOW + 1)
    assert (m.attempts, m.last_attempt_ms) == (2, NOW + 5)
    assert s.record_attempt("missing", now_ms=NOW) is None


def test_server_queued_keeps_pending_row(tmp_path: Path) -> None:
    s = _store(tmp_path)
    _insert(s, "m-1")
    assert s.advance("m-1", DeliveryStatus.SERVER_QUEUED, ts_ms=NOW)
    assert s.get_pending("m-1").status == DeliveryStatus.SERVER_QUEUED
    assert s.get_record("m-1").status == DeliveryStatus.SERVER_QUEUED
    assert s.list_pending(statuses=[DeliveryStatus.PENDING]) == []


def test_delivered_purges_pending_row_and_keeps_audit(tmp_path: Path) -> None:
    s = _store(tmp_path)
    _insert(s, "m-1")
    assert s.advance("m-1", DeliveryStatus.DELIVERED, ts_ms=NOW + 10)
    assert s.get_pending("m-1") is None
    rec = s.get_record("m-1")
    assert rec.status == DeliveryStatus.DELIVERED
    assert rec.delivered_ms == NOW + 10

    assert not s.advance("m-1", DeliveryStatus.PENDING, ts_ms=NOW + 20)
    assert not s.advance("m-1", DeliveryStatus.DELIVERED, ts_ms=NOW + 20)
    assert s.advance("m-1", DeliveryStatus.READ, ts_ms=NOW + 30)

    rec = s.get_record("m-1")
    assert (rec.status, rec.delivered_ms, rec.read_ms) == (DeliveryStatus.READ, NOW + 10, NOW + 30)
    assert not s.advance("m-1", DeliveryStatus.EXPIRED, ts_ms=NOW + 40)


def test_advance_unknown_message_is_noop(tmp_path: Path) -> None:
    assert not _store(tmp_path).advance("nope", DeliveryStatus.DELIVERED, ts_ms=NOW)


def test_delete_expired(tmp_path: Path) -> None:
    s = _store(tmp_path)
    _insert(s, "old", ttl_ms=1000)
    _insert(s, "queued", ttl_ms=1000)
    _insert(s, "fresh")
    s.advance("queued", DeliveryStatus.SERVER_QUEUED, ts_ms=NOW)

    assert s.delete_expired(NOW + 1000) == []
    assert s.delete_expired(NOW + 1001) == ["old", "queued"]

    assert s.get_pending("old") is None
    assert s.get_record("old").status == DeliveryStatus.EXPIRED
    assert s.get_record("queued").status == DeliveryStatus.EXPIRED
    assert [p.id for p in s.list_pending()] == ["fresh"]
    assert [r.message_id for r in s.list_records(statuses=[DeliveryStatus.EXPIRED])] == ["old", "queued"]


def test_queue_survives_restart(tmp_path: Path) -> None:
    path = str(tmp_path / "msgs.db")
    s1 = SqliteMessageStore(db=SqliteDB(path=path))
    _insert(s1, "m-1")
    s1.record_attempt("m-1", now_ms=NOW)

    s2 = SqliteMessageStore(db=SqliteDB(path=path))
    m = s2.get_pending("m-1")
    assert m is not None
    assert m.attempts == 1
    assert m.payload == b"\x00sealed\xff"
