# src/peerlink/delivery/manager.py
"""
PeerLink — Offline delivery manager.

Lifecycle of one message:

  enqueue()            PENDING row + PENDING audit record, immediate attempt
                       scheduled on the worker pool (no I/O on the caller)
  attempt pipeline     attempts += 1 -> directory.locate -> P2P connect +
                       chat_message + wait for delivery_receipt -> else hand
                       the ciphertext to the directory server
  outcome              receipt -> DELIVERED (pending row purged)
                       server accepted -> SERVER_QUEUED (row retained)
                       both failed -> stays PENDING
  retry sweep          every retry_interval_s, tiered backoff on attempts
  expiry sweep         every expiry_sweep_interval_s, EXPIRED + purge

Statuses only move forward; the store ignores anything else, so receipts,
server sync and sweeps can race freely.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from peerlink.delivery.backoff import is_due
from peerlink.delivery.directory import DirectoryClient
from peerlink.delivery.models import DeliveryStatus, DeliveryStatusRecord, PendingMessage
from peerlink.delivery.store import MessageStore
from peerlink.metrics import inc_counter
from peerlink.net.connection import Connection
from peerlink.net.messages import ChatMessage
from peerlink.net.nat_traversal import default_connectivity_check
from peerlink.net.net_logging import log_event
from peerlink.net.peer_store import PeerIdentityStore
from peerlink.net.transport import AddressHint
from peerlink.scheduler import Clock, PeriodicTask, SystemClock

log = logging.getLogger("peerlink.delivery")

StatusSink = Callable[[str, DeliveryStatus], None]


class PeerTransport(Protocol):
    """What the manager needs from the peer node."""

    def connect(self, peer_id: str, hint: AddressHint) -> Optional[Connection]: ...
    def send_and_await_receipt(self, peer_id: str, msg: ChatMessage, *, timeout_s: float) -> bool: ...
    def send_read_receipt(self, peer_id: str, message_id: str) -> bool: ...


@dataclass(frozen=True, slots=True)
class DeliveryConfig:
    message_ttl_s: float = 7 * 24 * 3600.0
    retry_interval_s: float = 300.0
    retry_pause_s: float = 0.5
    expiry_sweep_interval_s: float = 6 * 3600.0
    attempt_timeout_s: float = 60.0
    receipt_timeout_s: float = 10.0
    workers: int = 4


class OfflineDeliveryManager:
    def __init__(
        self,
        *,
        cfg: DeliveryConfig,
        user_id: str,
        store: MessageStore,
        directory: DirectoryClient,
        node: Optional[PeerTransport] = None,
        peer_store: Optional[PeerIdentityStore] = None,
        clock: Optional[Clock] = None,
        connectivity: Callable[[], bool] = default_connectivity_check,
        status_sink: Optional[StatusSink] = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.cfg = cfg
        self.user_id = str(user_id)
        self.store = store
        self.directory = directory
        self.node = node
        self.peer_store = peer_store
        self.clock: Clock = clock if clock is not None else SystemClock()
        self.connectivity = connectivity
        self.status_sink = status_sink
        self._new_id = id_factory

        self._lock = threading.Lock()
        self._cache: Dict[str, DeliveryStatus] = {}
        self._inflight: Dict[str, Future] = {}
        self._closed = False
        self._pool = self._new_pool()

        self._retry_task = PeriodicTask(name="delivery-retry", interval_s=cfg.retry_interval_s, fn=self.retry_sweep)
        self._expiry_task = PeriodicTask(
            name="delivery-expiry", interval_s=cfg.expiry_sweep_interval_s, fn=self.expire_sweep, initial_delay_s=0.0
        )

    # -------------------------
    # lifecycle
    # -------------------------

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=max(1, int(self.cfg.workers)), thread_name_prefix="peerlink-delivery")

    def start(self) -> None:
        with self._lock:
            if self._closed:
                self._pool = self._new_pool()
                self._closed = False
        self._retry_task.start()
        self._expiry_task.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        self._retry_task.stop(timeout_s)
        self._expiry_task.stop(timeout_s)
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=False, cancel_futures=True)

    def wait_idle(self, timeout_s: float = 5.0) -> bool:
        """Block until in-flight attempts finish. True if none remain."""
        with self._lock:
            futures = list(self._inflight.values())
        if not futures:
            return True
        _done, not_done = wait(futures, timeout=timeout_s)
        return not not_done

    # -------------------------
    # status bookkeeping
    # -------------------------

    def _publish(self, message_id: str, status: DeliveryStatus) -> None:
        with self._lock:
            self._cache[message_id] = status
        sink = self.status_sink
        if sink is None:
            return
        try:
            sink(message_id, status)
        except Exception as e:
            log_event(log, "status_sink_error", level=logging.ERROR, message_id=message_id, error=repr(e))

    def _advance(self, message_id: str, status: DeliveryStatus, *, ts_ms: Optional[int] = None) -> bool:
        ts = self.clock.now_ms() if ts_ms is None else int(ts_ms)
        if not self.store.advance(message_id, status, ts_ms=ts):
            return False
        inc_counter(f"delivery.status.{status.value.lower()}")
        log_event(log, "delivery_status", message_id=message_id, status=status.value)
        self._publish(message_id, status)
        return True

    def get_status(self, message_id: str) -> Optional[DeliveryStatus]:
        with self._lock:
            st = self._cache.get(message_id)
        if st is not None:
            return st
        rec = self.store.get_record(message_id)
        if rec is None:
            return None
        with self._lock:
            self._cache[message_id] = rec.status
        return rec.status

    def get_record(self, message_id: str) -> Optional[DeliveryStatusRecord]:
        return self.store.get_record(message_id)

    # -------------------------
    # enqueue + attempts
    # -------------------------

    def enqueue(
        self,
        recipient_id: str,
        payload: bytes,
        kind: str = "text",
        recipient_display_name: Optional[str] = None,
    ) -> str:
        now = self.clock.now_ms()
        mid = self._new_id()
        msg = PendingMessage(
            id=mid,
            recipient_id=str(recipient_id),
            recipient_display_name=recipient_display_name,
            payload=bytes(payload),
            kind=str(kind or "text"),
            created_ms=now,
            expires_ms=now + int(self.cfg.message_ttl_s * 1000),
        )
        record = DeliveryStatusRecord(message_id=mid, recipient_id=msg.recipient_id, created_ms=now)
        self.store.insert(msg, record)
        inc_counter("delivery.enqueued")
        log_event(log, "delivery_enqueued", message_id=mid, recipient_id=msg.recipient_id, kind=msg.kind)
        self._publish(mid, DeliveryStatus.PENDING)
        self._submit(mid)
        return mid

    def _submit(self, message_id: str) -> Optional[Future]:
        with self._lock:
            if self._closed:
                return None
            cur = self._inflight.get(message_id)
            if cur is not None and not cur.done():
                return None
            fut = self._pool.submit(self.attempt, message_id)
            self._inflight[message_id] = fut

        def _done(_f: Future, mid: str = message_id) -> None:
            with self._lock:
                if self._inflight.get(mid) is _f:
                    del self._inflight[mid]

        fut.add_done_callback(_done)
        return fut

    def attempt(self, message_id: str) -> Optional[DeliveryStatus]:
        """Run one delivery attempt. Never raises; returns the resulting status."""
        try:
            return self._attempt(message_id)
        except Exception as e:
            inc_counter("delivery.attempt.error")
            log_event(log, "delivery_attempt_error", level=logging.ERROR, message_id=message_id, error=repr(e))
            return self.get_status(message_id)

    def _attempt(self, message_id: str) -> Optional[DeliveryStatus]:
        cur = self.store.get_pending(message_id)
        if cur is None or cur.status != DeliveryStatus.PENDING:
            return self.get_status(message_id)

        msg = self.store.record_attempt(message_id, now_ms=self.clock.now_ms())
        if msg is None:
            return self.get_status(message_id)
        log_event(log, "delivery_attempt", message_id=msg.id, attempts=msg.attempts)

        if self._try_p2p(msg):
            inc_counter("delivery.p2p.ok")
            self._advance(msg.id, DeliveryStatus.DELIVERED)
            return DeliveryStatus.DELIVERED

        accepted = self.directory.store_offline_message(
            message_id=msg.id,
            sender_id=self.user_id,
            recipient=msg.locate_name,
            payload=msg.payload,
            kind=msg.kind,
            timestamp=msg.created_ms,
        )
        if accepted:
            inc_counter("delivery.server.ok")
            self._advance(msg.id, DeliveryStatus.SERVER_QUEUED)
            return DeliveryStatus.SERVER_QUEUED

        inc_counter("delivery.attempt.fail")
        log_event(log, "delivery_attempt_failed", level=logging.INFO, message_id=msg.id, attempts=msg.attempts)
        return self.get_status(msg.id)

    def _try_p2p(self, msg: PendingMessage) -> bool:
        location = self.directory.locate(msg.locate_name)
        if location is None:
            return False
        hint = location.hint()
        if self.peer_store is not None:
            self.peer_store.upsert_contact(
                peer_id=msg.recipient_id,
                display_name=location.username,
                public_key=location.public_key,
                address=hint.endpoint if hint is not None else None,
                address_ts_ms=location.last_seen_ms or self.clock.now_ms(),
            )
        if hint is None or self.node is None:
            return False

        if self.node.connect(msg.recipient_id, hint) is None:
            inc_counter("delivery.p2p.unreachable")
            return False
        chat = ChatMessage(message_id=msg.id, ciphertext=msg.payload, timestamp=msg.created_ms, kind=msg.kind)
        return self.node.send_and_await_receipt(msg.recipient_id, chat, timeout_s=self.cfg.receipt_timeout_s)

    # -------------------------
    # sweeps
    # -------------------------

    def retry_sweep(self) -> int:
        """Attempt every due PENDING message. Returns the number attempted."""
        if not self.connectivity():
            log_event(log, "retry_sweep_skipped", reason="no_connectivity")
            return 0

        now = self.clock.now_ms()
        due = [m for m in self.store.list_pending(statuses=[DeliveryStatus.PENDING]) if is_due(m, now_ms=now)]
        attempted = 0
        for i, msg in enumerate(due):
            if i:
                self.clock.sleep(self.cfg.retry_pause_s)
            fut = self._submit(msg.id)
            if fut is None:
                continue
            attempted += 1
            try:
                fut.result(timeout=self.cfg.attempt_timeout_s)
            except FutureTimeout:
                inc_counter("delivery.attempt.abandoned")
                log_event(log, "delivery_attempt_abandoned", level=logging.WARNING, message_id=msg.id)
        if due:
            log_event(log, "retry_sweep", due=len(due), attempted=attempted)
        return attempted

    def expire_sweep(self) -> List[str]:
        ids = self.store.delete_expired(self.clock.now_ms())
        for mid in ids:
            rec = self.store.get_record(mid)
            if rec is not None:
                self._publish(mid, rec.status)
        if ids:
            inc_counter("delivery.expired", len(ids))
            log_event(log, "expiry_sweep", expired=len(ids))
        return ids

    # -------------------------
    # server sync
    # -------------------------

    def sync_with_server(self, message_ids: Optional[Iterable[str]] = None) -> int:
        """Pull remote status for unfinished messages. Returns how many advanced."""
        records = self.store.list_records(statuses=[DeliveryStatus.PENDING, DeliveryStatus.SERVER_QUEUED])
        wanted = {r.message_id for r in records}
        if message_ids is not None:
            wanted &= {str(m) for m in message_ids}
        if not wanted:
            return 0

        changed = 0
        now = self.clock.now_ms()
        for rs in self.directory.check_status(sorted(wanted)):
            if rs.message_id not in wanted:
                continue
            if rs.status == DeliveryStatus.READ:
                self._advance(rs.message_id, DeliveryStatus.DELIVERED, ts_ms=rs.delivered_ms or rs.read_ms or now)
                if self._advance(rs.message_id, DeliveryStatus.READ, ts_ms=rs.read_ms or now):
                    changed += 1
                continue
            ts = rs.delivered_ms if rs.status == DeliveryStatus.DELIVERED else None
            if self._advance(rs.message_id, rs.status, ts_ms=ts or now):
                changed += 1
        log_event(log, "status_sync", checked=len(wanted), changed=changed)
        return changed

    # -------------------------
    # receipts + reads
    # -------------------------

    def on_delivery_receipt(self, message_id: str, ts_ms: Optional[int] = None, *, peer_id: str) -> bool:
        if not self._receipt_from_recipient(message_id, peer_id, "delivery_receipt"):
            return False
        return self._advance(message_id, DeliveryStatus.DELIVERED, ts_ms=ts_ms)

    def on_read_receipt(self, message_id: str, ts_ms: Optional[int] = None, *, peer_id: str) -> bool:
        if not self._receipt_from_recipient(message_id, peer_id, "read_receipt"):
            return False
        return self._advance(message_id, DeliveryStatus.READ, ts_ms=ts_ms)

    def _receipt_from_recipient(self, message_id: str, peer_id: str, kind: str) -> bool:
        """Only the message's recipient may acknowledge it."""
        rec = self.store.get_record(message_id)
        if rec is None:
            return False
        if rec.recipient_id == str(peer_id):
            return True
        inc_counter("delivery.receipt.foreign")
        log_event(
            log,
            "receipt_rejected",
            level=logging.WARNING,
            kind=kind,
            message_id=message_id,
            peer_id=peer_id,
            recipient_id=rec.recipient_id,
        )
        return False

    def mark_read(self, message_id: str, sender_id: str) -> bool:
        """We read an inbound message. True if a read_receipt went out over P2P."""
        sent = False
        if self.node is not None:
            sent = self.node.send_read_receipt(sender_id, message_id)
        self.directory.mark_read(message_id)
        log_event(log, "message_read", message_id=message_id, sender_id=sender_id, p2p=sent)
        return sent

    def on_offline_message_received(self, message_id: str) -> bool:
        return self.directory.confirm_received(message_id)
