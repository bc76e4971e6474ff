# src/peerlink/net/nat_traversal.py
"""
PeerLink — NAT Traversal Orchestrator

establish(hint, peer_id) tries, in order, first success wins:

  1) direct        TCP connect to the hinted address
  2) udp_holepunch STUN-discover our mapped endpoint, spray HOLE_PUNCH
                   datagrams at the peer, then TCP connect (once more after a
                   short wait)
  3) tcp_holepunch several fresh SO_REUSEADDR sockets (optionally bound to a
                   fixed local port) with a delay between attempts
  4) relay         allocate a relay channel and tunnel through it

All stages share one overall deadline; every connect timeout, STUN query
and sleep is clipped to the time left. When a relay allocator is configured,
stages 1-3 stop early enough to leave the relay its request + connect
budget. A stage that cannot start in time fails with "deadline_exceeded".

Nothing here raises for a failing strategy: the result is either a
Connection (HANDSHAKING) or a TraversalFailure listing (stage, reason) pairs.
"""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Union

from peerlink.crypto.keys import Crypto
from peerlink.metrics import inc_counter
from peerlink.net.connection import Connection
from peerlink.net.net_logging import log_event
from peerlink.net.relay import (
    DEFAULT_MAX_CONTROL_FRAME_BYTES,
    DEFAULT_MAX_DATA_FRAME_BYTES,
    RelayAllocator,
    open_relay_stream,
)
from peerlink.net.stun import PublicEndpointDiscovery
from peerlink.net.transport import AddressHint, ByteStream, TransportKind
from peerlink.net.transport_tcp import TcpStream, try_connect_tcp
from peerlink.scheduler import Clock, SystemClock

log = logging.getLogger("peerlink.nat")

STAGE_DIRECT = "direct"
STAGE_UDP = "udp_holepunch"
STAGE_TCP = "tcp_holepunch"
STAGE_RELAY = "relay"

_STAGE_KIND = {
    STAGE_DIRECT: TransportKind.DIRECT,
    STAGE_UDP: TransportKind.UDP_HOLEPUNCH,
    STAGE_TCP: TransportKind.TCP_HOLEPUNCH,
    STAGE_RELAY: TransportKind.RELAY,
}


@dataclass(frozen=True, slots=True)
class NatConfig:
    connect_timeout_s: float = 5.0
    udp_punch_count: int = 5
    udp_punch_interval_s: float = 0.2
    udp_retry_wait_s: float = 1.0
    tcp_punch_attempts: int = 5
    tcp_punch_delay_s: float = 0.5
    tcp_punch_timeout_s: float = 2.0
    relay_request_timeout_s: float = 10.0
    relay_connect_timeout_s: float = 10.0
    establish_deadline_s: float = 40.0
    local_port: int = 0
    max_control_frame_bytes: int = DEFAULT_MAX_CONTROL_FRAME_BYTES
    max_data_frame_bytes: int = DEFAULT_MAX_DATA_FRAME_BYTES


@dataclass(frozen=True, slots=True)
class StageResult:
    stage: str
    ok: bool
    reason: str
    stream: Optional[ByteStream] = None


@dataclass(frozen=True, slots=True)
class TraversalFailure:
    peer_id: str
    reasons: Tuple[Tuple[str, str], ...]


EstablishResult = Union[Connection, TraversalFailure]


def default_connectivity_check() -> bool:
    """True when the host has a usable default route.

    A UDP connect() only consults the routing table; nothing is sent.
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("8.8.8.8", 53))
        return True
    except OSError:
        return False
    finally:
        s.close()


class NatTraversal:
    def __init__(
        self,
        *,
        cfg: NatConfig,
        crypto: Crypto,
        user_id: str,
        stun: Optional[PublicEndpointDiscovery] = None,
        relay_allocator: Optional[RelayAllocator] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.cfg = cfg
        self.crypto = crypto
        self.user_id = str(user_id)
        self.stun = stun
        self.relay_allocator = relay_allocator
        self.clock: Clock = clock if clock is not None else SystemClock()

    # -------------------------
    # public
    # -------------------------

    def establish(self, hint: AddressHint, peer_id: str) -> EstablishResult:
        total_ms = int(self.cfg.establish_deadline_s * 1000)
        deadline_ms = self.clock.now_ms() + total_ms
        # The relay never gets more than half of the overall budget.
        punch_deadline_ms = deadline_ms - min(self._relay_reserve_ms(), total_ms // 2)
        stages: List[Tuple[str, Callable[[AddressHint, int], StageResult], int]] = [
            (STAGE_DIRECT, self._try_direct, punch_deadline_ms),
            (STAGE_UDP, self._try_udp_holepunch, punch_deadline_ms),
            (STAGE_TCP, self._try_tcp_holepunch, punch_deadline_ms),
            (STAGE_RELAY, self._try_relay, deadline_ms),
        ]

        reasons: List[Tuple[str, str]] = []
        for stage, fn, stage_deadline_ms in stages:
            if self._remaining_s(stage_deadline_ms) <= 0:
                res = StageResult(stage, False, "deadline_exceeded")
            else:
                try:
                    res = fn(hint, stage_deadline_ms)
                except OSError as e:
                    res = StageResult(stage, False, f"os_error:{e.errno}")

            if res.ok and res.stream is not None:
                inc_counter(f"nat.{stage}.ok")
                log_event(log, "nat_stage_ok", peer_id=peer_id, stage=stage, target=f"{hint.host}:{hint.port}")
                return Connection(stream=res.stream, transport_kind=_STAGE_KIND[stage], peer_id=peer_id)

            inc_counter(f"nat.{stage}.fail")
            log_event(log, "nat_stage_failed", level=logging.INFO, peer_id=peer_id, stage=stage, reason=res.reason)
            reasons.append((stage, res.reason))

        log_event(log, "nat_traversal_failed", level=logging.WARNING, peer_id=peer_id, reasons=reasons)
        return TraversalFailure(peer_id=peer_id, reasons=tuple(reasons))

    # -------------------------
    # helpers
    # -------------------------

    def _relay_reserve_ms(self) -> int:
        if self.relay_allocator is None:
            return 0
        return int((self.cfg.relay_request_timeout_s + self.cfg.relay_connect_timeout_s) * 1000)

    def _remaining_s(self, deadline_ms: int) -> float:
        return (deadline_ms - self.clock.now_ms()) / 1000.0

    def _clip(self, seconds: float, deadline_ms: int) -> float:
        return max(0.0, min(float(seconds), self._remaining_s(deadline_ms)))

    def _connect(
        self, hint: AddressHint, deadline_ms: int, *, timeout_s: Optional[float] = None, **kw
    ) -> Tuple[Optional[socket.socket], str]:
        timeout = self._clip(self.cfg.connect_timeout_s if timeout_s is None else timeout_s, deadline_ms)
        if timeout <= 0:
            return None, "deadline_exceeded"
        return try_connect_tcp(hint.host, hint.port, timeout_s=timeout, **kw)

    # -------------------------
    # stages
    # -------------------------

    def _try_direct(self, hint: AddressHint, deadline_ms: int) -> StageResult:
        sock, reason = self._connect(hint, deadline_ms)
        if sock is None:
            return StageResult(STAGE_DIRECT, False, reason)
        return StageResult(STAGE_DIRECT, True, "ok", TcpStream(sock, kind=TransportKind.DIRECT))

    def _try_udp_holepunch(self, hint: AddressHint, deadline_ms: int) -> StageResult:
        if self.stun is None:
            return StageResult(STAGE_UDP, False, "stun_unavailable")

        usock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            if self.cfg.local_port:
                usock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                usock.bind(("", int(self.cfg.local_port)))

            mapped = self.stun.discover(usock, timeout_s=self._remaining_s(deadline_ms))
            if mapped is None:
                return StageResult(STAGE_UDP, False, "stun_unavailable")

            payload = f"HOLE_PUNCH:{mapped.host}:{mapped.port}".encode("utf-8")
            count = max(1, int(self.cfg.udp_punch_count))
            for i in range(count):
                if self._remaining_s(deadline_ms) <= 0:
                    return StageResult(STAGE_UDP, False, "deadline_exceeded")
                try:
                    usock.sendto(payload, (hint.host, int(hint.port)))
                except OSError as e:
                    return StageResult(STAGE_UDP, False, f"punch_failed:{e.errno}")
                if i < count - 1:
                    self.clock.sleep(self._clip(self.cfg.udp_punch_interval_s, deadline_ms))
        finally:
            usock.close()

        sock, reason = self._connect(hint, deadline_ms)
        if sock is None:
            self.clock.sleep(self._clip(self.cfg.udp_retry_wait_s, deadline_ms))
            sock, reason = self._connect(hint, deadline_ms)
        if sock is None:
            return StageResult(STAGE_UDP, False, reason)
        return StageResult(STAGE_UDP, True, "ok", TcpStream(sock, kind=TransportKind.UDP_HOLEPUNCH))

    def _try_tcp_holepunch(self, hint: AddressHint, deadline_ms: int) -> StageResult:
        attempts = max(1, int(self.cfg.tcp_punch_attempts))
        reason = "no_attempt"
        for i in range(attempts):
            sock, reason = self._connect(
                hint,
                deadline_ms,
                timeout_s=self.cfg.tcp_punch_timeout_s,
                reuse_addr=True,
                local_port=int(self.cfg.local_port),
            )
            if sock is not None:
                return StageResult(STAGE_TCP, True, "ok", TcpStream(sock, kind=TransportKind.TCP_HOLEPUNCH))
            if reason == "deadline_exceeded":
                break
            if i < attempts - 1:
                self.clock.sleep(self._clip(self.cfg.tcp_punch_delay_s, deadline_ms))
        return StageResult(STAGE_TCP, False, reason)

    def _try_relay(self, hint: AddressHint, deadline_ms: int) -> StageResult:
        if self.relay_allocator is None:
            return StageResult(STAGE_RELAY, False, "relay_unconfigured")
        channel = self.relay_allocator.request_channel(hint.host, int(hint.port))
        if channel is None:
            return StageResult(STAGE_RELAY, False, "relay_unavailable")

        timeout = self._clip(self.cfg.relay_connect_timeout_s, deadline_ms)
        if timeout <= 0:
            return StageResult(STAGE_RELAY, False, "deadline_exceeded")
        stream, reason = open_relay_stream(
            channel=channel,
            target=hint,
            crypto=self.crypto,
            user_id=self.user_id,
            timeout_s=timeout,
            max_control_frame_bytes=self.cfg.max_control_frame_bytes,
            max_data_frame_bytes=self.cfg.max_data_frame_bytes,
        )
        if stream is None:
            return StageResult(STAGE_RELAY, False, reason)
        return StageResult(STAGE_RELAY, True, "ok", stream)
