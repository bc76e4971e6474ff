# src/peerlink/net/transport_tcp.py
"""
PeerLink — TCP byte streams.

  - try_connect_tcp(): bounded connect, optionally SO_REUSEADDR + fixed local
    port (TCP hole punching). Failures are returned as a reason, not raised.
  - TcpStream: ByteStream over a connected blocking socket.
  - LineReader: splits a ByteStream into '\n' terminated records with a hard
    upper bound on line length.
  - open_listener(): bound + listening server socket.

Closing a TcpStream shuts the socket down so a reader blocked in recv()
wakes up immediately.
"""

from __future__ import annotations

import socket
import threading
from typing import List, Optional, Tuple

from peerlink.errors import FrameError, StreamClosed
from peerlink.net.transport import ByteStream, Endpoint, TransportKind

_RECV_CHUNK = 65536


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def try_connect_tcp(
    host: str,
    port: int,
    *,
    timeout_s: float,
    reuse_addr: bool = False,
    local_port: int = 0,
) -> Tuple[Optional[socket.socket], str]:
    """Connect with a timeout. Returns (sock, "ok") or (None, reason)."""
    if timeout_s <= 0:
        return None, "deadline_exceeded"

    s: Optional[socket.socket] = None
    try:
        infos = socket.getaddrinfo(host, int(port), socket.AF_INET, socket.SOCK_STREAM)
        if not infos:
            return None, "resolve_failed"
        family, stype, proto, _canon, addr = infos[0]
        s = socket.socket(family, stype, proto)
        if reuse_addr:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError:
                    pass
        if local_port:
            s.bind(("", int(local_port)))
        s.settimeout(float(timeout_s))
        s.connect(addr)
        s.settimeout(None)
        return s, "ok"
    except socket.gaierror:
        _close_quietly(s)
        return None, "resolve_failed"
    except socket.timeout:
        _close_quietly(s)
        return None, "timeout"
    except ConnectionRefusedError:
        _close_quietly(s)
        return None, "refused"
    except OSError as e:
        _close_quietly(s)
        return None, f"os_error:{e.errno}"


def open_listener(host: str, port: int, *, backlog: int = 128) -> socket.socket:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    s.bind((host, int(port)))
    s.listen(backlog)
    return s


def _close_quietly(s: Optional[socket.socket]) -> None:
    if s is None:
        return
    try:
        s.close()
    except OSError:
        pass


# ---------------------------------------------------------------------
# Stream
# ---------------------------------------------------------------------

class TcpStream:
    """ByteStream over a connected socket. Writes are serialized."""

    def __init__(self, sock: socket.socket, *, kind: TransportKind = TransportKind.DIRECT) -> None:
        self._sock = sock
        self._kind = TransportKind(kind)
        self._wlock = threading.Lock()
        self._closed = False
        try:
            host, port = sock.getpeername()[:2]
            self._remote: Optional[Endpoint] = Endpoint(str(host), int(port))
        except (OSError, ValueError):
            self._remote = None

    @property
    def kind(self) -> TransportKind:
        return self._kind

    @property
    def remote(self) -> Optional[Endpoint]:
        return self._remote

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> None:
        if self._closed:
            raise StreamClosed("write_after_close")
        with self._wlock:
            try:
                self._sock.sendall(bytes(data))
            except OSError as e:
                raise StreamClosed(f"send_failed:{e.errno}") from e

    def read(self, timeout_s: float) -> bytes:
        if self._closed:
            raise StreamClosed("read_after_close")
        try:
            self._sock.settimeout(max(0.001, float(timeout_s)))
            chunk = self._sock.recv(_RECV_CHUNK)
        except socket.timeout:
            return b""
        except OSError as e:
            raise StreamClosed(f"recv_failed:{e.errno}") from e
        if not chunk:
            raise StreamClosed("eof")
        return chunk

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        _close_quietly(self._sock)


# ---------------------------------------------------------------------
# Line framing
# ---------------------------------------------------------------------

class LineReader:
    """Buffers a ByteStream and yields complete '\n' terminated lines.

    A line (or an unterminated partial line) longer than max_line_bytes raises
    FrameError; callers must abandon the stream.
    """

    def __init__(self, stream: ByteStream, *, max_line_bytes: int) -> None:
        self._stream = stream
        self._max = int(max_line_bytes)
        self._buf = bytearray()
        self._ready: List[bytes] = []

    def read_line(self, timeout_s: float) -> Optional[bytes]:
        """Return one line without its terminator, or None if none is ready."""
        if self._ready:
            return self._ready.pop(0)
        chunk = self._stream.read(timeout_s)
        if chunk:
            self._buf.extend(chunk)
            self._split()
        if self._ready:
            return self._ready.pop(0)
        return None

    def _split(self) -> None:
        while True:
            idx = self._buf.find(b"\n")
            if idx < 0:
                break
            if idx > self._max:
                raise FrameError("line_too_long", {"len": idx, "max": self._max})
            line = bytes(self._buf[:idx])
            del self._buf[: idx + 1]
            if line.endswith(b"\r"):
                line = line[:-1]
            if line:
                self._ready.append(line)
        if len(self._buf) > self._max:
            raise FrameError("line_too_long", {"len": len(self._buf), "max": self._max})
