# src/peerlink/delivery/directory.py
"""
Directory server client.

Every call is best-effort: transport failures, non-2xx responses and
malformed bodies come back as None / False / [] and are logged, never raised.
"""

from __future__ import annotations

import logging
import urllib.parse
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from peerlink.crypto.sig import b64d, b64e
from peerlink.delivery.models import DeliveryStatus
from peerlink.http_client import http_json
from peerlink.metrics import inc_counter
from peerlink.net.net_logging import log_event
from peerlink.net.transport import AddressHint

log = logging.getLogger("peerlink.delivery")

Json = Dict[str, Any]
HttpFn = Callable[..., Json]


def _opt_int(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True, slots=True)
class PeerLocation:
    user_id: str
    username: str
    public_key: Optional[bytes]
    host: Optional[str]
    port: Optional[int]
    last_seen_ms: int = 0

    def hint(self) -> Optional[AddressHint]:
        if not self.host or not self.port:
            return None
        return AddressHint(host=self.host, port=int(self.port), public_key=self.public_key)


@dataclass(frozen=True, slots=True)
class RemoteStatus:
    message_id: str
    status: DeliveryStatus
    delivered_ms: Optional[int] = None
    read_ms: Optional[int] = None


def parse_location(body: Json) -> Optional[PeerLocation]:
    uid = body.get("id")
    if not isinstance(uid, str) or not uid:
        return None
    pk: Optional[bytes] = None
    pk_s = body.get("public_key")
    if isinstance(pk_s, str) and pk_s:
        try:
            pk = b64d(pk_s)
        except ValueError:
            pk = None
    host = body.get("ip_address")
    return PeerLocation(
        user_id=uid,
        username=str(body.get("username") or uid),
        public_key=pk,
        host=host if isinstance(host, str) and host else None,
        port=_opt_int(body.get("port")),
        last_seen_ms=_opt_int(body.get("last_seen")) or 0,
    )


class DirectoryClient:
    def __init__(self, *, base_url: str, timeout_s: float = 10.0, http: HttpFn = http_json) -> None:
        self.base_url = str(base_url or "").rstrip("/")
        self.timeout_s = float(timeout_s)
        self._http = http

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _call(self, op: str, method: str, path: str, body: Optional[Json] = None) -> Optional[Json]:
        if not self.configured:
            return None
        resp = self._http(method, f"{self.base_url}{path}", body, self.timeout_s)
        if not isinstance(resp, dict) or not resp.get("ok", False):
            inc_counter(f"directory.{op}.fail")
            log_event(
                log,
                "directory_call_failed",
                level=logging.INFO,
                op=op,
                error=(resp or {}).get("error") if isinstance(resp, dict) else "bad_response",
                status=(resp or {}).get("status") if isinstance(resp, dict) else None,
            )
            return None
        return resp

    def locate(self, username: str) -> Optional[PeerLocation]:
        resp = self._call("locate", "GET", f"/users/find/{urllib.parse.quote(str(username), safe='')}")
        if resp is None:
            return None
        return parse_location(resp)

    def update_location(self, user_id: str, host: str, port: int) -> bool:
        body = {"user_id": str(user_id), "ip_address": str(host), "port": int(port)}
        path = f"/users/{urllib.parse.quote(str(user_id), safe='')}/location"
        return self._call("update_location", "POST", path, body) is not None

    def store_offline_message(
        self,
        *,
        message_id: str,
        sender_id: str,
        recipient: str,
        payload: bytes,
        kind: str,
        timestamp: int,
    ) -> bool:
        body = {
            "message_id": str(message_id),
            "sender_id": str(sender_id),
            "recipient_username": str(recipient),
            "encrypted_content": b64e(payload),
            "message_type": str(kind),
            "timestamp": int(timestamp),
        }
        resp = self._call("store_offline_message", "POST", "/messages/offline", body)
        return resp is not None and bool(resp.get("success", False))

    def confirm_received(self, message_id: str) -> bool:
        path = f"/messages/{urllib.parse.quote(str(message_id), safe='')}/received"
        return self._call("confirm_received", "POST", path, {"message_id": str(message_id)}) is not None

    def mark_read(self, message_id: str) -> bool:
        path = f"/messages/{urllib.parse.quote(str(message_id), safe='')}/read"
        return self._call("mark_read", "POST", path, {"message_id": str(message_id)}) is not None

    def check_status(self, message_ids: List[str]) -> List[RemoteStatus]:
        if not message_ids:
            return []
        resp = self._call("check_status", "POST", "/messages/status", {"message_ids": list(message_ids)})
        if resp is None:
            return []
        results = resp.get("results")
        if not isinstance(results, list):
            return []

        out: List[RemoteStatus] = []
        for item in results:
            if not isinstance(item, dict):
                continue
            mid = item.get("message_id")
            st = DeliveryStatus.parse(item.get("status"))
            if not isinstance(mid, str) or st is None:
                continue
            out.append(
                RemoteStatus(
                    message_id=mid,
                    status=st,
                    delivered_ms=_opt_int(item.get("delivered_at")),
                    read_ms=_opt_int(item.get("read_at")),
                )
            )
        return out
