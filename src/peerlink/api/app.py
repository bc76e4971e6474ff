# src/peerlink/api/app.py
from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Request

from peerlink import __version__
from peerlink.api.errors import ApiError, api_error_handler
from peerlink.api.request_logging import RequestLogMiddleware
from peerlink.api.schemas import (
    ChallengeResponse,
    ConnectionInfo,
    EnqueueRequest,
    EnqueueResponse,
    InboxItem,
    MarkReadRequest,
    StatusResponse,
    SyncRequest,
    VerificationResponse,
    VerifyQrRequest,
    VerifyQrResponse,
)
from peerlink.config import load_config
from peerlink.crypto.sig import b64d, b64e
from peerlink.metrics import snapshot
from peerlink.security.verification import fingerprint
from peerlink.service import PeerlinkService

Json = Dict[str, Any]

router = APIRouter(prefix="/v1")


def _service(request: Request) -> PeerlinkService:
    svc = getattr(request.app.state, "service", None)
    if svc is None:
        raise ApiError.internal("not_ready", "service not attached to app.state")
    return svc


# ---------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------


@router.get("/health")
def health(request: Request) -> Json:
    svc = _service(request)
    return {
        "ok": True,
        "version": __version__,
        "user_id": svc.cfg.user_id,
        "listen_port": svc.node.bound_port,
        "connections": len(svc.node.table),
        "counters": snapshot(),
    }


# ---------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------


@router.post("/messages", response_model=EnqueueResponse)
def enqueue_message(body: EnqueueRequest, request: Request) -> EnqueueResponse:
    svc = _service(request)
    try:
        payload = b64d(body.payload_b64)
    except ValueError:
        raise ApiError.bad_request("bad_payload", "payload_b64 is not valid base64")
    if not payload:
        raise ApiError.bad_request("empty_payload", "payload must not be empty")

    mid = svc.delivery.enqueue(body.recipient_id, payload, body.kind, recipient_display_name=body.recipient_name)
    st = svc.delivery.get_status(mid)
    return EnqueueResponse(message_id=mid, status=st.value if st is not None else "PENDING")


@router.post("/messages/sync")
def sync_messages(request: Request, body: Optional[SyncRequest] = None) -> Json:
    svc = _service(request)
    ids = body.message_ids if body is not None else None
    return {"ok": True, "changed": svc.delivery.sync_with_server(ids)}


@router.get("/messages/{message_id}/status", response_model=StatusResponse)
def message_status(message_id: str, request: Request) -> StatusResponse:
    svc = _service(request)
    st = svc.delivery.get_status(message_id)
    if st is None:
        raise ApiError.not_found("unknown_message", "no such message", {"message_id": message_id})
    rec = svc.delivery.get_record(message_id)
    return StatusResponse(message_id=message_id, status=st.value, record=rec.to_json() if rec is not None else None)


@router.post("/messages/{message_id}/read")
def mark_read(message_id: str, body: MarkReadRequest, request: Request) -> Json:
    svc = _service(request)
    sent = svc.delivery.mark_read(message_id, body.sender_id)
    return {"ok": True, "message_id": message_id, "receipt_sent": sent}


@router.get("/inbox", response_model=List[InboxItem])
def inbox(request: Request, limit: int = 100) -> List[InboxItem]:
    svc = _service(request)
    return [
        InboxItem(
            peer_id=m.peer_id,
            message_id=m.message_id,
            ciphertext_b64=b64e(m.ciphertext),
            kind=m.kind,
            timestamp=m.timestamp,
            received_ms=m.received_ms,
        )
        for m in svc.inbox(limit=limit)
    ]


# ---------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------


@router.get("/connections", response_model=List[ConnectionInfo])
def connections(request: Request) -> List[ConnectionInfo]:
    svc = _service(request)
    return [
        ConnectionInfo(
            peer_id=c.peer_id,
            display_name=c.display_name,
            transport_kind=c.transport_kind.value,
            state=c.state.value,
            remote=str(c.remote) if c.remote is not None else None,
            last_activity_ms=c.last_activity_ms,
        )
        for c in svc.node.connections()
    ]


# ---------------------------------------------------------------------
# Identity + verification
# ---------------------------------------------------------------------


@router.get("/identity/qr")
def identity_qr(request: Request) -> Json:
    svc = _service(request)
    return {
        "ok": True,
        "peer_id": svc.cfg.user_id,
        "fingerprint": fingerprint(svc.crypto.public_key),
        "data": svc.identity_qr(),
    }


@router.post("/peers/verify-qr", response_model=VerifyQrResponse)
def verify_qr(body: VerifyQrRequest, request: Request) -> VerifyQrResponse:
    svc = _service(request)
    res = svc.verify_qr(body.data, expected_id=body.expected_id)
    ident = res.identity
    return VerifyQrResponse(
        ok=res.ok,
        reason=res.reason,
        peer_id=ident.peer_id if ident is not None else None,
        display_name=ident.display_name if ident is not None else None,
        fingerprint=ident.fingerprint if ident is not None else None,
    )


@router.get("/peers/{peer_id}/verification", response_model=VerificationResponse)
def peer_verification(peer_id: str, request: Request) -> VerificationResponse:
    svc = _service(request)
    info = svc.verification_info(peer_id)
    if info is None:
        raise ApiError.not_found("unknown_peer", "no public key recorded for peer", {"peer_id": peer_id})
    return VerificationResponse(**info)


@router.post("/peers/{peer_id}/challenge", response_model=ChallengeResponse)
def challenge_peer(peer_id: str, request: Request) -> ChallengeResponse:
    svc = _service(request)
    ok, reason = svc.node.challenge_peer(peer_id)
    if reason == "not_connected":
        raise ApiError.conflict("not_connected", "no open connection to peer", {"peer_id": peer_id})
    return ChallengeResponse(ok=ok, reason=reason, state=svc.node.verification_state(peer_id).value)


# ---------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------


def create_app(service: Optional[PeerlinkService] = None, *, manage_lifecycle: bool = True) -> FastAPI:
    """Create the FastAPI application.

    service:
      - None (default): build one from load_config()
      - given: attach as-is (tests pass a service over a temp database)

    manage_lifecycle:
      - True: lifespan starts the service on startup and stops it on shutdown
      - False: the caller owns start/stop
    """
    svc = service if service is not None else PeerlinkService(load_config())
    mode = os.environ.get("PEERLINK_MODE", "dev").strip().lower()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        if manage_lifecycle:
            svc.start()
        yield
        if manage_lifecycle:
            svc.stop()

    if mode == "prod":
        app = FastAPI(title="PeerLink Node API", docs_url=None, redoc_url=None, openapi_url=None, lifespan=_lifespan)
    else:
        app = FastAPI(title="PeerLink Node API", lifespan=_lifespan)

    app.state.service = svc
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_middleware(RequestLogMiddleware)
    app.include_router(router)
    return app
