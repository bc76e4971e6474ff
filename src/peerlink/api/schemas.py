# src/peerlink/api/schemas.py
from __future__ import annotations

"""Pydantic request/response schemas for the local control API.

Binary values cross the API as standard base64 strings.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class EnqueueRequest(BaseModel):
    recipient_id: str = Field(..., min_length=1, description="Recipient peer id")
    recipient_name: Optional[str] = Field(default=None, description="Directory username, defaults to recipient_id")
    payload_b64: str = Field(..., description="Base64 of the already-encrypted payload")
    kind: str = Field(default="text", description="Message kind, e.g. text or audio")


class EnqueueResponse(BaseModel):
    ok: bool = True
    message_id: str
    status: str


class StatusResponse(BaseModel):
    ok: bool = True
    message_id: str
    status: str
    record: Optional[Dict[str, Any]] = None


class MarkReadRequest(BaseModel):
    sender_id: str = Field(..., min_length=1)


class SyncRequest(BaseModel):
    message_ids: Optional[List[str]] = None


class ConnectionInfo(BaseModel):
    peer_id: Optional[str]
    display_name: Optional[str]
    transport_kind: str
    state: str
    remote: Optional[str]
    last_activity_ms: int


class VerifyQrRequest(BaseModel):
    data: str = Field(..., description="Scanned QR payload (JSON text)")
    expected_id: Optional[str] = None


class VerifyQrResponse(BaseModel):
    ok: bool
    reason: str
    peer_id: Optional[str] = None
    display_name: Optional[str] = None
    fingerprint: Optional[str] = None


class VerificationResponse(BaseModel):
    ok: bool = True
    peer_id: str
    display_name: str
    fingerprint: str
    safety_number: str
    verification_words: str
    state: str


class ChallengeResponse(BaseModel):
    ok: bool
    reason: str
    state: str


class InboxItem(BaseModel):
    peer_id: str
    message_id: str
    ciphertext_b64: str
    kind: str
    timestamp: int
    received_ms: int
