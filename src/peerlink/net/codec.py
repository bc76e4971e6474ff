# src/peerlink/net/codec.py
"""
Session record codec.

One record per line: a UTF-8 JSON object with a top-level "type" and
camelCase keys. Binary fields are standard base64.

decode_record() is strict: unknown types, missing required fields and wrong
field types are WireDecodeError (a protocol violation for that record only).
"""

from __future__ import annotations

import json
from typing import Any, Dict, Tuple, Type

from peerlink.crypto.sig import b64d, b64e
from peerlink.errors import PeerlinkError
from peerlink.net.messages import (
    AnySessionMsg,
    ChatMessage,
    DeliveryReceipt,
    DisconnectMsg,
    HandshakeMsg,
    HandshakeResponseMsg,
    MsgType,
    PingMsg,
    PongMsg,
    ReadReceipt,
    VerifyChallengeMsg,
    VerifyResponseMsg,
)

Json = Dict[str, Any]


class WireDecodeError(PeerlinkError):
    def __init__(self, code: str, msg: str) -> None:
        super().__init__(code, msg)


class WireEncodeError(PeerlinkError):
    def __init__(self, code: str, msg: str) -> None:
        super().__init__(code, msg)


# (attribute, wire key, kind, required). kind: str | int | b64 | optstr
_Field = Tuple[str, str, str, bool]

_ID_FIELDS: Tuple[_Field, ...] = (
    ("peer_id", "peerId", "str", True),
    ("display_name", "displayName", "str", True),
    ("public_key", "publicKey", "b64", True),
    ("timestamp", "timestamp", "int", True),
    ("signature", "signature", "b64", True),
)

_MSG_REGISTRY: Dict[MsgType, Tuple[Type[Any], Tuple[_Field, ...]]] = {
    MsgType.HANDSHAKE: (HandshakeMsg, _ID_FIELDS),
    MsgType.HANDSHAKE_RESPONSE: (HandshakeResponseMsg, _ID_FIELDS),
    MsgType.CHAT_MESSAGE: (
        ChatMessage,
        (
            ("message_id", "messageId", "str", True),
            ("ciphertext", "ciphertext", "b64", True),
            ("timestamp", "timestamp", "int", True),
            ("kind", "kind", "str", False),
        ),
    ),
    MsgType.DELIVERY_RECEIPT: (
        DeliveryReceipt,
        (("message_id", "messageId", "str", True), ("timestamp", "timestamp", "int", True)),
    ),
    MsgType.READ_RECEIPT: (
        ReadReceipt,
        (("message_id", "messageId", "str", True), ("timestamp", "timestamp", "int", True)),
    ),
    MsgType.PING: (PingMsg, (("timestamp", "timestamp", "int", True),)),
    MsgType.PONG: (PongMsg, (("timestamp", "timestamp", "int", True),)),
    MsgType.DISCONNECT: (
        DisconnectMsg,
        (("timestamp", "timestamp", "int", True), ("reason", "reason", "optstr", False)),
    ),
    MsgType.VERIFY_CHALLENGE: (
        VerifyChallengeMsg,
        (("nonce", "nonce", "b64", True), ("timestamp", "timestamp", "int", True)),
    ),
    MsgType.VERIFY_RESPONSE: (
        VerifyResponseMsg,
        (
            ("nonce", "nonce", "b64", True),
            ("signature", "signature", "b64", True),
            ("timestamp", "timestamp", "int", True),
        ),
    ),
}


def dumps_json(obj: Any) -> bytes:
    try:
        return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise WireEncodeError("encode_failed", f"encode failed: {e}") from e


def loads_json(data: bytes | str) -> Any:
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return json.loads(data)
    except json.JSONDecodeError as e:
        raise WireDecodeError("invalid_json", f"invalid json: {e}") from e
    except UnicodeDecodeError as e:
        raise WireDecodeError("invalid_utf8", f"invalid utf-8: {e}") from e


def _coerce_msg_type(v: Any) -> MsgType:
    if isinstance(v, str):
        try:
            return MsgType(v)
        except ValueError as e:
            raise WireDecodeError("unknown_message_type", f"Unknown message type: {v}") from e
    raise WireDecodeError("invalid_message_type", f"Invalid message type field: {type(v).__name__}")


def _decode_field(raw: Any, wire: str, kind: str) -> Any:
    if kind == "int":
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise WireDecodeError("invalid_int_field", f"Invalid int field '{wire}'")
        return raw
    if kind == "b64":
        if not isinstance(raw, str):
            raise WireDecodeError("invalid_b64_field", f"Invalid base64 field '{wire}'")
        try:
            return b64d(raw)
        except ValueError as e:
            raise WireDecodeError("invalid_b64_field", f"Invalid base64 field '{wire}'") from e
    if kind == "optstr":
        if raw is None or isinstance(raw, str):
            return raw
        raise WireDecodeError("invalid_str_field", f"Invalid str field '{wire}'")
    if not isinstance(raw, str):
        raise WireDecodeError("invalid_str_field", f"Invalid str field '{wire}'")
    return raw


def message_to_json(msg: AnySessionMsg) -> Json:
    mtype = getattr(msg, "TYPE", None)
    entry = _MSG_REGISTRY.get(mtype) if isinstance(mtype, MsgType) else None
    if entry is None:
        raise WireEncodeError("unknown_message", f"cannot encode {type(msg).__name__}")
    _cls, fields = entry
    out: Json = {"type": mtype.value}
    for attr, wire, kind, _required in fields:
        v = getattr(msg, attr)
        if kind == "b64":
            out[wire] = b64e(v)
        elif kind == "optstr" and v is None:
            continue
        else:
            out[wire] = v
    return out


def encode_record(msg: AnySessionMsg) -> bytes:
    """Encode as one '\n' terminated line."""
    return dumps_json(message_to_json(msg)) + b"\n"


def decode_record(line: bytes | str) -> AnySessionMsg:
    raw = loads_json(line)
    if not isinstance(raw, dict):
        raise WireDecodeError("invalid_message", "session record must be an object")

    mtype = _coerce_msg_type(raw.get("type"))
    cls, fields = _MSG_REGISTRY[mtype]

    kwargs: Json = {}
    for attr, wire, kind, required in fields:
        if wire not in raw or raw[wire] is None:
            if required:
                raise WireDecodeError("missing_field", f"{mtype.value} missing '{wire}'")
            continue
        kwargs[attr] = _decode_field(raw[wire], wire, kind)
    return cls(**kwargs)
