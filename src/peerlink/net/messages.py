from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional, Union

PeerId = str
MessageId = str


class MsgType(str, Enum):
    HANDSHAKE = "handshake"
    HANDSHAKE_RESPONSE = "handshake_response"

    CHAT_MESSAGE = "chat_message"
    DELIVERY_RECEIPT = "delivery_receipt"
    READ_RECEIPT = "read_receipt"

    # Keepalive / liveness
    PING = "ping"
    PONG = "pong"
    DISCONNECT = "disconnect"

    # Identity challenge-response
    VERIFY_CHALLENGE = "verify_challenge"
    VERIFY_RESPONSE = "verify_response"


# ----------------------------
# Handshake
# ----------------------------

@dataclass(frozen=True, slots=True)
class HandshakeMsg:
    TYPE: ClassVar[MsgType] = MsgType.HANDSHAKE

    peer_id: PeerId
    display_name: str
    public_key: bytes
    timestamp: int
    signature: bytes = b""


@dataclass(frozen=True, slots=True)
class HandshakeResponseMsg:
    TYPE: ClassVar[MsgType] = MsgType.HANDSHAKE_RESPONSE

    peer_id: PeerId
    display_name: str
    public_key: bytes
    timestamp: int
    signature: bytes = b""


# ----------------------------
# Messaging
# ----------------------------

@dataclass(frozen=True, slots=True)
class ChatMessage:
    TYPE: ClassVar[MsgType] = MsgType.CHAT_MESSAGE

    message_id: MessageId
    ciphertext: bytes
    timestamp: int
    kind: str = "text"


@dataclass(frozen=True, slots=True)
class DeliveryReceipt:
    TYPE: ClassVar[MsgType] = MsgType.DELIVERY_RECEIPT

    message_id: MessageId
    timestamp: int


@dataclass(frozen=True, slots=True)
class ReadReceipt:
    TYPE: ClassVar[MsgType] = MsgType.READ_RECEIPT

    message_id: MessageId
    timestamp: int


# ----------------------------
# Keepalive / liveness
# ----------------------------

@dataclass(frozen=True, slots=True)
class PingMsg:
    TYPE: ClassVar[MsgType] = MsgType.PING

    timestamp: int


@dataclass(frozen=True, slots=True)
class PongMsg:
    TYPE: ClassVar[MsgType] = MsgType.PONG

    timestamp: int


@dataclass(frozen=True, slots=True)
class DisconnectMsg:
    TYPE: ClassVar[MsgType] = MsgType.DISCONNECT

    timestamp: int
    reason: Optional[str] = None


# ----------------------------
# Challenge-response
# ----------------------------

@dataclass(frozen=True, slots=True)
class VerifyChallengeMsg:
    TYPE: ClassVar[MsgType] = MsgType.VERIFY_CHALLENGE

    nonce: bytes
    timestamp: int


@dataclass(frozen=True, slots=True)
class VerifyResponseMsg:
    TYPE: ClassVar[MsgType] = MsgType.VERIFY_RESPONSE

    nonce: bytes
    signature: bytes
    timestamp: int


AnySessionMsg = Union[
    HandshakeMsg,
    HandshakeResponseMsg,
    ChatMessage,
    DeliveryReceipt,
    ReadReceipt,
    PingMsg,
    PongMsg,
    DisconnectMsg,
    VerifyChallengeMsg,
    VerifyResponseMsg,
]
