"""
Enigmo - Wire protocol definitions.

The relay speaks newline-delimited JSON: every frame is one UTF-8 JSON
object terminated by ``\\n``. Each inbound object carries a ``type`` field
selecting one request kind; every request kind is a frozen dataclass and
``parse_request`` returns exactly one of them.

Inbound kinds:
- auth, send_message, get_history, mark_read, ack, get_users, ping, logout

Outbound frames all carry ``type`` and ``timestamp``:
- auth_success, message, ack, message_history, users, pong, error,
  user_status_update

Binary envelope fields (encryptedData, nonce, mac, signature) are base64
and opaque to the relay.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Optional, Type, Union

from .constants import MAX_LINE_BYTES
from .errors import ErrorCode, MalformedEnvelope, ProtocolError
from .router import MessageType

ENVELOPE_FIELDS = ("encryptedData", "nonce", "mac", "signature")


@dataclass(frozen=True)
class AuthRequest:
    TYPE: ClassVar[str] = "auth"

    signing_public_key: str
    agreement_public_key: str
    timestamp: str
    signature: str
    nickname: Optional[str] = None
    credential: Optional[str] = None


@dataclass(frozen=True)
class SendMessageRequest:
    TYPE: ClassVar[str] = "send_message"

    receiver_id: str
    envelope: Dict[str, str]
    message_type: MessageType = MessageType.TEXT
    metadata: Optional[Dict[str, Any]] = None
    timestamp: str = ""


@dataclass(frozen=True)
class GetHistoryRequest:
    TYPE: ClassVar[str] = "get_history"

    other_user_id: str
    limit: Optional[int] = None
    before: Optional[datetime] = None


@dataclass(frozen=True)
class MarkReadRequest:
    TYPE: ClassVar[str] = "mark_read"

    message_id: str


@dataclass(frozen=True)
class AckRequest:
    TYPE: ClassVar[str] = "ack"

    message_id: str


@dataclass(frozen=True)
class GetUsersRequest:
    TYPE: ClassVar[str] = "get_users"


@dataclass(frozen=True)
class PingRequest:
    TYPE: ClassVar[str] = "ping"

    timestamp: Any = None


@dataclass(frozen=True)
class LogoutRequest:
    TYPE: ClassVar[str] = "logout"


Request = Union[
    AuthRequest,
    SendMessageRequest,
    GetHistoryRequest,
    MarkReadRequest,
    AckRequest,
    GetUsersRequest,
    PingRequest,
    LogoutRequest,
]

REQUEST_TYPES: Dict[str, Type] = {
    cls.TYPE: cls
    for cls in (
        AuthRequest,
        SendMessageRequest,
        GetHistoryRequest,
        MarkReadRequest,
        AckRequest,
        GetUsersRequest,
        PingRequest,
        LogoutRequest,
    )
}


def _require_str(data: Dict[str, Any], name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value:
        raise MalformedEnvelope(f"Missing required field: {name}", {"field": name})
    return value


def _optional_str(data: Dict[str, Any], name: str) -> Optional[str]:
    value = data.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedEnvelope(f"Field {name} must be a string", {"field": name})
    return value


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise MalformedEnvelope(f"Invalid timestamp: {value!r}", {"value": value}) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_auth(data: Dict[str, Any]) -> AuthRequest:
    return AuthRequest(
        signing_public_key=_require_str(data, "signingPublicKey"),
        agreement_public_key=_require_str(data, "agreementPublicKey"),
        timestamp=_require_str(data, "timestamp"),
        signature=_require_str(data, "signature"),
        nickname=_optional_str(data, "nickname"),
        credential=_optional_str(data, "credential"),
    )


def _parse_send_message(data: Dict[str, Any]) -> SendMessageRequest:
    receiver_id = _require_str(data, "receiverId")
    envelope = {name: _require_str(data, name) for name in ENVELOPE_FIELDS}

    raw_type = data.get("messageType", MessageType.TEXT.value)
    try:
        message_type = MessageType(raw_type)
    except ValueError as e:
        raise MalformedEnvelope(f"Unknown messageType: {raw_type!r}", {"field": "messageType"}) from e

    metadata = data.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise MalformedEnvelope("Field metadata must be an object", {"field": "metadata"})

    return SendMessageRequest(
        receiver_id=receiver_id,
        envelope=envelope,
        message_type=message_type,
        metadata=metadata,
        timestamp=_optional_str(data, "timestamp") or "",
    )


def _parse_get_history(data: Dict[str, Any]) -> GetHistoryRequest:
    limit = data.get("limit")
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
        raise MalformedEnvelope("Field limit must be a positive integer", {"field": "limit"})

    before = _optional_str(data, "before")
    return GetHistoryRequest(
        other_user_id=_require_str(data, "otherUserId"),
        limit=limit,
        before=parse_timestamp(before) if before else None,
    )


_PARSERS = {
    AuthRequest.TYPE: _parse_auth,
    SendMessageRequest.TYPE: _parse_send_message,
    GetHistoryRequest.TYPE: _parse_get_history,
    MarkReadRequest.TYPE: lambda d: MarkReadRequest(message_id=_require_str(d, "messageId")),
    AckRequest.TYPE: lambda d: AckRequest(message_id=_require_str(d, "messageId")),
    GetUsersRequest.TYPE: lambda d: GetUsersRequest(),
    PingRequest.TYPE: lambda d: PingRequest(timestamp=d.get("timestamp")),
    LogoutRequest.TYPE: lambda d: LogoutRequest(),
}


def parse_request(data: Any) -> Request:
    """
    Turn a decoded JSON object into a typed request.

    Raises:
        MalformedEnvelope: If the object is not a known, well-formed request
    """
    if not isinstance(data, dict):
        raise MalformedEnvelope("Frame must be a JSON object")
    kind = data.get("type")
    if not isinstance(kind, str):
        raise MalformedEnvelope("Missing required field: type", {"field": "type"})
    parser = _PARSERS.get(kind)
    if parser is None:
        raise MalformedEnvelope(f"Unknown request type: {kind}", {"type": kind})
    return parser(data)


def decode_line(line: bytes, max_bytes: int = MAX_LINE_BYTES) -> Request:
    """
    Decode one newline-terminated frame.

    Raises:
        ProtocolError: If the frame exceeds ``max_bytes``
        MalformedEnvelope: If the frame is not valid UTF-8 JSON or not a request
    """
    if len(line) > max_bytes:
        raise ProtocolError(
            ErrorCode.E505_MESSAGE_TOO_LARGE,
            f"Frame too large: {len(line)} bytes",
            {"size": len(line), "max_size": max_bytes},
        )
    try:
        data = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEnvelope(f"Invalid JSON frame: {e}") from e
    return parse_request(data)


def encode_frame(frame: Dict[str, Any]) -> bytes:
    """Serialize an outbound frame as one JSON line."""
    return json.dumps(frame, separators=(",", ":")).encode("utf-8") + b"\n"


def make_response(kind: str, **data: Any) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"type": kind, "timestamp": datetime.now(timezone.utc).isoformat()}
    frame.update(data)
    return frame


def error_response(code: str, message: str) -> Dict[str, Any]:
    return make_response("error", code=code, message=message)
