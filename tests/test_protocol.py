"""
Enigmo - Wire protocol tests.
"""

import json
from datetime import datetime, timezone

import pytest

from enigmo.errors import ErrorCode, MalformedEnvelope, ProtocolError
from enigmo.protocol import (
    AckRequest,
    AuthRequest,
    GetHistoryRequest,
    GetUsersRequest,
    LogoutRequest,
    MarkReadRequest,
    PingRequest,
    REQUEST_TYPES,
    SendMessageRequest,
    decode_line,
    encode_frame,
    error_response,
    make_response,
    parse_request,
    parse_timestamp,
)
from enigmo.router import MessageType

ENVELOPE = {"encryptedData": "AA==", "nonce": "AA==", "mac": "AA==", "signature": "AA=="}


def _line(data) -> bytes:
    return json.dumps(data).encode("utf-8") + b"\n"


def test_request_types_cover_every_kind():
    assert set(REQUEST_TYPES) == {
        "auth",
        "send_message",
        "get_history",
        "mark_read",
        "ack",
        "get_users",
        "ping",
        "logout",
    }


def test_parse_auth():
    request = parse_request(
        {
            "type": "auth",
            "signingPublicKey": "s",
            "agreementPublicKey": "a",
            "timestamp": "t",
            "signature": "sig",
            "nickname": "alice",
        }
    )
    assert request == AuthRequest("s", "a", "t", "sig", "alice", None)


def test_parse_send_message():
    request = parse_request(
        {
            "type": "send_message",
            "receiverId": "bob",
            "messageType": "file",
            "metadata": {"name": "a.txt"},
            "timestamp": "2025-01-01T00:00:00Z",
            **ENVELOPE,
        }
    )

    assert isinstance(request, SendMessageRequest)
    assert request.receiver_id == "bob"
    assert request.envelope == ENVELOPE
    assert request.message_type == MessageType.FILE
    assert request.metadata == {"name": "a.txt"}
    assert request.timestamp == "2025-01-01T00:00:00Z"


def test_send_message_defaults_to_text():
    request = parse_request({"type": "send_message", "receiverId": "bob", **ENVELOPE})
    assert request.message_type == MessageType.TEXT
    assert request.metadata is None
    assert request.timestamp == ""


@pytest.mark.parametrize("missing", ["receiverId", "encryptedData", "nonce", "mac", "signature"])
def test_send_message_requires_fields(missing):
    data = {"type": "send_message", "receiverId": "bob", **ENVELOPE}
    del data[missing]

    with pytest.raises(MalformedEnvelope) as exc_info:
        parse_request(data)
    assert exc_info.value.details == {"field": missing}


@pytest.mark.parametrize(
    "extra",
    [{"messageType": "sticker"}, {"metadata": "oops"}, {"metadata": [1, 2]}],
)
def test_send_message_rejects_bad_optional_fields(extra):
    with pytest.raises(MalformedEnvelope):
        parse_request({"type": "send_message", "receiverId": "bob", **ENVELOPE, **extra})


def test_parse_get_history():
    request = parse_request(
        {"type": "get_history", "otherUserId": "bob", "limit": 10, "before": "2025-01-02T00:00:00Z"}
    )
    assert request == GetHistoryRequest(
        other_user_id="bob",
        limit=10,
        before=datetime(2025, 1, 2, tzinfo=timezone.utc),
    )


@pytest.mark.parametrize("limit", [0, -1, "5", 2.5, True])
def test_get_history_rejects_bad_limit(limit):
    with pytest.raises(MalformedEnvelope):
        parse_request({"type": "get_history", "otherUserId": "bob", "limit": limit})


@pytest.mark.parametrize(
    "data, expected",
    [
        ({"type": "mark_read", "messageId": "m1"}, MarkReadRequest("m1")),
        ({"type": "ack", "messageId": "m1"}, AckRequest("m1")),
        ({"type": "get_users"}, GetUsersRequest()),
        ({"type": "ping", "timestamp": 42}, PingRequest(42)),
        ({"type": "logout"}, LogoutRequest()),
    ],
)
def test_parse_simple_requests(data, expected):
    assert parse_request(data) == expected


@pytest.mark.parametrize("data", [[], "auth", {"no": "type"}, {"type": 3}, {"type": "shout"}])
def test_parse_request_rejects_unknown(data):
    with pytest.raises(MalformedEnvelope):
        parse_request(data)


def test_decode_line():
    assert decode_line(_line({"type": "get_users"})) == GetUsersRequest()


@pytest.mark.parametrize("line", [b"{not json}\n", b"\xff\xfe\n", b"\n"])
def test_decode_line_rejects_garbage(line):
    with pytest.raises(MalformedEnvelope):
        decode_line(line)


def test_decode_line_rejects_oversized_frame():
    line = _line({"type": "ping", "timestamp": "x" * 200})

    with pytest.raises(ProtocolError) as exc_info:
        decode_line(line, max_bytes=100)
    assert exc_info.value.code == ErrorCode.E505_MESSAGE_TOO_LARGE
    assert exc_info.value.details["size"] == len(line)


def test_parse_timestamp():
    assert parse_timestamp("2025-01-01T00:00:00Z") == datetime(2025, 1, 1, tzinfo=timezone.utc)
    naive = parse_timestamp("2025-01-01T00:00:00")
    assert naive.tzinfo is not None

    with pytest.raises(MalformedEnvelope):
        parse_timestamp("yesterday")


def test_encode_frame_is_one_line():
    encoded = encode_frame({"type": "pong", "text": "a\nb"})

    assert encoded.endswith(b"\n")
    assert encoded.count(b"\n") == 1
    assert json.loads(encoded) == {"type": "pong", "text": "a\nb"}


def test_make_response_carries_type_and_timestamp():
    frame = make_response("pong", echo=1)
    assert frame["type"] == "pong"
    assert frame["echo"] == 1
    parse_timestamp(frame["timestamp"])

    error = error_response("REJECTED", "Request rejected")
    assert error["type"] == "error"
    assert error["code"] == "REJECTED"
    assert error["message"] == "Request rejected"
