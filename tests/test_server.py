"""
Enigmo - Relay server integration tests.

Runs a real RelayServer on an ephemeral port and talks to it over TCP.
"""

import asyncio

import pytest

from enigmo.client import RelayClient
from enigmo.context import RelayContext
from enigmo.errors import ServerError
from enigmo.server import RelayServer

pytestmark = pytest.mark.integration


async def _start(context: RelayContext) -> RelayServer:
    server = RelayServer(context, host="127.0.0.1", port=0)
    await server.start()
    return server


def _port(server: RelayServer) -> int:
    return server.sockets[0].getsockname()[1]


@pytest.mark.asyncio
async def test_message_flow_over_tcp(context, alice, bob):
    alice.remember_peer(bob.local.identity)
    bob.remember_peer(alice.local.identity)
    server = await _start(context)
    alice_conn = RelayClient("127.0.0.1", _port(server))
    bob_conn = RelayClient("127.0.0.1", _port(server))
    try:
        await alice_conn.connect()
        await bob_conn.connect()

        reply = await alice_conn.request(alice.auth_frame(), "auth_success")
        assert reply["userId"] == alice.id

        await bob_conn.request(bob.auth_frame(), "auth_success")
        status = await alice_conn.receive_type("user_status_update")
        assert status["userId"] == bob.id
        assert status["isOnline"] is True

        ack = await alice_conn.request(alice.send_frame(bob.id, "Hello over TCP"), "ack")
        assert ack["success"] is True

        frame = await bob_conn.receive_type("message")
        assert frame["message"]["id"] == ack["messageId"]
        assert bob.open_message(frame["message"]) == b"Hello over TCP"

        read = await bob_conn.request(bob.mark_read_frame(ack["messageId"]), "ack")
        assert read["status"] == "read"
    finally:
        await alice_conn.close()
        await bob_conn.close()
        await server.stop()


@pytest.mark.asyncio
async def test_disconnect_broadcasts_offline(context, alice, bob):
    server = await _start(context)
    alice_conn = RelayClient("127.0.0.1", _port(server))
    bob_conn = RelayClient("127.0.0.1", _port(server))
    try:
        await alice_conn.connect()
        await bob_conn.connect()
        await alice_conn.request(alice.auth_frame(), "auth_success")
        await bob_conn.request(bob.auth_frame(), "auth_success")
        await alice_conn.receive_type("user_status_update")

        await bob_conn.close()

        status = await alice_conn.receive_type("user_status_update")
        assert status["userId"] == bob.id
        assert status["isOnline"] is False
        assert context.directory.lookup(bob.id).online is False
    finally:
        await alice_conn.close()
        await server.stop()


@pytest.mark.asyncio
async def test_logout_closes_connection(context, alice):
    server = await _start(context)
    conn = RelayClient("127.0.0.1", _port(server))
    try:
        await conn.connect()
        await conn.request(alice.auth_frame(), "auth_success")
        await conn.send(alice.logout_frame())

        with pytest.raises(ConnectionError):
            await conn.receive()
    finally:
        await conn.close()
        await server.stop()


@pytest.mark.asyncio
async def test_malformed_frame_gets_error(context, alice):
    server = await _start(context)
    conn = RelayClient("127.0.0.1", _port(server))
    try:
        await conn.connect()
        conn.writer.write(b"this is not json\n")
        await conn.writer.drain()

        error = await conn.receive_type("error")
        assert error["code"] == "MALFORMED_ENVELOPE"

        await conn.request(alice.auth_frame(), "auth_success")
        pong = await conn.request({"type": "ping", "timestamp": 1}, "pong")
        assert pong["echo"] == 1
    finally:
        await conn.close()
        await server.stop()


@pytest.mark.asyncio
async def test_oversized_frame_closes_connection(config):
    config.set("limits", "max_line_bytes", 256)
    context = RelayContext(config)
    server = await _start(context)
    conn = RelayClient("127.0.0.1", _port(server))
    try:
        await conn.connect()
        conn.writer.write(b'{"type":"ping","timestamp":"' + b"x" * 1024 + b'"}\n')
        await conn.writer.drain()

        with pytest.raises(ConnectionError):
            await conn.receive()
    finally:
        await conn.close()
        await server.stop()


@pytest.mark.asyncio
async def test_connection_rate_limit_closes_extra_connection(config, alice):
    config.set("limits", "connections_per_minute", 1)
    context = RelayContext(config)
    server = await _start(context)
    first = RelayClient("127.0.0.1", _port(server))
    second = RelayClient("127.0.0.1", _port(server))
    try:
        await first.connect()
        await second.connect()

        with pytest.raises(ConnectionError):
            await second.receive()

        reply = await first.request(alice.auth_frame(), "auth_success")
        assert reply["userId"] == alice.id
        assert len(context.connections) == 1
    finally:
        await first.close()
        await second.close()
        await server.stop()


@pytest.mark.asyncio
async def test_bind_failure_raises_server_error(context):
    first = await _start(context)
    try:
        second = RelayServer(RelayContext(context.config), host="127.0.0.1", port=_port(first))
        with pytest.raises(ServerError):
            await second.start()
    finally:
        await first.stop()
