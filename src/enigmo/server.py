"""
Enigmo - Relay server using asyncio.

Accepts client connections over TCP, speaks newline-delimited JSON, and
hands every frame to that connection's ClientSession. Each connection is
served by one reader task (requests processed strictly in order) and one
writer task draining the connection's outbox, so a slow recipient never
blocks the sender that routed a message to it.

The REST health/stats probes run in the same event loop under uvicorn.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import uvicorn

from .api import create_app
from .config import Config
from .constants import APP_NAME, VERSION
from .context import RelayContext
from .directory import DirectoryObserver, PeerRecord
from .errors import EnigmoError, ErrorCode, ServerError
from .log import setup_logging
from .protocol import encode_frame, make_response
from .session import ClientSession

logger = logging.getLogger(__name__)


class StatusBroadcaster(DirectoryObserver):
    """Pushes ``user_status_update`` frames to every live connection."""

    def __init__(self, context: RelayContext):
        self.context = context

    def on_peer_status(self, record: PeerRecord) -> None:
        frame = make_response(
            "user_status_update",
            userId=record.id,
            isOnline=record.online,
            lastSeen=record.last_seen.isoformat(),
        )
        reached = self.context.connections.broadcast(frame, exclude=record.connection_ref)
        logger.debug(f"Status update for {record.id} sent to {reached} connections")


class RelayServer:
    """Relay transport bound to one RelayContext."""

    def __init__(self, context: RelayContext, host: Optional[str] = None, port: Optional[int] = None):
        self.context = context
        self.host = host or context.config.get("server", "host")
        self.port = port if port is not None else context.config.get("server", "port")
        self.running = False
        self._server: Optional[asyncio.AbstractServer] = None
        self._sessions: Dict[int, ClientSession] = {}
        self._broadcaster = StatusBroadcaster(context)

    @property
    def sockets(self):
        return self._server.sockets if self._server else ()

    async def start(self) -> None:
        """
        Bind the listening socket.

        Raises:
            ServerError: If the address cannot be bound
        """
        try:
            self._server = await asyncio.start_server(
                self._handle_client,
                self.host,
                self.port,
                limit=self.context.limit("max_line_bytes") + 1,
            )
        except OSError as e:
            raise ServerError(
                ErrorCode.E801_SERVER_START_FAILED,
                f"Failed to bind {self.host}:{self.port}: {e}",
                {"host": self.host, "port": self.port},
            ) from e

        self.context.directory.add_observer(self._broadcaster)
        self.running = True
        bound = ", ".join(str(s.getsockname()) for s in self._server.sockets)
        logger.info(f"{APP_NAME} relay {VERSION} listening on {bound}")

    async def stop(self) -> None:
        """Stop accepting connections and close every live session."""
        if not self.running:
            return
        logger.info("Stopping relay...")
        self.running = False
        self.context.directory.remove_observer(self._broadcaster)

        if self._server:
            self._server.close()
            await self._server.wait_closed()

        for session in list(self._sessions.values()):
            session.close()
        self._sessions.clear()
        logger.info("Relay stopped")

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        try:
            await self._server.serve_forever()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        address = writer.get_extra_info("peername")
        host = address[0] if isinstance(address, tuple) else str(address)

        self.context.rate_limiter.cleanup()
        if not self.context.rate_limiter.check_connection_rate(host):
            logger.warning(f"Connection rate exceeded for {host}; closing")
            await self._close_writer(writer)
            return

        outbox: asyncio.Queue = asyncio.Queue(maxsize=self.context.config.get("server", "outbox_size"))
        slot = self.context.connections.allocate(outbox, label=str(address))
        session = ClientSession(self.context, slot, peer_address=str(address))
        self._sessions[slot] = session
        logger.debug(f"Client connected from {address} (slot {slot})")

        writer_task = asyncio.create_task(self._drain_outbox(outbox, writer, slot))
        try:
            await self._read_loop(reader, session, outbox)
        finally:
            session.close()
            self._sessions.pop(slot, None)
            self.context.connections.release(slot)
            # Flush anything already queued, then stop the writer.
            try:
                outbox.put_nowait(None)
            except asyncio.QueueFull:
                writer_task.cancel()
            try:
                await asyncio.wait_for(asyncio.gather(writer_task, return_exceptions=True), timeout=5.0)
            except asyncio.TimeoutError:
                logger.debug(f"Writer for slot {slot} did not finish in time")
            await self._close_writer(writer)
            logger.debug(f"Client disconnected (slot {slot})")

    @staticmethod
    async def _close_writer(writer: asyncio.StreamWriter) -> None:
        try:
            writer.close()
            await writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error closing writer: {e}")

    async def _read_loop(self, reader: asyncio.StreamReader, session: ClientSession, outbox: asyncio.Queue) -> None:
        read_timeout = self.context.config.get("server", "read_timeout")

        while self.running and not session.should_close:
            timeout = session.fsm.get_timeout_remaining()
            if timeout is None:
                timeout = read_timeout
            try:
                line = await asyncio.wait_for(reader.readuntil(b"\n"), timeout=timeout)
            except asyncio.TimeoutError:
                logger.info(f"Closing idle session {session!r}")
                break
            except asyncio.IncompleteReadError:
                break
            except asyncio.LimitOverrunError:
                logger.warning(f"Oversized frame on {session!r}; closing")
                break
            except (ConnectionError, OSError):
                break

            if not line.strip():
                continue

            for frame in session.handle_line(line):
                try:
                    outbox.put_nowait(frame)
                except asyncio.QueueFull:
                    logger.warning(f"Outbox full on {session!r}; closing")
                    return

    async def _drain_outbox(self, outbox: asyncio.Queue, writer: asyncio.StreamWriter, slot: int) -> None:
        while True:
            frame: Optional[Dict[str, Any]] = await outbox.get()
            if frame is None:
                break
            try:
                writer.write(encode_frame(frame))
                await writer.drain()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Write failed on slot {slot}: {e}")
                break


async def run_relay(context: RelayContext, host: str, port: int, api_port: int) -> None:
    """Run the relay and the REST probes together until cancelled."""
    relay = RelayServer(context, host, port)
    await relay.start()

    api_config = uvicorn.Config(
        create_app(context),
        host=host,
        port=api_port,
        log_level=logging.getLevelName(logging.getLogger("enigmo").getEffectiveLevel()).lower(),
    )
    api_server = uvicorn.Server(api_config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    relay_task = asyncio.create_task(relay.serve_forever())
    api_task = asyncio.create_task(api_server.serve())
    logger.info(f"REST probes on http://{host}:{api_port}/api/health")

    stop_task = asyncio.create_task(stop_event.wait())
    await asyncio.wait({stop_task, relay_task, api_task}, return_when=asyncio.FIRST_COMPLETED)
    logger.info("Shutting down")
    stop_task.cancel()
    api_server.should_exit = True
    relay_task.cancel()
    await asyncio.gather(relay_task, api_task, return_exceptions=True)


async def async_main() -> int:
    """Async main entry point for the relay."""
    parser = argparse.ArgumentParser(description=f"{APP_NAME} relay - end-to-end encrypted message relay")
    parser.add_argument("--config", type=str, default=None, help="Path to a TOML configuration file")
    parser.add_argument("--host", type=str, default=None, help="Address to bind")
    parser.add_argument("--port", type=int, default=None, help="Relay port")
    parser.add_argument("--api-port", type=int, default=None, help="REST probe port")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
    except EnigmoError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config, debug=args.debug)
    context = RelayContext(config)

    host = args.host or config.get("server", "host")
    port = args.port if args.port is not None else config.get("server", "port")
    api_port = args.api_port if args.api_port is not None else config.get("server", "api_port")

    try:
        await run_relay(context, host, port, api_port)
    except ServerError as e:
        logger.error(str(e))
        return 1
    return 0


def main():
    """Main entry point - runs async_main."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
