"""
Pytest configuration and fixtures for Enigmo relay tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Generator, Tuple

import pytest

from enigmo.client import PeerClient
from enigmo.config import Config
from enigmo.context import RelayContext
from enigmo.crypto import CryptoEngine
from enigmo.identity import generate_identity
from enigmo.protocol import encode_frame
from enigmo.session import ClientSession


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="enigmo_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def config() -> Config:
    """Relay configuration with console logging off and a small outbox."""
    return Config.from_dict(
        {
            "server": {"host": "127.0.0.1", "port": 0, "outbox_size": 8},
            "logging": {"console_logging": False},
        }
    )


@pytest.fixture
def context(config: Config) -> RelayContext:
    return RelayContext(config)


@pytest.fixture
def engine() -> CryptoEngine:
    return CryptoEngine()


@pytest.fixture
def alice() -> PeerClient:
    return PeerClient(generate_identity(nickname="alice"))


@pytest.fixture
def bob() -> PeerClient:
    return PeerClient(generate_identity(nickname="bob"))


@pytest.fixture
def connect(context: RelayContext) -> Callable[[], Tuple[ClientSession, asyncio.Queue]]:
    """
    Factory opening an in-process session with its own outbox.

    Returns:
        Callable returning (session, outbox)
    """

    def _connect(maxsize: int = 8) -> Tuple[ClientSession, asyncio.Queue]:
        outbox: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        slot = context.connections.allocate(outbox, label="test")
        return ClientSession(context, slot, peer_address="test"), outbox

    return _connect


@pytest.fixture
def login(connect) -> Callable[[PeerClient], Tuple[ClientSession, asyncio.Queue]]:
    """Factory opening a session and authenticating ``peer`` on it."""

    def _login(peer: PeerClient) -> Tuple[ClientSession, asyncio.Queue]:
        session, outbox = connect()
        frames = session.handle_line(encode_frame(peer.auth_frame()))
        assert frames[0]["type"] == "auth_success", frames
        return session, outbox

    return _login


def drain_outbox(outbox: asyncio.Queue) -> list:
    """Pop every frame currently queued on an outbox."""
    frames = []
    while not outbox.empty():
        frames.append(outbox.get_nowait())
    return frames


@pytest.fixture
def drain() -> Callable[[asyncio.Queue], list]:
    return drain_outbox


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
