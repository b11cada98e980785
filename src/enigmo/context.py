"""
Enigmo - Relay context.

Bundles the shared state of one relay instance. A context is built
explicitly and passed to sessions, the transport server and the REST
probes; nothing lives in module globals, so tests can run many isolated
relays side by side.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import Config
from .connections import ConnectionTable
from .constants import VERSION
from .credentials import CredentialVerifier
from .directory import PeerDirectory
from .rate_limiter import RateLimiter
from .router import MessageRouter

logger = logging.getLogger(__name__)


class RelayContext:
    """Shared relay state: directory, connection table, router and limits."""

    def __init__(self, config: Optional[Config] = None, verifier: Optional[CredentialVerifier] = None):
        self.config = config or Config.from_dict({})
        self.directory = PeerDirectory()
        self.connections = ConnectionTable()
        self.router = MessageRouter(self.directory, self.connections)
        self.rate_limiter = RateLimiter(
            messages_per_minute=self.config.get("limits", "messages_per_minute"),
            messages_burst=self.config.get("limits", "messages_burst"),
            connections_per_minute=self.config.get("limits", "connections_per_minute"),
        )
        self.verifier = verifier or CredentialVerifier(self.config.get("auth", "credential_hash", ""))
        self.started_at = datetime.now(timezone.utc)
        self._started_monotonic = time.monotonic()

        if self.verifier.required:
            logger.info("Relay requires a bearer credential for auth")

    def limit(self, key: str) -> Any:
        """Shortcut for ``[limits]`` configuration values."""
        return self.config.get("limits", key)

    def uptime(self) -> float:
        """Seconds since the context was created."""
        return time.monotonic() - self._started_monotonic

    def stats(self) -> Dict[str, Any]:
        """Aggregate relay statistics as served by ``/api/stats``."""
        return {
            "server": {"uptime": self.uptime(), "version": VERSION, "status": "running"},
            "users": self.directory.stats(),
            "messages": self.router.stats(),
        }
