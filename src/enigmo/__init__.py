"""
Enigmo - End-to-End Encrypted Message Relay

Peers exchange authenticated, confidential messages through a relay that
routes opaque encrypted envelopes and never observes plaintext.

Author: enigmo contributors
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "enigmo contributors"
__license__ = "MIT"

from .client import PeerClient, RelayClient
from .config import Config
from .constants import APP_NAME, VERSION
from .context import RelayContext
from .crypto import CryptoEngine, EncryptedEnvelope, SessionKey
from .directory import PeerDirectory, PeerRecord
from .errors import (
    ConfigError,
    CryptoError,
    DirectoryError,
    EnigmoError,
    ErrorCode,
    ProtocolError,
    RoutingError,
    ServerError,
)
from .identity import Identity, LocalIdentity, generate_identity
from .rate_limiter import RateLimiter, TokenBucket
from .router import DeliveryStatus, MessageRouter, MessageType, RoutedMessage

__all__ = [
    "APP_NAME",
    "VERSION",
    "Config",
    "ConfigError",
    "CryptoEngine",
    "CryptoError",
    "DeliveryStatus",
    "DirectoryError",
    "EncryptedEnvelope",
    "EnigmoError",
    "ErrorCode",
    "Identity",
    "LocalIdentity",
    "MessageRouter",
    "MessageType",
    "PeerClient",
    "PeerDirectory",
    "PeerRecord",
    "ProtocolError",
    "RateLimiter",
    "RelayClient",
    "RelayContext",
    "RoutedMessage",
    "RoutingError",
    "ServerError",
    "SessionKey",
    "TokenBucket",
    "generate_identity",
    "__author__",
    "__license__",
    "__version__",
]
