"""
Enigmo - Global Constants and Configuration Values

This module defines all constants used throughout the relay.
All magic numbers and configuration defaults are centralized here.

Author: enigmo contributors
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Enigmo"

# Network Constants
DEFAULT_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 8765
DEFAULT_API_PORT = 8080

# Connection Settings
CONNECTION_READ_TIMEOUT = 300  # seconds of silence before a connection is dropped
OUTBOX_MAX_SIZE = 256  # pending outbound frames per connection
MAX_LINE_BYTES = 1024 * 1024  # 1 MB per JSON line
MAX_PROTOCOL_ERRORS = 10  # structured errors before the connection is closed

# Rate Limiting Constants
RATE_LIMIT_MESSAGES_PER_MINUTE = 120
RATE_LIMIT_MESSAGES_BURST = 20
RATE_LIMIT_CONNECTIONS_PER_MINUTE = 30
RATE_LIMIT_CLEANUP_INTERVAL = 300  # seconds between idle bucket sweeps
RATE_LIMIT_STALE_TIMEOUT = 3600  # idle seconds before a bucket is dropped

# History Queries
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 500

# Cryptography Constants
KEY_SIZE = 32  # X25519 / Ed25519 public keys and session keys
NONCE_SIZE = 12  # 96 bits for ChaCha20-Poly1305
TAG_SIZE = 16  # Poly1305 authentication tag
SIGNATURE_SIZE = 64  # Ed25519
SESSION_CONTEXT = b"enigmo-session-key-v1"
USER_ID_LENGTH = 16  # hex characters taken from the signing key digest

# Bearer credential hashing (Argon2id)
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 4

# Session State Machine
STATE_MAX_HISTORY = 50
SESSION_AUTH_TIMEOUT = 30  # seconds to complete auth before the connection is dropped
AUTH_PROOF_MAX_AGE = 300  # seconds an auth proof timestamp stays acceptable, either direction

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# File Paths
DEFAULT_DATA_DIR = "~/.enigmo"
CONFIG_FILENAME = "config.toml"
LOG_FILENAME = "relay.log"
