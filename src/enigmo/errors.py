"""
Enigmo - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the relay. Each error has a unique code for logging and a stable wire code
that is reported to the originating connection.

Author: enigmo contributors
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Enigmo error codes."""

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_INVALID_KEY_MATERIAL = "E101"
    E102_EMPTY_PLAINTEXT = "E102"
    E103_SIGNATURE_INVALID = "E103"
    E104_INVALID_SIGNATURE_LENGTH = "E104"
    E105_DECRYPTION_FAILED = "E105"
    E106_NONCE_REUSE = "E106"

    # Directory Errors (E300-E399)
    E300_DIRECTORY_ERROR = "E300"
    E301_IDENTITY_CONFLICT = "E301"
    E302_PEER_NOT_FOUND = "E302"

    # Routing Errors (E400-E499)
    E400_ROUTING_ERROR = "E400"
    E401_RECIPIENT_UNKNOWN = "E401"

    # Protocol Errors (E500-E599)
    E500_PROTOCOL_ERROR = "E500"
    E501_NOT_AUTHENTICATED = "E501"
    E502_MALFORMED_ENVELOPE = "E502"
    E503_AUTHENTICATION_FAILED = "E503"
    E504_RATE_LIMITED = "E504"
    E505_MESSAGE_TOO_LARGE = "E505"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E702_INVALID_CONFIG = "E702"
    E703_CONFIG_PARSE_ERROR = "E703"

    # Server Errors (E800-E899)
    E800_SERVER_ERROR = "E800"
    E801_SERVER_START_FAILED = "E801"


# Stable codes reported to network peers. Crypto failures collapse into a
# single generic rejection so a peer cannot tell which check failed.
WIRE_CODES: Dict[ErrorCode, str] = {
    ErrorCode.E101_INVALID_KEY_MATERIAL: "INVALID_KEY_MATERIAL",
    ErrorCode.E301_IDENTITY_CONFLICT: "IDENTITY_CONFLICT",
    ErrorCode.E401_RECIPIENT_UNKNOWN: "RECIPIENT_UNKNOWN",
    ErrorCode.E501_NOT_AUTHENTICATED: "NOT_AUTHENTICATED",
    ErrorCode.E502_MALFORMED_ENVELOPE: "MALFORMED_ENVELOPE",
    ErrorCode.E503_AUTHENTICATION_FAILED: "AUTH_FAILED",
    ErrorCode.E504_RATE_LIMITED: "RATE_LIMITED",
    ErrorCode.E505_MESSAGE_TOO_LARGE: "MALFORMED_ENVELOPE",
}

GENERIC_REJECTION_CODE = "REJECTED"
INTERNAL_ERROR_CODE = "INTERNAL_ERROR"


class EnigmoError(Exception):
    """Base exception class for all Enigmo errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    @property
    def wire_code(self) -> str:
        """Stable code reported to the originating connection."""
        return WIRE_CODES.get(self.code, INTERNAL_ERROR_CODE)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(EnigmoError):
    """Exception raised for cryptographic operation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)

    @property
    def wire_code(self) -> str:
        if self.code == ErrorCode.E101_INVALID_KEY_MATERIAL:
            return WIRE_CODES[self.code]
        return GENERIC_REJECTION_CODE


class InvalidKeyMaterial(CryptoError):
    """A key is not a valid point or has the wrong length."""

    def __init__(self, message: str = "Invalid key material", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.E101_INVALID_KEY_MATERIAL, message, details)


class EmptyPlaintext(CryptoError):
    """Encryption was asked to protect a zero-length payload."""

    def __init__(self, message: str = "Plaintext must not be empty"):
        super().__init__(ErrorCode.E102_EMPTY_PLAINTEXT, message)


class SignatureInvalid(CryptoError):
    """Signature over the ciphertext did not verify."""

    def __init__(self, message: str = "Signature verification failed"):
        super().__init__(ErrorCode.E103_SIGNATURE_INVALID, message)


class InvalidSignatureLength(CryptoError):
    """Signature is not exactly the fixed signature length."""

    def __init__(self, length: int, expected: int):
        super().__init__(
            ErrorCode.E104_INVALID_SIGNATURE_LENGTH,
            f"Invalid signature length: {length}",
            {"length": length, "expected": expected},
        )


class DecryptionFailed(CryptoError):
    """AEAD authentication failed; no plaintext is produced."""

    def __init__(self, message: str = "Decryption failed"):
        super().__init__(ErrorCode.E105_DECRYPTION_FAILED, message)


class DirectoryError(EnigmoError):
    """Exception raised for peer directory failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_DIRECTORY_ERROR,
        message: str = "Directory operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class IdentityConflict(DirectoryError):
    """A registration presented different long-term keys for a known id."""

    def __init__(self, peer_id: str):
        super().__init__(
            ErrorCode.E301_IDENTITY_CONFLICT,
            f"Identity {peer_id} is already registered with different keys",
            {"peer_id": peer_id},
        )


class RoutingError(EnigmoError):
    """Exception raised for message routing failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_ROUTING_ERROR,
        message: str = "Routing operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class RecipientUnknown(RoutingError):
    """The recipient id has never been registered with the directory."""

    def __init__(self, recipient_id: str):
        super().__init__(
            ErrorCode.E401_RECIPIENT_UNKNOWN,
            f"Unknown recipient: {recipient_id}",
            {"recipient_id": recipient_id},
        )


class ProtocolError(EnigmoError):
    """Exception raised for session protocol violations."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_PROTOCOL_ERROR,
        message: str = "Protocol error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class NotAuthenticated(ProtocolError):
    """A routing operation was attempted before authentication."""

    def __init__(self, operation: str = ""):
        super().__init__(
            ErrorCode.E501_NOT_AUTHENTICATED,
            "Authentication required",
            {"operation": operation} if operation else None,
        )


class MalformedEnvelope(ProtocolError):
    """An inbound envelope is missing fields or has wrong types."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.E502_MALFORMED_ENVELOPE, message, details)


class AuthenticationFailed(ProtocolError):
    """An auth envelope failed its credential or key-possession check."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(ErrorCode.E503_AUTHENTICATION_FAILED, message)


class RateLimited(ProtocolError):
    """The connection exceeded its message rate."""

    def __init__(self, message: str = "Rate limit exceeded"):
        super().__init__(ErrorCode.E504_RATE_LIMITED, message)


class ConfigError(EnigmoError):
    """Exception raised for configuration failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ServerError(EnigmoError):
    """Exception raised for server startup and shutdown failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E800_SERVER_ERROR,
        message: str = "Server operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
