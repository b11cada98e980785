"""
Enigmo - Identity and long-term key material.

Each user owns two long-term keypairs:
- Ed25519 signing keypair (authenticates ciphertext)
- X25519 key-agreement keypair (derives per-peer session keys)

Only the public halves ever leave the owning endpoint. The relay sees
``Identity`` objects; ``LocalIdentity`` additionally carries the private keys
and lives exclusively on the client side.
"""

import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, x25519

from .constants import KEY_SIZE, USER_ID_LENGTH
from .errors import InvalidKeyMaterial

logger = logging.getLogger(__name__)


def _raw_public(key) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _raw_private(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


class SigningKeyPair:
    """Ed25519 keypair used to sign ciphertext."""

    def __init__(self, private_key: Optional[ed25519.Ed25519PrivateKey] = None):
        if private_key is None:
            private_key = ed25519.Ed25519PrivateKey.generate()
        self.private_key = private_key
        self.public_key = private_key.public_key()

    def get_public_key_bytes(self) -> bytes:
        """Get public key as raw bytes."""
        return _raw_public(self.public_key)

    def get_private_key_bytes(self) -> bytes:
        """Get private key as raw bytes."""
        return _raw_private(self.private_key)

    @staticmethod
    def from_private_bytes(data: bytes) -> "SigningKeyPair":
        """Rebuild a keypair from a raw 32-byte private key."""
        if len(data) != KEY_SIZE:
            raise InvalidKeyMaterial("Signing private key must be 32 bytes", {"length": len(data)})
        return SigningKeyPair(ed25519.Ed25519PrivateKey.from_private_bytes(data))


class AgreementKeyPair:
    """X25519 keypair used for Diffie-Hellman key agreement."""

    def __init__(self, private_key: Optional[x25519.X25519PrivateKey] = None):
        if private_key is None:
            private_key = x25519.X25519PrivateKey.generate()
        self.private_key = private_key
        self.public_key = private_key.public_key()

    def get_public_key_bytes(self) -> bytes:
        """Get public key as raw bytes."""
        return _raw_public(self.public_key)

    def get_private_key_bytes(self) -> bytes:
        """Get private key as raw bytes."""
        return _raw_private(self.private_key)

    @staticmethod
    def from_private_bytes(data: bytes) -> "AgreementKeyPair":
        """Rebuild a keypair from a raw 32-byte private key."""
        if len(data) != KEY_SIZE:
            raise InvalidKeyMaterial("Agreement private key must be 32 bytes", {"length": len(data)})
        return AgreementKeyPair(x25519.X25519PrivateKey.from_private_bytes(data))


def load_signing_public_key(data: bytes) -> ed25519.Ed25519PublicKey:
    """Load an Ed25519 public key from raw bytes, raising InvalidKeyMaterial."""
    if not isinstance(data, (bytes, bytearray)) or len(data) != KEY_SIZE:
        raise InvalidKeyMaterial("Signing public key must be 32 bytes")
    try:
        return ed25519.Ed25519PublicKey.from_public_bytes(bytes(data))
    except ValueError as e:
        raise InvalidKeyMaterial("Signing public key is not a valid curve point") from e


def load_agreement_public_key(data: bytes) -> x25519.X25519PublicKey:
    """Load an X25519 public key from raw bytes, raising InvalidKeyMaterial."""
    if not isinstance(data, (bytes, bytearray)) or len(data) != KEY_SIZE:
        raise InvalidKeyMaterial("Agreement public key must be 32 bytes")
    try:
        return x25519.X25519PublicKey.from_public_bytes(bytes(data))
    except ValueError as e:
        raise InvalidKeyMaterial("Agreement public key is not valid") from e


def fingerprint(public_key_bytes: bytes) -> str:
    """
    Human-readable SHA-256 fingerprint of a public key.

    Users compare fingerprints out-of-band before trusting a peer's keys.
    Returns 64 hexadecimal characters.
    """
    return hashlib.sha256(public_key_bytes).hexdigest()


def derive_user_id(signing_public_key: bytes) -> str:
    """Derive the default user id from the signing public key."""
    return fingerprint(signing_public_key)[:USER_ID_LENGTH]


def _b64decode_key(value, field_name: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise InvalidKeyMaterial(f"{field_name} must be a base64 string", {"field": field_name})
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidKeyMaterial(f"{field_name} is not valid base64", {"field": field_name}) from e
    if len(raw) != KEY_SIZE:
        raise InvalidKeyMaterial(
            f"{field_name} must decode to {KEY_SIZE} bytes",
            {"field": field_name, "length": len(raw)},
        )
    return raw


@dataclass(frozen=True)
class Identity:
    """Public identity of a user as seen by peers and the relay."""

    id: str
    signing_public_key: bytes
    agreement_public_key: bytes
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        load_signing_public_key(self.signing_public_key)
        load_agreement_public_key(self.agreement_public_key)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.signing_public_key)

    def same_keys(self, other: "Identity") -> bool:
        """True if both long-term public keys match ``other``."""
        return (
            self.signing_public_key == other.signing_public_key
            and self.agreement_public_key == other.agreement_public_key
        )

    def to_wire(self) -> Dict[str, str]:
        """Base64 form used in ``auth`` envelopes and ``users`` responses."""
        return {
            "id": self.id,
            "signingPublicKey": base64.b64encode(self.signing_public_key).decode("ascii"),
            "agreementPublicKey": base64.b64encode(self.agreement_public_key).decode("ascii"),
            "createdAt": self.created_at.isoformat(),
        }

    @staticmethod
    def from_wire(data: Dict, user_id: Optional[str] = None) -> "Identity":
        """
        Build an identity from base64 wire fields.

        The id defaults to the one derived from the signing key.

        Raises:
            InvalidKeyMaterial: If either key is missing, not base64, or not 32 bytes
        """
        signing = _b64decode_key(data.get("signingPublicKey"), "signingPublicKey")
        agreement = _b64decode_key(data.get("agreementPublicKey"), "agreementPublicKey")
        return Identity(
            id=user_id or derive_user_id(signing),
            signing_public_key=signing,
            agreement_public_key=agreement,
        )


class LocalIdentity:
    """An identity together with its private keys, held by the owning endpoint."""

    def __init__(
        self,
        signing: SigningKeyPair,
        agreement: AgreementKeyPair,
        user_id: Optional[str] = None,
        nickname: Optional[str] = None,
    ):
        self.signing = signing
        self.agreement = agreement
        self.identity = Identity(
            id=user_id or derive_user_id(signing.get_public_key_bytes()),
            signing_public_key=signing.get_public_key_bytes(),
            agreement_public_key=agreement.get_public_key_bytes(),
        )
        self.nickname = nickname or self.identity.id

    @property
    def id(self) -> str:
        return self.identity.id

    def __repr__(self) -> str:
        return f"LocalIdentity(id={self.id!r}, nickname={self.nickname!r})"


def generate_identity(user_id: Optional[str] = None, nickname: Optional[str] = None) -> LocalIdentity:
    """
    Create a fresh identity with new signing and agreement keypairs.

    Key generation draws from the OS randomness source; any failure there
    propagates to the caller unchanged.
    """
    local = LocalIdentity(SigningKeyPair(), AgreementKeyPair(), user_id=user_id, nickname=nickname)
    logger.info(f"Generated identity {local.id} (fingerprint {local.identity.fingerprint[:16]})")
    return local


def export_public(identity: Union[Identity, LocalIdentity]) -> Dict[str, bytes]:
    """Return the raw public keys of an identity; private keys are never included."""
    if isinstance(identity, LocalIdentity):
        identity = identity.identity
    return {
        "signingPublicKey": identity.signing_public_key,
        "agreementPublicKey": identity.agreement_public_key,
    }
