"""
Enigmo - Per-peer cryptographic protocol.

This module implements the end-to-end layer that runs on each endpoint:
- X25519 ECDH + HKDF-SHA256 session key derivation (versioned context label)
- ChaCha20-Poly1305 AEAD encryption with sender id + timestamp bound as AAD
- Ed25519 signatures over the ciphertext (never the plaintext)
- Verify-then-decrypt on the receive path, failing closed

Send path ordering: encrypt, then sign exactly the bytes that will be sent.
Receive path ordering: check the signature, and only then attempt decryption.

All primitives come from the cryptography library (Apache 2.0/BSD License).
"""

import base64
import binascii
import hashlib
import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, Set, Tuple, Union

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ed25519, x25519
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import KEY_SIZE, NONCE_SIZE, SESSION_CONTEXT, SIGNATURE_SIZE, TAG_SIZE
from .errors import (
    CryptoError,
    DecryptionFailed,
    EmptyPlaintext,
    ErrorCode,
    InvalidKeyMaterial,
    InvalidSignatureLength,
    MalformedEnvelope,
    SignatureInvalid,
)
from .identity import (
    AgreementKeyPair,
    Identity,
    LocalIdentity,
    SigningKeyPair,
    load_agreement_public_key,
    load_signing_public_key,
)

logger = logging.getLogger(__name__)

PrivateAgreementKey = Union[x25519.X25519PrivateKey, AgreementKeyPair, bytes]
PublicAgreementKey = Union[x25519.X25519PublicKey, bytes]
PrivateSigningKey = Union[ed25519.Ed25519PrivateKey, SigningKeyPair]
PublicSigningKey = Union[ed25519.Ed25519PublicKey, bytes]


@dataclass(frozen=True)
class SessionKey:
    """
    Symmetric key shared by one pair of peers.

    Recomputable at any time from the long-term keys; never persisted.
    ``peer_a``/``peer_b`` are stored sorted so both sides build equal objects.
    """

    key: bytes
    peer_a: str = ""
    peer_b: str = ""

    def __post_init__(self):
        if len(self.key) != KEY_SIZE:
            raise InvalidKeyMaterial("Session key must be 32 bytes", {"length": len(self.key)})

    def __repr__(self) -> str:
        return f"SessionKey(peer_a={self.peer_a!r}, peer_b={self.peer_b!r})"


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Opaque signed-and-encrypted unit that travels through the relay."""

    ciphertext: bytes
    nonce: bytes
    auth_tag: bytes
    signature: bytes
    sender_id: str
    recipient_id: str

    def to_wire(self) -> Dict[str, str]:
        """Base64 wire fields; ids travel separately as routing metadata."""
        return {
            "encryptedData": base64.b64encode(self.ciphertext).decode("ascii"),
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
            "mac": base64.b64encode(self.auth_tag).decode("ascii"),
            "signature": base64.b64encode(self.signature).decode("ascii"),
        }

    @staticmethod
    def from_wire(data: Dict, sender_id: str, recipient_id: str) -> "EncryptedEnvelope":
        """
        Decode the base64 wire fields of an envelope.

        Only the encoding is checked; the content stays opaque.

        Raises:
            MalformedEnvelope: If a field is missing or not valid base64
        """
        decoded = {}
        for name in ("encryptedData", "nonce", "mac", "signature"):
            value = data.get(name)
            if not isinstance(value, str) or not value:
                raise MalformedEnvelope(f"Missing required field: {name}", {"field": name})
            try:
                decoded[name] = base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as e:
                raise MalformedEnvelope(f"Field {name} is not valid base64", {"field": name}) from e

        return EncryptedEnvelope(
            ciphertext=decoded["encryptedData"],
            nonce=decoded["nonce"],
            auth_tag=decoded["mac"],
            signature=decoded["signature"],
            sender_id=sender_id,
            recipient_id=recipient_id,
        )


def _agreement_private(key: PrivateAgreementKey) -> x25519.X25519PrivateKey:
    if isinstance(key, AgreementKeyPair):
        return key.private_key
    if isinstance(key, x25519.X25519PrivateKey):
        return key
    if isinstance(key, (bytes, bytearray)):
        return AgreementKeyPair.from_private_bytes(bytes(key)).private_key
    raise InvalidKeyMaterial("Unsupported agreement private key type")


def _agreement_public(key: PublicAgreementKey) -> x25519.X25519PublicKey:
    if isinstance(key, x25519.X25519PublicKey):
        return key
    return load_agreement_public_key(key)


def _signing_public(key: PublicSigningKey) -> ed25519.Ed25519PublicKey:
    if isinstance(key, ed25519.Ed25519PublicKey):
        return key
    return load_signing_public_key(key)


def _key_bytes(session_key: Union[SessionKey, bytes]) -> bytes:
    key = session_key.key if isinstance(session_key, SessionKey) else session_key
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise InvalidKeyMaterial("Session key must be exactly 32 bytes")
    return bytes(key)


def derive_session_key(
    local_private_agreement_key: PrivateAgreementKey,
    remote_public_agreement_key: PublicAgreementKey,
    context: bytes = SESSION_CONTEXT,
    local_id: str = "",
    remote_id: str = "",
) -> SessionKey:
    """
    Derive the 32-byte session key shared with one peer.

    X25519 produces the raw shared secret, which HKDF-SHA256 expands using
    the versioned ``context`` label so the key cannot be confused with keys
    derived for another protocol or protocol version.

    Raises:
        InvalidKeyMaterial: If a key has the wrong length or the remote key
            is a low-order point
    """
    private_key = _agreement_private(local_private_agreement_key)
    public_key = _agreement_public(remote_public_agreement_key)
    if isinstance(context, str):
        context = context.encode("utf-8")

    try:
        shared_secret = private_key.exchange(public_key)
    except ValueError as e:
        raise InvalidKeyMaterial("Key agreement produced an invalid shared secret") from e

    hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=None, info=context)
    key = hkdf.derive(shared_secret)

    peer_a, peer_b = sorted((local_id, remote_id))
    return SessionKey(key=key, peer_a=peer_a, peer_b=peer_b)


def build_associated_data(sender_id: str, timestamp: str) -> bytes:
    """Canonical associated data binding the sender and send time into the tag."""
    return f"enigmo:v1|{sender_id}|{timestamp}".encode("utf-8")


def build_auth_proof(timestamp: str, agreement_public_key: bytes) -> bytes:
    """Bytes signed at login to prove ownership of the signing key and vouch for the agreement key."""
    return b"enigmo-auth:v1|" + timestamp.encode("utf-8") + b"|" + agreement_public_key


def sign(identity_private_signing_key: PrivateSigningKey, ciphertext: bytes) -> bytes:
    """Sign the ciphertext with Ed25519. Always returns 64 bytes."""
    if isinstance(identity_private_signing_key, SigningKeyPair):
        identity_private_signing_key = identity_private_signing_key.private_key
    if not isinstance(identity_private_signing_key, ed25519.Ed25519PrivateKey):
        raise InvalidKeyMaterial("Unsupported signing key type")
    return identity_private_signing_key.sign(ciphertext)


def verify_signature(sender_signing_public_key: PublicSigningKey, ciphertext: bytes, signature: bytes) -> None:
    """
    Verify an Ed25519 signature over ciphertext.

    Raises:
        InvalidSignatureLength: If the signature is not 64 bytes
        SignatureInvalid: If the signature does not verify
    """
    if len(signature) != SIGNATURE_SIZE:
        raise InvalidSignatureLength(len(signature), SIGNATURE_SIZE)
    public_key = _signing_public(sender_signing_public_key)
    try:
        public_key.verify(signature, ciphertext)
    except InvalidSignature as e:
        raise SignatureInvalid() from e


class CryptoEngine:
    """
    Stateful front end for the per-peer protocol.

    Holds the registry of nonces already issued under each session key so a
    nonce is never emitted twice for the same key. One engine per endpoint.
    """

    def __init__(self):
        self._issued_nonces: Dict[bytes, Set[bytes]] = {}
        self._lock = threading.Lock()

    def derive_session_key(
        self,
        local_private_agreement_key: PrivateAgreementKey,
        remote_public_agreement_key: PublicAgreementKey,
        context: bytes = SESSION_CONTEXT,
        local_id: str = "",
        remote_id: str = "",
    ) -> SessionKey:
        return derive_session_key(
            local_private_agreement_key, remote_public_agreement_key, context, local_id, remote_id
        )

    def session_key_for(self, local: LocalIdentity, remote: Identity) -> SessionKey:
        """Derive the session key between a local identity and a peer identity."""
        return derive_session_key(
            local.agreement,
            remote.agreement_public_key,
            local_id=local.id,
            remote_id=remote.id,
        )

    def _fresh_nonce(self, key: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        key_id = hashlib.sha256(key).digest()
        with self._lock:
            issued = self._issued_nonces.setdefault(key_id, set())
            if nonce in issued:
                # Never retry with a previous nonce; surface the fault instead.
                raise CryptoError(ErrorCode.E106_NONCE_REUSE, "Nonce reuse detected for session key")
            issued.add(nonce)
        return nonce

    def issued_nonce_count(self, session_key: Union[SessionKey, bytes]) -> int:
        key_id = hashlib.sha256(_key_bytes(session_key)).digest()
        with self._lock:
            return len(self._issued_nonces.get(key_id, ()))

    def encrypt(
        self,
        session_key: Union[SessionKey, bytes],
        plaintext: Union[bytes, str],
        associated_data: bytes,
    ) -> Tuple[bytes, bytes, bytes]:
        """
        Encrypt ``plaintext`` under the session key.

        Returns:
            (ciphertext, nonce, auth_tag)

        Raises:
            EmptyPlaintext: If plaintext is zero-length
            InvalidKeyMaterial: If the session key is not 32 bytes
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        if len(plaintext) == 0:
            raise EmptyPlaintext()
        key = _key_bytes(session_key)

        nonce = self._fresh_nonce(key)
        sealed = ChaCha20Poly1305(key).encrypt(nonce, plaintext, associated_data)
        return sealed[:-TAG_SIZE], nonce, sealed[-TAG_SIZE:]

    def verify_and_decrypt(
        self,
        envelope: EncryptedEnvelope,
        sender_signing_public_key: PublicSigningKey,
        session_key: Union[SessionKey, bytes],
        associated_data: bytes,
    ) -> bytes:
        """
        Authenticate the envelope, then decrypt it.

        The signature is checked first; a forged ciphertext is never fed to
        the AEAD. A tag mismatch yields no plaintext at all.

        Raises:
            InvalidSignatureLength, SignatureInvalid, DecryptionFailed,
            InvalidKeyMaterial
        """
        key = _key_bytes(session_key)
        verify_signature(sender_signing_public_key, envelope.ciphertext, envelope.signature)

        if len(envelope.nonce) != NONCE_SIZE or len(envelope.auth_tag) != TAG_SIZE:
            raise DecryptionFailed()
        try:
            return ChaCha20Poly1305(key).decrypt(
                envelope.nonce, envelope.ciphertext + envelope.auth_tag, associated_data
            )
        except InvalidTag as e:
            raise DecryptionFailed() from e

    def seal(
        self,
        sender: LocalIdentity,
        recipient_id: str,
        session_key: Union[SessionKey, bytes],
        plaintext: Union[bytes, str],
        timestamp: str,
    ) -> EncryptedEnvelope:
        """Encrypt then sign, producing the envelope handed to the relay."""
        associated_data = build_associated_data(sender.id, timestamp)
        ciphertext, nonce, auth_tag = self.encrypt(session_key, plaintext, associated_data)
        signature = sign(sender.signing, ciphertext)
        return EncryptedEnvelope(
            ciphertext=ciphertext,
            nonce=nonce,
            auth_tag=auth_tag,
            signature=signature,
            sender_id=sender.id,
            recipient_id=recipient_id,
        )

    def open_envelope(
        self,
        envelope: EncryptedEnvelope,
        sender: Identity,
        session_key: Union[SessionKey, bytes],
        timestamp: str,
    ) -> bytes:
        """Verify and decrypt an envelope received from ``sender``."""
        if envelope.sender_id != sender.id:
            raise SignatureInvalid("Envelope sender does not match expected identity")
        associated_data = build_associated_data(envelope.sender_id, timestamp)
        return self.verify_and_decrypt(envelope, sender.signing_public_key, session_key, associated_data)
