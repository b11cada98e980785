"""
Enigmo - Client-side peer helper.

Everything that needs private keys happens here, on the endpoint: the relay
only ever sees the frames this module builds.

- ``PeerClient`` builds request frames, seals outgoing plaintext for a peer
  and opens incoming ``message`` payloads.
- ``RelayClient`` is a small asyncio transport for the relay's
  newline-delimited JSON protocol.
"""

import asyncio
import base64
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .crypto import CryptoEngine, EncryptedEnvelope, SessionKey, build_auth_proof, sign
from .errors import EnigmoError, ErrorCode, SignatureInvalid
from .identity import Identity, LocalIdentity
from .protocol import encode_frame
from .router import MessageType

logger = logging.getLogger(__name__)

Frame = Dict[str, Any]


class PeerClient:
    """One user's view of the protocol: identity, known peers and session keys."""

    def __init__(self, local: LocalIdentity, engine: Optional[CryptoEngine] = None):
        self.local = local
        self.engine = engine or CryptoEngine()
        self.peers: Dict[str, Identity] = {}
        self._session_keys: Dict[str, SessionKey] = {}

    @property
    def id(self) -> str:
        return self.local.id

    def remember_peer(self, identity: Identity) -> None:
        """
        Record a peer's public identity.

        A peer already known with different keys is not replaced; the user
        has to verify the new fingerprint and call ``forget_peer`` first.
        """
        known = self.peers.get(identity.id)
        if known is not None and not known.same_keys(identity):
            logger.warning(f"Keys for peer {identity.id} changed; keeping the previously trusted keys")
            return
        self.peers[identity.id] = identity

    def remember_peer_wire(self, data: Dict[str, Any]) -> Identity:
        """Record a peer from an entry of a ``users`` response."""
        identity = Identity.from_wire(data, user_id=data.get("id"))
        self.remember_peer(identity)
        return self.peers[identity.id]

    def forget_peer(self, peer_id: str) -> None:
        self.peers.pop(peer_id, None)
        self._session_keys.pop(peer_id, None)

    def session_key(self, peer_id: str) -> SessionKey:
        key = self._session_keys.get(peer_id)
        if key is None:
            peer = self.peers.get(peer_id)
            if peer is None:
                raise EnigmoError(ErrorCode.E302_PEER_NOT_FOUND, f"Unknown peer: {peer_id}", {"peer_id": peer_id})
            key = self.engine.session_key_for(self.local, peer)
            self._session_keys[peer_id] = key
        return key

    # Request frames

    def auth_frame(self, credential: Optional[str] = None, timestamp: Optional[str] = None) -> Frame:
        """Build an auth frame signed over a fresh timestamp with the local signing key."""
        if timestamp is None:
            timestamp = datetime.now(timezone.utc).isoformat()
        proof = build_auth_proof(timestamp, self.local.identity.agreement_public_key)
        wire = self.local.identity.to_wire()
        frame: Frame = {
            "type": "auth",
            "signingPublicKey": wire["signingPublicKey"],
            "agreementPublicKey": wire["agreementPublicKey"],
            "timestamp": timestamp,
            "signature": base64.b64encode(sign(self.local.signing, proof)).decode("ascii"),
            "nickname": self.local.nickname,
        }
        if credential is not None:
            frame["credential"] = credential
        return frame

    def send_frame(
        self,
        recipient_id: str,
        plaintext,
        message_type: MessageType = MessageType.TEXT,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Frame:
        """Encrypt and sign ``plaintext`` for ``recipient_id``."""
        timestamp = datetime.now(timezone.utc).isoformat()
        envelope = self.engine.seal(self.local, recipient_id, self.session_key(recipient_id), plaintext, timestamp)
        frame: Frame = {
            "type": "send_message",
            "receiverId": recipient_id,
            "messageType": message_type.value,
            "timestamp": timestamp,
        }
        frame.update(envelope.to_wire())
        if metadata is not None:
            frame["metadata"] = metadata
        return frame

    def history_frame(self, other_user_id: str, limit: Optional[int] = None, before: Optional[str] = None) -> Frame:
        frame: Frame = {"type": "get_history", "otherUserId": other_user_id}
        if limit is not None:
            frame["limit"] = limit
        if before is not None:
            frame["before"] = before
        return frame

    def ack_frame(self, message_id: str) -> Frame:
        return {"type": "ack", "messageId": message_id}

    def mark_read_frame(self, message_id: str) -> Frame:
        return {"type": "mark_read", "messageId": message_id}

    def get_users_frame(self) -> Frame:
        return {"type": "get_users"}

    def ping_frame(self) -> Frame:
        return {"type": "ping", "timestamp": datetime.now(timezone.utc).isoformat()}

    def logout_frame(self) -> Frame:
        return {"type": "logout"}

    # Receive path

    def open_message(self, message: Dict[str, Any]) -> bytes:
        """
        Verify and decrypt a message body from a ``message`` frame or history.

        Raises:
            SignatureInvalid: If the sender is unknown or the signature fails
            DecryptionFailed: If the AEAD tag does not verify
            MalformedEnvelope: If the envelope fields are not valid base64
        """
        sender_id = message.get("senderId")
        sender = self.peers.get(sender_id)
        if sender is None:
            raise SignatureInvalid(f"No trusted keys for sender {sender_id}")
        if message.get("receiverId") != self.id:
            raise SignatureInvalid("Message is not addressed to this identity")

        envelope = EncryptedEnvelope.from_wire(message, sender_id, self.id)
        return self.engine.open_envelope(envelope, sender, self.session_key(sender_id), message.get("timestamp", ""))


class RelayClient:
    """Async client for the relay's newline-delimited JSON protocol."""

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None

    async def connect(self, timeout: float = 5.0) -> None:
        self.reader, self.writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), timeout=timeout
        )
        logger.debug(f"Connected to relay at {self.host}:{self.port}")

    async def send(self, frame: Frame) -> None:
        self.writer.write(encode_frame(frame))
        await self.writer.drain()

    async def receive(self, timeout: float = 5.0) -> Frame:
        """Read the next frame. Raises ConnectionError if the relay closed the stream."""
        line = await asyncio.wait_for(self.reader.readline(), timeout=timeout)
        if not line:
            raise ConnectionError("Relay closed the connection")
        return json.loads(line.decode("utf-8"))

    async def receive_type(self, kind: str, timeout: float = 5.0) -> Frame:
        """Read frames until one of type ``kind`` arrives; others are dropped."""
        while True:
            frame = await self.receive(timeout)
            if frame.get("type") == kind:
                return frame
            logger.debug(f"Skipping {frame.get('type')} frame while waiting for {kind}")

    async def request(self, frame: Frame, reply_type: str, timeout: float = 5.0) -> Frame:
        await self.send(frame)
        return await self.receive_type(reply_type, timeout)

    async def close(self) -> None:
        if self.writer is not None:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error closing connection: {e}")
            self.writer = None
