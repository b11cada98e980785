"""
Enigmo - Message router.

Accepts opaque encrypted envelopes, forwards them to the recipient's live
connection, and tracks delivery state. The router reads only routing
metadata (ids, type, timestamps); envelope bytes pass through unopened.

Delivery state only moves forward:

    sent -> delivered -> read
    sent -> failed

Undelivered messages are retained in memory with status ``sent`` and are
never pushed again; they stay visible through history queries until the
process exits.
"""

import copy
import dataclasses
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .connections import ConnectionTable
from .crypto import EncryptedEnvelope
from .directory import PeerDirectory
from .errors import MalformedEnvelope, RecipientUnknown

logger = logging.getLogger(__name__)


class MessageType(Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"


class DeliveryStatus(Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# Rank of each non-terminal status; a transition must strictly increase it.
_STATUS_RANK = {
    DeliveryStatus.SENT: 0,
    DeliveryStatus.DELIVERED: 1,
    DeliveryStatus.READ: 2,
}


def can_advance(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    """True if ``current -> target`` is a forward transition."""
    if current == DeliveryStatus.FAILED:
        return False
    if target == DeliveryStatus.FAILED:
        return current == DeliveryStatus.SENT
    return _STATUS_RANK[target] > _STATUS_RANK[current]


def already_reached(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    """True if ``current`` is ``target`` or a later non-terminal status."""
    if current == target:
        return True
    if DeliveryStatus.FAILED in (current, target):
        return False
    return _STATUS_RANK[current] > _STATUS_RANK[target]


@dataclass
class RoutedMessage:
    """A message as tracked by the router."""

    id: str
    sender_id: str
    recipient_id: str
    envelope: EncryptedEnvelope
    type: MessageType
    created_at: datetime
    status: DeliveryStatus = DeliveryStatus.SENT
    metadata: Optional[Dict[str, Any]] = None
    # Sender's own send time, bound into the envelope's associated data
    sent_at: str = ""
    updated_at: Optional[datetime] = None

    @property
    def timestamp(self) -> str:
        return self.sent_at or self.created_at.isoformat()

    def snapshot(self) -> "RoutedMessage":
        """Detached copy; metadata is copied so callers cannot edit the stored record."""
        return dataclasses.replace(self, metadata=copy.deepcopy(self.metadata))

    def to_wire(self) -> Dict[str, Any]:
        """Message body as forwarded to the recipient and returned in history."""
        data: Dict[str, Any] = {
            "id": self.id,
            "senderId": self.sender_id,
            "receiverId": self.recipient_id,
            "messageType": self.type.value,
            "timestamp": self.timestamp,
            "createdAt": self.created_at.isoformat(),
            "status": self.status.value,
            "metadata": copy.deepcopy(self.metadata),
        }
        data.update(self.envelope.to_wire())
        return data


class RouterObserver:
    """Receives every status transition, including creation (``old_status`` None)."""

    def on_message_status(self, message: RoutedMessage, old_status: Optional[DeliveryStatus]) -> None:
        pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MessageRouter:
    """
    In-memory message router.

    Thread safety: all bookkeeping happens under one lock; callers receive
    snapshot copies of messages. Observers are called after the lock is
    released.
    """

    def __init__(
        self,
        directory: PeerDirectory,
        connections: ConnectionTable,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.directory = directory
        self.connections = connections
        self._clock = clock
        self._messages: Dict[str, RoutedMessage] = {}
        self._order: List[str] = []
        self._total = 0
        self._last_created: Optional[datetime] = None
        self._observers: List[RouterObserver] = []
        self._lock = threading.Lock()

    def add_observer(self, observer: RouterObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: RouterObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify(self, message: RoutedMessage, old_status: Optional[DeliveryStatus]) -> None:
        for observer in list(self._observers):
            try:
                observer.on_message_status(message, old_status)
            except Exception as e:
                logger.error(f"Router observer error: {e}", exc_info=True)

    def _next_created_at(self) -> datetime:
        # Strictly increasing so history ordering never ties.
        now = self._clock()
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    @staticmethod
    def delivery_frame(message: RoutedMessage) -> Dict[str, Any]:
        """Frame pushed to the recipient's connection."""
        return {
            "type": "message",
            "timestamp": utc_now().isoformat(),
            "message": message.to_wire(),
        }

    def send(
        self,
        sender_id: str,
        recipient_id: str,
        envelope: EncryptedEnvelope,
        message_type: MessageType = MessageType.TEXT,
        metadata: Optional[Dict[str, Any]] = None,
        sent_at: str = "",
    ) -> RoutedMessage:
        """
        Accept an envelope for routing.

        If the recipient is online the envelope is handed to its connection
        immediately; otherwise it is retained with status ``sent``.

        Raises:
            MalformedEnvelope: If ``sender_id`` does not match the envelope
            RecipientUnknown: If the recipient was never registered
        """
        if envelope.sender_id != sender_id or envelope.recipient_id != recipient_id:
            raise MalformedEnvelope(
                "Envelope routing ids do not match the sending session",
                {"sender_id": sender_id, "recipient_id": recipient_id},
            )

        recipient = self.directory.lookup(recipient_id)
        if recipient is None:
            raise RecipientUnknown(recipient_id)

        with self._lock:
            message = RoutedMessage(
                id=uuid.uuid4().hex,
                sender_id=sender_id,
                recipient_id=recipient_id,
                envelope=envelope,
                type=message_type,
                created_at=self._next_created_at(),
                metadata=copy.deepcopy(metadata),
                sent_at=sent_at,
            )
            self._messages[message.id] = message
            self._order.append(message.id)
            try:
                forwarded = False
                if recipient.online:
                    forwarded = self.connections.deliver(recipient.connection_ref, self.delivery_frame(message))
            except Exception:
                del self._messages[message.id]
                self._order.pop()
                logger.error(f"Rolled back message {message.id} after delivery error", exc_info=True)
                raise
            self._total += 1
            snapshot = message.snapshot()

        if forwarded:
            logger.info(f"Message {message.id} forwarded {sender_id} -> {recipient_id} ({len(envelope.ciphertext)} bytes)")
        else:
            logger.info(f"Message {message.id} retained for offline recipient {recipient_id}")

        self._notify(snapshot, None)
        return snapshot

    def _transition(self, message_id: str, target: DeliveryStatus, acting_user_id: Optional[str]) -> bool:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                logger.debug(f"Status change for unknown message {message_id}")
                return False
            if acting_user_id is not None and message.recipient_id != acting_user_id:
                logger.warning(f"User {acting_user_id} may not mark message {message_id} as {target.value}")
                return False
            if already_reached(message.status, target):
                return True
            if not can_advance(message.status, target):
                logger.debug(f"Ignoring {message.status.value} -> {target.value} for message {message_id}")
                return False
            old_status = message.status
            message.status = target
            message.updated_at = self._clock()
            snapshot = message.snapshot()

        logger.debug(f"Message {message_id}: {old_status.value} -> {target.value}")
        self._notify(snapshot, old_status)
        return True

    def acknowledge(self, message_id: str, acting_user_id: str) -> bool:
        """Recipient confirms receipt: ``sent -> delivered``."""
        return self._transition(message_id, DeliveryStatus.DELIVERED, acting_user_id)

    def mark_read(self, message_id: str, acting_user_id: str) -> bool:
        """
        Mark a message read. Only its recipient may do so.

        Returns:
            False without mutation if the message is unknown, the caller is
            not the recipient, or the message has failed
        """
        return self._transition(message_id, DeliveryStatus.READ, acting_user_id)

    def mark_failed(self, message_id: str) -> bool:
        """Terminal failure for a message still in ``sent``."""
        return self._transition(message_id, DeliveryStatus.FAILED, None)

    def get_message(self, message_id: str) -> Optional[RoutedMessage]:
        with self._lock:
            message = self._messages.get(message_id)
            return message.snapshot() if message is not None else None

    def get_history(
        self,
        user_a: str,
        user_b: str,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
    ) -> List[RoutedMessage]:
        """
        Messages exchanged between two users in either direction.

        Ordered by ascending creation time. ``before`` is exclusive. When more
        than ``limit`` messages match, the most recent ``limit`` are kept.
        """
        with self._lock:
            matches = [
                m.snapshot()
                for m in (self._messages[mid] for mid in self._order)
                if (m.sender_id, m.recipient_id) in ((user_a, user_b), (user_b, user_a))
            ]

        if before is not None:
            matches = [m for m in matches if m.created_at < before]
        matches.sort(key=lambda m: m.created_at)
        if limit is not None:
            matches = matches[-limit:] if limit > 0 else []
        return matches

    def get_user_messages(self, user_id: str) -> List[RoutedMessage]:
        """Every message sent or received by ``user_id``, newest first."""
        with self._lock:
            matches = [
                m.snapshot()
                for m in self._messages.values()
                if m.sender_id == user_id or m.recipient_id == user_id
            ]
        matches.sort(key=lambda m: m.created_at, reverse=True)
        return matches

    def stats(self) -> Dict[str, int]:
        with self._lock:
            delivered = sum(1 for m in self._messages.values() if m.status == DeliveryStatus.DELIVERED)
            read = sum(1 for m in self._messages.values() if m.status == DeliveryStatus.READ)
            return {"total": self._total, "delivered": delivered, "read": read}

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)
