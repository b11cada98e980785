"""
Enigmo - Peer directory.

Tracks every identity that has authenticated with the relay, its long-term
public keys, online/offline status and last-seen time. The first key set
registered for an id is the trust anchor: a later registration presenting
different keys is rejected as a possible impersonation attempt.

Thread safety:
- Every mutation runs inside a single threading.Lock
- Readers receive snapshot copies, never the live record
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .errors import DirectoryError, ErrorCode, IdentityConflict
from .identity import Identity

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PeerRecord:
    """Directory entry for one peer."""

    identity: Identity
    nickname: str
    online: bool = False
    last_seen: datetime = dataclasses.field(default_factory=utc_now)
    connection_ref: Optional[int] = None  # slot id in the ConnectionTable
    registered_at: datetime = dataclasses.field(default_factory=utc_now)

    @property
    def id(self) -> str:
        return self.identity.id

    def to_dict(self) -> Dict:
        """Public view sent in ``users`` responses."""
        data = self.identity.to_wire()
        data.update(
            {
                "nickname": self.nickname,
                "isOnline": self.online,
                "lastSeen": self.last_seen.isoformat(),
            }
        )
        return data


class DirectoryObserver:
    """Receives online/offline transitions. Override what you need."""

    def on_peer_status(self, record: PeerRecord) -> None:
        pass


class PeerDirectory:
    """In-memory directory of known peers."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._peers: Dict[str, PeerRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._observers: List[DirectoryObserver] = []

    def add_observer(self, observer: DirectoryObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: DirectoryObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify(self, record: PeerRecord) -> None:
        for observer in list(self._observers):
            try:
                observer.on_peer_status(record)
            except Exception as e:
                logger.error(f"Directory observer error: {e}", exc_info=True)

    def register(self, identity: Identity, nickname: Optional[str] = None) -> PeerRecord:
        """
        Register an identity, or refresh an existing registration.

        Idempotent by id. The nickname is last-writer-wins; the long-term
        keys are fixed by the first registration.

        Raises:
            IdentityConflict: If ``identity.id`` is known with different keys
        """
        with self._lock:
            record = self._peers.get(identity.id)
            if record is None:
                record = PeerRecord(
                    identity=identity,
                    nickname=nickname or identity.id,
                    last_seen=self._clock(),
                    registered_at=self._clock(),
                )
                self._peers[identity.id] = record
                logger.info(f"Registered peer {identity.id}")
            else:
                if not record.identity.same_keys(identity):
                    logger.warning(f"Identity conflict for {identity.id}: different long-term keys presented")
                    raise IdentityConflict(identity.id)
                if nickname:
                    record.nickname = nickname
                record.last_seen = self._clock()
                logger.debug(f"Re-registered peer {identity.id}")
            return dataclasses.replace(record)

    def mark_online(self, peer_id: str, connection_ref: int) -> PeerRecord:
        """
        Attach a live connection slot to a registered peer.

        Raises:
            DirectoryError: If the peer is not registered
        """
        with self._lock:
            record = self._peers.get(peer_id)
            if record is None:
                raise DirectoryError(
                    ErrorCode.E302_PEER_NOT_FOUND, f"Peer not registered: {peer_id}", {"peer_id": peer_id}
                )
            was_online = record.online
            record.online = True
            record.connection_ref = connection_ref
            record.last_seen = self._clock()
            snapshot = dataclasses.replace(record)

        logger.info(f"Peer online: {peer_id} (slot {connection_ref})")
        if not was_online:
            self._notify(snapshot)
        return snapshot

    def mark_offline(self, peer_id: str, connection_ref: Optional[int] = None) -> Optional[PeerRecord]:
        """
        Mark a peer offline.

        When ``connection_ref`` is given, the call only takes effect if that
        slot still owns the record, so a stale connection closing late cannot
        knock a newer connection offline.
        """
        with self._lock:
            record = self._peers.get(peer_id)
            if record is None:
                return None
            if connection_ref is not None and record.connection_ref != connection_ref:
                logger.debug(f"Ignoring stale offline for {peer_id} (slot {connection_ref})")
                return dataclasses.replace(record)
            was_online = record.online
            record.online = False
            record.connection_ref = None
            record.last_seen = self._clock()
            snapshot = dataclasses.replace(record)

        logger.info(f"Peer offline: {peer_id}")
        if was_online:
            self._notify(snapshot)
        return snapshot

    def touch(self, peer_id: str) -> None:
        """Refresh last-seen for a peer."""
        with self._lock:
            record = self._peers.get(peer_id)
            if record is not None:
                record.last_seen = self._clock()

    def lookup(self, peer_id: str) -> Optional[PeerRecord]:
        """Get a snapshot of a peer record, or None."""
        with self._lock:
            record = self._peers.get(peer_id)
            return dataclasses.replace(record) if record is not None else None

    def is_registered(self, peer_id: str) -> bool:
        with self._lock:
            return peer_id in self._peers

    def list_online(self, exclude: Optional[str] = None) -> List[PeerRecord]:
        """Snapshots of online peers, ordered by id."""
        with self._lock:
            records = [
                dataclasses.replace(r)
                for r in self._peers.values()
                if r.online and r.id != exclude
            ]
        return sorted(records, key=lambda r: r.id)

    def list_all(self) -> List[PeerRecord]:
        with self._lock:
            records = [dataclasses.replace(r) for r in self._peers.values()]
        return sorted(records, key=lambda r: r.id)

    def stats(self) -> Dict[str, int]:
        """Counts of total, online and offline peers."""
        with self._lock:
            total = len(self._peers)
            online = sum(1 for r in self._peers.values() if r.online)
        return {"total": total, "online": online, "offline": total - online}

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)
