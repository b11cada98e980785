"""
Enigmo - Connection table.

Maps integer slot ids to the outbound queue of a live connection. The
directory stores only the slot id, so a record never keeps a closed
connection alive; a released slot simply stops resolving.
"""

import asyncio
import itertools
import logging
import threading
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ConnectionTable:
    """Slot-indexed registry of connection outboxes."""

    def __init__(self):
        self._outboxes: Dict[int, asyncio.Queue] = {}
        self._labels: Dict[int, str] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def allocate(self, outbox: asyncio.Queue, label: str = "") -> int:
        """Register an outbox and return its slot id. Slot ids are never reused."""
        with self._lock:
            slot = next(self._ids)
            self._outboxes[slot] = outbox
            self._labels[slot] = label
        logger.debug(f"Allocated connection slot {slot} {label}".rstrip())
        return slot

    def release(self, slot: int) -> None:
        with self._lock:
            self._outboxes.pop(slot, None)
            self._labels.pop(slot, None)
        logger.debug(f"Released connection slot {slot}")

    def get(self, slot: Optional[int]) -> Optional[asyncio.Queue]:
        if slot is None:
            return None
        with self._lock:
            return self._outboxes.get(slot)

    def deliver(self, slot: Optional[int], frame: Dict[str, Any]) -> bool:
        """
        Enqueue a frame on a connection without blocking.

        Returns:
            False if the slot is gone or its outbox is full
        """
        outbox = self.get(slot)
        if outbox is None:
            return False
        try:
            outbox.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(f"Outbox full for connection slot {slot}; frame dropped")
            return False
        return True

    def broadcast(self, frame: Dict[str, Any], exclude: Optional[int] = None) -> int:
        """Enqueue a frame on every connection except ``exclude``; returns the count reached."""
        with self._lock:
            slots = [s for s in self._outboxes if s != exclude]
        return sum(1 for slot in slots if self.deliver(slot, frame))

    def __contains__(self, slot: int) -> bool:
        with self._lock:
            return slot in self._outboxes

    def __len__(self) -> int:
        with self._lock:
            return len(self._outboxes)
