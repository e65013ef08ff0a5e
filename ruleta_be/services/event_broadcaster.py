"""
Ordered fan-out of roulette table events.
Each mesa type has its own sequence counter. Subscribers read from a bounded
queue so a slow client never stalls the table that publishes.
"""

import json
import logging
import queue
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

EVENT_SNAPSHOT = 'snapshot'
EVENT_MESA_OPENED = 'mesa-opened'
EVENT_SECTOR_FILLED = 'sector-filled'
EVENT_COUNTDOWN = 'countdown'
EVENT_CLOSING = 'closing'
EVENT_SPINNING = 'spinning'
EVENT_RESULT_SUBMITTED = 'result-submitted'
EVENT_RESULT = 'result'
EVENT_MESA_VOIDED = 'mesa-voided'


@dataclass(frozen=True)
class StreamEvent:
    name: str
    mesa_type: Optional[str]
    seq: Optional[int]
    payload: Dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        data = dict(self.payload)
        if self.mesa_type is not None:
            data['type'] = self.mesa_type
        if self.seq is not None:
            data['seq'] = self.seq
        return data

    def to_sse(self) -> str:
        lines = []
        if self.mesa_type is not None and self.seq is not None:
            lines.append(f"id: {self.mesa_type}:{self.seq}")
        lines.append(f"event: {self.name}")
        lines.append(f"data: {json.dumps(self.to_dict(), default=str)}")
        return "\n".join(lines) + "\n\n"


class Subscription:
    """One connected stream client."""

    def __init__(self, mesa_types: Iterable[str], maxsize: int = 256):
        self.id = uuid.uuid4().hex
        self.mesa_types = tuple(mesa_types)
        self._queue = queue.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, event: StreamEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            return False

    def get(self, timeout: Optional[float] = None) -> Optional[StreamEvent]:
        """Next event, or None on timeout or once closed and drained."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[StreamEvent]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self):
        self.closed = True


class EventBroadcaster:
    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: Dict[str, set] = defaultdict(set)
        self._listeners: List[Callable[[StreamEvent], None]] = []
        self._seq: Dict[str, int] = defaultdict(int)

    def current_seq(self, mesa_type: str) -> int:
        with self._lock:
            return self._seq[mesa_type]

    def add_listener(self, listener: Callable[[StreamEvent], None]):
        """Registers a callback for every published event (Socket.IO bridge)."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def subscriber_count(self, mesa_type: Optional[str] = None) -> int:
        with self._lock:
            if mesa_type is not None:
                return len(self._subscribers[mesa_type])
            unique = set()
            for subscribers in self._subscribers.values():
                unique.update(subscribers)
            return len(unique)

    def publish(self, mesa_type: str, name: str, payload: Dict[str, Any]) -> StreamEvent:
        """
        Stamps the next sequence number for the type and enqueues the event on every subscriber.
        Callers publish while holding their table lock, which fixes the per-type order.
        """
        with self._lock:
            self._seq[mesa_type] += 1
            event = StreamEvent(name=name, mesa_type=mesa_type, seq=self._seq[mesa_type], payload=payload)
            subscribers = list(self._subscribers[mesa_type])
            listeners = list(self._listeners)

        for subscription in subscribers:
            if not subscription.deliver(event):
                logger.warning(f"Dropping stream subscriber {subscription.id}: queue full or closed")
                self.unsubscribe(subscription)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed for {name} on mesa type {mesa_type}: {e}", exc_info=True)

        return event

    def attach(self, subscription: Subscription, snapshot_payload: Dict[str, Any]):
        """
        Registers a subscriber and queues its initial snapshot.
        The caller holds the table lock of every type in the subscription, so no
        event can be published between the snapshot and the registration.
        """
        with self._lock:
            if len(subscription.mesa_types) == 1:
                mesa_type = subscription.mesa_types[0]
                snapshot = StreamEvent(name=EVENT_SNAPSHOT, mesa_type=mesa_type,
                                       seq=self._seq[mesa_type], payload=snapshot_payload)
            else:
                payload = {}
                for mesa_type in subscription.mesa_types:
                    entry = dict(snapshot_payload[mesa_type])
                    entry['seq'] = self._seq[mesa_type]
                    payload[mesa_type] = entry
                snapshot = StreamEvent(name=EVENT_SNAPSHOT, mesa_type=None, seq=None, payload=payload)
            subscription.deliver(snapshot)
            for mesa_type in subscription.mesa_types:
                self._subscribers[mesa_type].add(subscription)
        logger.debug(f"Stream subscriber {subscription.id} attached to {subscription.mesa_types}")

    def unsubscribe(self, subscription: Subscription):
        subscription.close()
        with self._lock:
            for mesa_type in subscription.mesa_types:
                self._subscribers[mesa_type].discard(subscription)

    def close_all(self):
        with self._lock:
            subscribers = set()
            for bucket in self._subscribers.values():
                subscribers.update(bucket)
            self._subscribers.clear()
        for subscription in subscribers:
            subscription.close()
