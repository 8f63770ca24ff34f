# backend/services/room_registry.py

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.errors import SlowConsumerDropped

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 32

_CLOSED = object()


# ============================================================================
# DELIVERY CHANNEL
# ============================================================================

class ChannelClosed(Exception):
    """Raised by ``DeliveryChannel.get`` once the channel is closed and drained."""

    def __init__(self, reason: Optional[Exception] = None) -> None:
        super().__init__(str(reason) if reason else "channel closed")
        self.reason = reason


class DeliveryChannel:
    """
    Bounded FIFO of events waiting to be pushed to one subscriber.

    ``offer`` never blocks: it refuses the event when ``capacity`` events are
    already pending. ``close`` always succeeds and wakes a waiting consumer.

    A graceful close (no reason) lets the consumer drain what was already
    accepted; a forced close (with a reason, e.g. ``SlowConsumerDropped``)
    discards pending events.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_QUEUE_SIZE,
        on_close: Optional[Callable[[Optional[Exception]], None]] = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.on_close = on_close
        # Unbounded underneath so the close marker always fits
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending = 0
        self.closed = False
        self.close_reason: Optional[Exception] = None

    @property
    def pending(self) -> int:
        return self._pending

    def offer(self, event: Any) -> bool:
        if self.closed or self._pending >= self.capacity:
            return False
        self._pending += 1
        self._queue.put_nowait(event)
        return True

    def close(self, reason: Optional[Exception] = None) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        if reason is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
            self._pending = 0
        self._queue.put_nowait(_CLOSED)
        if self.on_close is not None:
            self.on_close(reason)

    async def get(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any later reader
            self._queue.put_nowait(_CLOSED)
            raise ChannelClosed(self.close_reason)
        self._pending -= 1
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        try:
            return await self.get()
        except ChannelClosed:
            raise StopAsyncIteration


@dataclass(frozen=True)
class SubscriptionHandle:
    room_id: str
    owner: str
    channel: DeliveryChannel = field(compare=False, repr=False)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


# ============================================================================
# ROOM TOPIC REGISTRY
# ============================================================================

class RoomTopicRegistry:
    """
    Maps room_id -> delivery channels currently subscribed to that room.

    Data Structures:
        topics: room_id -> {handle_id: SubscriptionHandle}
                Example: {"general": {"a1b2": handle1, "c3d4": handle2}}

        owners: (owner, room_id) -> SubscriptionHandle
                An owner (one connection) holds at most one subscription per
                room; subscribing again replaces the previous one.

    Concurrency:
        Mutations and the subscriber snapshot taken by ``publish`` happen
        under a short-lived lock. Delivery to the snapshot happens outside
        the lock and never waits: a channel whose queue is full is dropped
        from the registry and closed with ``SlowConsumerDropped``.

    Authorization is not checked here; callers decide who may subscribe.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self.topics: Dict[str, Dict[str, SubscriptionHandle]] = {}
        self.owners: Dict[Tuple[str, str], SubscriptionHandle] = {}
        self.dropped_count = 0
        self._lock = threading.Lock()

    def new_channel(
        self, on_close: Optional[Callable[[Optional[Exception]], None]] = None
    ) -> DeliveryChannel:
        return DeliveryChannel(self.queue_size, on_close=on_close)

    def subscribe(
        self,
        room_id: str,
        channel: Optional[DeliveryChannel] = None,
        owner: Optional[str] = None,
    ) -> SubscriptionHandle:
        """
        Register ``channel`` for ``room_id``.

        Args:
            room_id: Topic to subscribe to; no prior subscribers required
            channel: Channel to deliver into (a new bounded one by default)
            owner: Connection identifier; a previous subscription by the same
                   owner to the same room is released and its channel closed

        Returns:
            SubscriptionHandle to pass to ``unsubscribe``
        """
        handle = SubscriptionHandle(
            room_id=room_id,
            owner=owner or uuid.uuid4().hex,
            channel=channel or self.new_channel(),
        )
        with self._lock:
            replaced = self.owners.pop((handle.owner, room_id), None)
            if replaced is not None:
                self._remove_locked(replaced)
            self.topics.setdefault(room_id, {})[handle.id] = handle
            self.owners[(handle.owner, room_id)] = handle
            count = len(self.topics[room_id])

        if replaced is not None:
            replaced.channel.close()
            logger.info("↻ Replaced subscription %s on room=%s", replaced.id, room_id)
        logger.info("→ Subscribed %s to room=%s (%d subscribers)", handle.owner, room_id, count)
        return handle

    def unsubscribe(self, handle: Optional[SubscriptionHandle]) -> bool:
        """Release a subscription. Unknown or already released handles are a no-op."""
        if handle is None:
            return False
        with self._lock:
            removed = self._remove_locked(handle)
        if not removed:
            return False
        handle.channel.close()
        logger.info("← Unsubscribed %s from room=%s", handle.owner, handle.room_id)
        return True

    def publish(self, room_id: str, event: Any) -> int:
        """
        Deliver ``event`` to every channel subscribed to ``room_id`` right now.

        Returns:
            Number of channels that accepted the event. Zero subscribers is
            not an error.
        """
        with self._lock:
            handles = list(self.topics.get(room_id, {}).values())

        if not handles:
            logger.debug("[routing] Skipped publish: room=%s has 0 subscribers", room_id)
            return 0

        delivered = 0
        for handle in handles:
            try:
                accepted = handle.channel.offer(event)
            except Exception:
                logger.exception("Delivery to %s on room=%s failed", handle.owner, room_id)
                accepted = False
            if accepted:
                delivered += 1
            else:
                self.drop(handle)

        logger.debug("📨 Published to room=%s: %d/%d subscribers", room_id, delivered, len(handles))
        return delivered

    def drop(self, handle: SubscriptionHandle) -> None:
        """Force a subscriber out: unregister it and close its channel with ``SlowConsumerDropped``."""
        with self._lock:
            removed = self._remove_locked(handle)
        if not removed:
            return
        self.dropped_count += 1
        handle.channel.close(
            SlowConsumerDropped("Delivery queue overflowed", room_id=handle.room_id)
        )
        logger.warning(
            "✗ Dropped slow consumer %s from room=%s (capacity %d)",
            handle.owner,
            handle.room_id,
            handle.channel.capacity,
        )

    def _remove_locked(self, handle: SubscriptionHandle) -> bool:
        subscribers = self.topics.get(handle.room_id)
        if not subscribers or subscribers.get(handle.id) is not handle:
            return False
        del subscribers[handle.id]
        if not subscribers:
            del self.topics[handle.room_id]
        if self.owners.get((handle.owner, handle.room_id)) is handle:
            del self.owners[(handle.owner, handle.room_id)]
        return True

    # ------------------------------------------------------------------
    # Introspection (health / metrics)
    # ------------------------------------------------------------------

    def subscriber_count(self, room_id: str) -> int:
        with self._lock:
            return len(self.topics.get(room_id, {}))

    def subscription_count(self) -> int:
        with self._lock:
            return sum(len(subs) for subs in self.topics.values())

    def active_topics(self) -> List[str]:
        with self._lock:
            return list(self.topics.keys())

    def handles_for(self, owner: str) -> List[SubscriptionHandle]:
        with self._lock:
            return [h for (o, _), h in self.owners.items() if o == owner]
