"""
Realtime fanout to WebSocket subscribers.

Subscribers join rooms keyed ``ticket:<id>`` or ``instance:<name>``.
Membership lives in memory only and is rebuilt by clients on reconnect.
publish() never waits on a subscriber: delivery runs as a background
task, each send is bounded by a timeout, and a subscriber that fails or
times out is dropped from every room.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from crm_bridge.metrics import record_fanout
from crm_bridge.storage import utc_now_iso

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    async def send_json(self, data: Any) -> None: ...


def ticket_room(ticket_id: int) -> str:
    return f"ticket:{ticket_id}"


def instance_room(instance_name: str) -> str:
    return f"instance:{instance_name}"


@dataclass(frozen=True)
class RealtimeEvent:
    """A canonical event; what happened, independent of how it is broadcast."""
    name: str
    room: str
    payload: dict
    timestamp: str = field(default_factory=utc_now_iso)

    def to_message(self) -> dict:
        return {
            "event": self.name,
            "room": self.room,
            "data": self.payload,
            "timestamp": self.timestamp,
        }


class RealtimeHub:
    """Room membership plus fire-and-forget publishing."""

    def __init__(self, send_timeout: float = 2.0):
        self.send_timeout = send_timeout
        self._rooms: dict[str, set[Subscriber]] = {}
        self._tasks: set[asyncio.Task] = set()

    def join(self, subscriber: Subscriber, room: str) -> None:
        self._rooms.setdefault(room, set()).add(subscriber)
        logger.debug(f"Subscriber joined {room}")

    def leave(self, subscriber: Subscriber, room: str) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(subscriber)
        if not members:
            del self._rooms[room]

    def leave_all(self, subscriber: Subscriber) -> None:
        for room in list(self._rooms):
            self.leave(subscriber, room)

    def members(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def publish(self, event: RealtimeEvent, exclude: Optional[Subscriber] = None) -> Optional[asyncio.Task]:
        """
        Schedule delivery of one event to its room and return immediately.

        Must be called from the event loop. ``exclude`` keeps the event from
        echoing back to the subscriber that caused it. Returns the delivery
        task, or None when nobody else is listening.
        """
        subscribers = [s for s in self._rooms.get(event.room, ()) if s is not exclude]
        if not subscribers:
            return None
        task = asyncio.get_running_loop().create_task(self._deliver(event, subscribers))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def publish_all(self, events: list[RealtimeEvent]) -> None:
        for event in events:
            self.publish(event)

    async def _deliver(self, event: RealtimeEvent, subscribers: list[Subscriber]) -> None:
        message = event.to_message()
        results = await asyncio.gather(
            *(self._send(subscriber, message) for subscriber in subscribers),
            return_exceptions=True,
        )
        for subscriber, result in zip(subscribers, results):
            if isinstance(result, BaseException):
                logger.warning(
                    f"Dropping subscriber from fanout of {event.name} to {event.room}: "
                    f"{type(result).__name__}"
                )
                record_fanout("dropped")
                self.leave_all(subscriber)
            else:
                record_fanout("delivered")

    async def _send(self, subscriber: Subscriber, message: dict) -> None:
        await asyncio.wait_for(subscriber.send_json(message), timeout=self.send_timeout)

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used on shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
