"""
Poll Events and Event Hub

Each device publishes into its own bounded channel. A single consumer
task drains the channels round-robin and dispatches every event to the
subscribed sinks, so per-device ordering is preserved and a slow sink
applies backpressure through the bounded queues instead of piling up
callbacks.
"""

import asyncio
import inspect
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from fieldgate.common.logging_setup import get_service_logger
from fieldgate.services.device.device import Reading

logger = get_service_logger("polling.events")


@dataclass
class PollEvent:
    """Readings from one scan of one device"""
    device_id: str
    device_name: str
    readings: list[Reading]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "poll"
    full_snapshot: bool = True

    @property
    def failed(self) -> bool:
        """True when every parameter failed"""
        return bool(self.readings) and all(not r.ok for r in self.readings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "timestamp": self.timestamp.isoformat(),
            "readings": [r.to_dict() for r in self.readings],
        }


@dataclass
class ErrorEvent:
    """A scan of one device failed entirely"""
    device_id: str
    device_name: str
    error: str
    kind: str = "ConnectionError"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "poll"

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "timestamp": self.timestamp.isoformat(),
            "error": {"kind": self.kind, "message": self.error},
        }


Event = Union[PollEvent, ErrorEvent]
EventHandler = Callable[[Event], Union[Awaitable[None], None]]


def error_event_for(event: PollEvent) -> ErrorEvent:
    """Summarize a fully failed poll as an error event"""
    first = event.readings[0].error or "all parameters failed"
    kind, _, message = first.partition(": ")
    if not message:
        kind, message = "ConnectionError", first
    return ErrorEvent(
        device_id=event.device_id,
        device_name=event.device_name,
        error=message,
        kind=kind,
        timestamp=event.timestamp,
        source=event.source,
    )


class EventHub:
    """
    Per-device bounded channels with one fan-in consumer.

    Usage:
        hub = EventHub()
        hub.subscribe(cache.handle_event)
        await hub.start()
        hub.publish(event)
        ...
        await hub.stop()
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size

        self._channels: dict[str, asyncio.Queue] = {}
        self._handlers: list[EventHandler] = []
        self._ready = asyncio.Event()
        self._dispatch_lock = asyncio.Lock()
        self._consumer: asyncio.Task | None = None
        self._running = False

        self._published = 0
        self._dispatched = 0
        self._dropped = 0
        self._handler_errors = 0

    def subscribe(self, handler: EventHandler) -> None:
        """Add a sink; sync or async callables are accepted"""
        self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def channel(self, device_id: str) -> asyncio.Queue:
        """The bounded queue for ``device_id``, created on first use"""
        queue = self._channels.get(device_id)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.queue_size)
            self._channels[device_id] = queue
        return queue

    def remove_channel(self, device_id: str) -> None:
        self._channels.pop(device_id, None)

    def publish(self, event: Event) -> None:
        """
        Enqueue an event on its device channel.

        A full channel drops its oldest event so producers never block.
        """
        queue = self.channel(event.device_id)
        if queue.full():
            queue.get_nowait()
            self._dropped += 1
            logger.warning(
                f"Event channel for {event.device_name} full, dropped oldest event",
                extra={"device_id": event.device_id},
            )
        queue.put_nowait(event)
        self._published += 1
        self._ready.set()

    @property
    def pending(self) -> int:
        return sum(q.qsize() for q in self._channels.values())

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._consumer = asyncio.create_task(self._consume(), name="event-hub")
        logger.debug("Event hub started")

    async def stop(self) -> None:
        """Stop the consumer after dispatching everything already queued"""
        if not self._running:
            return
        self._running = False
        self._ready.set()
        if self._consumer is not None:
            await self._consumer
            self._consumer = None
        await self.drain()
        logger.debug("Event hub stopped")

    async def drain(self) -> int:
        """Dispatch all queued events now; returns how many were dispatched"""
        count = 0
        async with self._dispatch_lock:
            while True:
                batch = [q.get_nowait() for q in list(self._channels.values()) if not q.empty()]
                if not batch:
                    break
                for event in batch:
                    await self._dispatch(event)
                    count += 1
        return count

    async def _consume(self) -> None:
        while self._running:
            await self._ready.wait()
            self._ready.clear()
            await self.drain()

    async def _dispatch(self, event: Event) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._handler_errors += 1
                logger.error(
                    f"Event handler {getattr(handler, '__qualname__', handler)} failed: {e}",
                    extra={"device_id": event.device_id},
                )
        self._dispatched += 1

    def get_stats(self) -> dict[str, Any]:
        return {
            "channels": len(self._channels),
            "pending": self.pending,
            "published": self._published,
            "dispatched": self._dispatched,
            "dropped": self._dropped,
            "handler_errors": self._handler_errors,
        }
