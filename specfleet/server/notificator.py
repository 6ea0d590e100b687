"""Live event fan-out to connected listeners."""

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Set

from specfleet.common import EventType
from specfleet.config import settings
from specfleet.schema.serialization import format_time, utc_now

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "global"


class Listener(Protocol):
    """Anything able to receive a JSON message, e.g. a FastAPI WebSocket."""

    async def send_json(self, data: Any) -> None: ...


class _Subscription:
    def __init__(self, connection: Listener, max_queue_size: int):
        self.connection = connection
        self.channels: Set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.sender: Optional[asyncio.Task] = None


class Notificator:
    """Fans lifecycle events out to the global channel and per-taskset channels.

    Each listener owns a bounded queue drained by its own sender task, so
    ``publish`` never awaits a listener. Delivery is at most once: an event that
    does not fit in a full queue is dropped, and a listener whose send fails
    or times out is closed.
    """

    def __init__(self, send_timeout: Optional[float] = None, max_queue_size: int = 1000):
        self.send_timeout = send_timeout if send_timeout is not None else settings.notification_send_timeout
        self.max_queue_size = max_queue_size
        self._subscriptions: Dict[int, _Subscription] = {}
        self._channels: Dict[str, Set[int]] = {}

    def listen(self, connection: Listener, taskset: Optional[str] = None) -> None:
        """Register ``connection`` on the global channel or on one taskset channel."""
        channel = taskset or GLOBAL_CHANNEL
        sub = self._subscriptions.get(id(connection))
        if sub is None:
            sub = _Subscription(connection, self.max_queue_size)
            sub.sender = asyncio.get_running_loop().create_task(self._send_loop(sub))
            self._subscriptions[id(connection)] = sub
        sub.channels.add(channel)
        self._channels.setdefault(channel, set()).add(id(connection))
        logger.info(f"Listener joined {channel}. Listeners: {len(self._channels[channel])}")

    def close(self, connection: Listener) -> None:
        """Detach ``connection`` from every channel. Closing twice is a no-op."""
        sub = self._subscriptions.pop(id(connection), None)
        if sub is None:
            return
        for channel in sub.channels:
            members = self._channels.get(channel)
            if members is None:
                continue
            members.discard(id(connection))
            if not members:
                del self._channels[channel]
        if sub.sender is not None and sub.sender is not asyncio.current_task():
            sub.sender.cancel()
        while not sub.queue.empty():
            sub.queue.get_nowait()
            sub.queue.task_done()
        logger.info(f"Listener closed. Remaining: {len(self._subscriptions)}")

    def listeners(self, taskset: Optional[str] = None) -> int:
        return len(self._channels.get(taskset or GLOBAL_CHANNEL, ()))

    def publish(self, event_type: EventType, taskset: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Queue an event for the global channel and the taskset's channel."""
        event = {
            "type": event_type.value,
            "taskset": taskset,
            "data": data or {},
            "timestamp": format_time(utc_now()),
        }
        targets = set(self._channels.get(GLOBAL_CHANNEL, ()))
        if taskset:
            targets |= self._channels.get(taskset, set())

        for conn_id in targets:
            sub = self._subscriptions.get(conn_id)
            if sub is None:
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Listener queue full, dropping {event_type.value} event")
        return event

    async def drain(self) -> None:
        """Wait until every queued event was handed to its listener or dropped."""
        for sub in list(self._subscriptions.values()):
            await sub.queue.join()

    async def shutdown(self) -> None:
        for sub in list(self._subscriptions.values()):
            self.close(sub.connection)

    async def _send_loop(self, sub: _Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                await asyncio.wait_for(sub.connection.send_json(event), timeout=self.send_timeout)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                logger.warning("Listener send timeout, closing listener")
                self.close(sub.connection)
                return
            except Exception as e:
                logger.error(f"Error notifying listener: {e}")
                self.close(sub.connection)
                return
            finally:
                sub.queue.task_done()

