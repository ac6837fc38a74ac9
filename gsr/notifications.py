from __future__ import annotations

import asyncio
import secrets
import time
from threading import Lock
from typing import Any, Callable, Iterable, Protocol

from .db import log_event
from .models import GroupTopology

EVENT_INITIAL = "group-initial"
EVENT_CHANGED = "group-changed"


class SubscriberClosed(Exception):
    pass


class Subscriber(Protocol):
    id: str

    def send(self, event: str, payload: dict[str, Any]) -> None: ...

    def on_close(self, callback: Callable[[], None]) -> None: ...

    def close(self) -> None: ...


class SubscriberRegistry:
    """Copy-on-write set of subscribers.

    Writers swap in a new tuple under a lock; readers iterate whatever tuple
    was current when they started, so a broadcast never waits on a connect
    and a connect never waits on a broadcast.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._items: tuple[Subscriber, ...] = ()

    def add(self, sub: Subscriber) -> None:
        with self._lock:
            if sub not in self._items:
                self._items = self._items + (sub,)

    def remove(self, sub: Subscriber) -> None:
        with self._lock:
            self._items = tuple(s for s in self._items if s is not sub)

    def snapshot(self) -> tuple[Subscriber, ...]:
        return self._items

    def __len__(self) -> int:
        return len(self._items)


class StreamSubscriber:
    """Subscriber drained by an asyncio consumer, the HTTP event stream.

    ``send`` may be called from any thread: events are handed to the event
    loop with ``call_soon_threadsafe``, so a waiting stream holds no worker
    thread. Closes itself once ``timeout_s`` has elapsed since it was
    created, even while events keep arriving, or when more than ``maxsize``
    events are waiting; the client is expected to reconnect.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, timeout_s: float | None = None, maxsize: int = 256):
        self.id = secrets.token_hex(4)
        self._loop = loop
        self._q: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        self._maxsize = maxsize
        self._pending = 0
        self._lock = Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._closed = False
        self._expires_at = time.monotonic() + timeout_s if timeout_s else None

    @property
    def closed(self) -> bool:
        return self._closed

    def _expire_if_due(self) -> bool:
        if self._expires_at is None or time.monotonic() < self._expires_at:
            return False
        log_event("INFO", f"Subscriber {self.id} timed out")
        self.close()
        return True

    def send(self, event: str, payload: dict[str, Any]) -> None:
        with self._lock:
            if self._closed:
                raise SubscriberClosed(f"subscriber {self.id} is closed")
            if self._pending >= self._maxsize:
                raise SubscriberClosed(f"subscriber {self.id} is not keeping up")
            self._pending += 1
        try:
            self._loop.call_soon_threadsafe(self._q.put_nowait, (event, payload))
        except RuntimeError as e:
            # Event loop already closed.
            raise SubscriberClosed(f"subscriber {self.id} lost its event loop") from e

    async def next_event(self, wait_s: float) -> tuple[str, dict[str, Any]] | None:
        """Next queued event, or None after ``wait_s`` or once the subscriber expired."""
        if self._expire_if_due():
            return None
        timeout = wait_s
        if self._expires_at is not None:
            timeout = min(wait_s, self._expires_at - time.monotonic())
        try:
            item = await asyncio.wait_for(self._q.get(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            self._expire_if_due()
            return None
        with self._lock:
            self._pending -= 1
        return item

    def on_close(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._closed:
                self._callbacks.append(callback)
                return
        callback()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()


GroupSource = Callable[[], Iterable[GroupTopology]]


def cluster_group_source(cluster: Any, namespace: str) -> GroupSource:
    """Active groups (status Ready) read straight from the cluster."""

    def _source() -> list[GroupTopology]:
        return [g.topology() for g in cluster.list_groups(namespace) if g.active]

    return _source


class NotificationHub:
    """Fans server-group topology out to live subscribers."""

    def __init__(self, registry: SubscriberRegistry | None = None, group_source: GroupSource | None = None):
        self.registry = registry or SubscriberRegistry()
        self.group_source = group_source or (lambda: [])

    def subscribe(self, channel: Subscriber) -> Subscriber:
        self.registry.add(channel)
        channel.on_close(lambda: self._unregister(channel))
        log_event("INFO", f"Subscriber {channel.id} connected ({len(self.registry)} total)")
        return channel

    def _unregister(self, channel: Subscriber) -> None:
        self.registry.remove(channel)
        log_event("INFO", f"Subscriber {channel.id} disconnected ({len(self.registry)} total)")

    def publish_initial(self, channel: Subscriber) -> int:
        """Send one event per active group to a freshly connected channel."""
        sent = 0
        try:
            topologies = list(self.group_source())
        except Exception as e:
            log_event("ERROR", f"Listing groups for subscriber {channel.id} failed: {type(e).__name__}: {e}")
            channel.close()
            return sent
        for topology in topologies:
            try:
                channel.send(EVENT_INITIAL, topology.to_payload())
            except Exception as e:
                log_event("WARN", f"Initial snapshot to subscriber {channel.id} failed: {type(e).__name__}: {e}", group_name=topology.name)
                channel.close()
                return sent
            sent += 1
        return sent

    def publish_change(self, topology: GroupTopology) -> int:
        """Broadcast one group's topology. Returns the number of successful deliveries."""
        payload = topology.to_payload()
        delivered = 0
        for sub in self.registry.snapshot():
            try:
                sub.send(EVENT_CHANGED, payload)
                delivered += 1
            except Exception as e:
                log_event("WARN", f"Dropping subscriber {sub.id}: {type(e).__name__}: {e}", group_name=topology.name)
                self.registry.remove(sub)
                try:
                    sub.close()
                except Exception as close_err:
                    log_event("WARN", f"Closing subscriber {sub.id} failed: {close_err}")
        return delivered
