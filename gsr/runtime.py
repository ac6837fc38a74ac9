from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock

from .resources import ResourceKey


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class KeyStats:
    runs: int = 0
    failures: int = 0
    last_outcome: str | None = None
    last_run_at: str | None = None
    consecutive_failures: int = 0


@dataclass
class RuntimeState:
    """In-memory work-queue bookkeeping shared by the dispatcher threads.

    A key is either idle, queued, or in flight. Enqueueing a key that is in
    flight marks it dirty instead, and it is queued again when the current
    run finishes; that is what keeps reconciles of one resource serial.
    """

    lock: Lock = field(default_factory=Lock)
    queued: set[ResourceKey] = field(default_factory=set)
    in_flight: set[ResourceKey] = field(default_factory=set)
    dirty: set[ResourceKey] = field(default_factory=set)
    stats: dict[ResourceKey, KeyStats] = field(default_factory=dict)

    def offer(self, key: ResourceKey) -> bool:
        """Record a trigger. Returns True if the caller should put the key on the queue."""
        with self.lock:
            if key in self.in_flight:
                self.dirty.add(key)
                return False
            if key in self.queued:
                return False
            self.queued.add(key)
            return True

    def claim(self, key: ResourceKey) -> bool:
        """Move a dequeued key to in-flight. False if someone else already runs it."""
        with self.lock:
            self.queued.discard(key)
            if key in self.in_flight:
                self.dirty.add(key)
                return False
            self.in_flight.add(key)
            return True

    def release(self, key: ResourceKey, outcome: str, failed: bool) -> bool:
        """Finish a run. Returns True if the key was triggered meanwhile and must be queued again."""
        with self.lock:
            self.in_flight.discard(key)
            st = self.stats.setdefault(key, KeyStats())
            st.runs += 1
            st.last_outcome = outcome
            st.last_run_at = utc_now()
            if failed:
                st.failures += 1
                st.consecutive_failures += 1
            else:
                st.consecutive_failures = 0
            if key in self.dirty:
                self.dirty.discard(key)
                self.queued.add(key)
                return True
            return False

    def forget(self, key: ResourceKey) -> None:
        with self.lock:
            self.stats.pop(key, None)

    def pending(self) -> int:
        with self.lock:
            return len(self.queued) + len(self.in_flight)

    def get_stats(self, key: ResourceKey) -> KeyStats | None:
        with self.lock:
            st = self.stats.get(key)
            return KeyStats(**vars(st)) if st else None
