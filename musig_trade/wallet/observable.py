"""Hash map whose entries can be watched as async streams."""

import asyncio
import logging
import threading
from typing import AsyncIterator, Generic, Hashable, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


_EMPTY = object()


class _Observer:
    """Holds the newest value not yet read; an unread older value is replaced."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self._pending = _EMPTY
        self._ready = asyncio.Event()

    def deliver(self, value) -> None:
        # Runs on self.loop
        self._pending = value
        self._ready.set()

    def notify(self, value) -> bool:
        try:
            self.loop.call_soon_threadsafe(self.deliver, value)
        except RuntimeError:
            # Event loop already closed
            return False
        return True

    async def next(self):
        await self._ready.wait()
        self._ready.clear()
        value, self._pending = self._pending, _EMPTY
        return value


class ObservableHashMap(Generic[K, V]):
    """
    Map that pushes changes of a key to the streams observing it.

    Mutations may come from any thread; each observer is woken on its own
    event loop.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[K, V] = {}
        self._observers: dict[K, list[_Observer]] = {}

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            return self._entries.get(key)

    def insert(self, key: K, value: V) -> None:
        with self._lock:
            if self._entries.get(key) == value:
                return
            self._entries[key] = value
            self._notify(key, value)

    def remove(self, key: K) -> None:
        with self._lock:
            if self._entries.pop(key, None) is not None:
                self._notify(key, None)

    def sync(self, entries: Iterable[tuple[K, V]]) -> None:
        """Replace the whole map, notifying only the keys that changed."""
        new_entries = dict(entries)
        with self._lock:
            for key in self._entries.keys() - new_entries.keys():
                del self._entries[key]
                self._notify(key, None)
            for key, value in new_entries.items():
                if self._entries.get(key) != value:
                    self._entries[key] = value
                    self._notify(key, value)

    def observer_count(self, key: Optional[K] = None) -> int:
        with self._lock:
            if key is not None:
                return len(self._observers.get(key, ()))
            return sum(len(observers) for observers in self._observers.values())

    async def observe(self, key: K) -> AsyncIterator[Optional[V]]:
        """
        Yield the current value of ``key``, then its changes.

        A consumer that falls behind sees only the latest value, never a
        backlog.
        """
        observer = _Observer(asyncio.get_running_loop())
        with self._lock:
            self._observers.setdefault(key, []).append(observer)
            observer.deliver(self._entries.get(key))
        try:
            while True:
                yield await observer.next()
        finally:
            with self._lock:
                observers = self._observers.get(key, [])
                if observer in observers:
                    observers.remove(observer)
                if not observers:
                    self._observers.pop(key, None)
            logger.debug(f"Observer stream dropped for key {key}")

    def _notify(self, key: K, value: Optional[V]) -> None:
        # Caller holds self._lock
        observers = self._observers.get(key)
        if not observers:
            return
        live = [observer for observer in observers if observer.notify(value)]
        if live:
            self._observers[key] = live
        else:
            del self._observers[key]
