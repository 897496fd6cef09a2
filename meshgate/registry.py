from __future__ import annotations

import time
from dataclasses import replace
from threading import Condition, Lock
from types import MappingProxyType
from typing import Callable, Mapping

from .models import ServiceStatus


Subscriber = Callable[[ServiceStatus], None]


class ServiceRegistry:
    """Process-wide name -> ServiceStatus map.

    Writers (the supervisor) are serialised by a lock and replace the whole
    mapping on every change; readers take the current mapping reference
    without locking and never see a half-written entry.
    """

    def __init__(self) -> None:
        self._write_lock = Lock()
        self._changed = Condition(self._write_lock)
        self._entries: Mapping[str, ServiceStatus] = MappingProxyType({})
        self._subscribers: list[Subscriber] = []

    def snapshot(self) -> Mapping[str, ServiceStatus]:
        return self._entries

    def get(self, name: str) -> ServiceStatus | None:
        return self._entries.get(name)

    def publish(self, status: ServiceStatus) -> ServiceStatus:
        status = replace(status, updated_at=time.time())
        with self._write_lock:
            entries = dict(self._entries)
            entries[status.name] = status
            self._entries = MappingProxyType(entries)
            self._changed.notify_all()
            subscribers = list(self._subscribers)
        for cb in subscribers:
            cb(status)
        return status

    def remove(self, name: str) -> None:
        with self._write_lock:
            if name not in self._entries:
                return
            entries = dict(self._entries)
            entries.pop(name)
            self._entries = MappingProxyType(entries)
            self._changed.notify_all()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._write_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._write_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def wait_for(
        self,
        name: str,
        predicate: Callable[[ServiceStatus | None], bool],
        timeout: float,
    ) -> ServiceStatus | None:
        """Block until predicate(entry) holds or the timeout expires.

        Returns the entry observed last; the caller re-checks it.
        """
        deadline = time.monotonic() + timeout
        with self._changed:
            while True:
                entry = self._entries.get(name)
                if predicate(entry):
                    return entry
                left = deadline - time.monotonic()
                if left <= 0:
                    return entry
                self._changed.wait(left)
