"""Minimal event emitter used to notify the host UI about trust changes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

LIBRARY_ADDED = "library:added"
LIBRARY_REMOVED = "library:removed"
DOMAIN_TRUST_REQUEST = "domain:trust:request"
DOMAIN_ADDED = "domain:added"
DOMAIN_REMOVED = "domain:removed"
LIBRARIES_CLEARED = "libraries:cleared"

Listener = Callable[[dict[str, object]], None]


@dataclass
class _Subscription:
    callback: Listener
    once: bool = False


class EventEmitter:
    """Synchronous publish/subscribe keyed by event name."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._events: dict[str, list[_Subscription]] = {}
        self.logger = logger or logging.getLogger(__name__)

    def on(self, event: str, callback: Listener, once: bool = False) -> Callable[[], None]:
        self._events.setdefault(event, []).append(_Subscription(callback, once))
        return lambda: self.off(event, callback)

    def once(self, event: str, callback: Listener) -> Callable[[], None]:
        return self.on(event, callback, once=True)

    def off(self, event: str, callback: Listener) -> None:
        listeners = self._events.get(event)
        if not listeners:
            return
        for index, subscription in enumerate(listeners):
            if subscription.callback is callback:
                del listeners[index]
                break
        if not listeners:
            del self._events[event]

    def emit(self, event: str, payload: dict[str, object] | None = None) -> bool:
        listeners = self._events.get(event)
        if not listeners:
            return False
        data = payload or {}
        for subscription in list(listeners):
            if subscription.once:
                self.off(event, subscription.callback)
            try:
                subscription.callback(data)
            except Exception:  # noqa: BLE001
                self.logger.exception("Listener for %s failed", event)
        return True

    def listener_count(self, event: str) -> int:
        return len(self._events.get(event, []))
