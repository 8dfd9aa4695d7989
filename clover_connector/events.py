# Events - listener registry for inbound messages and local connection events
# Handlers are kept per key in registration order; once-handlers are dropped before they run

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

# Local (non-wire) event keys
ALL_MESSAGES = 'ALL_MESSAGES'
CONNECTION_OPEN = 'CONNECTION_OPEN'
CONNECTION_CLOSED = 'CONNECTION_CLOSED'
CONNECTION_ERROR = 'CONNECTION_ERROR'
HEARTBEAT_WARNING = 'HEARTBEAT_WARNING'
HEARTBEAT_ERROR = 'HEARTBEAT_ERROR'
DEVICE_ERROR = 'DEVICE_ERROR'
DEVICE_READY = 'DEVICE_READY'
DISCOVERY_TIMEOUT = 'DISCOVERY_TIMEOUT'


class Listener:
    """A registered handler; also the handle used to remove it"""

    __slots__ = ('key', 'callback', 'once', 'removed')

    def __init__(self, key: str, callback: Callable, once: bool = False):
        self.key = key
        self.callback = callback
        self.once = once
        self.removed = False

    def __repr__(self):
        return f"Listener({self.key!r}, once={self.once})"


class EventRegistry:
    """Maps an event key to an ordered list of listeners"""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, key: str, callback: Callable) -> Listener:
        listener = Listener(key, callback)
        self._listeners.setdefault(key, []).append(listener)
        return listener

    def once(self, key: str, callback: Callable) -> Listener:
        listener = Listener(key, callback, once=True)
        self._listeners.setdefault(key, []).append(listener)
        return listener

    def remove_listener(self, key: str, callback: Union[Callable, Listener]) -> bool:
        """Remove one listener by handle or callback. Removing an unknown one is a no-op."""
        listeners = self._listeners.get(key)
        if not listeners:
            return False
        for i, listener in enumerate(listeners):
            # == so that a bound method matches a fresh reference to the same method
            if listener is callback or listener.callback == callback:
                listener.removed = True
                del listeners[i]
                if not listeners:
                    del self._listeners[key]
                return True
        return False

    def remove_listeners(self, handles: Iterable[Union[Listener, Tuple[str, Callable]]]) -> int:
        """Remove a batch of listeners; returns how many were still registered"""
        removed = 0
        for handle in handles:
            if isinstance(handle, Listener):
                key, callback = handle.key, handle
            else:
                key, callback = handle
            if self.remove_listener(key, callback):
                removed += 1
        return removed

    def remove_all(self, key: Optional[str] = None):
        if key is None:
            dropped = [listener for listeners in self._listeners.values() for listener in listeners]
            self._listeners.clear()
        else:
            dropped = self._listeners.pop(key, [])
        for listener in dropped:
            listener.removed = True

    def listener_count(self, key: str) -> int:
        return len(self._listeners.get(key, ()))

    def emit(self, key: str, *args: Any) -> int:
        """Invoke every listener for key; a failing listener does not stop the others"""
        listeners = self._listeners.get(key)
        if not listeners:
            return 0

        snapshot = list(listeners)
        for listener in snapshot:
            # Removed by an earlier listener during this emit
            if listener.removed:
                continue
            if listener.once:
                self.remove_listener(key, listener)
            try:
                listener.callback(*args)
            except Exception:
                logger.exception(f"Listener for {key} failed")
        return len(snapshot)
