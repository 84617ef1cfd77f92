from collections import defaultdict
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from .logging_utils import get_logger


EventHandler = Callable[[str, Dict[str, Any]], None]

WILDCARD = '*'


class EventBus:
    """In-process publish/subscribe channel handed to job handlers and managers.

    Subscriber failures are logged and never reach the publisher.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._lock = Lock()
        self.logger = get_logger('events')

    def subscribe(self, event_type: str, handler: EventHandler):
        with self._lock:
            self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler):
        with self._lock:
            if handler in self._subscribers.get(event_type, []):
                self._subscribers[event_type].remove(handler)

    def publish(self, event_type: str, data: Optional[Dict[str, Any]] = None):
        payload = data or {}
        with self._lock:
            handlers = list(self._subscribers.get(event_type, [])) + list(self._subscribers.get(WILDCARD, []))

        self.logger.debug(f"Publishing {event_type}: {payload}")
        for handler in handlers:
            try:
                handler(event_type, payload)
            except Exception as e:
                self.logger.error(f"Subscriber for {event_type} failed: {e}", exc_info=True)
