import logging
import threading
from typing import Type, Callable, List, Dict, Any, Optional
from hlsq.domain.events import Event

class EventBus:
    """A simple synchronous event bus for decoupled communication.

    Publishing is safe from dispatcher worker threads; callbacks run on the
    publishing thread.
    """

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Callable[[Any], None]]] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def subscribe(self, event_type: Type[Event], callback: Optional[Callable[[Any], None]] = None):
        """Subscribes a callback to a specific event type. Can be used as a decorator."""
        if callback is None:
            def decorator(func: Callable[[Any], None]):
                self.subscribe(event_type, func)
                return func
            return decorator

        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

    def publish(self, event: Event):
        """Publishes an event to all interested subscribers.

        A failing subscriber is logged and does not stop delivery to the others.
        """
        with self._lock:
            callbacks = list(self._subscribers.get(type(event), []))
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                self.logger.error(f"Event subscriber failed for {type(event).__name__}: {e}")
