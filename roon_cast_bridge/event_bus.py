import logging
from typing import Any, Callable, Dict, List, Optional

_LOGGER = logging.getLogger(__name__)


class EventBus:
    """A simple synchronous publish/subscribe event bus."""

    def __init__(self):
        # A dictionary to hold listeners for specific string topics
        self.topics: Dict[str, List[Callable[[Any], None]]] = {}

    def subscribe(self, topic: str, listener: Callable[[Any], None]) -> None:
        """
        Subscribes a listener to a topic.
        """
        if topic not in self.topics:
            self.topics[topic] = []
        self.topics[topic].append(listener)

    def unsubscribe(self, topic: str, listener: Callable[[Any], None]) -> None:
        listeners = self.topics.get(topic)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def publish(self, topic: str, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Publishes an event to all subscribed listeners.

        Each listener receives its own shallow copy of ``data`` tagged with
        ``__topic``. Listener failures are logged and never reach the publisher.
        """
        if data is None:
            data = {}

        # Copy so the list can change while we iterate (e.g. a listener unsubscribes)
        listeners = list(self.topics.get(topic, []))
        for listener in listeners:
            event = dict(data)
            event["__topic"] = topic
            try:
                listener(event)
            except Exception:
                _LOGGER.exception("Error in event listener for topic %s", topic)

# Client helpers for subscriptions

def subscribe(func: Callable) -> Callable:
    """Decorator to mark a method for event bus subscription."""
    func._event_bus_subscribe = True
    return func

class EventHandler:
    """
    A base class for components that subscribe to events.

    Subclasses call ``_subscribe_all_methods()`` once their own state is set
    up; every method decorated with ``@subscribe`` is registered under a topic
    equal to the method name.
    """
    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus

    def _subscribe_all_methods(self):
        """Finds and subscribes all methods decorated with @subscribe."""
        for method_name in dir(self):
            method = getattr(self, method_name)

            if hasattr(method, '_event_bus_subscribe'):
                # The topic is the name of the method itself.
                self.event_bus.subscribe(method_name, method)
                _LOGGER.debug("Subscribed method '%s' to topic '%s'", method_name, method_name)
