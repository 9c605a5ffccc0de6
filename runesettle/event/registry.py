import logging
import threading


logger = logging.getLogger(__name__)


class EventHandlerRegistry:
    """Maintain list of active event handlers.
    """

    def __init__(self):
        self.registry = {}
        self.lock = threading.Lock()

    def register(self, name, handler):
        """Register a handler to be fired for settlement events.

        :param name: Any name you can refer later

        :param handler: Instance of :py:class:`runesettle.event.base.EventHandler`.
        """
        with self.lock:
            self.registry[name] = handler

    def unregister(self, name):
        with self.lock:
            self.registry.pop(name, None)

    def get_all(self):
        with self.lock:
            return list(self.registry.values())

    def clear(self):
        with self.lock:
            self.registry.clear()

    def trigger(self, event_name, data):
        """Post an event to all listeners.

        If any of the event handlers fails with an exception, log the exception and continue processing the event.
        """
        handlers = self.get_all()
        for instance in handlers:
            logger.debug("Posting event %s to event handler %s", event_name, instance)
            try:
                instance.trigger(event_name, data)
            except Exception as e:
                # Do not let the event handler take us down
                logger.error("Error calling event handler %s for event %s", instance, event_name)
                logger.exception(e)

        if len(handlers) == 0:
            logger.warning("No registered event handlers for %s", event_name)
