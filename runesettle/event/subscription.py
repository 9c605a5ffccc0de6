"""In-process subscriptions to the status changes of one settlement.

:py:class:`SubscriptionHub` is registered as an event handler and routes ``settlementupdate`` events to the subscriptions of the request. A subscription first gets the already persisted transitions replayed, then live ones, in ``sequence`` order and without duplicates. Iteration ends after the terminal transition.

Example::

    subscription = orchestrator.subscribe_status_changes(request_id)
    for event in subscription:
        print(event["to_status"])
"""

import logging
import queue
import threading

from ..models import TERMINAL_STATUSES
from .base import EventHandler


logger = logging.getLogger(__name__)

_CLOSED = object()


class StatusSubscription:
    """Ordered, deduplicated stream of ``settlementupdate`` events for one request."""

    def __init__(self, hub, request_id):
        self.hub = hub
        self.request_id = request_id
        self.queue = queue.Queue()
        self.lock = threading.Lock()

        # Live events arriving before the history replay are parked here
        self.pending = []
        self.replayed = False
        self.last_sequence = 0
        self.closed = False

    def deliver(self, event):
        with self.lock:
            if not self.replayed:
                self.pending.append(event)
                return
            self.queue.put(event)

    def replay(self, history):
        """Feed the persisted transitions and release the parked live events after them."""
        with self.lock:
            events = sorted(list(history) + self.pending, key=lambda e: e["sequence"])
            self.pending = []
            for event in events:
                self.queue.put(event)
            self.replayed = True

    def get(self, timeout=None):
        """Next unseen event, or ``None`` when the subscription is closed or ``timeout`` seconds passed."""
        while True:
            if self.closed and self.queue.empty():
                return None
            try:
                event = self.queue.get(timeout=timeout)
            except queue.Empty:
                return None

            if event is _CLOSED:
                return None

            if event["sequence"] <= self.last_sequence:
                # Seen in the replay already
                continue

            self.last_sequence = event["sequence"]
            if event["to_status"] in TERMINAL_STATUSES:
                self.close()
            return event

    def __iter__(self):
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self):
        if not self.closed:
            self.closed = True
            self.hub.unsubscribe(self)
            self.queue.put(_CLOSED)

    def __str__(self):
        return "StatusSubscription request:{} last_sequence:{}".format(self.request_id, self.last_sequence)


class SubscriptionHub(EventHandler):
    """Route settlement events to the per-request subscriptions."""

    def __init__(self):
        self.subscriptions = {}
        self.lock = threading.Lock()

    def subscribe(self, request_id):
        """Create a subscription. The caller must call :py:meth:`StatusSubscription.replay` with the persisted history."""
        subscription = StatusSubscription(self, request_id)
        with self.lock:
            self.subscriptions.setdefault(request_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription):
        with self.lock:
            subscriptions = self.subscriptions.get(subscription.request_id, [])
            if subscription in subscriptions:
                subscriptions.remove(subscription)
            if not subscriptions:
                self.subscriptions.pop(subscription.request_id, None)

    def get_subscriptions(self, request_id):
        with self.lock:
            return list(self.subscriptions.get(request_id, []))

    def trigger(self, event_name, data):
        if event_name != "settlementupdate":
            return

        for subscription in self.get_subscriptions(data["request_id"]):
            subscription.deliver(data)

    def __str__(self):
        return "SubscriptionHub with {} subscribed requests".format(len(self.subscriptions))
