"""Event handlers and subscriptions."""

import datetime
import json
import unittest
from decimal import Decimal
from unittest.mock import patch
from unittest.mock import Mock

from ..event import events
from ..event.base import event_json_dumps
from ..event.registry import EventHandlerRegistry
from ..event.python import InProcessEventHandler
from ..event.http import HTTPEventHandler
from ..event.subscription import SubscriptionHub


#: Filled by the dotted name callback
received = []


def collect(event_name, data):
    received.append((event_name, data))


def make_event(sequence, to_status, request_id=1, from_status=None, **kwargs):
    return events.settlementupdate(request_id, "alice", "840000:1", 100, sequence, from_status, to_status, **kwargs)


class EventDataTestCase(unittest.TestCase):

    def test_failed_needs_reason(self):
        with self.assertRaises(AssertionError):
            make_event(3, "failed", from_status="signing")

    def test_unknown_status(self):
        with self.assertRaises(AssertionError):
            make_event(2, "lost")

    def test_json(self):
        data = make_event(1, "queued", created_at=datetime.datetime(2024, 5, 1, 12, 0), fee_rate=Decimal("10.5"))
        decoded = json.loads(event_json_dumps(data))
        self.assertEqual(decoded["created_at"], "2024-05-01T12:00:00")
        self.assertEqual(decoded["fee_rate"], "10.5")
        self.assertEqual(decoded["request_id"], 1)


class RegistryTestCase(unittest.TestCase):

    def setUp(self):
        del received[:]

    def test_dotted_name_callback(self):
        registry = EventHandlerRegistry()
        registry.register("python", InProcessEventHandler("runesettle.tests.test_event_handler.collect"))
        registry.trigger("settlementupdate", make_event(1, "queued"))
        self.assertEqual(len(received), 1)
        self.assertEqual(received[0][1]["to_status"], "queued")

    def test_failing_handler_does_not_stop_others(self):
        registry = EventHandlerRegistry()

        def explode(event_name, data):
            raise RuntimeError("Boom")

        registry.register("a", InProcessEventHandler(explode))
        registry.register("b", InProcessEventHandler(collect))
        registry.trigger("settlementupdate", make_event(1, "queued"))
        self.assertEqual(len(received), 1)

    def test_unregister(self):
        registry = EventHandlerRegistry()
        registry.register("b", InProcessEventHandler(collect))
        registry.unregister("b")
        registry.unregister("never-there")
        registry.trigger("settlementupdate", make_event(1, "queued"))
        self.assertEqual(received, [])


class HTTPEventHandlerTestCase(unittest.TestCase):

    def test_post(self):
        handler = HTTPEventHandler("http://localhost:10000", timeout=3)
        data = make_event(1, "queued", created_at=datetime.datetime(2024, 5, 1, 12, 0))

        with patch("requests.post", return_value=Mock(status_code=200)) as post:
            handler.trigger("settlementupdate", data)

        args, kwargs = post.call_args
        self.assertEqual(args[0], "http://localhost:10000")
        self.assertEqual(kwargs["timeout"], 3.0)
        self.assertEqual(kwargs["data"]["event_name"], "settlementupdate")
        self.assertEqual(json.loads(kwargs["data"]["data"])["to_status"], "queued")

    def test_hook_down(self):
        handler = HTTPEventHandler("http://localhost:10000")
        with patch("requests.post", return_value=Mock(status_code=500)):
            # Logged, not raised
            handler.trigger("settlementupdate", make_event(1, "queued"))


class SubscriptionTestCase(unittest.TestCase):

    def setUp(self):
        self.hub = SubscriptionHub()

    def test_live_before_replay(self):
        """Live events racing the history read come out once and in order."""
        subscription = self.hub.subscribe(1)

        # Arrives while the history is being read
        self.hub.trigger("settlementupdate", make_event(3, "broadcasting", from_status="signing"))

        history = [make_event(1, "queued"), make_event(2, "signing", from_status="queued"), make_event(3, "broadcasting", from_status="signing")]
        subscription.replay(history)

        self.hub.trigger("settlementupdate", make_event(4, "confirming", from_status="broadcasting"))
        self.hub.trigger("settlementupdate", make_event(5, "confirmed", from_status="confirming"))

        self.assertEqual([e["sequence"] for e in subscription], [1, 2, 3, 4, 5])
        self.assertEqual(self.hub.get_subscriptions(1), [])

    def test_other_requests_ignored(self):
        subscription = self.hub.subscribe(1)
        subscription.replay([])
        self.hub.trigger("settlementupdate", make_event(1, "queued", request_id=2))
        self.hub.trigger("confirmationupdate", events.confirmationupdate(1, "alice", "aa" * 32, 1, 6))
        self.assertIsNone(subscription.get(timeout=0.05))

    def test_many_subscribers(self):
        first = self.hub.subscribe(1)
        second = self.hub.subscribe(1)
        first.replay([])
        second.replay([])

        self.hub.trigger("settlementupdate", make_event(1, "queued"))
        first.close()
        self.hub.trigger("settlementupdate", make_event(2, "failed", from_status="queued", failure_reason="cancelled"))

        self.assertEqual([e["sequence"] for e in first], [1])
        self.assertEqual([e["sequence"] for e in second], [1, 2])
