"""In-process Python event handling.

Run a Python function each time a settlement changes status. The function runs in the thread which made the change, so keep it quick.

Configuration options

:param class: Always ``runesettle.event.python.InProcessEventHandler``.

:param callback: A dotted name to Python callback function fn(event_name, data). ``event_name`` is a string, ``data`` is a dict. A callable is accepted too when configuring from Python code.

"""
import logging

from zope.dottedname.resolve import resolve

from .base import EventHandler

logger = logging.getLogger(__name__)


class InProcessEventHandler(EventHandler):

    def __init__(self, callback):
        self.callback = callback

    def resolve_callback(self):
        if callable(self.callback):
            return self.callback
        return resolve(self.callback)

    def trigger(self, event_name, data):
        assert type(event_name) == str
        func = self.resolve_callback()
        func(event_name, data)

    def __str__(self):
        return "InProcessEventHandler {}".format(self.callback)
