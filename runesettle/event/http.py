"""Send settlement events to your application as HTTP POST request.

The HTTP POST contains two fields, ``event_name`` (string) and ``data`` (JSON).

Decimals are converted to strings and datetimes to ISO 8601 for serialization.

Configuration options

:param class: Always ``runesettle.event.http.HTTPEventHandler``.

:param url: Do a HTTP POST to this URL on a new event. Example: ``http://localhost:30000``.

:param timeout: Seconds to wait for the hook to answer, default 10
"""

import logging

import requests

from .base import EventHandler
from .base import event_json_dumps

logger = logging.getLogger(__name__)


class HTTPEventHandler(EventHandler):

    def __init__(self, url, timeout=10):
        self.url = url
        self.timeout = float(timeout)

    def trigger(self, event_name, data):
        assert type(event_name) == str

        data = event_json_dumps(data)

        resp = requests.post(self.url, data=dict(event_name=event_name, data=data), timeout=self.timeout)
        if resp.status_code != 200:
            logger.error("Failed to call HTTP hook %s, status code %d", self.url, resp.status_code)
        else:
            logger.info("Succesfully called HTTP hook %s", self.url)

    def __str__(self):
        return "HTTPEventHandler {}".format(self.url)
