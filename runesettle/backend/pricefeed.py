"""BTC/USD price from the CryptoCompare public API.

Configuration options

:param class: Always ``runesettle.backend.pricefeed.CryptoComparePriceOracle``

:param url: Default ``https://min-api.cryptocompare.com/data/price``

:param timeout: Seconds to wait for an answer, default 10

:param max_age: Seconds a fetched price is reused, default 300
"""

import logging
import threading
import time
from decimal import Decimal

import requests

from . import base


logger = logging.getLogger(__name__)

URL = "https://min-api.cryptocompare.com/data/price"


class PriceFeedError(Exception):
    pass


class CryptoComparePriceOracle(base.PriceOracle):

    def __init__(self, url=URL, timeout=10, max_age=300):
        self.url = url
        self.timeout = float(timeout)
        self.max_age = float(max_age)
        self.lock = threading.Lock()
        self.cached = None
        self.cached_at = None

    def fetch(self):
        r = requests.get(self.url, params=dict(fsym="BTC", tsyms="USD"), timeout=self.timeout)
        if r.status_code != 200:
            raise PriceFeedError("Price feed returned {}".format(r.status_code))

        data = r.json()
        if "USD" not in data:
            logger.error("Bad reply from price feed %s", data)
            raise PriceFeedError("Price feed did not give USD rate")

        return Decimal(str(data["USD"]))

    def get_btc_usd_rate(self):
        with self.lock:
            now = time.monotonic()
            if self.cached is None or now - self.cached_at > self.max_age:
                self.cached = self.fetch()
                self.cached_at = now
                logger.debug("Fetched BTC/USD %s", self.cached)
            return self.cached
