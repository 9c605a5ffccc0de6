"""mempool.space / Esplora HTTP backends.

Fee tiers, transaction status and broadcasting through the public `mempool.space REST API <https://mempool.space/docs/api/rest>`_. Any Esplora compatible server works, e.g. blockstream.info.

Configuration options

:param class: ``runesettle.backend.mempool.MempoolFeeTierOracle``, ``MempoolChainQuery`` or ``MempoolBroadcaster``

:param url: API root, default ``https://mempool.space``. Use ``https://mempool.space/testnet`` for testnet.

:param timeout: Seconds to wait for an answer, default 10
"""

import logging

import requests

from . import base
from ..fees import FeeTiers
from ..models import BroadcastError
from ..models import DoubleSpend
from ..models import FeeTooLow
from ..models import NodeUnreachable


logger = logging.getLogger(__name__)

URL = "https://mempool.space"

#: Substrings of node rejection messages and what they mean for us
FEE_REJECTIONS = ("min relay fee not met", "mempool min fee not met", "insufficient fee")

DOUBLE_SPEND_REJECTIONS = ("txn-mempool-conflict", "bad-txns-inputs-missingorspent", "missing-inputs", "insufficient priority")


class MempoolAPIError(Exception):
    pass


class MempoolClient:
    """Thin wrapper around the Esplora REST API."""

    def __init__(self, url=URL, timeout=10):
        self.url = url.rstrip("/")
        self.timeout = float(timeout)
        self.session = requests.Session()

    def get(self, path):
        r = self.session.get(self.url + path, timeout=self.timeout)
        return r

    def post(self, path, data):
        r = self.session.post(self.url + path, data=data, timeout=self.timeout)
        return r

    def get_json(self, path):
        r = self.get(path)
        if r.status_code != 200:
            logger.error("Bad reply from %s%s: %d %s", self.url, path, r.status_code, r.text)
            raise MempoolAPIError("{} returned {}".format(path, r.status_code))
        return r.json()


class MempoolFeeTierOracle(base.FeeTierOracle):
    """Recommended fees: economy is our slow tier, half hour medium and fastest fast."""

    def __init__(self, url=URL, timeout=10):
        self.client = MempoolClient(url, timeout)

    def get_current_tiers(self):
        data = self.client.get_json("/api/v1/fees/recommended")
        return FeeTiers(slow=data["economyFee"], medium=data["halfHourFee"], fast=data["fastestFee"])


class MempoolChainQuery(base.ChainQueryService):

    def __init__(self, url=URL, timeout=10):
        self.client = MempoolClient(url, timeout)

    def get_tip_height(self):
        r = self.client.get("/api/blocks/tip/height")
        if r.status_code != 200:
            raise MempoolAPIError("Could not get the chain tip: {}".format(r.status_code))
        return int(r.text.strip())

    def get_confirmations(self, txid):
        r = self.client.get("/api/tx/{}/status".format(txid))

        if r.status_code in (400, 404):
            raise base.TransactionNotFound(txid)

        if r.status_code != 200:
            raise MempoolAPIError("Could not get the status of {}: {}".format(txid, r.status_code))

        status = r.json()
        if not status.get("confirmed"):
            return 0

        return max(self.get_tip_height() - status["block_height"] + 1, 0)


class MempoolBroadcaster(base.BroadcastService):
    """POST the raw transaction hex to ``/api/tx``."""

    def __init__(self, url=URL, timeout=10):
        self.client = MempoolClient(url, timeout)

    def broadcast(self, signed_tx):
        raw_hex = signed_tx.hex() if isinstance(signed_tx, bytes) else signed_tx

        try:
            r = self.client.post("/api/tx", raw_hex)
        except requests.RequestException as e:
            raise NodeUnreachable(str(e)) from e

        if r.status_code == 200:
            # mempool.space returns the txid as plain text
            return r.text.strip()

        if r.status_code >= 500:
            raise NodeUnreachable("{} {}".format(r.status_code, r.text))

        raise classify_rejection(r.text)


def classify_rejection(message):
    """Map a node rejection message to our broadcast error.

    :return: Exception instance
    """
    lowered = (message or "").lower()
    if any(m in lowered for m in FEE_REJECTIONS):
        return FeeTooLow(message)
    if any(m in lowered for m in DOUBLE_SPEND_REJECTIONS):
        return DoubleSpend(message)
    return BroadcastError(message)
