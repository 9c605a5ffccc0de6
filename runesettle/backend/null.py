"""In-memory backends doing nothing on a real network. Use for testing purposes and dry runs.

The backend configuration takes following parameters.

:param class: ``runesettle.backend.null.DummySigner``, ``DummyBroadcaster``, ``DummyChain``, ``StaticPriceOracle`` or ``StaticFeeTierOracle``
"""

import datetime
import hashlib
import threading
from decimal import Decimal

from . import base
from ..fees import FeeTiers
from ..models import SigningError
from ..event.base import event_json_dumps


class DummySigner(base.SigningService):
    """Pretends to sign by serializing the descriptor.

    :param fail: If set, every signing attempt fails with this message
    """

    def __init__(self, fail=None):
        self.fail = fail
        self.signed = []

    def sign(self, descriptor):
        if self.fail:
            raise SigningError(self.fail)
        self.signed.append(descriptor)
        return event_json_dumps(descriptor).encode("utf-8")


class DummyBroadcaster(base.BroadcastService):
    """Accepts everything unless told otherwise.

    :param outcomes: List of exceptions to raise or txids to return, consumed one per call. When exhausted, the txid is the SHA-256 of the transaction.

    :param delay: Seconds to block in each call, for testing timeouts
    """

    def __init__(self, outcomes=None, delay=0):
        self.outcomes = list(outcomes or [])
        self.delay = float(delay)
        self.attempts = []
        self.released = threading.Event()

    def broadcast(self, signed_tx):
        self.attempts.append(signed_tx)

        if self.delay:
            self.released.wait(self.delay)

        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        return hashlib.sha256(signed_tx).hexdigest()


class DummyChain(base.ChainQueryService):
    """Chain whose state the test sets by hand."""

    def __init__(self):
        self.transactions = {}

    def set_confirmations(self, txid, confirmations):
        self.transactions[txid] = confirmations

    def forget(self, txid):
        """Make the transaction vanish, like after eviction or a reorg."""
        self.transactions.pop(txid, None)

    def get_confirmations(self, txid):
        try:
            return self.transactions[txid]
        except KeyError:
            raise base.TransactionNotFound(txid)


class StaticPriceOracle(base.PriceOracle):

    def __init__(self, rate="50000"):
        self.rate = Decimal(str(rate))

    def get_btc_usd_rate(self):
        return self.rate


class StaticFeeTierOracle(base.FeeTierOracle):

    def __init__(self, slow=5, medium=10, fast=20):
        self.set_tiers(slow, medium, fast)

    def set_tiers(self, slow, medium, fast):
        # Validate early
        FeeTiers(slow, medium, fast)
        self.slow = slow
        self.medium = medium
        self.fast = fast

    def get_current_tiers(self):
        return FeeTiers(self.slow, self.medium, self.fast, fetched_at=datetime.datetime.utcnow())
