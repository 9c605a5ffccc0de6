"""Tunables of the settlement engine.

Read from the ``settlement`` section of the configuration, see :py:mod:`runesettle.configure`. Every value has a default.
"""

from decimal import Decimal

from .bitcoin.address import MAINNET
from .bitcoin.address import normalize_network


class Settings:

    #: Bitcoin network destination addresses must belong to
    network = MAINNET

    #: Confirmations after which a settlement is final
    required_confirmations = 6

    #: Virtual size of a single settlement transaction
    tx_size_vb = 250

    #: Virtual size each additional batch output adds
    output_size_vb = 43

    batch_target_size = 10

    batch_max_wait_ms = 3600 * 1000

    #: Hard timeout of one broadcast, retries included
    broadcast_timeout = 30

    broadcast_max_attempts = 3

    #: First retry delay in seconds, doubled on every retry
    broadcast_backoff = 1.0

    confirmation_poll_interval = 60

    unobservable_timeout = 3600

    max_horizon = 24 * 3600

    #: Resubmitting the same idempotency key inside this window returns the existing settlement
    idempotency_window = 7 * 24 * 3600

    #: Scheduled settlements are sent at the latest after this many seconds, low fees or not
    scheduled_max_delay = 24 * 3600

    min_fee_rate = Decimal(1)

    max_fee_rate = Decimal(200)

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if key.startswith("_") or not hasattr(Settings, key) or callable(getattr(Settings, key)):
                raise ValueError("Unknown settlement setting {}".format(key))
            default = getattr(Settings, key)
            setattr(self, key, self.coerce(key, default, value))

    @staticmethod
    def coerce(key, default, value):
        if key == "network":
            return normalize_network(value)
        if isinstance(default, Decimal):
            return Decimal(str(value))
        if isinstance(default, float):
            return float(value)
        if isinstance(default, int):
            return int(value)
        return value

    @classmethod
    def from_dict(cls, data):
        return cls(**(data or {}))

    def to_dict(self):
        return {key: getattr(self, key) for key in dir(Settings) if not key.startswith("_") and not callable(getattr(Settings, key))}
