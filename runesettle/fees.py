"""Fee estimation for settlement modes.

Each settlement mode maps to a fee tier of the fee oracle:

========== ======== ============== ==========================================
Mode       Tier     Time estimate  Fee behavior
========== ======== ============== ==========================================
instant    fast     ~10 minutes    Full fee
batched    medium   1-6 hours      Batch transaction fee split between members
scheduled  slow     6-24 hours     Executed in the next low-fee window
manual     custom   from the rate  Between 1 and 200 sat/vB
========== ======== ============== ==========================================

All amounts are satoshis as int, fee rates are sat/vB as Decimal and USD values are Decimal rounded to cents.
"""

import datetime
from decimal import Decimal
from decimal import ROUND_CEILING
from decimal import ROUND_HALF_UP

from .models import ValidationError


SATOSHIS_PER_BTC = Decimal(100000000)

#: Typical single output rune transfer transaction
DEFAULT_TX_SIZE_VB = 250

#: What each additional output adds to a batch transaction
OUTPUT_SIZE_VB = 43

MIN_FEE_RATE = Decimal(1)

MAX_FEE_RATE = Decimal(200)

TIERS = ("slow", "medium", "fast")

MODE_TIERS = {
    "instant": "fast",
    "batched": "medium",
    "scheduled": "slow",
}

TIME_ESTIMATES = {
    "instant": "~10 minutes",
    "batched": "1-6 hours",
    "scheduled": "6-24 hours",
}

LOW_FEE_WARNING = "not recommended, may not confirm"


def to_decimal(value):
    if isinstance(value, Decimal):
        return value
    # Go through str so floats do not drag their binary noise along
    return Decimal(str(value))


class FeeTiers:
    """Fee rates suggested by the fee oracle, in sat/vB."""

    def __init__(self, slow, medium, fast, fetched_at=None):
        self.slow = to_decimal(slow)
        self.medium = to_decimal(medium)
        self.fast = to_decimal(fast)
        self.fetched_at = fetched_at or datetime.datetime.utcnow()

        if min(self.slow, self.medium, self.fast) <= 0:
            raise ValueError("Fee tiers must be positive: {}".format(self))

        if not (self.slow <= self.medium <= self.fast):
            raise ValueError("Fee tiers must be ordered slow <= medium <= fast: {}".format(self))

    def rate_for(self, tier):
        assert tier in TIERS, "Unknown fee tier {}".format(tier)
        return getattr(self, tier)

    def to_dict(self):
        return dict(slow=self.slow, medium=self.medium, fast=self.fast, fetched_at=self.fetched_at)

    def __str__(self):
        return "slow:{} medium:{} fast:{}".format(self.slow, self.medium, self.fast)


class FeeEstimate:
    """Cost and time of one settlement."""

    def __init__(self, mode, fee_rate, tx_size_vb, total_fee_sats, usd_value, time_estimate, batch_size=None, fee_share_sats=None, warning=None):
        self.mode = mode
        self.fee_rate = fee_rate
        self.tx_size_vb = tx_size_vb
        self.total_fee_sats = total_fee_sats
        self.usd_value = usd_value
        self.time_estimate = time_estimate
        self.batch_size = batch_size
        self.fee_share_sats = fee_share_sats
        self.warning = warning

    def to_dict(self):
        return dict(
            mode=self.mode,
            fee_rate=self.fee_rate,
            tx_size_vb=self.tx_size_vb,
            total_fee_sats=self.total_fee_sats,
            usd_value=self.usd_value,
            time_estimate=self.time_estimate,
            batch_size=self.batch_size,
            fee_share_sats=self.fee_share_sats,
            warning=self.warning)

    def __repr__(self):
        return "<FeeEstimate {} {} sat/vB total:{} sats usd:{}>".format(self.mode, self.fee_rate, self.total_fee_sats, self.usd_value)


def total_fee(fee_rate, tx_size_vb):
    """Network fee in satoshis, rounded up."""
    assert tx_size_vb > 0
    return int((to_decimal(fee_rate) * tx_size_vb).to_integral_value(rounding=ROUND_CEILING))


def usd_value(total_fee_sats, btc_usd_rate):
    if btc_usd_rate is None:
        return None
    value = Decimal(total_fee_sats) / SATOSHIS_PER_BTC * to_decimal(btc_usd_rate)
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def batch_tx_size_vb(count, base=DEFAULT_TX_SIZE_VB, per_output=OUTPUT_SIZE_VB):
    """Virtual size of a batch transaction paying ``count`` outputs."""
    assert count >= 1
    return base + (count - 1) * per_output


def split_fee(total, count):
    """Split a batch fee between ``count`` members.

    The shares sum exactly to ``total``. The remainder goes to the earliest member.

    :return: List of ints, earliest member first
    """
    assert count >= 1
    share, remainder = divmod(total, count)
    shares = [share] * count
    shares[0] += remainder
    return shares


def check_custom_rate(rate, minimum=MIN_FEE_RATE, maximum=MAX_FEE_RATE):
    """Validate a manual mode fee rate.

    :return: The rate as Decimal

    :raise ValidationError: Missing, not a number or outside the limits
    """
    if rate is None:
        raise ValidationError("Manual mode needs a custom fee rate")

    try:
        rate = to_decimal(rate)
    except ArithmeticError:
        raise ValidationError("Custom fee rate {!r} is not a number".format(rate))

    if not rate.is_finite() or rate < to_decimal(minimum) or rate > to_decimal(maximum):
        raise ValidationError("Custom fee rate must be between {} and {} sat/vB, got {}".format(minimum, maximum, rate))

    return rate


def manual_time_estimate(rate, tiers):
    """Guess the confirmation time of a hand picked fee rate against the current tiers.

    :return: tuple (time estimate, warning or None)
    """
    if rate >= tiers.fast:
        return TIME_ESTIMATES["instant"], None
    elif rate >= tiers.medium:
        return TIME_ESTIMATES["batched"], None
    elif rate >= tiers.slow:
        return TIME_ESTIMATES["scheduled"], None
    return LOW_FEE_WARNING, LOW_FEE_WARNING


def estimate(mode, tiers, tx_size_vb=DEFAULT_TX_SIZE_VB, custom_rate=None, btc_usd_rate=None, batch_size=None, fee_limits=(MIN_FEE_RATE, MAX_FEE_RATE)):
    """Estimate what a settlement costs and how long it takes.

    :param mode: ``instant``, ``batched``, ``scheduled`` or ``manual``

    :param tiers: :py:class:`FeeTiers` from the fee oracle

    :param custom_rate: sat/vB, required for manual mode

    :param btc_usd_rate: Decimal. Without it ``usd_value`` is ``None``.

    :param batch_size: Expected members of the batch, for ``fee_share_sats`` of batched mode

    :return: :py:class:`FeeEstimate`

    :raise ValidationError: Unknown mode or bad custom rate
    """

    warning = None

    if mode == "manual":
        fee_rate = check_custom_rate(custom_rate, *fee_limits)
        time_estimate, warning = manual_time_estimate(fee_rate, tiers)
    elif mode in MODE_TIERS:
        fee_rate = tiers.rate_for(MODE_TIERS[mode])
        time_estimate = TIME_ESTIMATES[mode]
    else:
        raise ValidationError("Unknown settlement mode {!r}".format(mode))

    total = total_fee(fee_rate, tx_size_vb)

    fee_share = None
    if mode == "batched" and batch_size:
        fee_share = split_fee(total, batch_size)[0]

    return FeeEstimate(
        mode=mode,
        fee_rate=fee_rate,
        tx_size_vb=tx_size_vb,
        total_fee_sats=total,
        usd_value=usd_value(total, btc_usd_rate),
        time_estimate=time_estimate,
        batch_size=batch_size if mode == "batched" else None,
        fee_share_sats=fee_share,
        warning=warning)
