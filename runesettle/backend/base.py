"""Contracts of the external services the settlement engine consumes.

We do not build, sign or broadcast Bitcoin transactions ourselves. Key custody, transaction building and the price oracle live behind these interfaces. Implementations are picked in the ``backends`` configuration section, see :py:mod:`runesettle.configure`.

The amounts are in satoshis as int and the fee rates in sat/vB as Decimal.
"""

import abc


class TransactionNotFound(Exception):
    """The chain query service cannot see the transaction, neither in mempool nor in a block."""


class SigningService(abc.ABC):
    """Builds and signs the settlement transaction."""

    @abc.abstractmethod
    def sign(self, descriptor):
        """Build and sign a transaction.

        :param descriptor: Dict with ``job_id``, ``outputs`` (list of dicts with ``request_id``, ``address``, ``rune_key``, ``amount``), ``fee_rate``, ``fee_sats`` and ``tx_size_vb``

        :return: Signed raw transaction as bytes

        :raise runesettle.models.SigningError: Insufficient funds, missing keys, signer unreachable
        """


class BroadcastService(abc.ABC):
    """Pushes signed transactions to the Bitcoin network."""

    @abc.abstractmethod
    def broadcast(self, signed_tx):
        """Broadcast a signed transaction.

        :param signed_tx: Raw transaction bytes from :py:meth:`SigningService.sign`

        :return: txid as hex string

        :raise runesettle.models.BroadcastError: ``FeeTooLow`` or ``DoubleSpend`` for rejections, ``NodeUnreachable`` for connectivity problems
        """


class ChainQueryService(abc.ABC):
    """Reads the state of a transaction from the chain."""

    @abc.abstractmethod
    def get_confirmations(self, txid):
        """How many blocks deep the transaction is.

        :return: 0 for mempool transactions, otherwise the confirmation count

        :raise TransactionNotFound: The transaction is not known anymore
        """


class PriceOracle(abc.ABC):

    @abc.abstractmethod
    def get_btc_usd_rate(self):
        """:return: USD price of one bitcoin as Decimal"""


class FeeTierOracle(abc.ABC):

    @abc.abstractmethod
    def get_current_tiers(self):
        """:return: :py:class:`runesettle.fees.FeeTiers`"""


#: Backend roles and the interface each must implement
ROLES = {
    "signer": SigningService,
    "broadcaster": BroadcastService,
    "chain": ChainQueryService,
    "price_oracle": PriceOracle,
    "fee_oracle": FeeTierOracle,
}
