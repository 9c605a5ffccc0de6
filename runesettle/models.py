"""SQLAlchemy models for the virtual rune ledger and Bitcoin settlements.

A rune balance lives first in our off-chain ledger (:py:class:`RuneBalance`). A settlement moves part of that balance to a native, chain-confirmed Bitcoin output. Every settlement is tracked by a :py:class:`SettlementRequest` which walks through the state machine below::

    queued -> batching -> signing -> broadcasting -> confirming -> confirmed
       \\________\\__________\\____________\\_____________\\-----> failed

``confirmed`` and ``failed`` are terminal. Requests are never deleted, only archived.

Requests are mutated only through :py:class:`runesettle.ledger.SettlementLedger`, which keeps the balance holds in sync with the status.
"""

import datetime

from sqlalchemy import Column
from sqlalchemy import Integer
from sqlalchemy import BigInteger
from sqlalchemy import Numeric
from sqlalchemy import String
from sqlalchemy import Boolean
from sqlalchemy import DateTime
from sqlalchemy import ForeignKey
from sqlalchemy import Enum
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from sqlalchemy.schema import UniqueConstraint

Base = declarative_base()


def _now():
    return datetime.datetime.utcnow()


#: Settlement modes, see :py:mod:`runesettle.fees`
MODES = ("instant", "batched", "scheduled", "manual")

#: All request states in their natural order
STATUSES = ("queued", "batching", "signing", "broadcasting", "confirming", "confirmed", "failed")

TERMINAL_STATUSES = ("confirmed", "failed")

#: Allowed state machine edges. ``failed`` is reachable from every non-terminal state.
TRANSITIONS = {
    "queued": ("batching", "signing", "failed"),
    "batching": ("signing", "failed"),
    "signing": ("broadcasting", "failed"),
    "broadcasting": ("confirming", "failed"),
    "confirming": ("confirmed", "failed"),
    "confirmed": (),
    "failed": (),
}

#: Asset level lifecycle states, see :py:mod:`runesettle.tools.lifecycle`
RUNE_STATES = ("draft", "virtual", "pending", "native")


class SettlementError(Exception):
    """Base class for all errors raised by the settlement engine."""


class ValidationError(SettlementError):
    """Bad destination address, wrong network, non-positive amount or out of range fee rate.

    Raised before any balance hold is made.
    """


class InsufficientBalanceError(SettlementError):
    """The owner tried to settle more than the available virtual balance."""


class SigningError(SettlementError):
    """The signing service could not sign the settlement transaction.

    Key and availability problems rarely fix themselves, so we never retry.
    """


class BroadcastError(SettlementError):
    """The network refused our transaction.

    Subclasses tell whether it is worth to try again.
    """

    #: Transient errors are retried by :py:class:`runesettle.tools.broadcast.Broadcaster`
    transient = False

    #: Short machine readable reason stored as the request failure reason
    reason = "broadcast_rejected"


class FeeTooLow(BroadcastError):
    reason = "fee_too_low"


class DoubleSpend(BroadcastError):
    reason = "double_spend"


class NodeUnreachable(BroadcastError):
    """Node or API did not answer. Retried with a backoff."""
    transient = True
    reason = "node_unreachable"


class ConfirmationTimeoutError(SettlementError):
    """A broadcasted transaction vanished or never confirmed.

    ``reason`` is ``stale`` for evicted or never mined transactions and ``reorged`` when the transaction was seen in a block before it disappeared.
    """

    def __init__(self, reason, message=None):
        assert reason in ("stale", "reorged")
        self.reason = reason
        super().__init__(message or reason)


class BatchCoordinationError(SettlementError):
    """The batch window is already closed. Safe to retry with a new window."""


class IllegalTransition(SettlementError):
    """Somebody tried to move a request along an edge the state machine does not have."""


class UnknownSettlement(SettlementError):
    """No settlement request with the given id."""


class RuneBalance(Base):
    """Virtual (off-chain) balance of one rune for one owner.

    ``balance`` is the amount still recorded in our ledger. ``held`` is the part of it reserved by settlements in flight. Confirmed settlements move the amount from ``balance`` to ``settled``.
    """

    __tablename__ = "rune_balance"

    id = Column(Integer, primary_key=True)

    owner_id = Column(String(255), nullable=False)

    #: Rune id as ``block:tx``
    rune_key = Column(String(64), nullable=False)

    rune_name = Column(String(255))

    balance = Column(BigInteger, default=0, nullable=False)

    held = Column(BigInteger, default=0, nullable=False)

    settled = Column(BigInteger, default=0, nullable=False)

    created_at = Column(DateTime, default=_now)

    updated_at = Column(DateTime, onupdate=_now)

    __table_args__ = (UniqueConstraint('owner_id', 'rune_key', name='_owner_rune_uc'),)

    def __init__(self, **kwargs):
        kwargs.setdefault("balance", 0)
        kwargs.setdefault("held", 0)
        kwargs.setdefault("settled", 0)
        super().__init__(**kwargs)

    @property
    def available(self):
        return self.balance - self.held

    @property
    def total(self):
        """Everything this owner ever had of the rune, virtual and native."""
        return self.balance + self.settled

    @classmethod
    def get(cls, session, owner_id, rune_key):
        return session.query(cls).filter_by(owner_id=owner_id, rune_key=rune_key).first()

    @classmethod
    def get_or_create(cls, session, owner_id, rune_key, rune_name=None):
        instance = cls.get(session, owner_id, rune_key)
        if not instance:
            instance = cls(owner_id=owner_id, rune_key=rune_key, rune_name=rune_name)
            session.add(instance)
        return instance

    def hold(self, amount):
        if self.available < amount:
            raise InsufficientBalanceError("Cannot settle {} of rune {}, available balance is {}".format(amount, self.rune_key, self.available))
        self.held += amount

    def release(self, amount):
        assert self.held >= amount, "Releasing more than held on {}".format(self)
        self.held -= amount

    def debit(self, amount):
        """The held amount became a native asset."""
        self.release(amount)
        self.balance -= amount
        self.settled += amount

    def __str__(self):
        return "BAL:{} owner:{} rune:{} balance:{} held:{} settled:{}".format(self.id, self.owner_id, self.rune_key, self.balance, self.held, self.settled)


class BatchWindow(Base):
    """A group of batched settlements sharing one Bitcoin transaction.

    Closes when ``target_size`` members have joined or ``max_wait_ms`` has passed since opening, whichever comes first.
    """

    __tablename__ = "batch_window"

    id = Column(Integer, primary_key=True)

    mode = Column(String(16), nullable=False, default="batched")

    #: Fee tier cohort, windows of different cohorts never merge
    cohort = Column(String(16), nullable=False)

    opened_at = Column(DateTime, nullable=False)

    target_size = Column(Integer, nullable=False)

    max_wait_ms = Column(BigInteger, nullable=False)

    closed = Column(Boolean, nullable=False, default=False)

    closed_at = Column(DateTime)

    #: Filled in on close
    fee_rate = Column(Numeric(12, 3))

    total_fee_sats = Column(BigInteger)

    tx_size_vb = Column(Integer)

    members = relationship("SettlementRequest", back_populates="batch_window", order_by="SettlementRequest.batch_position")

    @property
    def member_request_ids(self):
        return [m.id for m in self.members]

    def is_full(self):
        return len(self.members) >= self.target_size

    def is_due(self, now):
        return now >= self.opened_at + datetime.timedelta(milliseconds=self.max_wait_ms)

    def __str__(self):
        return "WIN:{} cohort:{} members:{}/{} closed:{} opened_at:{}".format(self.id, self.cohort, len(self.members), self.target_size, self.closed, self.opened_at)


class SettlementRequest(Base):
    """One request to move ``amount`` of a virtual rune to a Bitcoin address."""

    __tablename__ = "settlement_request"

    id = Column(Integer, primary_key=True)

    #: Caller supplied token, unique per owner
    idempotency_key = Column(String(255), nullable=False)

    owner_id = Column(String(255), nullable=False)

    rune_key = Column(String(64), nullable=False)

    rune_name = Column(String(255))

    amount = Column(BigInteger, nullable=False)

    destination_address = Column(String(127), nullable=False)

    #: Network and script type of the destination as classified on submission
    network = Column(String(8))

    script_type = Column(String(16))

    mode = Column(Enum(*MODES, name="settlement_mode"), nullable=False)

    #: sat/vB asked by the user in manual mode
    custom_fee_rate = Column(Numeric(12, 3), nullable=True)

    #: sat/vB we quoted or, for batches, the rate used on window close
    fee_rate = Column(Numeric(12, 3), nullable=True)

    #: This request's share of the network fee
    fee_sats = Column(BigInteger, nullable=True)

    status = Column(Enum(*STATUSES, name="settlement_status"), nullable=False)

    txid = Column(String(64), nullable=True)

    confirmations = Column(Integer, nullable=True)

    #: Highest confirmation count ever seen, kept when the transaction falls back to the mempool
    max_confirmations = Column(Integer, nullable=False, default=0)

    failure_reason = Column(String(255), nullable=True)

    batch_window_id = Column(Integer, ForeignKey("batch_window.id"), nullable=True)

    #: Join order inside the batch window, earliest first
    batch_position = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False)

    updated_at = Column(DateTime, nullable=False)

    #: When the network accepted the transaction
    broadcast_at = Column(DateTime, nullable=True)

    #: Last time the chain query service could see the transaction
    last_seen_at = Column(DateTime, nullable=True)

    archived_at = Column(DateTime, nullable=True)

    batch_window = relationship("BatchWindow", back_populates="members")

    status_changes = relationship("SettlementStatusChange", back_populates="request", order_by="SettlementStatusChange.sequence")

    __table_args__ = (UniqueConstraint('owner_id', 'idempotency_key', name='_owner_idempotency_key_uc'),)

    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def can_transition(self, status):
        return status in TRANSITIONS[self.status]

    def to_view(self):
        """Read-only presentation of this request for API callers."""
        return dict(
            request_id=self.id,
            idempotency_key=self.idempotency_key,
            owner_id=self.owner_id,
            rune_key=self.rune_key,
            rune_name=self.rune_name,
            amount=self.amount,
            destination_address=self.destination_address,
            network=self.network,
            script_type=self.script_type,
            mode=self.mode,
            custom_fee_rate=self.custom_fee_rate,
            fee_rate=self.fee_rate,
            fee_sats=self.fee_sats,
            status=self.status,
            txid=self.txid,
            confirmations=self.confirmations,
            failure_reason=self.failure_reason,
            batch_window_id=self.batch_window_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            broadcast_at=self.broadcast_at,
            archived_at=self.archived_at)

    def __str__(self):
        return "STL:{} owner:{} rune:{} amount:{} mode:{} status:{} txid:{} confirmations:{}".format(self.id, self.owner_id, self.rune_key, self.amount, self.mode, self.status, self.txid, self.confirmations)


class SettlementStatusChange(Base):
    """Append-only audit trail of state machine transitions.

    Late subscribers get the transitions they missed replayed from here.
    """

    __tablename__ = "settlement_status_change"

    id = Column(Integer, primary_key=True)

    request_id = Column(Integer, ForeignKey("settlement_request.id"), nullable=False)

    #: 1 for the initial ``queued`` entry, then increments by one
    sequence = Column(Integer, nullable=False)

    from_status = Column(String(16), nullable=True)

    to_status = Column(String(16), nullable=False)

    reason = Column(String(255), nullable=True)

    txid = Column(String(64), nullable=True)

    confirmations = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False)

    request = relationship("SettlementRequest", back_populates="status_changes")

    __table_args__ = (UniqueConstraint('request_id', 'sequence', name='_request_sequence_uc'),)


class RuneLifecycleRecord(Base):
    """Materialized asset-level view of one rune for one owner.

    Recomputed from the settlement requests every time one of them changes status. Never edit by hand.
    """

    __tablename__ = "rune_lifecycle"

    id = Column(Integer, primary_key=True)

    owner_id = Column(String(255), nullable=False)

    rune_key = Column(String(64), nullable=False)

    rune_name = Column(String(255))

    state = Column(Enum(*RUNE_STATES, name="rune_state"), nullable=False, default="draft")

    settled_amount = Column(BigInteger, nullable=False, default=0)

    pending_amount = Column(BigInteger, nullable=False, default=0)

    total_amount = Column(BigInteger, nullable=False, default=0)

    #: Latest confirmed settlement transaction
    native_txid = Column(String(64), nullable=True)

    updated_at = Column(DateTime)

    __table_args__ = (UniqueConstraint('owner_id', 'rune_key', name='_lifecycle_owner_rune_uc'),)

    def to_view(self):
        return dict(
            owner_id=self.owner_id,
            rune_key=self.rune_key,
            rune_name=self.rune_name,
            state=self.state,
            settled_amount=self.settled_amount,
            pending_amount=self.pending_amount,
            total_amount=self.total_amount,
            native_txid=self.native_txid,
            updated_at=self.updated_at)


class SavedAddress(Base):
    """Destination address remembered for an owner.

    Convenience only, nothing in the settlement flow depends on it.
    """

    __tablename__ = "saved_address"

    id = Column(Integer, primary_key=True)

    owner_id = Column(String(255), nullable=False)

    address = Column(String(127), nullable=False)

    label = Column(String(255))

    address_type = Column(String(16))

    network = Column(String(8))

    is_primary = Column(Boolean, nullable=False, default=False)

    use_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime)

    last_used_at = Column(DateTime)

    __table_args__ = (UniqueConstraint('owner_id', 'address', name='_owner_address_uc'),)

    def to_view(self):
        return dict(
            id=self.id,
            address=self.address,
            label=self.label,
            type=self.address_type,
            network=self.network,
            is_primary=self.is_primary,
            use_count=self.use_count,
            created_at=self.created_at,
            last_used_at=self.last_used_at)
