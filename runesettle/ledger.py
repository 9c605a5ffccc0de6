"""Apply settlement state machine transitions.

Every change of :py:attr:`runesettle.models.SettlementRequest.status` goes through :py:class:`SettlementLedger`. In one database transaction it

* checks the edge exists in :py:data:`runesettle.models.TRANSITIONS`,

* keeps the balance hold in sync (hold on ``queued``, release on ``failed``, debit on ``confirmed``),

* appends a :py:class:`runesettle.models.SettlementStatusChange` row,

* recomputes the rune lifecycle record.

The ``settlementupdate`` events are fired only after the transaction has been committed.
"""

import datetime
import logging

from . import lock
from .models import RuneBalance
from .models import SettlementRequest
from .models import SettlementStatusChange
from .models import IllegalTransition
from .models import UnknownSettlement
from .models import InsufficientBalanceError
from .models import TERMINAL_STATUSES
from .event import events
from .event.registry import EventHandlerRegistry


logger = logging.getLogger(__name__)


def _now():
    return datetime.datetime.utcnow()


class SettlementLedger:
    """The only writer of settlement request state."""

    def __init__(self, conflict_resolver, lifecycle, event_handler_registry=None, required_confirmations=6, clock=_now):
        """
        :param conflict_resolver: :py:class:`runesettle.utils.conflictresolver.ConflictResolver`

        :param lifecycle: :py:class:`runesettle.tools.lifecycle.RuneLifecycleManager`

        :param event_handler_registry: :py:class:`runesettle.event.registry.EventHandlerRegistry`

        :param clock: Callable returning naive UTC datetime
        """
        self.conflict_resolver = conflict_resolver
        self.lifecycle = lifecycle
        self.event_handler_registry = event_handler_registry or EventHandlerRegistry()
        self.required_confirmations = required_confirmations
        self.clock = clock

        #: Callbacks fn(request_id, status) run after a request became terminal
        self.terminal_listeners = []

    def owner_lock(self, owner_id):
        return lock.owner_lock(owner_id)

    def request_lock(self, request_id):
        return lock.request_lock(request_id)

    def get_request(self, session, request_id):
        request = session.get(SettlementRequest, request_id)
        if not request:
            raise UnknownSettlement("No settlement request {}".format(request_id))
        return request

    def _record_change(self, session, request, from_status, reason=None):
        now = self.clock()
        sequence = session.query(SettlementStatusChange).filter_by(request_id=request.id).count() + 1
        change = SettlementStatusChange(
            request_id=request.id,
            sequence=sequence,
            from_status=from_status,
            to_status=request.status,
            reason=reason,
            txid=request.txid,
            confirmations=request.confirmations,
            created_at=now)
        session.add(change)
        session.flush()

        self.lifecycle.recompute(session, request.owner_id, request.rune_key)

        return change_to_event(change, request)

    def create(self, session, owner_id, idempotency_key, rune_key, amount, destination_address, mode, **fields):
        """Insert a new ``queued`` request and hold its amount.

        Call inside a managed transaction holding the owner lock.

        :return: tuple (request, event)

        :raise InsufficientBalanceError: Not enough available virtual balance. Nothing is written.
        """
        balance = RuneBalance.get(session, owner_id, rune_key)
        if not balance:
            raise InsufficientBalanceError("{} has no virtual balance of rune {}".format(owner_id, rune_key))

        balance.hold(amount)

        now = self.clock()
        request = SettlementRequest(
            owner_id=owner_id,
            idempotency_key=idempotency_key,
            rune_key=rune_key,
            rune_name=balance.rune_name,
            amount=amount,
            destination_address=destination_address,
            mode=mode,
            status="queued",
            created_at=now,
            updated_at=now,
            **fields)
        session.add(request)
        session.flush()

        logger.info("Created settlement %s, holding %d of %s", request.id, amount, rune_key)

        return request, self._record_change(session, request, None)

    def apply(self, session, request, to_status, reason=None, **changes):
        """Move a request along one state machine edge.

        Call inside a managed transaction holding the request lock.

        :param reason: Required for ``failed``

        :param changes: Other request columns to update, like ``txid``

        :return: ``settlementupdate`` event data, to be fired after commit

        :raise IllegalTransition: The request is terminal or the edge does not exist
        """
        if reason:
            reason = reason[:255]

        if request.is_terminal():
            raise IllegalTransition("Settlement {} is already {}".format(request.id, request.status))

        if not request.can_transition(to_status):
            raise IllegalTransition("Settlement {} cannot go from {} to {}".format(request.id, request.status, to_status))

        for key, value in changes.items():
            assert hasattr(SettlementRequest, key), "Unknown settlement column {}".format(key)
            setattr(request, key, value)

        balance = RuneBalance.get(session, request.owner_id, request.rune_key)
        assert balance, "Settlement {} without balance row".format(request.id)

        if to_status == "failed":
            assert reason, "Failing settlement {} without a reason".format(request.id)
            balance.release(request.amount)
            request.failure_reason = reason
        elif to_status == "confirmed":
            assert request.txid, "Confirming settlement {} without txid".format(request.id)
            assert (request.confirmations or 0) >= self.required_confirmations
            balance.debit(request.amount)

        from_status = request.status
        request.status = to_status
        request.updated_at = self.clock()

        logger.info("Settlement %s %s -> %s %s", request.id, from_status, to_status, reason or "")

        return self._record_change(session, request, from_status, reason)

    def transition(self, request_id, to_status, reason=None, **changes):
        """Lock, apply a transition in its own transaction and fire the event.

        :return: ``settlementupdate`` event data
        """

        owner_id = self.get_owner(request_id)

        with self.owner_lock(owner_id), self.request_lock(request_id):

            @self.conflict_resolver.managed_transaction
            def _apply(session):
                request = self.get_request(session, request_id)
                return self.apply(session, request, to_status, reason, **changes)

            event = _apply()
            self.fire([event])

        return event

    def record_confirmations(self, request_id, confirmations, seen_at):
        """Store a new confirmation count of a ``confirming`` request.

        :return: ``confirmationupdate`` event data or ``None`` if nothing changed
        """

        with self.request_lock(request_id):

            @self.conflict_resolver.managed_transaction
            def _update(session):
                request = self.get_request(session, request_id)
                if request.status != "confirming":
                    return None

                request.last_seen_at = seen_at
                request.max_confirmations = max(request.max_confirmations or 0, confirmations)
                if request.confirmations == confirmations:
                    return None

                request.confirmations = confirmations
                request.updated_at = self.clock()
                return events.confirmationupdate(request.id, request.owner_id, request.txid, confirmations, self.required_confirmations)

            event = _update()

        if event:
            self.event_handler_registry.trigger("confirmationupdate", event)

        return event

    def get_owner(self, request_id):

        @self.conflict_resolver.managed_transaction
        def _get(session):
            return self.get_request(session, request_id).owner_id

        return _get()

    def credit(self, owner_id, rune_key, amount, rune_name=None):
        """Add to the virtual balance of an owner.

        :return: New available balance
        """
        assert amount > 0

        with self.owner_lock(owner_id):

            @self.conflict_resolver.managed_transaction
            def _credit(session):
                balance = RuneBalance.get_or_create(session, owner_id, rune_key, rune_name)
                if rune_name:
                    balance.rune_name = rune_name
                balance.balance += amount
                session.flush()
                self.lifecycle.recompute(session, owner_id, rune_key)
                return balance.available

            return _credit()

    def history(self, session, request_id):
        """Persisted transitions of a request as event data, oldest first."""
        request = self.get_request(session, request_id)
        return [change_to_event(c, request) for c in request.status_changes]

    def fire(self, event_list):
        """Fire ``settlementupdate`` events of committed transitions."""
        for event in event_list:
            self.event_handler_registry.trigger("settlementupdate", event)
            if event["to_status"] in TERMINAL_STATUSES:
                for listener in self.terminal_listeners:
                    listener(event["request_id"], event["to_status"])


def change_to_event(change, request):
    return events.settlementupdate(
        request_id=request.id,
        owner_id=request.owner_id,
        rune_key=request.rune_key,
        amount=request.amount,
        sequence=change.sequence,
        from_status=change.from_status,
        to_status=change.to_status,
        txid=change.txid,
        confirmations=change.confirmations,
        failure_reason=change.reason,
        created_at=change.created_at)
