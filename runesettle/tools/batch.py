"""Group batched settlements into shared Bitcoin transactions.

Batched requests join the open :py:class:`runesettle.models.BatchWindow` of their fee tier cohort. A window closes when ``target_size`` members have joined or ``max_wait_ms`` has passed since it was opened, whatever happens first. Closing turns the window into one signing job: the fee is computed for a transaction paying all the members and split between them, remainder to the earliest member.

There is at most one open window per cohort. Joining and closing are serialized by the cohort lock and a window which has been closed never accepts members again.
"""

import datetime
import logging

from .. import lock
from .. import fees
from ..models import BatchWindow
from ..models import SettlementRequest
from ..models import BatchCoordinationError


logger = logging.getLogger(__name__)


#: Fee tier all batched settlements share
DEFAULT_COHORT = "medium"


def _now():
    return datetime.datetime.utcnow()


class BatchCoordinator:
    """Open, join and close batch windows."""

    def __init__(self, conflict_resolver, ledger, target_size=10, max_wait_ms=3600 * 1000, tx_size_vb=fees.DEFAULT_TX_SIZE_VB, output_size_vb=fees.OUTPUT_SIZE_VB, clock=_now):
        assert target_size >= 1
        self.conflict_resolver = conflict_resolver
        self.ledger = ledger
        self.target_size = target_size
        self.max_wait_ms = max_wait_ms
        self.tx_size_vb = tx_size_vb
        self.output_size_vb = output_size_vb
        self.clock = clock

    def cohort_lock(self, cohort):
        return lock.cohort_lock(cohort)

    def get_open_window(self, session, cohort):
        return session.query(BatchWindow).filter_by(cohort=cohort, closed=False).order_by(BatchWindow.opened_at, BatchWindow.id).first()

    def open_window(self, session, cohort):
        window = BatchWindow(cohort=cohort, mode="batched", opened_at=self.clock(), target_size=self.target_size, max_wait_ms=self.max_wait_ms, closed=False)
        session.add(window)
        session.flush()
        logger.info("Opened batch window %s for cohort %s", window.id, cohort)
        return window

    def add_member(self, session, window, request):
        """Put the request in the window.

        :raise BatchCoordinationError: The window is closed or full
        """
        if window.closed or window.is_full():
            raise BatchCoordinationError("Batch window {} does not accept members".format(window.id))

        position = len(window.members)
        request.batch_window = window
        request.batch_position = position

    def join(self, session, request, tiers, cohort=DEFAULT_COHORT):
        """Move a ``queued`` request to ``batching`` in the open window of the cohort.

        Call inside a managed transaction, holding the owner lock of the request and the cohort lock.

        :param tiers: Current fee tiers, used if joining fills the window up

        :return: List of event data to fire after commit
        """

        window = self.get_open_window(session, cohort)
        if window is None:
            window = self.open_window(session, cohort)

        try:
            self.add_member(session, window, request)
        except BatchCoordinationError:
            # Stale window, start a fresh one
            window = self.open_window(session, cohort)
            self.add_member(session, window, request)

        event_list = [self.ledger.apply(session, request, "batching", batch_window_id=window.id)]

        if window.is_full():
            event_list += self.close(session, window, tiers)

        return event_list

    def close(self, session, window, tiers):
        """Close the window and hand all members over to signing.

        Call inside a managed transaction holding the cohort lock.

        :return: List of event data to fire after commit

        :raise BatchCoordinationError: Window already closed
        """
        if window.closed:
            raise BatchCoordinationError("Batch window {} is already closed".format(window.id))

        window.closed = True
        window.closed_at = self.clock()

        members = [m for m in window.members if m.status == "batching"]
        if not members:
            logger.info("Closed empty batch window %s", window.id)
            return []

        rate = tiers.rate_for(window.cohort)
        size = fees.batch_tx_size_vb(len(members), self.tx_size_vb, self.output_size_vb)
        total = fees.total_fee(rate, size)
        shares = fees.split_fee(total, len(members))

        window.fee_rate = rate
        window.tx_size_vb = size
        window.total_fee_sats = total

        logger.info("Closing batch window %s with %d members, %d sats at %s sat/vB", window.id, len(members), total, rate)

        event_list = []
        for member, share in zip(members, shares):
            event_list.append(self.ledger.apply(session, member, "signing", fee_rate=rate, fee_sats=share))
        return event_list

    def close_window(self, window_id, tiers):
        """Close a window in its own transaction and fire the events.

        :return: Ids of the requests which moved to signing
        """

        with self.cohort_lock_for(window_id):

            @self.conflict_resolver.managed_transaction
            def _close(session):
                window = session.get(BatchWindow, window_id)
                assert window, "No batch window {}".format(window_id)
                event_list = self.close(session, window, tiers)
                return event_list

            event_list = _close()

        self.ledger.fire(event_list)
        return [e["request_id"] for e in event_list]

    def cohort_lock_for(self, window_id):

        @self.conflict_resolver.managed_transaction
        def _get_cohort(session):
            return session.get(BatchWindow, window_id).cohort

        return self.cohort_lock(_get_cohort())

    def get_due_windows(self):
        """Ids of open windows whose waiting time is over."""

        now = self.clock()

        @self.conflict_resolver.managed_transaction
        def _due(session):
            windows = session.query(BatchWindow).filter_by(closed=False).all()
            return [w.id for w in windows if w.is_due(now)]

        return _due()

    def close_due_windows(self, tiers):
        """Close every window past its maximum wait.

        :return: Ids of the requests which moved to signing
        """
        request_ids = []
        for window_id in self.get_due_windows():
            try:
                request_ids += self.close_window(window_id, tiers)
            except BatchCoordinationError:
                # Somebody filled it up meanwhile
                logger.info("Batch window %s was closed concurrently", window_id)
        return request_ids

    def get_window_members(self, session, window_id):
        return session.query(SettlementRequest).filter_by(batch_window_id=window_id).order_by(SettlementRequest.batch_position).all()
