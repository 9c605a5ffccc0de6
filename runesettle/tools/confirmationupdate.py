"""Follow broadcasted settlements until they are confirmed deep enough, or give up on them.

The chain query services do not push confirmation progress to us, so every ``confirming`` settlement is polled by its own interval job in the service scheduler. A poll ends in one of the outcomes

* Confirmations reached the threshold (default 6): the settlement is ``confirmed`` and the held amount debited

* Fewer confirmations: the count is stored and a ``confirmationupdate`` event fired

* The transaction cannot be seen for longer than ``unobservable_timeout``: the settlement fails with ``reorged`` if it had been seen in a block, otherwise with ``stale`` (evicted or never propagated)

* Still unconfirmed after ``max_horizon`` (default 24 hours) since the broadcast: the settlement fails with ``stale``

Polls of settlements which became terminal meanwhile are no-ops and cancel their job.

The poller jobs are set up in :py:class:`runesettle.service.main.Service`. Without a scheduler, call :py:meth:`ConfirmationTracker.poll_all` yourself.
"""

import datetime
import logging
import threading

from apscheduler.jobstores.base import JobLookupError

from ..backend.base import TransactionNotFound
from ..models import SettlementRequest
from ..models import ConfirmationTimeoutError
from ..models import IllegalTransition


logger = logging.getLogger(__name__)


def _now():
    return datetime.datetime.utcnow()


class ConfirmationTracker:

    def __init__(self, ledger, chain, required_confirmations=6, poll_interval=60, unobservable_timeout=3600, max_horizon=86400, scheduler=None, clock=_now):
        """
        :param ledger: :py:class:`runesettle.ledger.SettlementLedger`

        :param chain: :py:class:`runesettle.backend.base.ChainQueryService`

        :param poll_interval: Seconds between the polls of one settlement

        :param unobservable_timeout: Seconds a broadcasted transaction may be invisible before we give up

        :param max_horizon: Seconds after the broadcast we wait for the confirmations at most

        :param scheduler: apscheduler scheduler running the poll jobs, optional
        """
        self.ledger = ledger
        self.chain = chain
        self.required_confirmations = required_confirmations
        self.poll_interval = poll_interval
        self.unobservable_timeout = datetime.timedelta(seconds=unobservable_timeout)
        self.max_horizon = datetime.timedelta(seconds=max_horizon)
        self.scheduler = scheduler
        self.clock = clock

        #: Request ids we are following
        self.active = set()
        self.lock = threading.Lock()

        ledger.terminal_listeners.append(self.on_terminal)

    @staticmethod
    def get_job_id(request_id):
        return "confirmations-{}".format(request_id)

    def track(self, request_id):
        """Start polling a settlement. Tracking the same settlement twice is ignored.

        :return: True if a new tracking was started
        """
        with self.lock:
            if request_id in self.active:
                return False

            self.active.add(request_id)

            if self.scheduler:
                self.scheduler.add_job(self.poll, "interval", seconds=self.poll_interval, args=(request_id,), id=self.get_job_id(request_id), replace_existing=True, max_instances=1, coalesce=True)

        logger.debug("Tracking confirmations of settlement %s", request_id)
        return True

    def untrack(self, request_id):
        with self.lock:
            self.active.discard(request_id)
            if self.scheduler:
                try:
                    self.scheduler.remove_job(self.get_job_id(request_id))
                except JobLookupError:
                    pass

    def on_terminal(self, request_id, status):
        if request_id in self.active:
            self.untrack(request_id)

    def is_tracked(self, request_id):
        return request_id in self.active

    def get_snapshot(self, request_id):

        @self.ledger.conflict_resolver.managed_transaction
        def _get(session):
            request = session.get(SettlementRequest, request_id)
            if not request:
                return None
            return dict(status=request.status, txid=request.txid, confirmations=request.confirmations, max_confirmations=request.max_confirmations, broadcast_at=request.broadcast_at, last_seen_at=request.last_seen_at)

        return _get()

    def expire(self, request_id, error):
        logger.warning("Settlement %s confirmation timed out: %s", request_id, error)
        self.ledger.transition(request_id, "failed", error.reason)

    def poll(self, request_id):
        """Ask the chain once about the settlement transaction.

        :return: New status if the settlement changed status, otherwise ``None``
        """

        snapshot = self.get_snapshot(request_id)

        if not snapshot or snapshot["status"] != "confirming":
            # Terminal already, nothing to do
            self.untrack(request_id)
            return None

        txid = snapshot["txid"]
        assert txid, "Confirming settlement {} without txid".format(request_id)

        try:
            confirmations = self.chain.get_confirmations(txid)
        except TransactionNotFound:
            confirmations = None
        except Exception as e:
            # Our problem, not the transaction's
            logger.warning("Could not query confirmations of %s for settlement %s", txid, request_id)
            logger.exception(e)
            return None

        now = self.clock()

        try:
            if confirmations is not None and confirmations >= self.required_confirmations:
                self.ledger.transition(request_id, "confirmed", confirmations=confirmations, last_seen_at=now)
                self.untrack(request_id)
                return "confirmed"

            if confirmations is not None:
                self.ledger.record_confirmations(request_id, confirmations, now)
            else:
                last_seen = snapshot["last_seen_at"] or snapshot["broadcast_at"]
                if now - last_seen > self.unobservable_timeout:
                    if (snapshot["max_confirmations"] or 0) > 0:
                        error = ConfirmationTimeoutError("reorged", "{} disappeared from the chain after {} confirmations".format(txid, snapshot["max_confirmations"]))
                    else:
                        error = ConfirmationTimeoutError("stale", "{} has not been seen since {}".format(txid, last_seen))
                    self.expire(request_id, error)
                    self.untrack(request_id)
                    return "failed"

            if now - snapshot["broadcast_at"] > self.max_horizon:
                self.expire(request_id, ConfirmationTimeoutError("stale", "{} not confirmed in {}".format(txid, self.max_horizon)))
                self.untrack(request_id)
                return "failed"

        except IllegalTransition:
            # Somebody else finished it between our snapshot and now
            self.untrack(request_id)
            return None

        return None

    def poll_all(self):
        """Poll every tracked settlement once.

        :return: Dict request id -> new status of the settlements which changed status
        """
        changed = {}
        for request_id in sorted(self.active):
            status = self.poll(request_id)
            if status:
                changed[request_id] = status
        return changed

    def resume(self):
        """Start tracking every ``confirming`` settlement, after a service restart.

        :return: Number of settlements now tracked
        """

        @self.ledger.conflict_resolver.managed_transaction
        def get_confirming(session):
            return [r.id for r in session.query(SettlementRequest).filter_by(status="confirming")]

        for request_id in get_confirming():
            self.track(request_id)

        return len(self.active)
