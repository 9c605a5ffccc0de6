"""Settlement orchestrator: the entry point for moving virtual runes on-chain.

Submitting a settlement

* validates the destination address against the configured network,

* prices it with the current fee tiers,

* holds the amount of the owner's virtual balance,

* queues it either to a batch window (batched mode) or directly to signing.

Background jobs then close the due batch windows, sign and broadcast the ready settlements and poll their confirmations. See :py:class:`runesettle.service.main.Service`.

Example::

    orchestrator.credit_virtual_balance("alice", "840000:1", "DOG•GO•TO•THE•MOON", 1000)
    result = orchestrator.submit_settlement("alice", "order-1", "840000:1", 500, "bc1p...", "instant")
    for event in orchestrator.subscribe_status_changes(result["request_id"]):
        print(event["to_status"])
"""

import datetime
import logging
import time
from collections import OrderedDict

from . import fees
from .bitcoin.address import classify
from .models import BatchWindow
from .models import MODES
from .models import RuneBalance
from .models import SettlementRequest
from .models import IllegalTransition
from .models import UnknownSettlement
from .models import ValidationError
from .settings import Settings
from .ledger import SettlementLedger
from .event.registry import EventHandlerRegistry
from .event.subscription import SubscriptionHub
from .tools.addressbook import SavedAddressBook
from .tools.batch import BatchCoordinator
from .tools.batch import DEFAULT_COHORT
from .tools.broadcast import Broadcaster
from .tools.broadcast import SigningJob
from .tools.confirmationupdate import ConfirmationTracker
from .tools.lifecycle import RuneLifecycleManager


logger = logging.getLogger(__name__)


def _now():
    return datetime.datetime.utcnow()


class SettlementOrchestrator:
    """Submission, queries and background processing of settlements."""

    def __init__(self, conflict_resolver, backends, settings=None, event_handler_registry=None, scheduler=None, clock=_now, sleep=time.sleep):
        """
        :param conflict_resolver: :py:class:`runesettle.utils.conflictresolver.ConflictResolver`

        :param backends: :py:class:`runesettle.backend.registry.BackendRegistry` with all the roles filled in

        :param settings: :py:class:`runesettle.settings.Settings`

        :param event_handler_registry: Where status changes are posted. Subscriptions are registered here too.

        :param scheduler: apscheduler scheduler for the confirmation poll jobs

        :param clock: Callable returning naive UTC datetime

        :param sleep: Callable used to wait between broadcast retries
        """
        self.conflict_resolver = conflict_resolver
        self.backends = backends
        self.settings = settings or Settings()
        self.clock = clock

        s = self.settings

        self.event_handler_registry = event_handler_registry or EventHandlerRegistry()
        self.subscriptions = SubscriptionHub()
        self.event_handler_registry.register("subscriptions", self.subscriptions)

        self.lifecycle = RuneLifecycleManager(s.required_confirmations, clock)
        self.ledger = SettlementLedger(conflict_resolver, self.lifecycle, self.event_handler_registry, s.required_confirmations, clock)
        self.batches = BatchCoordinator(conflict_resolver, self.ledger, s.batch_target_size, s.batch_max_wait_ms, s.tx_size_vb, s.output_size_vb, clock)
        self.broadcaster = Broadcaster(self.ledger, backends.get("signer"), backends.get("broadcaster"), s.broadcast_timeout, s.broadcast_max_attempts, s.broadcast_backoff, sleep, clock)
        self.tracker = ConfirmationTracker(self.ledger, backends.get("chain"), s.required_confirmations, s.confirmation_poll_interval, s.unobservable_timeout, s.max_horizon, scheduler, clock)
        self.address_book = SavedAddressBook(conflict_resolver, s.network, clock)

    def get_fee_tiers(self):
        return self.backends.get("fee_oracle").get_current_tiers()

    def get_btc_usd_rate(self):
        """USD price for display, ``None`` if the oracle is down."""
        try:
            return self.backends.get("price_oracle").get_btc_usd_rate()
        except Exception as e:
            logger.warning("Could not get BTC/USD rate: %s", e)
            return None

    def estimate_fee(self, mode, custom_fee_rate=None):
        """Cost and time of a settlement in the given mode at the current fees.

        :return: :py:class:`runesettle.fees.FeeEstimate`
        """
        s = self.settings
        batch_size = s.batch_target_size if mode == "batched" else None
        return fees.estimate(mode, self.get_fee_tiers(), s.tx_size_vb, custom_fee_rate, self.get_btc_usd_rate(), batch_size, (s.min_fee_rate, s.max_fee_rate))

    def check_arguments(self, owner_id, idempotency_key, rune_key, amount, mode, custom_fee_rate):
        if not owner_id:
            raise ValidationError("Owner is required")

        if not idempotency_key:
            raise ValidationError("Idempotency key is required")

        if not rune_key:
            raise ValidationError("Rune is required")

        if type(amount) != int or amount <= 0:
            raise ValidationError("Amount must be a positive integer, got {!r}".format(amount))

        if mode not in MODES:
            raise ValidationError("Unknown settlement mode {!r}".format(mode))

        if custom_fee_rate is not None and mode != "manual":
            raise ValidationError("Custom fee rate can be given only in manual mode")

    def find_existing(self, owner_id, idempotency_key):

        @self.conflict_resolver.managed_transaction
        def _find(session):
            request = session.query(SettlementRequest).filter_by(owner_id=owner_id, idempotency_key=idempotency_key).first()
            if not request:
                return None
            return dict(request_id=request.id, status=request.status, created_at=request.created_at)

        return _find()

    def submit_settlement(self, owner_id, idempotency_key, rune_key, amount, destination_address, mode, custom_fee_rate=None):
        """Ask to move ``amount`` of a virtual rune to a Bitcoin address.

        Submitting the same ``idempotency_key`` again returns the original settlement without holding more balance.

        :param amount: Rune amount in base units, int

        :param mode: ``instant``, ``batched``, ``scheduled`` or ``manual``

        :param custom_fee_rate: sat/vB, manual mode only

        :return: dict(request_id, status)

        :raise ValidationError: Bad arguments, address or fee rate

        :raise InsufficientBalanceError: Not enough available virtual balance
        """

        self.check_arguments(owner_id, idempotency_key, rune_key, amount, mode, custom_fee_rate)

        s = self.settings

        with self.ledger.owner_lock(owner_id):

            existing = self.find_existing(owner_id, idempotency_key)
            if existing:
                age = self.clock() - existing["created_at"]
                if age > datetime.timedelta(seconds=s.idempotency_window):
                    raise ValidationError("Idempotency key {} was used {} ago and cannot be reused".format(idempotency_key, age))
                logger.info("Duplicate submission %s of %s, returning settlement %s", idempotency_key, owner_id, existing["request_id"])
                return dict(request_id=existing["request_id"], status=existing["status"])

            classification = classify(destination_address, s.network)
            if not classification.valid:
                raise ValidationError("Invalid destination address {}: {}".format(destination_address, classification.error))

            tiers = self.get_fee_tiers()
            batch_size = s.batch_target_size if mode == "batched" else None
            quote = fees.estimate(mode, tiers, s.tx_size_vb, custom_fee_rate, None, batch_size, (s.min_fee_rate, s.max_fee_rate))

            if quote.warning:
                logger.warning("Settlement %s of %s: %s", idempotency_key, owner_id, quote.warning)

            @self.conflict_resolver.managed_transaction
            def create(session):
                request, event = self.ledger.create(
                    session, owner_id, idempotency_key, rune_key, amount, classification.address, mode,
                    network=classification.network,
                    script_type=classification.script_type,
                    custom_fee_rate=quote.fee_rate if mode == "manual" else None,
                    fee_rate=quote.fee_rate,
                    fee_sats=None if mode == "batched" else quote.total_fee_sats)

                event_list = [event]
                if mode == "batched":
                    event_list += self.batches.join(session, request, tiers)
                else:
                    event_list.append(self.ledger.apply(session, request, "signing"))

                return request.id, event_list

            if mode == "batched":
                # Keep the cohort locked until the window changes are committed
                with self.batches.cohort_lock(DEFAULT_COHORT):
                    request_id, event_list = create()
            else:
                request_id, event_list = create()

            self.ledger.fire(event_list)

        self.address_book.record_usage(owner_id, classification.address)

        status = [e for e in event_list if e["request_id"] == request_id][-1]["to_status"]
        return dict(request_id=request_id, status=status)

    def get_settlement_status(self, request_id):
        """:return: Settlement as dict, see :py:meth:`runesettle.models.SettlementRequest.to_view`

        :raise UnknownSettlement: No such settlement
        """

        @self.conflict_resolver.managed_transaction
        def _get(session):
            return self.ledger.get_request(session, request_id).to_view()

        return _get()

    def list_settlement_history(self, owner_id, limit=50, offset=0, include_archived=False):
        """Settlements of an owner, newest first."""

        @self.conflict_resolver.managed_transaction
        def _list(session):
            requests = session.query(SettlementRequest).filter_by(owner_id=owner_id)
            if not include_archived:
                requests = requests.filter(SettlementRequest.archived_at.is_(None))
            requests = requests.order_by(SettlementRequest.created_at.desc(), SettlementRequest.id.desc())
            return [r.to_view() for r in requests.offset(offset).limit(limit)]

        return _list()

    def subscribe_status_changes(self, request_id):
        """Follow the status changes of a settlement.

        The transitions which already happened are delivered first.

        :return: :py:class:`runesettle.event.subscription.StatusSubscription`, iterable until the settlement is terminal

        :raise UnknownSettlement: No such settlement
        """

        # Subscribe before reading the history so nothing falls between
        subscription = self.subscriptions.subscribe(request_id)

        @self.conflict_resolver.managed_transaction
        def _history(session):
            return self.ledger.history(session, request_id)

        try:
            history = _history()
        except UnknownSettlement:
            subscription.close()
            raise

        subscription.replay(history)
        return subscription

    def in_low_fee_window(self, request, tiers, now):
        """Can a scheduled settlement go now?"""
        if now - request.created_at >= datetime.timedelta(seconds=self.settings.scheduled_max_delay):
            return True
        if tiers is None:
            return False
        return tiers.slow <= request.fee_rate

    def collect_signing_jobs(self, tiers=None):
        """Group the settlements in ``signing`` into signing jobs.

        :param tiers: Current fee tiers for deciding whether scheduled settlements can go

        :return: List of :py:class:`runesettle.tools.broadcast.SigningJob`
        """

        now = self.clock()

        @self.conflict_resolver.managed_transaction
        def _collect(session):
            ready = session.query(SettlementRequest).filter_by(status="signing").order_by(SettlementRequest.created_at, SettlementRequest.id)

            jobs = []
            windows = OrderedDict()

            for request in ready:
                if request.batch_window_id:
                    windows.setdefault(request.batch_window_id, []).append(request)
                    continue

                if request.mode == "scheduled" and not self.in_low_fee_window(request, tiers, now):
                    logger.debug("Scheduled settlement %s waits for lower fees", request.id)
                    continue

                jobs.append(SigningJob.from_requests("settlement-{}".format(request.id), [request], request.fee_rate, self.settings.tx_size_vb))

            for window_id, members in windows.items():
                window = session.get(BatchWindow, window_id)
                members.sort(key=lambda r: r.batch_position)
                jobs.append(SigningJob.from_requests("batch-{}".format(window_id), members, window.fee_rate, window.tx_size_vb))

            return jobs

        return _collect()

    def process_signing_queue(self):
        """Sign and broadcast everything ready.

        :return: Dict request id -> txid, or ``None`` for the settlements which failed
        """

        try:
            tiers = self.get_fee_tiers()
        except Exception as e:
            # Only scheduled settlements need the tiers, the rest can go
            logger.warning("Could not get fee tiers, scheduled settlements wait: %s", e)
            tiers = None

        results = {}

        with self.broadcaster.lock:
            for job in self.collect_signing_jobs(tiers):
                txid = self.broadcaster.run(job)
                for request_id in job.request_ids:
                    results[request_id] = txid
                    if txid:
                        self.tracker.track(request_id)

        return results

    def close_due_batches(self):
        """Close the batch windows which have waited long enough.

        :return: Ids of the settlements moved to signing
        """
        if not self.batches.get_due_windows():
            return []
        return self.batches.close_due_windows(self.get_fee_tiers())

    def poll_confirmations(self):
        """Poll every tracked settlement once.

        :return: Dict request id -> new status of the settlements which changed status
        """
        return self.tracker.poll_all()

    def archive_settlement(self, request_id):
        """Hide a finished settlement from the history.

        :raise IllegalTransition: Settlement is still in progress
        """

        with self.ledger.request_lock(request_id):

            @self.conflict_resolver.managed_transaction
            def _archive(session):
                request = self.ledger.get_request(session, request_id)
                if not request.is_terminal():
                    raise IllegalTransition("Settlement {} is {}, only finished settlements can be archived".format(request_id, request.status))
                if not request.archived_at:
                    request.archived_at = self.clock()
                return request.to_view()

            return _archive()

    def credit_virtual_balance(self, owner_id, rune_key, rune_name, amount):
        """Record runes the owner received in the virtual ledger.

        :return: New available balance
        """
        if type(amount) != int or amount <= 0:
            raise ValidationError("Amount must be a positive integer, got {!r}".format(amount))
        return self.ledger.credit(owner_id, rune_key, amount, rune_name)

    def get_balance(self, owner_id, rune_key):

        @self.conflict_resolver.managed_transaction
        def _get(session):
            balance = RuneBalance.get(session, owner_id, rune_key)
            if not balance:
                return dict(balance=0, held=0, available=0, settled=0)
            return dict(balance=balance.balance, held=balance.held, available=balance.available, settled=balance.settled)

        return _get()

    def get_rune_lifecycle(self, owner_id, rune_key):
        """:return: Lifecycle record as dict, a ``draft`` one if nothing is known of the rune"""

        @self.conflict_resolver.managed_transaction
        def _get(session):
            record = self.lifecycle.get_record(session, owner_id, rune_key)
            if record:
                return record.to_view()
            return dict(owner_id=owner_id, rune_key=rune_key, rune_name=None, state="draft", settled_amount=0, pending_amount=0, total_amount=0, native_txid=None, updated_at=None)

        return _get()

    def list_rune_lifecycles(self, owner_id):

        @self.conflict_resolver.managed_transaction
        def _list(session):
            return [r.to_view() for r in self.lifecycle.list_records(session, owner_id)]

        return _list()

    def resume(self):
        """Pick up the work of a previous process after restart."""
        interrupted = self.broadcaster.fail_interrupted_broadcasts()
        tracked = self.tracker.resume()
        logger.info("Resumed, %d interrupted broadcasts failed, tracking %d settlements", len(interrupted), tracked)

    def shutdown(self):
        self.broadcaster.close()
