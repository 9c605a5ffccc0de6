"""Sign and broadcast settlement transactions.

Broadcaster is responsible for the following things

* Collect settlements ready for signing into signing jobs, one job per closed batch window or per single settlement

* Make sure there can be one and only one attempt to broadcast at any moment, so we don't have double broadcast problems

* Retry transient broadcast errors with exponential backoff and give up for good on rejections

* Never hang: the broadcast has a hard timeout after which the settlement fails with ``broadcast_timeout``

* Fail the settlements whose broadcast was interrupted by a crash
"""

import datetime
import logging
import time
import concurrent.futures

from .. import lock
from ..models import SettlementRequest
from ..models import BroadcastError
from ..utils.format import format_sats


logger = logging.getLogger(__name__)


def _now():
    return datetime.datetime.utcnow()


class SigningJob:
    """One Bitcoin transaction to be built, paying one or more settlements."""

    def __init__(self, job_id, outputs, fee_rate, fee_sats, tx_size_vb):
        self.job_id = job_id
        self.outputs = outputs
        self.fee_rate = fee_rate
        self.fee_sats = fee_sats
        self.tx_size_vb = tx_size_vb

    @property
    def request_ids(self):
        return [o["request_id"] for o in self.outputs]

    def descriptor(self):
        """What :py:meth:`runesettle.backend.base.SigningService.sign` gets."""
        return dict(job_id=self.job_id, outputs=self.outputs, fee_rate=self.fee_rate, fee_sats=self.fee_sats, tx_size_vb=self.tx_size_vb)

    @classmethod
    def from_requests(cls, job_id, requests, fee_rate, tx_size_vb):
        outputs = [dict(request_id=r.id, address=r.destination_address, rune_key=r.rune_key, amount=r.amount) for r in requests]
        fee_sats = sum(r.fee_sats or 0 for r in requests)
        return cls(job_id, outputs, fee_rate, fee_sats, tx_size_vb)

    def __str__(self):
        return "SigningJob {} requests:{} fee:{}".format(self.job_id, self.request_ids, format_sats(self.fee_sats))


class Broadcaster:
    """Run signing jobs through the signing and broadcast services."""

    def __init__(self, ledger, signer, broadcaster, timeout=30, max_attempts=3, backoff=1.0, sleep=time.sleep, clock=_now):
        """
        :param ledger: :py:class:`runesettle.ledger.SettlementLedger`

        :param signer: :py:class:`runesettle.backend.base.SigningService`

        :param broadcaster: :py:class:`runesettle.backend.base.BroadcastService`

        :param timeout: Seconds for the whole broadcast including retries

        :param max_attempts: How many times transient errors are tried

        :param backoff: Seconds to wait after the first transient error, doubled on every retry
        """
        self.ledger = ledger
        self.signer = signer
        self.broadcaster = broadcaster
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.sleep = sleep
        self.clock = clock
        self.executor = concurrent.futures.ThreadPoolExecutor(max_workers=2, thread_name_prefix="broadcast")

        # One broadcast in flight at any moment
        self.lock = lock.get_or_create_lock("broadcast")

    def close(self):
        self.executor.shutdown(wait=False)

    def fail_all(self, job, reason):
        for request_id in job.request_ids:
            self.ledger.transition(request_id, "failed", reason)

    def call_broadcast(self, signed_tx, remaining):
        future = self.executor.submit(self.broadcaster.broadcast, signed_tx)
        return future.result(timeout=remaining)

    def broadcast_with_retries(self, signed_tx):
        """Push the signed transaction to the network.

        :return: tuple (txid, None) on success or (None, failure reason)
        """
        deadline = time.monotonic() + self.timeout

        for attempt in range(1, self.max_attempts + 1):

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None, "broadcast_timeout"

            try:
                txid = self.call_broadcast(signed_tx, remaining)
            except concurrent.futures.TimeoutError:
                logger.error("Broadcast did not finish in %s seconds", self.timeout)
                return None, "broadcast_timeout"
            except BroadcastError as e:
                if not e.transient:
                    logger.warning("Broadcast rejected: %s", e)
                    return None, "{}: {}".format(e.reason, e) if str(e) else e.reason

                if attempt == self.max_attempts:
                    logger.error("Giving up broadcast after %d attempts: %s", attempt, e)
                    return None, "{}: gave up after {} attempts".format(e.reason, attempt)

                delay = self.backoff * 2 ** (attempt - 1)
                logger.warning("Broadcast attempt %d failed, retrying in %s seconds: %s", attempt, delay, e)
                self.sleep(min(delay, max(deadline - time.monotonic(), 0)))
                continue
            except Exception as e:
                # Unknown outcome of a misbehaving broadcast service
                logger.error("Broadcast failed with an unexpected error")
                logger.exception(e)
                return None, "broadcast_error: {}".format(e) if str(e) else "broadcast_error"


            if not txid:
                return None, "broadcast_rejected: no txid"

            return txid, None

        # Not reached
        return None, "broadcast_timeout"

    def run(self, job):
        """Sign, broadcast and hand the settlements over to confirmation tracking.

        :return: txid or ``None`` if the settlements failed
        """
        with self.lock:

            logger.info("Signing %s", job)

            try:
                signed_tx = self.signer.sign(job.descriptor())
            except Exception as e:
                # Insufficient funds, missing keys or unreachable signer. Never retried.
                logger.error("Signing %s failed", job)
                logger.exception(e)
                self.fail_all(job, "signing_failed: {}".format(e) if str(e) else "signing_failed")
                return None

            for request_id in job.request_ids:
                self.ledger.transition(request_id, "broadcasting")

            txid, reason = self.broadcast_with_retries(signed_tx)

            if reason:
                self.fail_all(job, reason)
                return None

            now = self.clock()
            for request_id in job.request_ids:
                self.ledger.transition(request_id, "confirming", txid=txid, confirmations=0, broadcast_at=now, last_seen_at=now)

            logger.info("Broadcasted %s as %s", job, txid)
            return txid

    def fail_interrupted_broadcasts(self):
        """Fail settlements left in ``broadcasting`` by a crashed process.

        :return: List of failed request ids
        """

        cutoff = self.clock() - datetime.timedelta(seconds=self.timeout)

        @self.ledger.conflict_resolver.managed_transaction
        def get_interrupted(session):
            requests = session.query(SettlementRequest).filter(SettlementRequest.status == "broadcasting", SettlementRequest.updated_at < cutoff)
            return [r.id for r in requests]

        interrupted = get_interrupted()
        for request_id in interrupted:
            logger.error("Settlement %s broadcast was interrupted", request_id)
            self.ledger.transition(request_id, "failed", "broadcast_timeout")

        return interrupted
