"""Rune lifecycle: where an owner's rune lives right now.

=========  ===============================================================
draft      Nothing recorded in the virtual ledger yet
virtual    Balance exists only in our off-chain ledger
pending    At least one settlement of the rune is in flight
native     At least one settlement is confirmed deep enough on Bitcoin
=========  ===============================================================

The state is derived from the settlement requests and the balance row, never set directly. :py:class:`runesettle.ledger.SettlementLedger` calls :py:meth:`RuneLifecycleManager.recompute` in the same transaction as every status change.
"""

import datetime
import logging

from ..models import RuneBalance
from ..models import RuneLifecycleRecord
from ..models import SettlementRequest


logger = logging.getLogger(__name__)


def _now():
    return datetime.datetime.utcnow()


class RuneLifecycleManager:

    def __init__(self, required_confirmations=6, clock=_now):
        self.required_confirmations = required_confirmations
        self.clock = clock

    def derive_state(self, requests, balance):
        """Aggregate request outcomes to a lifecycle state.

        :return: tuple (state, pending amount, settled amount, native txid)
        """

        pending = sum(r.amount for r in requests if not r.is_terminal() and r.amount > 0)

        native = [r for r in requests if r.status == "confirmed" and r.txid and (r.confirmations or 0) >= self.required_confirmations]
        settled = sum(r.amount for r in native)

        native_txid = None
        if native:
            latest = max(native, key=lambda r: (r.updated_at, r.id))
            native_txid = latest.txid

        if pending > 0:
            state = "pending"
        elif native:
            state = "native"
        elif balance is not None:
            state = "virtual"
        else:
            state = "draft"

        return state, pending, settled, native_txid

    def recompute(self, session, owner_id, rune_key):
        """Refresh the lifecycle record of one rune of one owner.

        :return: :py:class:`runesettle.models.RuneLifecycleRecord`
        """

        requests = session.query(SettlementRequest).filter_by(owner_id=owner_id, rune_key=rune_key).all()
        balance = RuneBalance.get(session, owner_id, rune_key)

        state, pending, settled, native_txid = self.derive_state(requests, balance)

        record = self.get_record(session, owner_id, rune_key)
        if not record:
            record = RuneLifecycleRecord(owner_id=owner_id, rune_key=rune_key)
            session.add(record)

        if balance is not None:
            record.rune_name = balance.rune_name
            record.total_amount = balance.total
        else:
            record.total_amount = settled + pending

        if record.state != state:
            logger.info("Rune %s of %s is now %s", rune_key, owner_id, state)

        record.state = state
        record.pending_amount = pending
        record.settled_amount = settled
        record.native_txid = native_txid
        record.updated_at = self.clock()
        return record

    def get_record(self, session, owner_id, rune_key):
        return session.query(RuneLifecycleRecord).filter_by(owner_id=owner_id, rune_key=rune_key).first()

    def list_records(self, session, owner_id):
        return session.query(RuneLifecycleRecord).filter_by(owner_id=owner_id).order_by(RuneLifecycleRecord.rune_key).all()
