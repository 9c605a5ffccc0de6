"""Batch windows."""

from decimal import Decimal

from ..models import BatchWindow
from ..models import BatchCoordinationError
from ..fees import FeeTiers

from .base import SettlementTestCase
from .base import TAPROOT
from .base import P2WPKH
from .base import P2WSH


class BatchTestCase(SettlementTestCase):

    def submit_batched(self, count, start=0):
        return [self.submit(key="batch-{}".format(i), mode="batched", amount=10)["request_id"] for i in range(start, start + count)]

    def get_window(self, window_id):
        with self.app.conflict_resolver.transaction() as session:
            window = session.get(BatchWindow, window_id)
            return dict(closed=window.closed, fee_rate=window.fee_rate, total_fee_sats=window.total_fee_sats, tx_size_vb=window.tx_size_vb, members=window.member_request_ids)

    def test_join(self):
        self.credit()
        first, second = self.submit_batched(2)

        for request_id in (first, second):
            view = self.orchestrator.get_settlement_status(request_id)
            self.assertEqual(view["status"], "batching")
            # Fee is known only when the window closes
            self.assertIsNone(view["fee_sats"])

        window_id = self.orchestrator.get_settlement_status(first)["batch_window_id"]
        self.assertEqual(self.orchestrator.get_settlement_status(second)["batch_window_id"], window_id)

        window = self.get_window(window_id)
        self.assertFalse(window["closed"])
        self.assertEqual(window["members"], [first, second])

        # Nothing for the signer yet
        self.assertEqual(self.orchestrator.process_signing_queue(), {})

    def test_batched_settlement_end_to_end(self):
        self.credit(amount=1000)
        request_id = self.submit(mode="batched", amount=500)["request_id"]

        self.clock.advance(minutes=10)
        self.orchestrator.close_due_batches()
        txid = self.broadcast_and_confirm(request_id)

        self.assertEqual(self.get_transitions(request_id), [
            (None, "queued"),
            ("queued", "batching"),
            ("batching", "signing"),
            ("signing", "broadcasting"),
            ("broadcasting", "confirming"),
            ("confirming", "confirmed"),
        ])

        view = self.orchestrator.get_settlement_status(request_id)
        self.assertEqual(view["txid"], txid)
        self.assertEqual(self.orchestrator.get_rune_lifecycle("alice", "840000:1")["settled_amount"], 500)
        self.assertEqual(self.orchestrator.get_balance("alice", "840000:1")["settled"], 500)

    def test_full_window_closes(self):
        self.credit()
        self.fee_oracle.set_tiers(5, "10.1", 20)
        ids = self.submit_batched(3)

        self.assertEqual(self.orchestrator.get_settlement_status(ids[-1])["status"], "signing")

        views = [self.orchestrator.get_settlement_status(i) for i in ids]
        self.assertEqual([v["status"] for v in views], ["signing"] * 3)

        # 250 + 2 * 43 vB at 10.1 sat/vB, rounded up, remainder to the first member
        self.assertEqual([v["fee_sats"] for v in views], [1132, 1131, 1131])
        self.assertEqual(sum(v["fee_sats"] for v in views), 3394)

        window = self.get_window(views[0]["batch_window_id"])
        self.assertTrue(window["closed"])
        self.assertEqual(window["tx_size_vb"], 336)
        self.assertEqual(window["total_fee_sats"], 3394)
        self.assertEqual(window["fee_rate"], Decimal("10.1"))

        for request_id in ids:
            self.assertEqual(self.get_transitions(request_id)[-2:], [("queued", "batching"), ("batching", "signing")])

    def test_one_transaction_per_window(self):
        self.credit()
        addresses = [TAPROOT, P2WPKH, P2WSH]
        ids = [self.submit(key="batch-{}".format(i), mode="batched", amount=10 + i, address=a)["request_id"] for i, a in enumerate(addresses)]

        results = self.orchestrator.process_signing_queue()

        self.assertEqual(len(self.signer.signed), 1)
        self.assertEqual(len(self.broadcaster.attempts), 1)

        descriptor = self.signer.signed[0]
        self.assertEqual([o["address"] for o in descriptor["outputs"]], addresses)
        self.assertEqual([o["amount"] for o in descriptor["outputs"]], [10, 11, 12])
        self.assertEqual(descriptor["fee_sats"], 3360)

        txids = set(results[i] for i in ids)
        self.assertEqual(len(txids), 1)

        txid = txids.pop()
        self.chain.set_confirmations(txid, 6)
        self.assertEqual(self.orchestrator.poll_confirmations(), {i: "confirmed" for i in ids})

    def test_batch_failure_fails_all_members(self):
        self.credit()
        ids = self.submit_batched(3)
        self.signer.fail = "wallet locked"
        self.orchestrator.process_signing_queue()

        for request_id in ids:
            self.assertEqual(self.orchestrator.get_settlement_status(request_id)["failure_reason"], "signing_failed: wallet locked")

        self.assertEqual(self.orchestrator.get_balance("alice", "840000:1")["held"], 0)

    def test_closed_window_takes_no_members(self):
        self.credit()
        first_batch = self.submit_batched(3)
        fourth = self.submit_batched(1, start=3)[0]

        first_window = self.orchestrator.get_settlement_status(first_batch[0])["batch_window_id"]
        second_window = self.orchestrator.get_settlement_status(fourth)["batch_window_id"]
        self.assertNotEqual(first_window, second_window)
        self.assertEqual(self.get_window(first_window)["members"], first_batch)

    def test_max_wait(self):
        self.credit()
        request_id = self.submit_batched(1)[0]

        self.clock.advance(minutes=9)
        self.assertEqual(self.orchestrator.close_due_batches(), [])
        self.assertEqual(self.orchestrator.get_settlement_status(request_id)["status"], "batching")

        self.clock.advance(minutes=1)
        self.assertEqual(self.orchestrator.close_due_batches(), [request_id])

        view = self.orchestrator.get_settlement_status(request_id)
        self.assertEqual(view["status"], "signing")
        self.assertEqual(view["fee_sats"], 2500)

        # Next one opens a new window
        later = self.submit_batched(1, start=1)[0]
        self.assertNotEqual(self.orchestrator.get_settlement_status(later)["batch_window_id"], view["batch_window_id"])

    def test_close_twice(self):
        self.credit()
        request_id = self.submit_batched(1)[0]
        window_id = self.orchestrator.get_settlement_status(request_id)["batch_window_id"]
        tiers = FeeTiers(5, 10, 20)

        self.orchestrator.batches.close_window(window_id, tiers)
        with self.assertRaises(BatchCoordinationError):
            self.orchestrator.batches.close_window(window_id, tiers)

    def test_close_empty_window(self):
        coordinator = self.orchestrator.batches
        with self.app.conflict_resolver.transaction() as session:
            window = coordinator.open_window(session, "medium")
            window_id = window.id

        self.assertEqual(coordinator.close_window(window_id, FeeTiers(5, 10, 20)), [])
        self.assertTrue(self.get_window(window_id)["closed"])

    def test_member_failed_before_close(self):
        self.credit()
        first, second = self.submit_batched(2)
        self.orchestrator.ledger.transition(first, "failed", "cancelled")

        self.clock.advance(minutes=10)
        self.assertEqual(self.orchestrator.close_due_batches(), [second])

        # Alone in the batch, pays the whole single output fee
        self.assertEqual(self.orchestrator.get_settlement_status(second)["fee_sats"], 2500)
