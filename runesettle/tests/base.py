import datetime
import logging
import unittest

from sqlalchemy import create_engine
from sqlalchemy import pool

from ..app import SettlementApp
from ..app import Subsystem
from ..settings import Settings
from ..backend.null import DummySigner
from ..backend.null import DummyBroadcaster
from ..backend.null import DummyChain
from ..backend.null import StaticPriceOracle
from ..backend.null import StaticFeeTierOracle
from ..event.python import InProcessEventHandler

from . import testlogging
from . import testwarnings


logger = logging.getLogger(__name__)


#: Well known addresses of each kind
TAPROOT = "bc1p0xlxvlhemja6c4dqv22uapctqupfhlxm9h8z3k2e72q4k9hcz7vqzk5jj0"
P2WPKH = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
P2WSH = "bc1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3qccfmv3"
P2PKH = "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa"
P2SH = "3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy"
TESTNET_TAPROOT = "tb1pqqqqp399et2xygdj5xreqhjjvcmzhxw4aywxecjdzew6hylgvsesf3hn0c"
TESTNET_P2WPKH = "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"
TESTNET_P2WSH = "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7"
TESTNET_P2PKH = "mvCounterpartyXXXXXXXXXXXXXXW24Hef"
TESTNET_P2SH = "2MvwwC1ksh5Qre5iaT2pKgmGopbPXFuu2V1"

RUNE = "840000:1"
RUNE_NAME = "DOG•GO•TO•THE•MOON"


class FakeClock:
    """Settable naive UTC time."""

    def __init__(self, start=datetime.datetime(2024, 5, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += datetime.timedelta(**kwargs)


class SettlementTestCase(unittest.TestCase):
    """Orchestrator on an in-memory database with null backends and a fake clock."""

    def create_settings(self):
        return Settings(network="mainnet", batch_target_size=3, batch_max_wait_ms=600 * 1000)

    def setUp(self):

        testwarnings.begone()
        testlogging.setup()

        self.clock = FakeClock()

        self.app = SettlementApp([Subsystem.database, Subsystem.backend, Subsystem.event_handler_registry])
        self.app.engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=pool.StaticPool)
        self.app.settings = self.create_settings()

        self.signer = DummySigner()
        self.broadcaster = DummyBroadcaster()
        self.chain = DummyChain()
        self.fee_oracle = StaticFeeTierOracle(slow=5, medium=10, fast=20)
        self.app.backends.register("signer", self.signer)
        self.app.backends.register("broadcaster", self.broadcaster)
        self.app.backends.register("chain", self.chain)
        self.app.backends.register("price_oracle", StaticPriceOracle("50000"))
        self.app.backends.register("fee_oracle", self.fee_oracle)

        self.app.setup_session()
        self.app.create_tables()

        self.events = []
        self.app.event_handler_registry.register("recorder", InProcessEventHandler(self.record_event))

        # Broadcast retries do not really wait
        self.sleeps = []
        self.orchestrator = self.app.setup_orchestrator(clock=self.clock, sleep=self.sleeps.append)

    def tearDown(self):
        self.orchestrator.shutdown()
        self.app.Session.remove()

    def record_event(self, event_name, data):
        self.events.append((event_name, data))

    def get_transitions(self, request_id):
        return [(d["from_status"], d["to_status"]) for name, d in self.events if name == "settlementupdate" and d["request_id"] == request_id]

    def credit(self, owner_id="alice", amount=1000, rune_key=RUNE):
        return self.orchestrator.credit_virtual_balance(owner_id, rune_key, RUNE_NAME, amount)

    def submit(self, key="order-1", amount=100, mode="instant", address=TAPROOT, owner_id="alice", **kwargs):
        return self.orchestrator.submit_settlement(owner_id, key, RUNE, amount, address, mode, **kwargs)

    def broadcast_and_confirm(self, request_id, confirmations=6):
        """Run a ready settlement all the way to confirmed."""
        self.orchestrator.process_signing_queue()
        txid = self.orchestrator.get_settlement_status(request_id)["txid"]
        self.chain.set_confirmations(txid, confirmations)
        self.orchestrator.poll_confirmations()
        return txid
