import os
import unittest
from decimal import Decimal

from ..configure import ConfigurationError
from ..configure import Configurator
from ..app import SettlementApp
from ..app import Subsystem
from ..app import ALL_SUBSYSTEMS
from ..backend.null import DummySigner
from ..backend.null import StaticPriceOracle
from ..backend.null import StaticFeeTierOracle
from ..event.http import HTTPEventHandler
from ..event.python import InProcessEventHandler
from ..settings import Settings

from . import testwarnings


def on_event(event_name, data):
    """Callback referred by a dotted name in the tests."""


class ConfigureTestCase(unittest.TestCase):
    """Stress out configuration functionality and loading YAMLs."""

    def setUp(self):
        testwarnings.begone()

        self.app = SettlementApp(ALL_SUBSYSTEMS)
        self.configurator = Configurator(self.app)

    def get_sample(self, name):
        sample_file = os.path.join(os.path.dirname(__file__), name)
        self.assertTrue(os.path.exists(sample_file), "Did not found {}".format(sample_file))
        return sample_file

    def test_engine(self):
        config = {
            "url": "sqlite://",
            "transaction_retries": "5",
        }
        engine = self.configurator.setup_engine(config)
        self.assertIsNotNone(engine)
        self.assertEqual(self.app.transaction_retries, 5)

        # Input left intact
        self.assertIn("transaction_retries", config)

    def test_engine_no_url(self):
        with self.assertRaises(ConfigurationError):
            self.configurator.setup_engine({"echo": True})

    def test_backends(self):
        backends = {
            "signer": {"class": "runesettle.backend.null.DummySigner"},
            "broadcaster": {"class": "runesettle.backend.null.DummyBroadcaster"},
            "chain": {"class": "runesettle.backend.null.DummyChain"},
            "price_oracle": {"class": "runesettle.backend.null.StaticPriceOracle", "rate": 30000},
            "fee_oracle": {"class": "runesettle.backend.null.StaticFeeTierOracle", "slow": 1, "medium": 2, "fast": 3},
        }

        registry = self.configurator.setup_backends(backends)

        self.assertIsInstance(registry.get("signer"), DummySigner)
        self.assertEqual(registry.get("price_oracle").get_btc_usd_rate(), Decimal(30000))
        self.assertEqual(registry.get("fee_oracle").get_current_tiers().medium, Decimal(2))

    def test_backend_role_mismatch(self):
        with self.assertRaises(ConfigurationError):
            self.configurator.setup_backend("signer", {"class": "runesettle.backend.null.DummyChain"})

    def test_backend_bad_options(self):
        with self.assertRaises(ConfigurationError):
            self.configurator.setup_backend("chain", {"class": "runesettle.backend.null.DummyChain", "url": "http://localhost"})

    def test_backend_no_such_class(self):
        with self.assertRaises(ConfigurationError):
            self.configurator.setup_backend("chain", {"class": "runesettle.backend.nosuchthing.Chain"})

    def test_unknown_role(self):
        with self.assertRaises(ConfigurationError):
            self.configurator.setup_backends({"wallet": {"class": "runesettle.backend.null.DummySigner"}})

    def test_missing_roles(self):
        with self.assertRaises(ConfigurationError) as context:
            self.configurator.setup_backends({"signer": {"class": "runesettle.backend.null.DummySigner"}})
        self.assertIn("broadcaster", str(context.exception))

    def test_settings(self):
        settings = self.configurator.setup_settings("regtest", {"required_confirmations": "2", "max_fee_rate": 500})
        self.assertEqual(settings.network, "reg")
        self.assertEqual(settings.required_confirmations, 2)
        self.assertEqual(settings.max_fee_rate, Decimal(500))

        # Untouched defaults
        self.assertEqual(settings.batch_target_size, Settings.batch_target_size)

    def test_bad_settings(self):
        with self.assertRaises(ConfigurationError):
            self.configurator.setup_settings("litecoin", {})

        with self.assertRaises(ConfigurationError):
            self.configurator.setup_settings(None, {"batch_size": 3})

        with self.assertRaises(ConfigurationError):
            self.configurator.setup_settings(None, {"required_confirmations": "many"})

    def test_event_handlers(self):
        handlers = {
            "callback": {
                "class": "runesettle.event.python.InProcessEventHandler",
                "callback": "runesettle.tests.test_configure.on_event",
            },
            "hook": {
                "class": "runesettle.event.http.HTTPEventHandler",
                "url": "http://localhost:10000",
                "timeout": 2,
            }
        }
        registry = self.configurator.setup_event_handlers(handlers)
        self.assertEqual(len(registry.get_all()), 2)
        self.assertIsInstance(registry.registry["callback"], InProcessEventHandler)
        self.assertIsInstance(registry.registry["hook"], HTTPEventHandler)
        self.assertEqual(registry.registry["hook"].timeout, 2.0)

    def test_event_handler_not_handler(self):
        with self.assertRaises(ConfigurationError):
            self.configurator.setup_event_handlers({"bad": {"class": "runesettle.backend.null.DummyChain"}})

    def test_load_yaml(self):
        """ Load a sample configuration file and see it's all dandy.
        """
        self.configurator.load_yaml_file(self.get_sample("sample-config.yaml"))

        self.assertIsNotNone(self.app.engine)
        self.assertEqual(self.app.transaction_retries, 2)
        self.assertEqual(self.app.settings.network, "test")
        self.assertEqual(self.app.settings.required_confirmations, 3)
        self.assertEqual(self.app.settings.broadcast_timeout, 15)
        self.assertEqual(self.app.backends.missing_roles(), [])
        self.assertIsInstance(self.app.backends.get("price_oracle"), StaticPriceOracle)
        self.assertEqual(self.app.backends.get("price_oracle").get_btc_usd_rate(), Decimal("42000.50"))
        self.assertIsInstance(self.app.backends.get("fee_oracle"), StaticFeeTierOracle)
        self.assertIsInstance(self.app.event_handler_registry.registry["myapp"], HTTPEventHandler)

    def test_load_yaml_overrides(self):
        self.configurator.load_yaml_file(self.get_sample("sample-config.yaml"), overrides={"settlement": {"batch_target_size": 7}})
        self.assertEqual(self.app.settings.batch_target_size, 7)
        # Rest of the section stays
        self.assertEqual(self.app.settings.required_confirmations, 3)

    def test_load_no_backend(self):
        """ Load broken configuration file where backends section is missing.
        """
        with self.assertRaises(ConfigurationError):
            self.configurator.load_yaml_file(self.get_sample("broken-config-no-backend.yaml"))

    def test_no_backend_needed(self):
        """Database only processes like initialize-database do not need backends."""
        app = SettlementApp([Subsystem.database])
        Configurator(app).load_yaml_file(self.get_sample("broken-config-no-backend.yaml"))
        self.assertIsNotNone(app.engine)
        self.assertEqual(app.settings.network, "main")

    def test_orchestrator_from_yaml(self):
        self.configurator.load_yaml_file(self.get_sample("sample-config.yaml"))
        self.app.setup_session()
        self.app.create_tables()

        orchestrator = self.app.setup_orchestrator()
        try:
            self.assertEqual(orchestrator.settings.required_confirmations, 3)
            self.assertEqual(orchestrator.estimate_fee("instant").total_fee_sats, 6250)
        finally:
            orchestrator.shutdown()
            self.app.Session.remove()

    def test_orchestrator_needs_backends(self):
        app = SettlementApp([Subsystem.database])
        Configurator(app).load_yaml_file(self.get_sample("broken-config-no-backend.yaml"))
        with self.assertRaises(RuntimeError):
            app.setup_orchestrator()
