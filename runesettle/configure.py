"""Configuring runesettle for your project.

Setup SQLAlchemy, backends, event handlers, etc. based on individual dictionaries or YAML syntax configuration file.

Example YAML::

    database:
      url: postgresql://localhost/runesettle
      transaction_retries: 3

    network: testnet

    settlement:
      required_confirmations: 6
      batch_target_size: 10
      broadcast_timeout: 30

    backends:
      signer:
        class: mywallet.signing.HSMSigner
      broadcaster:
        class: runesettle.backend.mempool.MempoolBroadcaster
        url: https://mempool.space/testnet
      chain:
        class: runesettle.backend.mempool.MempoolChainQuery
        url: https://mempool.space/testnet
      price_oracle:
        class: runesettle.backend.pricefeed.CryptoComparePriceOracle
      fee_oracle:
        class: runesettle.backend.mempool.MempoolFeeTierOracle
        url: https://mempool.space/testnet

    events:
      myapp:
        class: runesettle.event.http.HTTPEventHandler
        url: http://localhost:10000

    service:
      batch_period: 60
      signing_period: 30
"""

import io
import logging
import logging.config

import yaml

from zope.dottedname.resolve import resolve

from sqlalchemy import engine_from_config

from .backend.base import ROLES
from .backend.registry import BackendRegistry
from .event.registry import EventHandlerRegistry
from .event.base import EventHandler
from .settings import Settings
from .app import Subsystem
from .utils.dictutil import merge_dict


#: Logging is configured only after the config file has been read
logger = None


class ConfigurationError(Exception):
    """ConfigurationError is thrown when the Configurator thinks something cannot make sense with the config data."""


class Configurator:
    """Read configuration data and set up the settlement app.

    Reads Python or YAML format config data and then sets :py:class:`runesettle.app.SettlementApp` up and running accordingly.
    """

    def __init__(self, app, service=None):
        """
        :param app: :py:class:`runesettle.app.SettlementApp` instance

        :param service: :py:class:`runesettle.service.main.Service` instance (optional)
        """
        self.app = app

        self.service = service

        #: Store full parsed configuration as Python dict for later consumption
        self.config = None

    def setup_engine(self, configuration):
        """Setup database engine.

        See ``sqlalchemy.engine_from_config`` for details.

        :param dict configuration: ``database`` configuration section
        """

        if not self.app.is_enabled(Subsystem.database):
            return

        if not configuration or "url" not in configuration:
            raise ConfigurationError("database section with url missing in config")

        configuration = configuration.copy()  # No mutate in place

        self.app.transaction_retries = int(configuration.pop("transaction_retries", 3))

        echo = configuration.pop("echo", False) in (True, "true")
        engine = engine_from_config(configuration, prefix="", echo=echo, isolation_level="SERIALIZABLE")
        return engine

    def setup_settings(self, network, settlement):
        """Read settlement tunables.

        :param network: ``main``, ``test``, ``reg`` or the long forms

        :param settlement: ``settlement`` configuration section
        """
        data = dict(settlement or {})
        if network:
            data["network"] = network

        try:
            return Settings.from_dict(data)
        except (ValueError, TypeError, ArithmeticError) as e:
            raise ConfigurationError("Bad settlement configuration: {}".format(e)) from e

    def setup_backend(self, role, data):
        """Instantiate one backend.

        :param data: dictionary with ``class`` and the constructor arguments
        """

        if not data or "class" not in data:
            raise ConfigurationError("No backend class given for {}".format(role))

        data = data.copy()  # No mutate in place
        klass = data.pop("class")

        try:
            provider = resolve(klass)
        except ImportError as e:
            raise ConfigurationError("Could not import backend {}".format(klass)) from e

        # Pass given configuration options to the backend as is
        try:
            instance = provider(**data)
        except TypeError as te:
            # TODO: Options may contain API keys which end up in the terminal this way
            raise ConfigurationError("Could not initialize backend {} with options {}".format(klass, data)) from te

        if not isinstance(instance, ROLES[role]):
            raise ConfigurationError("Backend {} cannot act as {}".format(klass, role))

        return instance

    def setup_backends(self, data):
        """Setup backends.

        :param data: ``backends`` section, role name -> backend configuration
        """

        if not self.app.is_enabled(Subsystem.backend):
            return self.app.backends

        if not data:
            raise ConfigurationError("backends section missing in config")

        registry = BackendRegistry()

        for role, backend_data in data.items():
            if role not in ROLES:
                raise ConfigurationError("Unknown backend role {}, expected one of {}".format(role, ", ".join(sorted(ROLES))))
            registry.register(role, self.setup_backend(role, backend_data))

        missing = registry.missing_roles()
        if missing:
            raise ConfigurationError("No backend given for {}".format(", ".join(missing)))

        return registry

    def setup_event_handlers(self, event_handlers):
        """Read event handler settings.

        Example format::

            {
                "myapp": {
                    "class": "runesettle.event.python.InProcessEventHandler",
                    "callback": "myapp.settlements.on_event"
                }
            }

        """

        registry = EventHandlerRegistry()

        if not self.app.is_enabled(Subsystem.event_handler_registry):
            return registry

        if not event_handlers:
            return registry

        for name, data in event_handlers.items():
            data = data.copy()  # No mutate in place
            klass = data.pop("class", None)
            if not klass:
                raise ConfigurationError("No class given for event handler {}".format(name))

            provider = resolve(klass)
            try:
                instance = provider(**data)
            except TypeError as te:
                raise ConfigurationError("Could not initialize event handler {} with options {}".format(klass, data)) from te

            if not isinstance(instance, EventHandler):
                raise ConfigurationError("{} is not an event handler".format(klass))

            registry.register(name, instance)

        return registry

    def setup_service(self, config):
        """Configure the helper service process."""
        assert self.service

        # Nothing given, use defaults
        if not config:
            return

        for key in ("batch_period", "signing_period"):
            if key in config:
                setattr(self.service, key, int(config[key]))

    def load_from_dict(self, config):
        """ Load configuration from Python dictionary.

        Populates ``app`` with instances required to run settlements.
        """

        self.app.engine = self.setup_engine(config.get("database"))
        self.app.settings = self.setup_settings(config.get("network"), config.get("settlement"))
        self.app.backends = self.setup_backends(config.get("backends"))
        self.app.event_handler_registry = self.setup_event_handlers(config.get("events"))

        if self.service:
            self.setup_service(config.get("service"))

        self.config = config

    @classmethod
    def setup_service_logging(cls, config):
        """Setup Python loggers for the helper service process.

        :param config: service -> logging configure section.
        """
        if not config:
            # Go with the stderr
            logging.basicConfig()
        else:
            config["version"] = 1
            logging.config.dictConfig(config)

    @classmethod
    def setup_startup(cls, config):
        """Service helper process specific setup when launched from command line.

        Reads configuration ``service`` section, ATM only interested in ``logging`` subsection.

        This is run before the actual application initialization, so that we have logging for the startup messages.
        """

        service = config.get("service", {})
        logging = service.get("logging", None)
        cls.setup_service_logging(logging)

        return config

    @staticmethod
    def prepare_yaml_file(fname):
        """Extract config dictionary from a YAML file."""
        with io.open(fname, "rt") as stream:
            config = yaml.safe_load(stream)

        if not type(config) == dict:
            raise ConfigurationError("YAML configuration file must be mapping like")

        return config

    def load_yaml_file(self, fname, overrides={}):
        """Load config from a YAML file.

        :param fname: Path to the YAML file

        :param overrides: Python nested dicts for specific setting overrides
        """
        config = self.prepare_yaml_file(fname)
        merge_dict(config, overrides)
        self.load_from_dict(config)
