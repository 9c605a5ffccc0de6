"""Settlement helper service is a standalone process running the background work of the settlement engine.

This includes

* Closing the batch windows which have waited long enough

* Signing and broadcasting the settlements ready for it

* Polling the confirmations of broadcasted settlements

Web processes only submit settlements and read their status. Exactly one helper service should run against a database.
"""

import sys
import logging
import time
import signal
from importlib import metadata

from apscheduler.schedulers.background import BackgroundScheduler

from ..app import SettlementApp
from ..app import Subsystem
from ..app import ALL_SUBSYSTEMS
from ..configure import Configurator

from . import defaultlogging


#: Must be instiated after the logging configure is passed in
logger = None


def splash_version():
    """Log out runesettle package version."""
    try:
        version = metadata.version("runesettle")
    except metadata.PackageNotFoundError:
        version = "unknown"
    logger.info("runesettle version %s", version)


class Service:
    """Main settlement helper service.

    This class runs *settlement helper service* process itself and the command line utilities (*initialize-database*).

    We uses `Advanced Python Scheduler <http://apscheduler.readthedocs.org/>`_ to run timed jobs (batch closing, signing, confirmation polls).
    """

    def __init__(self, config, subsystems=(Subsystem.database, Subsystem.backend), daemon=False, logging=True, **orchestrator_kwargs):
        """
        :param config: Configuration dictionary

        :param subsystems: List of subsystems needed to initialize for this process

        :param daemon: Run as a service

        :param orchestrator_kwargs: Passed to the orchestrator, like ``clock`` in tests
        """
        self.app = SettlementApp(subsystems)

        self.running = False

        #: How often we look for due batch windows, seconds
        self.batch_period = 60

        #: How often we look for settlements ready for signing, seconds
        self.signing_period = 30

        self.scheduler = None

        self.orchestrator = None

        self.orchestrator_kwargs = orchestrator_kwargs

        self.daemon = daemon

        self.config(config, logging_=logging)
        self.setup()

    def config(self, config, logging_):
        """Load configuration from Python dict.

        Initialize logging system if necessary.
        """
        self.configurator = Configurator(self.app, self)
        self.configurator.load_from_dict(config)
        if logging_:
            self.setup_logging(config)

        # Now logging is up'n'running and we can finally create logger for this Python module
        global logger
        logger = logging.getLogger(__name__)

        splash_version()

    def setup(self):
        """Set up database sessions and background jobs."""

        if Subsystem.database in self.app.subsystems:
            self.setup_session()

        if Subsystem.jobs in self.app.subsystems:
            self.setup_jobs()

    def setup_logging(self, config):

        if not self.daemon or not config.get("service", {}).get("logging"):
            # Setup console logging if we run as a batch command or service config lacks logging
            defaultlogging.setup_stdout_logging()

    def setup_session(self):
        """Setup database sessions and conflict resolution."""
        self.app.setup_session()

    def initialize_db(self):
        logger.info("Creating database tables for %s", self.app.engine.url)
        self.app.create_tables()

    def setup_jobs(self):
        logger.debug("Setting up scheduled jobs")
        self.scheduler = BackgroundScheduler()
        self.orchestrator = self.app.setup_orchestrator(scheduler=self.scheduler, **self.orchestrator_kwargs)
        self.batch_job = self.scheduler.add_job(self.poll_batches, 'interval', seconds=self.batch_period, id="batches", max_instances=1, coalesce=True)
        self.signing_job = self.scheduler.add_job(self.poll_signing_queue, 'interval', seconds=self.signing_period, id="signing", max_instances=1, coalesce=True)

    def poll_batches(self):
        """Scheduled job to close the due batch windows."""
        try:
            closed = self.orchestrator.close_due_batches()
            if closed:
                logger.info("Batch windows closed, %d settlements ready for signing", len(closed))
        except Exception as e:
            logger.error("Batch closing job failed")
            logger.exception(e)

    def poll_signing_queue(self):
        """Scheduled job to sign and broadcast the ready settlements."""
        try:
            results = self.orchestrator.process_signing_queue()
            if results:
                logger.info("Processed %d settlements", len(results))
        except Exception as e:
            logger.error("Signing job failed")
            logger.exception(e)

    def start(self):
        """Start settlement helper service.

        Keep running until we get SIGTERM or CTRL+C.

        :return: Process exit code
        """
        logger.info("Starting settlement helper service")

        assert self.scheduler, "Service was created without the jobs subsystem"

        # Fail the interrupted broadcasts and track the confirming settlements of the previous run
        self.orchestrator.resume()

        self.running = True
        self.scheduler.start()

        self.setup_sigterm()

        if self.daemon:
            # Leave helper service running
            return self.run_monitor()
        else:
            # Testing from unit tests
            return

    def run_monitor(self):
        """Sleep until terminated by SIGTERM, checking the scheduler stays alive."""

        while self.running:
            if not self.scheduler.running:
                logger.fatal("Shutting down due to stopped scheduler")
                self.shutdown(unclean=True)
                return 2
            time.sleep(3.0)

        self.shutdown()

        return 0

    def setup_sigterm(self):
        """Capture SIGTERM and shutdown on it."""
        if not self.daemon:
            # Signal handlers only work in the main thread
            return

        def handle_sigterm(signum, frame):
            logger.info("Received signal %d, shutting down", signum)
            self.running = False

        signal.signal(signal.SIGTERM, handle_sigterm)
        signal.signal(signal.SIGINT, handle_sigterm)

    def shutdown(self, unclean=False):
        """Shutdown the service process.

        :param unclean: True if we terminate due to exception
        """

        logger.info("Attempting shutdown of settlement helper service, unclean %s", unclean)
        self.running = False

        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        if self.orchestrator:
            self.orchestrator.shutdown()

        logger.debug("Quit")

# setuptools entry points


def parse_config_argv():
    if len(sys.argv) < 2:
        sys.exit("Usage: {} <configfile.config.yaml>".format(sys.argv[0]))

    config = Configurator.prepare_yaml_file(sys.argv[1])

    return config


def initializedb():

    config = parse_config_argv()
    service = Service(config, (Subsystem.database,))
    service.initialize_db()


def helper():
    config = parse_config_argv()

    Configurator.setup_startup(config)

    service = Service(config, ALL_SUBSYSTEMS, daemon=True)
    exit_code = service.start()
    sys.exit(exit_code)
