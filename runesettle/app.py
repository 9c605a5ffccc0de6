"""Settlement application manager."""

from enum import Enum

from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm import scoped_session

from .models import Base
from .settings import Settings
from .backend.registry import BackendRegistry
from .event.registry import EventHandlerRegistry
from .orchestrator import SettlementOrchestrator
from .utils.conflictresolver import ConflictResolver


class Subsystem(Enum):
    """Enumerator for available subsystems.

    A web process submitting settlements needs the database and the backends, but must not run the background jobs. Only the helper service process does that.
    """

    #: Initialize database connections
    database = 1

    #: Set up signing, broadcast, chain query and oracle backends
    backend = 2

    #: Post events to the configured event handlers
    event_handler_registry = 3

    #: Run batch closing, signing and confirmation polling jobs
    jobs = 4


ALL_SUBSYSTEMS = list(Subsystem.__members__.values())


class SettlementApp:
    """This class ties all strings together to make a runnable settlement app."""

    def __init__(self, subsystems=(Subsystem.database, Subsystem.backend)):
        """
        :param subsystems: Which subsystems to initialize from the configuration
        """

        self.subsystems = subsystems

        #: SQLAlchemy database used engine
        self.engine = None

        #: runesettle.backend.registry.BackendRegistry instance
        self.backends = BackendRegistry()

        #: runesettle.event.registry.EventHandlerRegistry instance
        self.event_handler_registry = EventHandlerRegistry()

        #: runesettle.settings.Settings instance
        self.settings = Settings()

        self.Session = None

        #: The number of attempts we try to replay conflicted transactions. Set by configuration.
        self.transaction_retries = 3

        #: runesettle.utils.conflictresolver.ConflictResolver instance we use to resolve database conflicts
        self.conflict_resolver = None

        #: runesettle.orchestrator.SettlementOrchestrator, created by setup_orchestrator()
        self.orchestrator = None

    def is_enabled(self, subsystem):
        """Are we running with a specific subsystem enabled."""
        return subsystem in self.subsystems

    def setup_session(self, transaction_retries=None):
        """Configure SQLAlchemy sessions and transaction conflict resolution."""

        if not self.is_enabled(Subsystem.database):
            raise RuntimeError("Database subsystem was not enabled")

        if transaction_retries is not None:
            self.transaction_retries = transaction_retries

        self.Session = scoped_session(sessionmaker(autoflush=False, bind=self.engine))

        self.conflict_resolver = ConflictResolver(self.open_session, self.transaction_retries)

    def open_session(self):
        """Get new read-write session for the database."""
        return self.Session()

    def setup_orchestrator(self, scheduler=None, **kwargs):
        """Create the settlement orchestrator on top of the configured database and backends.

        :param scheduler: apscheduler scheduler for confirmation polls, service process only

        :param kwargs: Passed to :py:class:`runesettle.orchestrator.SettlementOrchestrator`, like ``clock``
        """

        if not self.conflict_resolver:
            self.setup_session()

        missing = self.backends.missing_roles()
        if missing:
            raise RuntimeError("Backends missing for {}".format(", ".join(missing)))

        self.orchestrator = SettlementOrchestrator(self.conflict_resolver, self.backends, self.settings, self.event_handler_registry, scheduler=scheduler, **kwargs)
        return self.orchestrator

    def create_tables(self):
        """Create database tables.

        Usually call only once when settings up the production database, or every time unit test case runs.
        """
        if not self.is_enabled(Subsystem.database):
            raise RuntimeError("Database subsystem was not enabled")

        Base.metadata.create_all(self.engine)

    def clear_tables(self):
        """Delete all data in the database, but leaving tables intact.

        Useful to get clean state in unit testing.

        .. warning ::

            No questions asked. Don't dare to call outside testing or your data is really gone.
        """
        with self.conflict_resolver.transaction() as session:
            for table in reversed(Base.metadata.sorted_tables):
                session.execute(table.delete())
