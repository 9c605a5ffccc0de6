"""Serialized transaction conflict resolution for settlement bookkeeping.

All balance holds, status transitions and batch window changes run inside ``SERIALIZABLE`` database transactions. When two threads or two processes touch the same rows the database lets one transaction through and rolls back the other. :py:class:`ConflictResolver` recognizes such rollbacks and replays the decorated function with a fresh transaction.

Example::

    conflict_resolver = ConflictResolver(create_session, retries=3)

    @conflict_resolver.managed_transaction
    def credit(session, owner_id, rune_key, amount):
        balance = RuneBalance.get_or_create(session, owner_id, rune_key)
        balance.balance += amount

    credit("alice", "840000:1", 100)

Rules

- Never talk to signing, broadcast or chain services inside ``managed_transaction``. A replayed transaction runs the code twice and a transaction must never be broadcasted twice.

- Do not swallow generic ``Exception`` inside a managed transaction. Re-raise anything :py:meth:`ConflictResolver.is_retryable_exception` recognizes.

- Keep the transactions short. Fetch fee tiers and prices before entering one.

- Do not nest managed transactions. The session factory is thread scoped and the inner commit would commit the outer transaction too.
"""

import logging
from collections import Counter

from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import DBAPIError


#: Tuples of (driver exception class, test function)
DATABASE_CONFLICT_ERRORS = []

try:
    import psycopg2.extensions
except ImportError:
    pass
else:
    DATABASE_CONFLICT_ERRORS.append((psycopg2.extensions.TransactionRollbackError, None))

# SQLite reports concurrent writers as a locked database
try:
    import sqlite3
except ImportError:
    pass
else:
    DATABASE_CONFLICT_ERRORS.append((sqlite3.OperationalError, lambda e: "locked" in str(e.orig)))


logger = logging.getLogger(__name__)


class ConflictResolver:
    """Run functions in database transactions and replay them on serialization conflicts.
    """

    def __init__(self, session_factory, retries):
        """
        :param session_factory: `callback()` giving a SQLAlchemy session for each transaction

        :param retries: How many times we replay a conflicting transaction before giving up
        """
        self.retries = retries

        self.session_factory = session_factory

        # Beancounting how well we are doing
        self.stats = Counter(success=0, retries=0, errors=0, unresolved=0)

    @classmethod
    def is_retryable_exception(cls, e):
        """Does the exception look like a database conflict error?

        :param e: Python Exception instance
        """

        # Version counter mismatch in the ORM layer
        if isinstance(e, StaleDataError):
            return True

        if not isinstance(e, (OperationalError, DBAPIError)):
            return False

        orig = e.orig

        for err, func in DATABASE_CONFLICT_ERRORS:
            if isinstance(orig, err):
                if func:
                    return func(e)
                else:
                    return True

        return False

    def managed_transaction(self, func):
        """Function decorator replaying the function on transaction conflicts.

        The decorated function receives the session as the first argument. The session is committed when the function returns. Once ``retries`` is exceeded :py:class:`CannotResolveDatabaseConflict` is raised.
        """

        def decorated_func(*args, **kwargs):

            attempts = self.retries

            session = self.session_factory()

            while attempts >= 0:

                try:
                    result = func(session, *args, **kwargs)
                    session.commit()
                    self.stats["success"] += 1
                    return result

                except Exception as e:

                    session.rollback()

                    if self.is_retryable_exception(e):
                        self.stats["retries"] += 1
                        attempts -= 1
                        if attempts < 0:
                            self.stats["unresolved"] += 1
                            raise CannotResolveDatabaseConflict("Could not replay the transaction {} even after {} attempts".format(func, self.retries)) from e
                        logger.info("Replaying transaction %s after conflict: %s", func.__name__, e)
                        continue
                    else:
                        self.stats["errors"] += 1
                        raise

        decorated_func.__name__ = "{} wrapped by managed_transaction".format(func.__name__)

        return decorated_func

    def managed_non_retryable_transaction(self, func):
        """Same as ``managed_transaction``, but a conflict is reported instead of replayed.
        """

        def decorated_func(*args, **kwargs):

            session = self.session_factory()

            try:
                result = func(session, *args, **kwargs)
                session.commit()
                self.stats["success"] += 1
                return result

            except Exception as e:

                session.rollback()

                if self.is_retryable_exception(e):
                    self.stats["unresolved"] += 1
                    raise CannotResolveDatabaseConflict("Cannot attempt to retry the transaction {}".format(func)) from e
                else:
                    self.stats["errors"] += 1
                    raise

        decorated_func.__name__ = "{} wrapped by managed_non_retryable_transaction".format(func.__name__)

        return decorated_func

    def transaction(self):
        """Context manager giving the session, committing on success and rolling back on exception.

        No replays. Useful in tests and shell sessions::

            with conflict_resolver.transaction() as session:
                balance = RuneBalance.get(session, "alice", "840000:1")
        """
        return ContextManager(self)


class CannotResolveDatabaseConflict(Exception):
    """The managed_transaction decorator has given up trying to resolve the conflict.

    Long-running transactions or overload are blocking our rows. The caller gets an error instead of a settlement.
    """


class ContextManager:

    def __init__(self, conflict_resolver):
        self.conflict_resolver = conflict_resolver

    def __enter__(self):
        self.session = self.conflict_resolver.session_factory()
        return self.session

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type:
            self.session.rollback()
        else:
            self.session.commit()
