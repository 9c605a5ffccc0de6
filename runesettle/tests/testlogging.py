"""Python logging setup for unit test runs."""

import os
import logging
import sys

from rainbow_logging_handler import RainbowLoggingHandler


def setup():
    formatter = logging.Formatter("[%(asctime)s] %(name)s %(funcName)s():%(lineno)d\t%(message)s")

    # setup `RainbowLoggingHandler`
    # and quiet some logs for the test output
    handler = RainbowLoggingHandler(sys.stderr)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.handlers = [handler]

    if "VERBOSE_TEST" in os.environ:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.ERROR)

    logging.getLogger("urllib3.connectionpool").setLevel(logging.ERROR)

    logging.getLogger("apscheduler").setLevel(logging.ERROR)

    # SQL Alchemy transactions
    logging.getLogger("sqlalchemy.engine").setLevel(logging.ERROR)
