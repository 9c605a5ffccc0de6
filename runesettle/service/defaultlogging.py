"""Default logging settings."""

import os
import logging
import sys

from rainbow_logging_handler import RainbowLoggingHandler


def setup_stdout_logging():
    formatter = logging.Formatter("[%(asctime)s] [%(name)s %(funcName)s] %(message)s")

    # setup `RainbowLoggingHandler`
    # and quiet some chatty libraries
    handler = RainbowLoggingHandler(sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.handlers = [handler]

    if "VERBOSE" in os.environ:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    logging.getLogger("urllib3.connectionpool").setLevel(logging.ERROR)

    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    # Replays are expected under load
    logging.getLogger("runesettle.utils.conflictresolver").setLevel(logging.WARNING)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
