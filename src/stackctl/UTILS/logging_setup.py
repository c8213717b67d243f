"""
Logging configuration for the command line entry point.
"""
import logging
import sys

LOGGER_NAME = "stackctl"


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Sets up the package logger with a single stderr handler.

    Safe to call more than once; existing handlers are replaced.

    :param log_level: DEBUG, INFO, WARNING or ERROR.
    :return: The configured package logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []

    handler = logging.StreamHandler(sys.stderr)
    if log_level.upper() == "DEBUG":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    else:
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False

    return logger
