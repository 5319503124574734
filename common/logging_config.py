# common/logging_config.py
import logging

from utils.logger import get_logger

LOGGER_NAME = "reservation-core"


def configure_logging(level=None):
    logger = get_logger(LOGGER_NAME)
    if level is not None:
        logger.setLevel(level)
        for h in logger.handlers:
            if type(h) is logging.StreamHandler:
                h.setLevel(level)
    return logger
