"""
Part of il2cppfile

Logging setup shared by the image parser, the registration loader and the recovery heuristics.
"""

import logging


LOG_FORMAT = '%(levelname)s - %(process)d - %(asctime)s - %(filename)s - %(lineno)d - %(message)s'


def initialize_logging(logger_name: str, level: int = logging.DEBUG) -> logging.Logger:
    curr_logger = logging.getLogger(logger_name)

    if not curr_logger.hasHandlers():
        formatter = logging.Formatter(LOG_FORMAT)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        curr_logger.addHandler(console_handler)
        curr_logger.propagate = False

    # Several images may be opened in one process with different verbosity, the last one wins
    curr_logger.setLevel(level)
    for handler in curr_logger.handlers:
        handler.setLevel(level)

    return curr_logger


def get_logger(logger_name: str, level: int = logging.DEBUG) -> logging.Logger:
    return initialize_logging(logger_name, level)
