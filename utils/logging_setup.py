"""
Logging setup for the killfeed ingestion bot.

Configures the root handler and turns down the noisier libraries.
"""
import logging
import os


def setup_logging(level=None):
    """Set up logging configuration for the bot

    Args:
        level: Root log level, defaults to LOG_LEVEL from the environment or INFO
    """
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO").upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Avoid stacking handlers when called more than once
    if not any(getattr(handler, "_killfeed_console", False) for handler in root_logger.handlers):
        console = logging.StreamHandler()
        console._killfeed_console = True
        console.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s'))
        root_logger.addHandler(console)

    # Reduce noise from external libraries
    logging.getLogger('discord').setLevel(logging.WARNING)
    logging.getLogger('websockets').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('asyncssh').setLevel(logging.WARNING)
    logging.getLogger('asyncssh.sftp').setLevel(logging.WARNING)
    logging.getLogger('motor').setLevel(logging.WARNING)
    logging.getLogger('pymongo').setLevel(logging.WARNING)
