import logging
from typing import Optional

PACKAGE_LOGGER = "ilgraph"

default_handler = logging.StreamHandler()
default_handler.setFormatter(
    logging.Formatter("%(asctime)s - %(name)s - %(levelname)s: %(message)s")
)


def get_logger(name: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
    """Get a logger below the package logger.

    Only the package logger holds the default handler, loggers of modules
    propagate to it, so records are printed once however many components
    share a session.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)

    if default_handler not in package_logger.handlers:
        package_logger.addHandler(default_handler)

    if name and name != PACKAGE_LOGGER and not name.startswith(f"{PACKAGE_LOGGER}."):
        name = f"{PACKAGE_LOGGER}.{name}"

    logger = logging.getLogger(name or PACKAGE_LOGGER)
    logger.setLevel(level)

    return logger
