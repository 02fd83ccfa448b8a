import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
ROOT_LOGGER = "account_pool"


def configure_logging(level: str = "INFO") -> None:
    """
    Install the shared format on the root logger and set the package level.
    """
    if not logging.getLogger().handlers:
        logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger(ROOT_LOGGER).setLevel(level.upper())


def get_logger(name: str) -> logging.Logger:
    """
    Return a module-scoped logger under the package logger.
    """
    if not logging.getLogger().handlers:
        configure_logging()
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
