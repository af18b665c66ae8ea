import logging
import sys


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
ROOT_LOGGER = "notiserver"


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the application namespace.
    Only the namespace root owns a handler, so records are never printed twice.
    """
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"

    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(logging.INFO)
        root.propagate = False

    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """
    Apply the configured level and quiet the noisy server loggers.
    """
    get_logger(ROOT_LOGGER).setLevel(level.upper())

    # Access logs duplicate what the ingress already records
    logging.getLogger("uvicorn.access").disabled = True
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
