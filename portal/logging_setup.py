import logging

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach one stream handler to the ``portal`` logger (idempotent)."""
    logger = logging.getLogger("portal")
    logger.setLevel(level.upper())
    if not any(getattr(h, "_portal_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._portal_handler = True
        logger.addHandler(handler)
    return logger
