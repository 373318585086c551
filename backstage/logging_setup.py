import logging
from typing import Optional

FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Attach handlers to the ``backstage`` logger once; later calls only adjust the level."""
    logger = logging.getLogger("backstage")
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter(FORMAT)
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        logger.addHandler(stream)
        if log_file:
            handler = logging.FileHandler(log_file)
            handler.setFormatter(formatter)
            logger.addHandler(handler)

    return logger
