from __future__ import annotations
import logging
from typing import Optional

FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Configures the package logger once; later calls only adjust the level."""
    logger = logging.getLogger("hostsentry")
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    logger.setLevel(lvl)

    if not logger.handlers:
        formatter = logging.Formatter(FORMAT)

        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

        if log_file:
            fh = logging.FileHandler(log_file, encoding="utf-8")
            fh.setFormatter(formatter)
            logger.addHandler(fh)
        logger.propagate = False

    return logger
