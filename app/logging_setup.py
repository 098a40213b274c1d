from __future__ import annotations
from logging.handlers import RotatingFileHandler
from pathlib import Path
import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILE = "burrow.log"

_configured = False


def configure_logging(log_dir: Path, debug: bool = False) -> None:
    """
    Send all module loggers to a rotating file (10 MB x 5) and the console.
    Calling it again only adjusts the level.
    """
    global _configured
    level = logging.DEBUG if debug else logging.INFO
    root = logging.getLogger()
    root.setLevel(level)
    if _configured:
        return

    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = RotatingFileHandler(
        log_dir / LOG_FILE, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    console = logging.StreamHandler()
    console.setFormatter(formatter)

    root.addHandler(file_handler)
    root.addHandler(console)

    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    _configured = True
