"""Caixa PDV: single-register point of sale with cash-drawer reconciliation.

Importing the package configures the ``caixa_pdv`` logger once. Records go to
``.logs/caixa_pdv.log`` beside the source checkout, or to the directory named
by ``CAIXA_PDV_LOG_DIR`` when the package runs from an installed location.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "CAIXA_PDV_LOG_DIR"
LOG_FILE_NAME = "caixa_pdv.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def resolve_log_file(environ: Optional[dict] = None) -> Path:
    """Return the log file path, honouring ``CAIXA_PDV_LOG_DIR``."""

    environ = os.environ if environ is None else environ
    override = environ.get(LOG_DIR_ENV, "").strip()
    log_dir = Path(override).expanduser() if override else PROJECT_ROOT / ".logs"
    return log_dir / LOG_FILE_NAME


def configure_logging(
    name: str = __name__,
    *,
    log_file: Optional[Path] = None,
    level: int = logging.INFO,
) -> logging.Logger:
    """Attach the rotating file handler and the stderr handler to ``name``.

    Calling it again for a logger that already has handlers is a no-op, so
    re-imports never duplicate output.
    """

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    log_file = log_file if log_file is not None else resolve_log_file()

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: unable to initialize log file at '{log_file}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = configure_logging()
log.debug("Logger initialized for the 'caixa_pdv' package.")
