"""
Logging setup shared by the PEAK CRM API, sales engines and batch jobs.

Every module gets a named logger that writes to stdout and to a per-day
file under logs/.

Usage:
    from scripts.lib.logger import setup_logger
    logger = setup_logger("opportunities_router")
    logger.info("Stage changed for %s", opportunity_id)
"""
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
LOG_DIR = PROJECT_ROOT / "logs"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def setup_logger(
    name: str,
    level: str = None,
    log_to_file: bool = True,
    log_dir: Path = None,
) -> logging.Logger:
    """
    Build (or return the already-built) logger for a module.

    Args:
        name: Logger name, usually the module or router name.
        level: Level name; falls back to LOG_LEVEL, then INFO.
        log_to_file: Also write to logs/YYYYMMDD_peak_crm.log.
        log_dir: Override the log directory.

    Returns:
        The configured logger.
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    level = level or os.getenv("LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_to_file:
        target_dir = Path(log_dir) if log_dir else LOG_DIR
        target_dir.mkdir(parents=True, exist_ok=True)

        log_file = target_dir / f"{datetime.now().strftime('%Y%m%d')}_peak_crm.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
