"""
Utility helpers for PEAK CRM.
YAML loading, date parsing and atomic JSON writes.

Usage:
    from scripts.lib.utils import load_yaml, parse_datetime
"""
import json
import os
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger

logger = setup_logger("utils")


def load_yaml(path: str | Path) -> Dict:
    """
    Read a YAML mapping from disk.

    Raises:
        ConfigError: If the file is missing, unparsable, or not a mapping.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}", config_path=str(path))
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}", config_path=str(path))
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping in {path}", config_path=str(path))
    return data


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO date/datetime string (or date object) to an aware UTC datetime.
    Returns None for empty or unparsable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip().replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def atomic_write_json(data: Dict, file_path: str | Path, indent: int = 2) -> bool:
    """
    Write JSON to file via temp file + rename.

    Returns:
        True if successful, False otherwise.
    """
    file_path = Path(file_path)
    temp_path = file_path.with_suffix(file_path.suffix + ".tmp")

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=indent, default=str)

        os.replace(temp_path, file_path)
        logger.debug("Wrote JSON to %s", file_path)
        return True

    except OSError as e:
        logger.error("Failed to write JSON to %s: %s", file_path, e)
        if temp_path.exists():
            temp_path.unlink()
        return False
