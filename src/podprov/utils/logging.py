"""Logging utilities."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def log_file_path(log_dir: Path, name: str, now: Optional[datetime] = None) -> Path:
    """Timestamped log file path for a run."""
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return Path(log_dir) / f"{name}-{stamp}.log"


def setup_logging(level: str = "INFO", log_dir: Optional[Path] = None, name: str = "podprov") -> Optional[Path]:
    """Setup logging configuration.

    Logs go to stdout and, when ``log_dir`` is given, to an append-only
    timestamped file. Returns the log file path, if any.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    handlers = [logging.StreamHandler(sys.stdout)]

    log_file = None
    if log_dir is not None:
        log_file = log_file_path(log_dir, name)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))
        except OSError as e:
            print(f"Cannot write log file {log_file}: {e}", file=sys.stderr)
            log_file = None

    # Configure root logger
    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return log_file
