"""Idempotent file helpers."""

import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)

OWNER_ONLY = 0o600
OWNER_ONLY_DIR = 0o700


def write_if_changed(path: Path, content: str, mode: int = OWNER_ONLY) -> bool:
    """Write ``content`` unless the file already holds it.

    Permissions are enforced either way. Returns True when the content
    changed.
    """
    path = Path(path)
    changed = True
    if path.exists():
        changed = path.read_text() != content

    if changed:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_text(content)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
        logger.debug(f"Wrote {path}")
    else:
        os.chmod(path, mode)

    return changed


def copy_if_changed(source: Path, target: Path, mode: int = OWNER_ONLY) -> bool:
    """Copy a file unless the target is already identical."""
    source = Path(source)
    target = Path(target)
    data = source.read_bytes()
    if target.exists() and target.read_bytes() == data:
        os.chmod(target, mode)
        return False

    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, target)
    os.chmod(target, mode)
    logger.debug(f"Copied {source} to {target}")
    return True


def backup_file(path: Path, now: Optional[datetime] = None) -> Optional[Path]:
    """Copy ``path`` aside with a date-stamped suffix; never overwrites a backup."""
    path = Path(path)
    if not path.exists():
        return None

    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    backup = path.with_name(f"{path.name}.bak.{stamp}")
    counter = 1
    while backup.exists():
        backup = path.with_name(f"{path.name}.bak.{stamp}.{counter}")
        counter += 1

    shutil.copy2(path, backup)
    logger.debug(f"Backed up {path} to {backup}")
    return backup


def replace_block(text: str, begin: str, end: str, body: str) -> str:
    """Insert or replace a marker-delimited block in ``text``."""
    block = f"{begin}\n{body.rstrip()}\n{end}\n"
    start = text.find(begin)
    if start == -1:
        if text and not text.endswith("\n"):
            text += "\n"
        return text + block

    stop = text.find(end, start)
    if stop == -1:
        # Unterminated block: drop everything after the begin marker
        return text[:start] + block
    stop += len(end)
    if stop < len(text) and text[stop] == "\n":
        stop += 1
    return text[:start] + block + text[stop:]


def read_block(text: str, begin: str, end: str) -> Optional[str]:
    """Body of a marker-delimited block, or None when absent."""
    start = text.find(begin)
    if start == -1:
        return None
    stop = text.find(end, start)
    if stop == -1:
        return None
    return text[start + len(begin):stop].strip("\n")
