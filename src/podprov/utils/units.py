"""Parsing helpers for resource quantities."""

import re
from typing import Union


_SIZE_RE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*([a-zA-Z]*)\s*$")

_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "ki": 1024,
    "kib": 1024,
    "m": 1000 ** 2,
    "mb": 1000 ** 2,
    "mi": 1024 ** 2,
    "mib": 1024 ** 2,
    "g": 1000 ** 3,
    "gb": 1000 ** 3,
    "gi": 1024 ** 3,
    "gib": 1024 ** 3,
    "t": 1000 ** 4,
    "tb": 1000 ** 4,
    "ti": 1024 ** 4,
    "tib": 1024 ** 4,
}


def parse_size(value: Union[str, int, float]) -> int:
    """Parse a size such as ``4Gi``, ``512MB`` or ``1.5GB`` into bytes."""
    if isinstance(value, (int, float)):
        return int(value)

    match = _SIZE_RE.match(value)
    if not match:
        raise ValueError(f"Invalid size: {value!r}")

    number, unit = match.groups()
    multiplier = _SIZE_UNITS.get(unit.lower())
    if multiplier is None:
        raise ValueError(f"Unknown size unit {unit!r} in {value!r}")
    return int(float(number) * multiplier)


def parse_percent(value: Union[str, int, float]) -> float:
    """Parse a CPU percentage such as ``200``, ``12.5%`` or ``--``."""
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip().rstrip("%").strip()
    if text in ("", "--"):
        return 0.0
    try:
        return float(text)
    except ValueError:
        raise ValueError(f"Invalid percentage: {value!r}") from None


def format_size(num_bytes: float) -> str:
    """Format bytes using binary units."""
    size = float(num_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(size) < 1024:
            return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}B"
        size /= 1024
    return f"{size:.1f}TiB"


def version_tuple(version: str) -> tuple:
    """Turn ``4.9.3`` or ``v5.0.0-rc1`` into a comparable tuple of ints."""
    parts = []
    for piece in version.strip().lstrip("v").split("-")[0].split("."):
        digits = re.match(r"\d+", piece)
        parts.append(int(digits.group()) if digits else 0)
    return tuple(parts)
