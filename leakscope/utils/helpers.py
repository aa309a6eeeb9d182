# leakscope/utils/helpers.py - Helper functions
"""
General utility and helper functions.
"""

from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Sequence
import json
import logging


logger = logging.getLogger(__name__)


def format_bytes(bytes_count: float) -> str:
    """
    Format bytes into human-readable string.

    Args:
        bytes_count: Number of bytes

    Returns:
        Formatted string (e.g., "1.5 MB")
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if abs(bytes_count) < 1024.0:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024.0

    return f"{bytes_count:.1f} PB"


def format_duration(duration_ns: float) -> str:
    """
    Format duration in nanoseconds to human-readable string.

    Args:
        duration_ns: Duration in nanoseconds

    Returns:
        Formatted string (e.g., "1.5ms")
    """
    magnitude = abs(duration_ns)
    if magnitude < 1000:
        return f"{duration_ns:.0f}ns"
    elif magnitude < 1_000_000:
        return f"{duration_ns/1000:.1f}us"
    elif magnitude < 1_000_000_000:
        return f"{duration_ns/1_000_000:.1f}ms"
    else:
        return f"{duration_ns/1_000_000_000:.1f}s"


def format_value(value: float, unit: str) -> str:
    """
    Format a sample value according to its profile unit.

    Args:
        value: Value to format
        unit: 'bytes', 'nanoseconds' or 'count'

    Returns:
        Formatted string
    """
    if unit == 'bytes':
        return format_bytes(value)
    if unit == 'nanoseconds':
        return format_duration(value)
    if float(value).is_integer():
        return f"{int(value)}"
    return f"{value:.2f}"


def parse_tags(pairs: Sequence[str]) -> Dict[str, str]:
    """
    Parse 'key=value' strings into a tag mapping.

    Raises:
        ValueError: on a pair without '='
    """
    tags = {}
    for pair in pairs:
        key, sep, value = pair.partition('=')
        if not sep or not key:
            raise ValueError(f"tag must look like key=value: {pair!r}")
        tags[key.strip()] = value.strip()
    return tags


def parse_time(value: str) -> float:
    """
    Parse POSIX seconds or an ISO-8601 timestamp.

    Args:
        value: e.g. '1700000000' or '2024-01-01T12:00:00'

    Returns:
        POSIX seconds
    """
    try:
        return float(value)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value).timestamp()
    except ValueError:
        raise ValueError(f"not a timestamp: {value!r}") from None


def read_batches(path: str) -> Iterator[dict]:
    """
    Read JSON-lines batch records from a file.

    Unparseable lines are logged and skipped.

    Args:
        path: Path to the JSON-lines file

    Yields:
        Decoded batch mappings
    """
    with open(Path(path), 'r') as f:
        for line_number, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"{path}:{line_number}: skipping unparseable batch: {e}")
