"""
Parley - Utility functions.

Created by orpheus497
Version: 1.0.0

Provides timestamp, identifier and text helpers shared by the pipeline.
"""

import logging
import uuid
from datetime import datetime, timezone

from .constants import TEMP_ID_PREFIX

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_PRINTABLE_CONTROLS = "\t\n\r"


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(iso_timestamp: str) -> datetime:
    """
    Parse an ISO 8601 timestamp into an aware datetime.

    A trailing ``Z`` is accepted and naive timestamps are treated as UTC.

    Args:
        iso_timestamp: ISO 8601 timestamp string

    Returns:
        Parsed datetime, or the Unix epoch if parsing fails
    """
    try:
        dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Failed to parse timestamp '{iso_timestamp}': {e}")
        return _EPOCH
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def generate_temp_id() -> str:
    """Generate a local temporary id for an unconfirmed message."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def printable_ascii_ratio(text: str) -> float:
    """
    Share of characters in ``text`` that are printable ASCII.

    Printable means ``0x20``-``0x7E`` plus tab, carriage return and newline.

    Returns:
        Ratio between 0.0 and 1.0 (0.0 for an empty string)
    """
    if not text:
        return 0.0
    printable = sum(1 for char in text if " " <= char <= "~" or char in _PRINTABLE_CONTROLS)
    return printable / len(text)


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """
    Truncate a string to a maximum length.

    Args:
        s: String to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated string
    """
    if len(s) <= max_length:
        return s
    return s[: max_length - len(suffix)] + suffix


def format_key_preview(key_material: bytes, visible: int = 8) -> str:
    """
    Format key material for display without revealing all of it.

    Args:
        key_material: Raw key bytes
        visible: Number of leading characters to show

    Returns:
        Preview such as ``'3f9a0c1e… (32 bytes)'``
    """
    text = key_material.decode("utf-8", "replace")
    return f"{text[:visible]}… ({len(key_material)} bytes)"
