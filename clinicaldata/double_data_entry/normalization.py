# -*- coding: utf-8 -*-
"""
Value normalization for double data-entry comparison.

Two transcriptions of the same source value are considered equal when
their normalized forms are identical. Normalization is deterministic and
total: ``None`` becomes the empty string, every other value is converted
with ``str()``, stripped of leading and trailing whitespace, and
lowercased with Python's codepoint case mapping.

Example:
    >>> from clinicaldata.double_data_entry.normalization import normalize_value
    >>> normalize_value(" 120 ") == normalize_value("120")
    True
    >>> normalize_value(None)
    ''
"""

from __future__ import annotations

from typing import Any

__all__ = ["normalize_value", "values_match"]


def normalize_value(value: Any) -> str:
    """Normalize a raw entry value for comparison.

    Args:
        value: Raw value from either entry pass.

    Returns:
        Normalized string.
    """
    if value is None:
        return ""
    return str(value).strip().lower()


def values_match(first: Any, second: Any) -> bool:
    """Return True if both values normalize to the same string."""
    return normalize_value(first) == normalize_value(second)
