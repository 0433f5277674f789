"""Shared utility functions for lancedb-kv."""

import time


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def key_predicate(key: str) -> str:
    """Predicate matching exactly one key.

    Examples:
        k1 -> key = 'k1'
        it's -> key = 'it''s'
    """
    return f"key = '{escape_filter_value(key)}'"


def prefix_predicate(prefix: str) -> str:
    """Literal prefix match on key; '%' and '_' are not wildcards here."""
    return f"starts_with(key, '{escape_filter_value(prefix)}')"


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return time.time_ns() // 1_000_000
