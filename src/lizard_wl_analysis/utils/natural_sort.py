"""Natural (human-friendly) sorting for subject identifiers.

Field subject ids mix letters and numbers ("L2", "L10", "PB-03"). Sorting them
as plain strings puts "L10" before "L2"; natural order compares the numeric
parts numerically. Pure text sorts after strings containing digits.
"""

import re
from typing import Callable, Iterable, List, Optional


def natural_sort_key(text: str) -> tuple:
    """Build a key for natural sorting of strings with embedded numbers.

    Examples:
        - "L10" is ordered after "L2".
        - "PB-3" is ordered before "PB-12".
        - "UNKNOWN" is ordered after "L99" (text-only goes last).

    Args:
        text: Input string.

    Returns:
        Tuple (has_digit, parts) used by ``sorted``.
    """
    text = str(text)
    has_digit = bool(re.search(r"\d", text))

    def convert(part: str) -> tuple:
        if part.isdigit():
            return (0, int(part))
        return (1, part.lower())

    parts = [convert(c) for c in re.split(r"([0-9]+)", text) if c]
    return (0 if has_digit else 1, parts)


def natural_sort(
    items: Iterable[str],
    key_func: Optional[Callable[[str], tuple]] = None,
) -> List[str]:
    """Sort strings using natural order; returns a new list."""
    items = list(items)
    if not items:
        return items
    key = key_func if key_func is not None else natural_sort_key
    return sorted(items, key=key)


def order_subject_ids(values: Iterable[str]) -> List[str]:
    """Unique subject ids in natural order ("L2" before "L10")."""
    return natural_sort({str(v) for v in values})
