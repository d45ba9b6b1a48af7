"""
Utility functions shared across the QC pipeline.
"""

from .labels import format_column_label, normalize_column_name
from .natural_sort import (
    natural_sort,
    natural_sort_key,
    order_subject_ids,
)

__all__ = [
    "format_column_label",
    "natural_sort",
    "normalize_column_name",
    "natural_sort_key",
    "order_subject_ids",
]
