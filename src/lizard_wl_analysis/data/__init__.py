"""
Instrument CSV ingestion, reference tables and deterministic export.
"""

from .export import export_table, read_exported_table, write_summary_tables
from .io import (
    load_corroborating_timestamps,
    load_exceptions,
    load_exclusions,
    load_measurement_files,
    load_reference_table,
    load_treatments,
    normalize_column_name,
    normalize_subject_ids,
)

__all__ = [
    "export_table",
    "load_corroborating_timestamps",
    "load_exceptions",
    "load_exclusions",
    "load_measurement_files",
    "load_reference_table",
    "load_treatments",
    "normalize_column_name",
    "normalize_subject_ids",
    "read_exported_table",
    "write_summary_tables",
]
