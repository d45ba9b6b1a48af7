"""
Exception hierarchy for the replicate QC pipeline.

Errors carry a ``context`` dict (subject id, date, file, record timestamps)
so a failed run can be resolved by hand without re-running with prints.
"""

from typing import Any, Optional

import pandas as pd


class AnalysisError(Exception):
    """Base class for pipeline errors."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.context: dict[str, Any] = dict(context or {})

    def with_context(self, context: dict[str, Any]) -> "AnalysisError":
        self.context.update(context)
        return self


class ConfigError(AnalysisError, ValueError):
    """Invalid or incomplete pipeline configuration."""


class ParseError(AnalysisError, ValueError):
    """A source file does not match the expected column layout."""


class ReconciliationError(AnalysisError):
    """
    Replicate group cardinality not explained by a reassignment or an exception.

    ``groups`` holds one row per offending (subject_id, date) group with its
    record count and timestamps, for manual adjudication.
    """

    def __init__(
        self,
        message: str,
        groups: Optional[pd.DataFrame] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.groups = groups if groups is not None else pd.DataFrame()


class DataQualityWarning(UserWarning):
    """Outlier removal would leave fewer replicates than the retention minimum."""
