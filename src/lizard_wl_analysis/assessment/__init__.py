"""
Replicate quality control: outliers, consistency and group summaries.

Thresholds (IQR whisker, retention minimum, CV review level) are arguments,
not hard-coded judgements.
"""

from .consistency import (
    coefficient_of_variation,
    compute_replicate_consistency,
    flag_high_cv,
)
from .outliers import (
    OutlierFilterResult,
    detect_outliers_iqr,
    filter_replicate_outliers,
)
from .summary import holm_adjust, pairwise_comparisons, summarize_groups

__all__ = [
    "OutlierFilterResult",
    "coefficient_of_variation",
    "compute_replicate_consistency",
    "detect_outliers_iqr",
    "filter_replicate_outliers",
    "flag_high_cv",
    "holm_adjust",
    "pairwise_comparisons",
    "summarize_groups",
]
