"""
Lizard Water-Loss Analysis Package

Replicate reconciliation, outlier filtering, aggregation, ad hoc correction
and export of repeated physiological measurements (evaporative water loss,
plasma osmolality, hematocrit, chamber climate) taken on lizards over a
multi-day experiment.
"""

from .assessment import (
    coefficient_of_variation,
    compute_replicate_consistency,
    detect_outliers_iqr,
    filter_replicate_outliers,
    flag_high_cv,
    pairwise_comparisons,
    summarize_groups,
)
from .config import load_config
from .data import (
    export_table,
    load_measurement_files,
    read_exported_table,
)
from .exceptions import (
    AnalysisError,
    ConfigError,
    DataQualityWarning,
    ParseError,
    ReconciliationError,
)
from .pipeline import MeasurementResult, run_measurement, run_pipeline
from .processing import (
    aggregate_replicates,
    apply_corrections,
    join_auxiliary,
    reconcile_replicates,
)
from .report import build_qc_report_pdf
from .visualization import plot_replicate_groups

__version__ = "0.1.0"

__all__ = [
    "AnalysisError",
    "ConfigError",
    "DataQualityWarning",
    "MeasurementResult",
    "ParseError",
    "ReconciliationError",
    "aggregate_replicates",
    "apply_corrections",
    "build_qc_report_pdf",
    "coefficient_of_variation",
    "compute_replicate_consistency",
    "detect_outliers_iqr",
    "export_table",
    "filter_replicate_outliers",
    "flag_high_cv",
    "join_auxiliary",
    "load_config",
    "load_measurement_files",
    "pairwise_comparisons",
    "plot_replicate_groups",
    "read_exported_table",
    "reconcile_replicates",
    "run_measurement",
    "run_pipeline",
    "summarize_groups",
    "__version__",
]
