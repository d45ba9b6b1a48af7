"""
Table transformations: reconciliation, aggregation and ad hoc corrections.
"""

from .aggregation import aggregate_replicates, join_auxiliary, join_subject_metadata
from .corrections import (
    Correction,
    apply_corrections,
    correction_from_dict,
    subject_correction,
    threshold_correction,
    window_correction,
)
from .reconciliation import (
    ReconciliationResult,
    TimestampMatch,
    apply_reassignments,
    check_group_cardinality,
    drop_excluded_subjects,
    match_corroborating_timestamp,
    measurement_order,
    propose_reassignments,
    reconcile_replicates,
    renumber_replicates,
)

__all__ = [
    "Correction",
    "ReconciliationResult",
    "TimestampMatch",
    "aggregate_replicates",
    "apply_corrections",
    "apply_reassignments",
    "check_group_cardinality",
    "correction_from_dict",
    "drop_excluded_subjects",
    "join_auxiliary",
    "join_subject_metadata",
    "match_corroborating_timestamp",
    "measurement_order",
    "propose_reassignments",
    "reconcile_replicates",
    "renumber_replicates",
    "subject_correction",
    "threshold_correction",
    "window_correction",
]
