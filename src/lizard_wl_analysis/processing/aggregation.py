"""
Aggregation of retained replicates into one observation per subject and date.

Never imputes: joins either keep rows with missing auxiliary values (left) or
drop them (inner), depending on whether downstream use requires both fields.
"""

import logging
from typing import Optional

import pandas as pd

from lizard_wl_analysis.assessment.consistency import coefficient_of_variation
from lizard_wl_analysis.constants import (
    CV_COL,
    GROUP_COLS,
    N_OUTLIERS_COL,
    N_REPLICATES_COL,
    QUALITY_FLAG_COL,
    SUBJECT_COL,
)

logger = logging.getLogger(__name__)


def aggregate_replicates(
    inliers: pd.DataFrame,
    value_col: str,
    *,
    companion_cols: Optional[list[str]] = None,
    outliers: Optional[pd.DataFrame] = None,
    flags: Optional[pd.DataFrame] = None,
    group_cols: Optional[list[str]] = None,
) -> pd.DataFrame:
    """
    Average retained replicates per (subject_id, date).

    Args:
        inliers: Records that survived outlier filtering.
        value_col: Measured quantity.
        companion_cols: Channels measured alongside (e.g. chamber temperature);
            averaged over the same retained records.
        outliers: Removed records, counted into ``n_outliers``.
        flags: Per-group flags from filter_replicate_outliers; carries the
            data_quality_flag into the output.
        group_cols: Replicate group key (default: subject_id, date).

    Returns:
        One row per group: group_cols, value_col (mean), companions (mean),
        n_replicates, n_outliers, cv_percent, data_quality_flag.
        The mean ignores missing readings and is independent of row order.
    """
    group_cols = list(group_cols or GROUP_COLS)
    companion_cols = [c for c in (companion_cols or []) if c != value_col]
    missing = [c for c in [value_col, *companion_cols, *group_cols] if c not in inliers.columns]
    if missing:
        raise ValueError(
            f"Columns {missing} not in DataFrame. Available: {list(inliers.columns)}"
        )

    grouped = inliers.groupby(group_cols, sort=True)
    agg = grouped[[value_col, *companion_cols]].mean()
    agg[N_REPLICATES_COL] = grouped[value_col].count()
    agg[CV_COL] = grouped[value_col].agg(coefficient_of_variation)
    agg = agg.reset_index()

    if outliers is not None and not outliers.empty:
        n_out = outliers.groupby(group_cols).size().rename(N_OUTLIERS_COL).reset_index()
        agg = agg.merge(n_out, on=group_cols, how="left")
    else:
        agg[N_OUTLIERS_COL] = 0
    agg[N_OUTLIERS_COL] = agg[N_OUTLIERS_COL].fillna(0).astype(int)

    if flags is not None and not flags.empty:
        agg = agg.merge(
            flags[group_cols + [QUALITY_FLAG_COL]], on=group_cols, how="left"
        )
        agg[QUALITY_FLAG_COL] = agg[QUALITY_FLAG_COL].fillna(False).astype(bool)
    else:
        agg[QUALITY_FLAG_COL] = False

    return agg


def join_auxiliary(
    agg: pd.DataFrame,
    aux: pd.DataFrame,
    columns: list[str],
    *,
    required: bool = True,
    suffix: Optional[str] = None,
    on: Optional[list[str]] = None,
) -> pd.DataFrame:
    """
    Join single-value-per-subject-per-date auxiliary measurements.

    Args:
        agg: Aggregated table.
        aux: Another measurement's aggregated table.
        columns: Auxiliary columns to bring over.
        required: Inner join when True (rows lacking the auxiliary value are
            dropped for that date), left join otherwise.
        suffix: Appended to auxiliary column names that clash with ``agg``.
        on: Join keys (default: subject_id, date).

    Raises:
        ValueError: If a column is missing or ``aux`` has duplicate keys.
    """
    on = list(on or GROUP_COLS)
    missing = [c for c in [*on, *columns] if c not in aux.columns]
    if missing:
        raise ValueError(
            f"Auxiliary columns {missing} not found. Available: {list(aux.columns)}"
        )
    if aux.duplicated(subset=on).any():
        raise ValueError("Auxiliary table must have one row per subject and date")

    right = aux[on + columns]
    clashes = [c for c in columns if c in agg.columns]
    if clashes:
        tag = suffix or "aux"
        right = right.rename(columns={c: f"{c}_{tag}" for c in clashes})

    how = "inner" if required else "left"
    out = agg.merge(right, on=on, how=how, validate="1:1")
    dropped = len(agg) - len(out)
    if dropped:
        logger.info(
            "Dropped %d observation(s) without auxiliary %s", dropped, columns
        )
    return out


def join_subject_metadata(agg: pd.DataFrame, metadata: pd.DataFrame) -> pd.DataFrame:
    """Left-join per-subject metadata (treatment group, sex, body size...)."""
    if metadata is None or metadata.empty:
        return agg.copy()
    extra = [c for c in metadata.columns if c != SUBJECT_COL and c not in agg.columns]
    return agg.merge(
        metadata[[SUBJECT_COL, *extra]], on=SUBJECT_COL, how="left", validate="m:1"
    )
