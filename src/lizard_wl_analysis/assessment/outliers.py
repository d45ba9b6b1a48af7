"""
Outlier detection among technical replicates.

Applies the boxplot (IQR) rule within each (subject_id, date) replicate group
and removes flagged readings before averaging. Groups too small to define a
spread are never filtered, and a group is never reduced below a minimum
number of retained replicates; such groups are flagged instead.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from lizard_wl_analysis.constants import (
    DEFAULT_IQR_WHIS,
    DEFAULT_MIN_GROUP_SIZE,
    DEFAULT_MIN_RETAINED,
    GROUP_COLS,
    QUALITY_FLAG_COL,
)
from lizard_wl_analysis.exceptions import DataQualityWarning

logger = logging.getLogger(__name__)

FLAG_COLUMNS = ["n_total", "n_removed", "n_retained", QUALITY_FLAG_COL, "detail"]


@dataclass
class OutlierFilterResult:
    """Inlier rows, removed rows, and one flag row per replicate group."""

    inliers: pd.DataFrame
    outliers: pd.DataFrame
    flags: pd.DataFrame


def detect_outliers_iqr(
    values: np.ndarray | pd.Series,
    *,
    whis: float = DEFAULT_IQR_WHIS,
) -> np.ndarray:
    """
    Identify outliers using the interquartile range (IQR) method.

    Outliers are points outside [Q1 - whis*IQR, Q3 + whis*IQR],
    where IQR = Q3 - Q1. Default whis=1.5 matches the standard boxplot rule.

    Args:
        values: 1D array or Series of numeric values.
        whis: Multiplier for IQR (default 1.5).

    Returns:
        Boolean array: True for outliers, False otherwise. NaN values are
        marked as False (not counted as outliers).

    Example:
        >>> detect_outliers_iqr([10, 10.2, 9.8, 10.1, 25.0])
        array([False, False, False, False,  True])
    """
    vals = np.asarray(values, dtype=float)
    mask_valid = np.isfinite(vals)
    result = np.zeros(len(vals), dtype=bool)

    if not mask_valid.any():
        return result

    q1 = np.nanpercentile(vals, 25)
    q3 = np.nanpercentile(vals, 75)
    iqr = q3 - q1

    if iqr <= 0:
        return result

    lower = q1 - whis * iqr
    upper = q3 + whis * iqr
    result[mask_valid] = (vals[mask_valid] < lower) | (vals[mask_valid] > upper)
    return result


def _filter_group(
    values: np.ndarray,
    *,
    whis: float,
    min_group_size: int,
    min_retained: int,
) -> tuple[np.ndarray, bool, str]:
    """
    Remove IQR outliers from one group until none remain.

    Returns (keep mask, quality flag, detail). A pass that would leave fewer
    than ``min_retained`` finite values is not applied and sets the flag.
    """
    keep = np.ones(len(values), dtype=bool)
    while True:
        current = np.flatnonzero(keep & np.isfinite(values))
        if len(current) < min_group_size:
            return keep, False, ""
        flagged = detect_outliers_iqr(values[current], whis=whis)
        if not flagged.any():
            return keep, False, ""
        if len(current) - int(flagged.sum()) < min_retained:
            return (
                keep,
                True,
                f"removing {int(flagged.sum())} more would leave "
                f"{len(current) - int(flagged.sum())} < {min_retained} replicates",
            )
        keep[current[flagged]] = False


def filter_replicate_outliers(
    df: pd.DataFrame,
    value_col: str,
    *,
    group_cols: Optional[list[str]] = None,
    whis: float = DEFAULT_IQR_WHIS,
    min_group_size: int = DEFAULT_MIN_GROUP_SIZE,
    min_retained: int = DEFAULT_MIN_RETAINED,
) -> OutlierFilterResult:
    """
    Split replicate records into inliers and outliers per replicate group.

    Within each group of at least ``min_group_size`` readings, IQR outliers are
    removed and the rule re-applied until the group is stable, so filtering an
    already-filtered table removes nothing. Missing values are neither flagged
    nor counted.

    Args:
        df: Reconciled records.
        value_col: Measured quantity to filter on.
        group_cols: Replicate group key (default: subject_id, date).
        whis: IQR multiplier.
        min_group_size: Smaller groups are never filtered.
        min_retained: Minimum finite replicates left after filtering. When a
            pass would go below it, the pass is skipped, the group flagged, and
            a DataQualityWarning emitted.

    Returns:
        OutlierFilterResult with ``flags`` holding one row per group:
        group_cols + n_total, n_removed, n_retained, data_quality_flag, detail.
    """
    if value_col not in df.columns:
        raise ValueError(
            f"value_col '{value_col}' not in DataFrame. "
            f"Available: {list(df.columns)}"
        )
    group_cols = list(group_cols or GROUP_COLS)
    missing = [c for c in group_cols if c not in df.columns]
    if missing:
        raise ValueError(
            f"group_cols {missing} not in DataFrame. Available: {list(df.columns)}"
        )

    keep = pd.Series(True, index=df.index)
    flag_rows: list[dict] = []
    for key, g in df.groupby(group_cols, sort=True):
        key = key if isinstance(key, tuple) else (key,)
        mask, flagged, detail = _filter_group(
            g[value_col].to_numpy(dtype=float),
            whis=whis,
            min_group_size=min_group_size,
            min_retained=min_retained,
        )
        keep.loc[g.index] = mask
        n_removed = int((~mask).sum())
        flag_rows.append(
            {
                **dict(zip(group_cols, key)),
                "n_total": len(g),
                "n_removed": n_removed,
                "n_retained": len(g) - n_removed,
                QUALITY_FLAG_COL: flagged,
                "detail": detail,
            }
        )
        if flagged:
            label = ", ".join(str(k) for k in key)
            logger.warning("Replicate group (%s): %s", label, detail)
            warnings.warn(
                f"Replicate group ({label}): {detail}",
                DataQualityWarning,
                stacklevel=2,
            )

    flags = pd.DataFrame(flag_rows, columns=group_cols + FLAG_COLUMNS)
    inliers = df.loc[keep].copy()
    outliers = df.loc[~keep].copy()
    if not outliers.empty:
        logger.info(
            "Removed %d outlier(s) from %d replicate group(s)",
            len(outliers),
            int((flags["n_removed"] > 0).sum()),
        )
    return OutlierFilterResult(inliers=inliers, outliers=outliers, flags=flags)
