"""
Replicate consistency metrics.

Computes the Coefficient of Variation (CV = sd/|mean| x 100) of each replicate
group before and after outlier filtering, and flags groups above a configured
review threshold for a human to look at.
"""

from typing import Optional

import numpy as np
import pandas as pd

from lizard_wl_analysis.constants import GROUP_COLS, REVIEW_FLAG_COL


def coefficient_of_variation(values: np.ndarray | pd.Series) -> float:
    """
    Compute CV = sd/|mean| in percent, using the sample standard deviation.

    Returns NaN for fewer than two finite values or a zero mean.
    """
    vals = np.asarray(values, dtype=float)
    vals = vals[np.isfinite(vals)]
    if len(vals) < 2:
        return np.nan
    mu = np.mean(vals)
    if mu == 0:
        return np.nan
    return float(np.std(vals, ddof=1) / abs(mu) * 100)


def compute_replicate_consistency(
    records: pd.DataFrame,
    value_col: str,
    *,
    inliers: Optional[pd.DataFrame] = None,
    group_cols: Optional[list[str]] = None,
) -> pd.DataFrame:
    """
    Per-group mean, sd and CV of raw and outlier-filtered replicates.

    Args:
        records: All reconciled records.
        value_col: Measured quantity.
        inliers: Records kept by outlier filtering (default: all records).
        group_cols: Replicate group key (default: subject_id, date).

    Returns:
        DataFrame with group_cols + n_total, n_inliers, mean_raw, sd_raw,
        cv_raw, mean_filtered, sd_filtered, cv_filtered.
    """
    if value_col not in records.columns:
        raise ValueError(
            f"value_col '{value_col}' not in DataFrame. "
            f"Available: {list(records.columns)}"
        )
    group_cols = list(group_cols or GROUP_COLS)
    inliers = records if inliers is None else inliers

    def _stats(df: pd.DataFrame, suffix: str) -> pd.DataFrame:
        return (
            df.groupby(group_cols)[value_col]
            .agg(
                **{
                    f"mean_{suffix}": "mean",
                    f"sd_{suffix}": "std",
                    f"cv_{suffix}": coefficient_of_variation,
                }
            )
            .reset_index()
        )

    counts = records.groupby(group_cols).size().rename("n_total").reset_index()
    n_in = inliers.groupby(group_cols).size().rename("n_inliers").reset_index()
    out = (
        counts.merge(n_in, on=group_cols, how="left")
        .merge(_stats(records, "raw"), on=group_cols, how="left")
        .merge(_stats(inliers, "filtered"), on=group_cols, how="left")
    )
    out["n_inliers"] = out["n_inliers"].fillna(0).astype(int)
    return out


def flag_high_cv(
    consistency: pd.DataFrame,
    threshold: Optional[float],
    *,
    cv_col: str = "cv_filtered",
) -> pd.DataFrame:
    """
    Mark groups whose CV (percent) exceeds ``threshold`` as needing review.

    A None threshold flags nothing. NaN CVs are never flagged.
    """
    out = consistency.copy()
    if threshold is None:
        out[REVIEW_FLAG_COL] = False
        return out
    cv = out[cv_col]
    out[REVIEW_FLAG_COL] = (cv.notna() & (cv > float(threshold))).astype(bool)
    return out
