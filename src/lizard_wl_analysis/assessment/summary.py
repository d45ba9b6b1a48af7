"""
Group-level summary tables for reporting.

Group means with standard error and t-based confidence intervals, and Welch
pairwise comparisons between treatment groups within each date. These are
presentation artifacts written as CSV; the downstream models are fitted
elsewhere.
"""

from itertools import combinations
from typing import Optional

import numpy as np
import pandas as pd
from scipy import stats

from lizard_wl_analysis.constants import DATE_COL


def summarize_groups(
    agg: pd.DataFrame,
    value_col: str,
    group_cols: list[str],
    *,
    confidence: float = 0.95,
) -> pd.DataFrame:
    """
    Mean, sd, sem and confidence interval of ``value_col`` per group.

    Args:
        agg: Aggregated table (one row per subject and date).
        value_col: Aggregated quantity.
        group_cols: e.g. ["treatment", "date"].
        confidence: Two-sided confidence level for the t interval.

    Returns:
        DataFrame with group_cols + n, mean, sd, sem, ci_low, ci_high.
        Missing values are excluded; groups with n < 2 have NaN spread.
    """
    missing = [c for c in [value_col, *group_cols] if c not in agg.columns]
    if missing:
        raise ValueError(
            f"Columns {missing} not in DataFrame. Available: {list(agg.columns)}"
        )

    rows = []
    for key, g in agg.groupby(group_cols, sort=True):
        key = key if isinstance(key, tuple) else (key,)
        vals = g[value_col].dropna().to_numpy(dtype=float)
        n = len(vals)
        mean = float(np.mean(vals)) if n else np.nan
        sd = float(np.std(vals, ddof=1)) if n > 1 else np.nan
        sem = float(stats.sem(vals)) if n > 1 else np.nan
        if n > 1 and sem > 0:
            ci_low, ci_high = stats.t.interval(confidence, n - 1, loc=mean, scale=sem)
        else:
            ci_low, ci_high = np.nan, np.nan
        rows.append(
            {
                **dict(zip(group_cols, key)),
                "n": n,
                "mean": mean,
                "sd": sd,
                "sem": sem,
                "ci_low": float(ci_low),
                "ci_high": float(ci_high),
            }
        )
    return pd.DataFrame(
        rows, columns=group_cols + ["n", "mean", "sd", "sem", "ci_low", "ci_high"]
    )


def holm_adjust(p_values: np.ndarray | list[float]) -> np.ndarray:
    """Holm step-down adjusted p-values; NaN stays NaN."""
    p = np.asarray(p_values, dtype=float)
    out = np.full(p.shape, np.nan)
    valid = np.flatnonzero(np.isfinite(p))
    if len(valid) == 0:
        return out
    order = valid[np.argsort(p[valid], kind="mergesort")]
    m = len(order)
    running = 0.0
    for rank, idx in enumerate(order):
        running = max(running, (m - rank) * p[idx])
        out[idx] = min(running, 1.0)
    return out


def pairwise_comparisons(
    agg: pd.DataFrame,
    value_col: str,
    group_col: str,
    *,
    by: Optional[str] = DATE_COL,
) -> pd.DataFrame:
    """
    Welch t-tests between every pair of ``group_col`` levels.

    Tests are run within each level of ``by`` (default: date) and p-values
    Holm-adjusted within that level.

    Returns:
        DataFrame with [by], group_a, group_b, n_a, n_b, mean_a, mean_b,
        mean_diff, t_stat, p_value, p_adj.
    """
    missing = [c for c in [value_col, group_col] + ([by] if by else []) if c not in agg.columns]
    if missing:
        raise ValueError(
            f"Columns {missing} not in DataFrame. Available: {list(agg.columns)}"
        )

    strata = agg.groupby(by, sort=True) if by else [(None, agg)]
    parts = []
    for level, sub in strata:
        groups = {
            k: g[value_col].dropna().to_numpy(dtype=float)
            for k, g in sub.groupby(group_col, sort=True)
        }
        rows = []
        for a, b in combinations(sorted(groups), 2):
            va, vb = groups[a], groups[b]
            if len(va) > 1 and len(vb) > 1:
                res = stats.ttest_ind(va, vb, equal_var=False)
                t_stat, p_value = float(res.statistic), float(res.pvalue)
            else:
                t_stat, p_value = np.nan, np.nan
            rows.append(
                {
                    "group_a": a,
                    "group_b": b,
                    "n_a": len(va),
                    "n_b": len(vb),
                    "mean_a": float(np.mean(va)) if len(va) else np.nan,
                    "mean_b": float(np.mean(vb)) if len(vb) else np.nan,
                    "t_stat": t_stat,
                    "p_value": p_value,
                }
            )
        if not rows:
            continue
        part = pd.DataFrame(rows)
        part["mean_diff"] = part["mean_a"] - part["mean_b"]
        part["p_adj"] = holm_adjust(part["p_value"].to_numpy())
        if by:
            part.insert(0, by, level)
        parts.append(part)

    columns = ([by] if by else []) + [
        "group_a", "group_b", "n_a", "n_b", "mean_a", "mean_b",
        "mean_diff", "t_stat", "p_value", "p_adj",
    ]
    if not parts:
        return pd.DataFrame(columns=columns)
    return pd.concat(parts, ignore_index=True)[columns]
