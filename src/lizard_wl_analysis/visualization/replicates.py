"""
Replicate-group plots for manual QC review.

Shows the readings of selected (subject_id, date) groups as boxplots with
individual points, removed outliers highlighted, so a reviewer can confirm
or overrule the IQR rule.
"""

from typing import Optional

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from lizard_wl_analysis.constants import DATE_COL, SUBJECT_COL
from lizard_wl_analysis.utils.labels import format_column_label


def plot_replicate_groups(
    records: pd.DataFrame,
    value_col: str,
    *,
    outliers: Optional[pd.DataFrame] = None,
    groups: Optional[pd.DataFrame] = None,
    max_groups: int = 24,
    title: Optional[str] = None,
    figsize: Optional[tuple[float, float]] = None,
    ax: Optional[plt.Axes] = None,
) -> plt.Figure:
    """
    Boxplot + strip plot of replicate readings per group.

    Args:
        records: Reconciled records (inliers and outliers together).
        value_col: Measured quantity (y-axis).
        outliers: Removed records; drawn as red crosses.
        groups: Optional (subject_id, date) rows selecting which groups to
            draw, e.g. groups with outliers or high CV. Default: all.
        max_groups: Cap on the number of groups drawn.
        title: Optional plot title.
        figsize: Optional (width, height) in inches.
        ax: Optional axes to draw on.

    Returns:
        matplotlib Figure.
    """
    if value_col not in records.columns:
        raise ValueError(
            f"value_col '{value_col}' not in DataFrame. "
            f"Available: {list(records.columns)}"
        )

    df = records.dropna(subset=[value_col]).copy()
    if groups is not None:
        keys = groups[[SUBJECT_COL, DATE_COL]].drop_duplicates()
        df = df.merge(keys, on=[SUBJECT_COL, DATE_COL], how="inner")
    if df.empty:
        raise ValueError("No replicate data to plot.")

    df["group"] = df[SUBJECT_COL].astype(str) + " " + df[DATE_COL].dt.strftime("%m-%d")
    order = df.drop_duplicates("group").sort_values([DATE_COL, SUBJECT_COL])["group"]
    order = order.tolist()[:max_groups]
    df = df.loc[df["group"].isin(order)]

    if ax is None:
        width = max(6.0, 0.45 * len(order) + 2)
        fig, ax = plt.subplots(figsize=figsize or (width, 4.5))
    else:
        fig = ax.get_figure()

    sns.boxplot(data=df, x="group", y=value_col, order=order, ax=ax, color="#dce6f2", fliersize=0)
    sns.stripplot(
        data=df, x="group", y=value_col, order=order, ax=ax,
        color="black", alpha=0.6, size=3, jitter=0.1,
    )

    if outliers is not None and not outliers.empty:
        out = outliers.dropna(subset=[value_col]).copy()
        out["group"] = (
            out[SUBJECT_COL].astype(str) + " " + out[DATE_COL].dt.strftime("%m-%d")
        )
        out = out.loc[out["group"].isin(order)]
        positions = {g: i for i, g in enumerate(order)}
        ax.scatter(
            out["group"].map(positions),
            out[value_col],
            marker="x",
            color="#C00000",
            s=40,
            zorder=5,
            label="removed outlier",
        )
        if not out.empty:
            ax.legend(loc="upper left", bbox_to_anchor=(1.02, 1))

    ax.tick_params(axis="x", rotation=60 if len(order) > 6 else 0)
    ax.set_xlabel("Subject / date")
    ax.set_ylabel(format_column_label(value_col))
    ax.set_title(
        title or f"Replicates: {format_column_label(value_col)}",
        fontweight="bold",
        pad=12,
    )
    sns.despine(ax=ax)
    fig.tight_layout()
    return fig
