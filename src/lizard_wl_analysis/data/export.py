"""
Deterministic export of aggregated tables and presentation CSVs.

Aggregated tables are the terminal artifact consumed by downstream
modelling, so export is byte-stable: rows sorted by (date, subject_id),
columns in a fixed order, ISO dates, shortest round-trip float repr and
``\\n`` line endings. Files are written to a temporary sibling and renamed
into place, so a failed run never leaves a half-written table.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional, Union

import pandas as pd

from lizard_wl_analysis.constants import (
    DATE_COL,
    DATE_FORMAT,
    QC_COLUMNS,
    SUBJECT_COL,
)
from lizard_wl_analysis.utils.natural_sort import natural_sort_key

logger = logging.getLogger(__name__)


def _ordered_columns(df: pd.DataFrame, leading: Iterable[str]) -> list[str]:
    leading = [c for c in leading if c in df.columns]
    trailing = [c for c in QC_COLUMNS if c in df.columns and c not in leading]
    middle = [c for c in df.columns if c not in leading and c not in trailing]
    return leading + middle + trailing


def _sort_for_export(df: pd.DataFrame) -> pd.DataFrame:
    keys = [c for c in (DATE_COL, SUBJECT_COL) if c in df.columns]
    if not keys:
        return df.reset_index(drop=True)

    out = df.copy()
    sort_cols = list(keys)
    if SUBJECT_COL in keys:
        ids = out[SUBJECT_COL].astype(str)
        rank = {s: i for i, s in enumerate(sorted(set(ids), key=natural_sort_key))}
        out["_subject_rank"] = ids.map(rank)
        sort_cols = [c if c != SUBJECT_COL else "_subject_rank" for c in keys]
    out = out.sort_values(sort_cols, kind="mergesort").reset_index(drop=True)
    return out.drop(columns=["_subject_rank"], errors="ignore")


def _atomic_write_csv(df: pd.DataFrame, path: Path, **to_csv_kwargs) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            df.to_csv(f, index=False, lineterminator="\n", **to_csv_kwargs)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def export_table(
    df: pd.DataFrame,
    path: Union[str, Path],
    *,
    leading_cols: Optional[list[str]] = None,
) -> Path:
    """
    Persist an aggregated table as a deterministic CSV.

    Args:
        df: Aggregated table (one row per subject and date).
        path: Destination CSV path; parent folders are created.
        leading_cols: Columns placed first (default: date, subject_id).

    Returns:
        The written path.
    """
    path = Path(path)
    leading = leading_cols if leading_cols is not None else [DATE_COL, SUBJECT_COL]
    out = _sort_for_export(df)
    out = out[_ordered_columns(out, leading)]
    _atomic_write_csv(out, path, date_format=DATE_FORMAT)
    logger.info("Exported %d rows to %s", len(out), path)
    return path


def read_exported_table(path: Union[str, Path]) -> pd.DataFrame:
    """Re-import a table written by export_table with dates parsed."""
    df = pd.read_csv(path, float_precision="round_trip")
    if DATE_COL in df.columns:
        df[DATE_COL] = pd.to_datetime(df[DATE_COL], format=DATE_FORMAT)
    if SUBJECT_COL in df.columns:
        df[SUBJECT_COL] = df[SUBJECT_COL].astype(str)
    return df


def write_summary_tables(
    tables: dict[str, pd.DataFrame],
    output_dir: Union[str, Path],
    *,
    prefix: str,
) -> dict[str, Path]:
    """
    Write human-readable CSVs (logs, summaries) as ``<prefix>_<name>.csv``.

    Empty tables are written with headers only, so a clean run still leaves
    an explicit record that nothing was reassigned, removed or corrected.
    """
    output_dir = Path(output_dir)
    written: dict[str, Path] = {}
    for name, table in tables.items():
        if table is None:
            continue
        path = output_dir / f"{prefix}_{name}.csv"
        _atomic_write_csv(table, path)
        written[name] = path
    logger.info("Wrote %d summary table(s) for %s", len(written), prefix)
    return written
