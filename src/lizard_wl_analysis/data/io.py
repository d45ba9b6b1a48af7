"""
Ingestion of raw instrument CSV exports and reference tables.

Each measurement type (evaporative water loss, plasma osmolality, climate
logger) exports one CSV per session with a fixed column layout. Files are
read, headers normalized and renamed to canonical names via the measurement
schema, dates and timestamps parsed, failed instrument readings dropped, and
everything concatenated into one long table: one row per raw record.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

import pandas as pd

from lizard_wl_analysis.config import MeasurementSchema
from lizard_wl_analysis.constants import (
    DATE_COL,
    DEFAULT_PATTERN,
    REPLICATE_COL,
    SOURCE_FILE_COL,
    STATUS_COL,
    SUBJECT_COL,
    TIME_COL,
    TIMESTAMP_COL,
)
from lizard_wl_analysis.exceptions import ParseError
from lizard_wl_analysis.utils.labels import normalize_column_name

logger = logging.getLogger(__name__)

EXCLUSION_COLUMNS = [SUBJECT_COL, DATE_COL, "reason"]
EXCEPTION_COLUMNS = [SUBJECT_COL, DATE_COL, "actual_count", "reason"]
CORROBORATING_COLUMNS = [SUBJECT_COL, DATE_COL, TIMESTAMP_COL]
TREATMENT_COLUMNS = [SUBJECT_COL, "treatment"]


def normalize_subject_ids(series: pd.Series) -> pd.Series:
    """Strip and upper-case subject ids; missing ids stay missing."""
    out = series.astype("string").str.strip().str.upper()
    out = out.mask(out == "")
    return out.astype(object).where(out.notna(), None)


def _parse_datetimes(
    series: pd.Series,
    *,
    fmt: Optional[str],
    what: str,
    source: str,
) -> pd.Series:
    """Parse a column to datetime; unparseable non-blank values raise ParseError."""
    parsed = pd.to_datetime(series, format=fmt, errors="coerce")
    blank = series.isna() | (series.astype(str).str.strip() == "")
    bad = parsed.isna() & ~blank
    if bad.any():
        examples = series[bad].astype(str).head(5).tolist()
        raise ParseError(
            f"Unparseable {what} values in {source}: {examples}",
            context={"file": source, "column": what, "rows": bad[bad].index.tolist()},
        )
    return parsed


def _collect_files(
    paths: Union[str, Path, List[Union[str, Path]]], pattern: str
) -> List[Path]:
    """Resolve paths to a sorted flat list of CSV files. Handles file/folder or mix."""
    if not isinstance(paths, list):
        paths = [paths]
    files: List[Path] = []
    for p in paths:
        path = Path(p)
        if not path.exists():
            logger.warning("Path does not exist, skipping: %s", path)
            continue
        if path.is_file():
            if path.suffix.lower() == ".csv":
                files.append(path)
            else:
                logger.warning("Skipping non-CSV file: %s", path)
        else:
            for f in path.glob(pattern):
                if f.is_file() and not f.name.startswith(("~", "_", ".")):
                    files.append(f)
    return sorted(files, key=lambda f: f.name)


def _required_columns(schema: MeasurementSchema) -> list[str]:
    required = [SUBJECT_COL, schema.value_col, *schema.companion_cols]
    if schema.status_col:
        required.append(schema.status_col)
    return required


def _load_measurement_file(path: Path, schema: MeasurementSchema) -> pd.DataFrame:
    """Load one instrument export into the canonical long layout."""
    try:
        df = pd.read_csv(path, skipinitialspace=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise ParseError(f"Cannot read {path.name}: {e}", context={"file": path.name}) from e

    df.columns = [normalize_column_name(c) for c in df.columns]
    df = df.rename(columns=schema.column_map)

    missing = [c for c in _required_columns(schema) if c not in df.columns]
    has_date = DATE_COL in df.columns or TIMESTAMP_COL in df.columns
    if not has_date:
        missing.append(DATE_COL)
    if (
        schema.require_timestamp
        and TIMESTAMP_COL not in df.columns
        and TIME_COL not in df.columns
    ):
        missing.append(TIMESTAMP_COL)
    if missing:
        raise ParseError(
            f"{path.name} does not match the expected layout; missing columns "
            f"{sorted(set(missing))}. Available: {list(df.columns)}",
            context={"file": path.name, "missing": sorted(set(missing))},
        )

    n_raw = len(df)
    if schema.status_col:
        status = df[schema.status_col].astype(str).str.strip().str.lower()
        df = df.loc[status.isin(schema.success_values)].copy()
        if schema.status_col != STATUS_COL:
            df = df.rename(columns={schema.status_col: STATUS_COL})
    n_failed = n_raw - len(df)

    if DATE_COL in df.columns:
        df[DATE_COL] = _parse_datetimes(
            df[DATE_COL], fmt=schema.date_format, what=DATE_COL, source=path.name
        )

    if TIMESTAMP_COL in df.columns:
        df[TIMESTAMP_COL] = _parse_datetimes(
            df[TIMESTAMP_COL],
            fmt=schema.timestamp_format,
            what=TIMESTAMP_COL,
            source=path.name,
        )
    elif TIME_COL in df.columns and DATE_COL in df.columns:
        combined = (
            df[DATE_COL].dt.strftime("%Y-%m-%d")
            + " "
            + df[TIME_COL].astype(str).str.strip()
        )
        df[TIMESTAMP_COL] = _parse_datetimes(
            combined, fmt=None, what=TIME_COL, source=path.name
        )
        df = df.drop(columns=[TIME_COL])

    if DATE_COL not in df.columns:
        df[DATE_COL] = df[TIMESTAMP_COL].dt.normalize()
    else:
        df[DATE_COL] = df[DATE_COL].dt.normalize()

    df[SUBJECT_COL] = normalize_subject_ids(df[SUBJECT_COL])
    no_subject = df[SUBJECT_COL].isna() | df[DATE_COL].isna()
    if no_subject.any():
        logger.warning(
            "%s: dropping %d row(s) without subject id or date",
            path.name,
            int(no_subject.sum()),
        )
        df = df.loc[~no_subject].copy()

    for col in [schema.value_col, *schema.companion_cols]:
        before = df[col].notna()
        df[col] = pd.to_numeric(df[col], errors="coerce").astype(float)
        coerced = before & df[col].isna()
        if coerced.any():
            logger.warning(
                "%s: %d non-numeric value(s) in '%s' read as missing",
                path.name,
                int(coerced.sum()),
                col,
            )

    if REPLICATE_COL in df.columns:
        df[REPLICATE_COL] = pd.to_numeric(df[REPLICATE_COL], errors="coerce")

    df[SOURCE_FILE_COL] = path.name
    logger.info(
        "Loaded %s: %d rows kept, %d dropped by status", path.name, len(df), n_failed
    )
    return df


def load_measurement_files(
    paths: Union[str, Path, List[Union[str, Path]]],
    schema: MeasurementSchema,
    *,
    pattern: str = DEFAULT_PATTERN,
) -> pd.DataFrame:
    """
    Load instrument exports from file(s) and/or folder(s) into one table.

    Args:
        paths: A file path, folder path, or list of files and/or folders.
        schema: Column layout of the measurement type.
        pattern: Glob pattern when scanning folders (default: *.csv).

    Returns:
        Long DataFrame, one row per successful reading, with canonical columns
        (subject_id, date, timestamp, [replicate], value, companions,
        source_file), sorted by date, timestamp and subject_id.

    Raises:
        ParseError: If any file does not match the schema. Nothing is returned
            for a partially readable directory.
    """
    files = _collect_files(paths, pattern)
    if not files:
        logger.warning("No files matching %s found in %s", pattern, paths)
        return pd.DataFrame(columns=[SUBJECT_COL, DATE_COL, TIMESTAMP_COL, schema.value_col])

    dfs = [_load_measurement_file(f, schema) for f in files]
    dfs = [d for d in dfs if not d.empty]
    if not dfs:
        return pd.DataFrame(columns=[SUBJECT_COL, DATE_COL, TIMESTAMP_COL, schema.value_col])

    out = pd.concat(dfs, ignore_index=True)
    sort_cols = [c for c in (DATE_COL, TIMESTAMP_COL, SUBJECT_COL) if c in out.columns]
    return out.sort_values(sort_cols, kind="mergesort").reset_index(drop=True)


def load_reference_table(
    path: Optional[Union[str, Path]],
    columns: Iterable[str],
    *,
    required: Iterable[str] = (SUBJECT_COL,),
    kind: str = "reference",
    timestamp_cols: Iterable[str] = (),
) -> pd.DataFrame:
    """
    Load a small reference CSV (exclusions, exceptions, timestamps, treatments).

    Headers are normalized like instrument exports. Columns in ``columns`` but
    not ``required`` are added empty when absent. A ``None`` path yields an
    empty table with ``columns``.

    Raises:
        ParseError: If the file exists but lacks a required column.
        FileNotFoundError: If a path is given but does not exist.
    """
    columns = list(columns)
    timestamp_cols = list(timestamp_cols)
    if path is None:
        datetime_cols = {DATE_COL, *timestamp_cols}
        return pd.DataFrame(
            {
                c: pd.Series(
                    dtype="datetime64[ns]" if c in datetime_cols else object
                )
                for c in columns
            }
        )

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"{kind} table not found: {path}")

    df = pd.read_csv(path, skipinitialspace=True)
    df.columns = [normalize_column_name(c) for c in df.columns]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ParseError(
            f"{kind} table {path.name} missing columns {missing}. "
            f"Available: {list(df.columns)}",
            context={"file": path.name, "missing": missing},
        )
    for c in columns:
        if c not in df.columns:
            df[c] = None

    df[SUBJECT_COL] = normalize_subject_ids(df[SUBJECT_COL])
    if DATE_COL in df.columns:
        df[DATE_COL] = _parse_datetimes(
            df[DATE_COL], fmt=None, what=DATE_COL, source=path.name
        ).dt.normalize()
    for c in timestamp_cols:
        df[c] = _parse_datetimes(df[c], fmt=None, what=c, source=path.name)

    logger.info("Loaded %s table %s: %d rows", kind, path.name, len(df))
    return df


def load_exclusions(path: Optional[Union[str, Path]]) -> pd.DataFrame:
    """Subjects to drop; a blank date means every date (full exclusion)."""
    return load_reference_table(path, EXCLUSION_COLUMNS, kind="exclusion")


def load_exceptions(path: Optional[Union[str, Path]]) -> pd.DataFrame:
    """Documented replicate-count exceptions (subject, [date], actual_count, reason)."""
    df = load_reference_table(path, EXCEPTION_COLUMNS, kind="exception")
    df["actual_count"] = pd.to_numeric(df["actual_count"], errors="coerce")
    return df


def load_corroborating_timestamps(path: Optional[Union[str, Path]]) -> pd.DataFrame:
    """Independent per-subject per-date timestamps used to disambiguate identity."""
    df = load_reference_table(
        path,
        CORROBORATING_COLUMNS,
        required=CORROBORATING_COLUMNS,
        kind="corroborating timestamp",
        timestamp_cols=[TIMESTAMP_COL],
    )
    if path is not None and not df.empty:
        df = df.dropna(subset=[TIMESTAMP_COL])
        dupes = df.duplicated(subset=[SUBJECT_COL, DATE_COL], keep=False)
        if dupes.any():
            raise ParseError(
                "Corroborating timestamps must be unique per subject and date; "
                f"duplicates: {df.loc[dupes, [SUBJECT_COL, DATE_COL]].values.tolist()}",
                context={"kind": "corroborating timestamp"},
            )
    return df


def load_treatments(path: Optional[Union[str, Path]]) -> pd.DataFrame:
    """Per-subject metadata (treatment group plus any extra columns)."""
    df = load_reference_table(path, TREATMENT_COLUMNS, kind="treatment")
    if path is not None and df[SUBJECT_COL].duplicated().any():
        dupes = df.loc[df[SUBJECT_COL].duplicated(), SUBJECT_COL].tolist()
        raise ParseError(
            f"Treatment table lists subjects more than once: {dupes}",
            context={"kind": "treatment"},
        )
    return df
