"""
Identity reconciliation of replicate groups.

Replicates are typed in by hand in the field, so a record is occasionally
attributed to the subject measured just before or after it. Each subject
also has an independent corroborating timestamp (e.g. the blood draw taken
right after the water-loss run). A surplus record is moved to the
neighbouring subject whose corroborating timestamp it is closest to, provided
the match is unambiguous. Whatever remains unexplained after reassignment
must be listed in the exception table, otherwise reconciliation fails.

All edits are keyed by (subject_id, date, timestamp); row positions are never
used as identity.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Union

import pandas as pd

from lizard_wl_analysis.config import ExpectedCount
from lizard_wl_analysis.constants import (
    DATE_COL,
    DEFAULT_NEIGHBOR_WINDOW,
    DEFAULT_TIE_MARGIN,
    REPLICATE_COL,
    SUBJECT_COL,
    TIMESTAMP_COL,
)
from lizard_wl_analysis.exceptions import ReconciliationError
from lizard_wl_analysis.utils.natural_sort import natural_sort_key, order_subject_ids

logger = logging.getLogger(__name__)

RECORD_KEY = [SUBJECT_COL, DATE_COL, TIMESTAMP_COL]

LOG_COLUMNS = [
    DATE_COL,
    TIMESTAMP_COL,
    "from_subject",
    "to_subject",
    "distance_s",
    "margin_s",
    "action",
    "detail",
]


@dataclass(frozen=True)
class TimestampMatch:
    """
    Best corroborating-timestamp match for one record.

    ``margin`` is the gap between the best and the runner-up distance (None
    when there was a single candidate). ``ambiguous`` means the margin did not
    exceed the tie margin, so the match must not be acted on.
    """

    subject_id: Optional[str]
    distance: Optional[pd.Timedelta]
    margin: Optional[pd.Timedelta]
    runner_up: Optional[str]
    ambiguous: bool


@dataclass
class ReconciliationResult:
    table: pd.DataFrame
    log: pd.DataFrame
    counts: pd.DataFrame


def _seconds(td: Optional[pd.Timedelta]) -> float:
    return float("nan") if td is None or pd.isna(td) else td.total_seconds()


def match_corroborating_timestamp(
    timestamp: pd.Timestamp,
    candidates: Union[Mapping[str, pd.Timestamp], pd.Series],
    *,
    tie_margin: pd.Timedelta = DEFAULT_TIE_MARGIN,
) -> TimestampMatch:
    """
    Match a record's timestamp to the candidate with the nearest corroborating time.

    Args:
        timestamp: Time the ambiguous record was measured.
        candidates: Subject id -> corroborating timestamp. Missing times are
            ignored.
        tie_margin: Best and runner-up distances must differ by more than
            this for the match to be unambiguous.

    Returns:
        TimestampMatch. ``subject_id`` is None (and ``ambiguous`` True) when
        there is no usable candidate or the record has no timestamp.

    Example:
        >>> m = match_corroborating_timestamp(
        ...     pd.Timestamp("2023-06-01 10:11"),
        ...     {"L1": pd.Timestamp("2023-06-01 10:12"),
        ...      "L2": pd.Timestamp("2023-06-01 10:40")},
        ... )
        >>> m.subject_id, m.ambiguous
        ('L1', False)
    """
    if isinstance(candidates, pd.Series):
        candidates = candidates.to_dict()
    usable = {s: t for s, t in candidates.items() if pd.notna(t)}
    if pd.isna(timestamp) or not usable:
        return TimestampMatch(None, None, None, None, True)

    ranked = sorted(
        ((abs(pd.Timestamp(t) - pd.Timestamp(timestamp)), s) for s, t in usable.items()),
        key=lambda x: (x[0], natural_sort_key(x[1])),
    )
    best_distance, best = ranked[0]
    if len(ranked) == 1:
        return TimestampMatch(best, best_distance, None, None, False)

    second_distance, second = ranked[1]
    margin = second_distance - best_distance
    return TimestampMatch(
        subject_id=best,
        distance=best_distance,
        margin=margin,
        runner_up=second,
        ambiguous=margin <= tie_margin,
    )


def measurement_order(corroborating: pd.DataFrame, date: pd.Timestamp) -> list[str]:
    """
    Subjects measured on ``date`` in the order they were processed.

    Order follows the corroborating timestamps; ids break ties naturally.
    """
    day = corroborating.loc[
        (corroborating[DATE_COL] == date) & corroborating[TIMESTAMP_COL].notna()
    ]
    rows = sorted(
        zip(day[TIMESTAMP_COL], day[SUBJECT_COL].astype(str)),
        key=lambda x: (x[0], natural_sort_key(x[1])),
    )
    return [s for _, s in rows]


def neighbors(subject: str, order: list[str], window: int = 1) -> list[str]:
    """Subject plus up to ``window`` subjects either side in measurement order."""
    if subject not in order:
        return []
    i = order.index(subject)
    return order[max(0, i - window) : i + window + 1]


def drop_excluded_subjects(df: pd.DataFrame, exclusions: pd.DataFrame) -> pd.DataFrame:
    """
    Remove records of excluded subjects.

    Exclusion rows without a date remove the subject on every date; dated rows
    remove only that subject-date group.
    """
    if exclusions is None or exclusions.empty or df.empty:
        return df.copy()

    full = set(exclusions.loc[exclusions[DATE_COL].isna(), SUBJECT_COL].dropna())
    mask = df[SUBJECT_COL].isin(full)

    dated = exclusions.loc[exclusions[DATE_COL].notna(), [SUBJECT_COL, DATE_COL]]
    if not dated.empty:
        keys = pd.MultiIndex.from_frame(df[[SUBJECT_COL, DATE_COL]])
        excluded = pd.MultiIndex.from_frame(dated.drop_duplicates())
        mask = mask | keys.isin(excluded)

    if mask.any():
        logger.info(
            "Dropped %d record(s) of excluded subjects: %s",
            int(mask.sum()),
            order_subject_ids(df.loc[mask, SUBJECT_COL].unique()),
        )
    return df.loc[~mask].copy()


def _exception_for(
    exceptions: Optional[pd.DataFrame],
    subject: str,
    date: pd.Timestamp,
    count: int,
) -> Optional[str]:
    """Reason of the exception row explaining this group's count, if any."""
    if exceptions is None or exceptions.empty:
        return None
    rows = exceptions.loc[exceptions[SUBJECT_COL] == subject]
    if rows.empty:
        return None
    rows = rows.loc[rows[DATE_COL].isna() | (rows[DATE_COL] == date)]
    counts = pd.to_numeric(rows["actual_count"], errors="coerce")
    rows = rows.loc[counts.isna() | (counts == count)]
    if rows.empty:
        return None
    reason = rows["reason"].iloc[0] if "reason" in rows.columns else None
    return str(reason) if pd.notna(reason) else "documented exception"


def _log_row(date, timestamp, from_subject, to_subject, match, action, detail) -> dict:
    return {
        DATE_COL: date,
        TIMESTAMP_COL: timestamp,
        "from_subject": from_subject,
        "to_subject": to_subject,
        "distance_s": _seconds(match.distance) if match else float("nan"),
        "margin_s": _seconds(match.margin) if match else float("nan"),
        "action": action,
        "detail": detail,
    }


def propose_reassignments(
    df: pd.DataFrame,
    corroborating: pd.DataFrame,
    *,
    expected_count: ExpectedCount,
    exceptions: Optional[pd.DataFrame] = None,
    neighbor_window: int = DEFAULT_NEIGHBOR_WINDOW,
    tie_margin: pd.Timedelta = DEFAULT_TIE_MARGIN,
) -> pd.DataFrame:
    """
    Decide which surplus records move to which subject.

    For each group above the expected maximum (and not covered by an
    exception), every record is matched against the subject and its
    neighbours in measurement order. Records whose unambiguous best match is
    another subject become proposals; at most ``surplus`` per group are kept,
    those gaining most distance first. An undercounted subject therefore
    receives records from a surplus neighbour by the same rule.

    Returns:
        Log table (LOG_COLUMNS). Rows with action ``reassigned`` are the
        reassignments to apply; ``rejected_ambiguous`` and ``unresolved`` rows
        are diagnostics.
    """
    rows: list[dict] = []
    if expected_count is None or df.empty:
        return pd.DataFrame(rows, columns=LOG_COLUMNS)
    _, hi = expected_count

    for date, day in df.groupby(DATE_COL, sort=True):
        order = measurement_order(corroborating, date)
        day_corr = corroborating.loc[corroborating[DATE_COL] == date]
        stamps = dict(zip(day_corr[SUBJECT_COL], day_corr[TIMESTAMP_COL]))
        counts = day[SUBJECT_COL].value_counts()

        for subject in order_subject_ids(counts.index):
            n = int(counts[subject])
            if n <= hi or _exception_for(exceptions, subject, date, n):
                continue
            surplus = n - hi
            if subject not in stamps:
                rows.append(
                    _log_row(date, pd.NaT, subject, None, None, "unresolved",
                             "no corroborating timestamp for surplus subject")
                )
                continue

            cand = {s: stamps[s] for s in neighbors(subject, order, neighbor_window)}
            proposals = []
            records = day.loc[day[SUBJECT_COL] == subject].sort_values(TIMESTAMP_COL)
            for ts in records[TIMESTAMP_COL]:
                match = match_corroborating_timestamp(ts, cand, tie_margin=tie_margin)
                if match.subject_id is None or match.subject_id == subject:
                    continue
                if match.ambiguous:
                    rows.append(
                        _log_row(date, ts, subject, match.subject_id, match,
                                 "rejected_ambiguous",
                                 f"tie with {match.runner_up} within {tie_margin}")
                    )
                    continue
                gain = abs(ts - stamps[subject]) - match.distance
                proposals.append((gain, ts, match))

            proposals.sort(key=lambda p: (-p[0], p[1]))
            for gain, ts, match in proposals[:surplus]:
                rows.append(
                    _log_row(date, ts, subject, match.subject_id, match, "reassigned",
                             f"closer to {match.subject_id} by {gain}")
                )
            if len(proposals) < surplus:
                rows.append(
                    _log_row(date, pd.NaT, subject, None, None, "unresolved",
                             f"{surplus - len(proposals)} surplus record(s) "
                             "match no neighbour")
                )

    return pd.DataFrame(rows, columns=LOG_COLUMNS)


def apply_reassignments(df: pd.DataFrame, log: pd.DataFrame) -> pd.DataFrame:
    """
    Relabel records listed as ``reassigned`` in a reconciliation log.

    Records are located by (subject_id, date, timestamp).

    Raises:
        ReconciliationError: If a listed record is missing or not unique.
    """
    moves = log.loc[log["action"] == "reassigned"]
    out = df.copy()
    if moves.empty:
        return out

    keyed = moves.rename(columns={"from_subject": SUBJECT_COL})[
        RECORD_KEY + ["to_subject"]
    ]
    if keyed.duplicated(subset=RECORD_KEY).any():
        raise ReconciliationError(
            "A record was proposed for reassignment more than once",
            groups=keyed,
        )
    merged = out[RECORD_KEY].merge(keyed, on=RECORD_KEY, how="left", validate="m:1")
    hits = merged["to_subject"].notna().to_numpy()

    found = out.loc[hits, RECORD_KEY]
    if len(found) != len(keyed) or found.duplicated().any():
        raise ReconciliationError(
            "Reassigned records are not uniquely identified by "
            "(subject_id, date, timestamp)",
            groups=keyed,
        )
    out.loc[hits, SUBJECT_COL] = merged.loc[hits, "to_subject"].to_numpy()
    return out


def renumber_replicates(df: pd.DataFrame) -> pd.DataFrame:
    """Replicate index 1..n per (subject_id, date) in timestamp order."""
    if df.empty:
        return df.copy()
    order_cols = [DATE_COL, SUBJECT_COL]
    if TIMESTAMP_COL in df.columns:
        order_cols.append(TIMESTAMP_COL)
    out = df.sort_values(order_cols, kind="mergesort").copy()
    out[REPLICATE_COL] = out.groupby([SUBJECT_COL, DATE_COL]).cumcount() + 1
    return out.reset_index(drop=True)


def group_counts(df: pd.DataFrame) -> pd.DataFrame:
    """Record count per (subject_id, date)."""
    return (
        df.groupby([SUBJECT_COL, DATE_COL])
        .size()
        .rename("count")
        .reset_index()
    )


def check_group_cardinality(
    df: pd.DataFrame,
    *,
    expected_count: ExpectedCount,
    exceptions: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Verify every replicate group has the expected size or a documented exception.

    Returns:
        Count table with ``explained_by`` ("expected" or the exception reason).

    Raises:
        ReconciliationError: Listing every unexplained group with its record
            timestamps, for manual adjudication.
    """
    counts = group_counts(df)
    if expected_count is None:
        counts["explained_by"] = "not checked"
        return counts

    lo, hi = expected_count
    explained = []
    for subject, date, n in zip(counts[SUBJECT_COL], counts[DATE_COL], counts["count"]):
        if lo <= n <= hi:
            explained.append("expected")
        else:
            explained.append(_exception_for(exceptions, subject, date, int(n)) or "")
    counts["explained_by"] = explained

    bad = counts.loc[counts["explained_by"] == ""].copy()
    if not bad.empty:
        if TIMESTAMP_COL in df.columns:
            stamps = (
                df.groupby([SUBJECT_COL, DATE_COL])[TIMESTAMP_COL]
                .agg(lambda s: " ".join(t.strftime("%H:%M:%S") for t in s.dropna().sort_values()))
                .rename("timestamps")
                .reset_index()
            )
            bad = bad.merge(stamps, on=[SUBJECT_COL, DATE_COL], how="left")
        summary = "; ".join(
            f"{s} on {d:%Y-%m-%d}: {n} record(s)"
            for s, d, n in zip(bad[SUBJECT_COL], bad[DATE_COL], bad["count"])
        )
        expected = f"{lo}" if lo == hi else f"{lo}-{hi}"
        raise ReconciliationError(
            f"{len(bad)} replicate group(s) deviate from the expected count "
            f"({expected}) without a documented exception: {summary}",
            groups=bad,
            context={"expected_count": expected_count},
        )
    return counts


def reconcile_replicates(
    df: pd.DataFrame,
    corroborating: pd.DataFrame,
    *,
    expected_count: ExpectedCount,
    exceptions: Optional[pd.DataFrame] = None,
    exclusions: Optional[pd.DataFrame] = None,
    neighbor_window: int = DEFAULT_NEIGHBOR_WINDOW,
    tie_margin: pd.Timedelta = DEFAULT_TIE_MARGIN,
) -> ReconciliationResult:
    """
    Drop excluded subjects, reassign misattributed records and verify group sizes.

    Args:
        df: Ingested records (subject_id, date, timestamp, value...).
        corroborating: Corroborating timestamps (subject_id, date, timestamp).
        expected_count: Inclusive (min, max) replicate count, or None to skip
            reassignment and the cardinality check.
        exceptions: Documented count exceptions.
        exclusions: Subjects to drop before counting.
        neighbor_window: How many subjects either side in measurement order
            are candidates for a surplus record.
        tie_margin: Minimum distance gap for an unambiguous match.

    Returns:
        ReconciliationResult with the relabelled and renumbered table, the
        reconciliation log and the per-group count table.

    Raises:
        ReconciliationError: If any group remains unexplained.
    """
    table = drop_excluded_subjects(df, exclusions)

    if TIMESTAMP_COL in table.columns and expected_count is not None:
        log = propose_reassignments(
            table,
            corroborating,
            expected_count=expected_count,
            exceptions=exceptions,
            neighbor_window=neighbor_window,
            tie_margin=tie_margin,
        )
        table = apply_reassignments(table, log)
    else:
        log = pd.DataFrame(columns=LOG_COLUMNS)

    for row in log.itertuples(index=False):
        if row.action == "reassigned":
            logger.info(
                "%s %s: record %s -> %s (%.0fs from corroborating time)",
                f"{row.date:%Y-%m-%d}",
                f"{row.timestamp:%H:%M:%S}",
                row.from_subject,
                row.to_subject,
                row.distance_s,
            )
        else:
            logger.warning(
                "%s subject %s: %s (%s)",
                f"{row.date:%Y-%m-%d}",
                row.from_subject,
                row.action,
                row.detail,
            )

    table = renumber_replicates(table)
    counts = check_group_cardinality(
        table, expected_count=expected_count, exceptions=exceptions
    )
    return ReconciliationResult(table=table, log=log, counts=counts)
