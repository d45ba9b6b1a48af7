"""
Ad hoc corrections from domain review.

Each correction is an explicit predicate + action pair with a reason, so a
point edit such as "osmolality above 450 mOsm after the heat-wave week is a
dehydration artefact, null it" is visible in config, testable on its own,
and written to the correction log.
"""

import logging
import operator
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

import numpy as np
import pandas as pd

from lizard_wl_analysis.constants import DATE_COL, SUBJECT_COL
from lizard_wl_analysis.exceptions import ConfigError

logger = logging.getLogger(__name__)

SET_MISSING = "set_missing"
DROP_ROW = "drop_row"
ACTIONS = (SET_MISSING, DROP_ROW)

LOG_COLUMNS = [SUBJECT_COL, DATE_COL, "correction", "action", "column", "previous_value", "reason"]

Predicate = Callable[[pd.DataFrame], pd.Series]


@dataclass(frozen=True)
class Correction:
    """
    One auditable correction.

    Attributes:
        name: Short identifier shown in the correction log.
        predicate: Table -> boolean Series selecting affected rows.
        action: "set_missing" (null ``columns``, keep the row) or "drop_row".
        columns: Columns nulled by set_missing.
        reason: Domain justification.
    """

    name: str
    predicate: Predicate
    action: str = SET_MISSING
    columns: tuple[str, ...] = field(default_factory=tuple)
    reason: str = ""

    def __post_init__(self):
        if self.action not in ACTIONS:
            raise ConfigError(
                f"Correction '{self.name}': unknown action '{self.action}'. "
                f"Use one of {ACTIONS}"
            )
        if self.action == SET_MISSING and not self.columns:
            raise ConfigError(
                f"Correction '{self.name}': set_missing needs at least one column"
            )

    def select(self, df: pd.DataFrame) -> pd.Series:
        mask = self.predicate(df)
        return pd.Series(mask, index=df.index).fillna(False).astype(bool)


def threshold_correction(
    column: str,
    *,
    above: Optional[float] = None,
    below: Optional[float] = None,
    inclusive: bool = False,
    action: str = SET_MISSING,
    name: Optional[str] = None,
    reason: str = "",
) -> Correction:
    """Correct rows whose ``column`` is above and/or below a threshold."""
    if above is None and below is None:
        raise ConfigError(f"threshold correction on '{column}' needs above or below")
    gt, gt_sym = (operator.ge, ">=") if inclusive else (operator.gt, ">")
    lt, lt_sym = (operator.le, "<=") if inclusive else (operator.lt, "<")

    def predicate(df: pd.DataFrame) -> pd.Series:
        vals = df[column]
        mask = pd.Series(False, index=df.index)
        if above is not None:
            mask |= gt(vals, above)
        if below is not None:
            mask |= lt(vals, below)
        return mask

    bounds = " or ".join(
        p for p in (
            f"{gt_sym} {above}" if above is not None else "",
            f"{lt_sym} {below}" if below is not None else "",
        ) if p
    )
    return Correction(
        name=name or f"{column} {bounds}",
        predicate=predicate,
        action=action,
        columns=(column,),
        reason=reason,
    )


def window_correction(
    columns: Iterable[str],
    start,
    end,
    *,
    subjects: Optional[Iterable[str]] = None,
    action: str = SET_MISSING,
    name: Optional[str] = None,
    reason: str = "",
) -> Correction:
    """Correct rows dated within [start, end], e.g. an instrument miscalibration window."""
    start_ts = pd.Timestamp(start).normalize()
    end_ts = pd.Timestamp(end).normalize()
    subject_set = {str(s).strip().upper() for s in subjects} if subjects else None

    def predicate(df: pd.DataFrame) -> pd.Series:
        mask = df[DATE_COL].between(start_ts, end_ts)
        if subject_set is not None:
            mask &= df[SUBJECT_COL].isin(subject_set)
        return mask

    return Correction(
        name=name or f"window {start_ts:%Y-%m-%d}..{end_ts:%Y-%m-%d}",
        predicate=predicate,
        action=action,
        columns=tuple(columns),
        reason=reason,
    )


def subject_correction(
    subjects: Iterable[str],
    *,
    dates: Optional[Iterable[Any]] = None,
    columns: Iterable[str] = (),
    action: str = DROP_ROW,
    name: Optional[str] = None,
    reason: str = "",
) -> Correction:
    """Correct specific subjects, optionally only on specific dates."""
    subject_set = {str(s).strip().upper() for s in subjects}
    date_set = {pd.Timestamp(d).normalize() for d in dates} if dates else None

    def predicate(df: pd.DataFrame) -> pd.Series:
        mask = df[SUBJECT_COL].isin(subject_set)
        if date_set is not None:
            mask &= df[DATE_COL].isin(date_set)
        return mask

    return Correction(
        name=name or f"subjects {sorted(subject_set)}",
        predicate=predicate,
        action=action,
        columns=tuple(columns),
        reason=reason,
    )


def correction_from_dict(entry: dict[str, Any]) -> Correction:
    """
    Build a Correction from a config entry.

    Supported ``type`` values:
        threshold: column, above and/or below, [inclusive]
        window: columns, start, end, [subjects]
        subject: subjects, [dates], [columns]

    Example:
        >>> correction_from_dict({
        ...     "type": "threshold", "column": "osmolality", "above": 450,
        ...     "reason": "heat-wave dehydration confound",
        ... }).action
        'set_missing'
    """
    kind = entry.get("type")
    common = {
        "name": entry.get("name"),
        "reason": entry.get("reason", ""),
    }
    try:
        if kind == "threshold":
            return threshold_correction(
                entry["column"],
                above=entry.get("above"),
                below=entry.get("below"),
                inclusive=bool(entry.get("inclusive", False)),
                action=entry.get("action", SET_MISSING),
                **common,
            )
        if kind == "window":
            columns = entry.get("columns") or [entry["column"]]
            return window_correction(
                columns,
                entry["start"],
                entry["end"],
                subjects=entry.get("subjects"),
                action=entry.get("action", SET_MISSING),
                **common,
            )
        if kind == "subject":
            return subject_correction(
                entry["subjects"],
                dates=entry.get("dates"),
                columns=entry.get("columns") or (),
                action=entry.get("action", DROP_ROW),
                **common,
            )
    except KeyError as e:
        raise ConfigError(f"Correction {entry!r} is missing key {e}") from e
    raise ConfigError(
        f"Unknown correction type {kind!r}; use threshold, window or subject"
    )


def apply_corrections(
    df: pd.DataFrame,
    corrections: Iterable[Correction],
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Apply corrections in order.

    Returns:
        (corrected table, correction log). The log has one row per affected
        (row, column) for set_missing and one per dropped row for drop_row,
        with the value before correction.
    """
    out = df.copy()
    log_rows: list[dict] = []
    for corr in corrections:
        missing = [c for c in corr.columns if c not in out.columns]
        if missing:
            raise ValueError(
                f"Correction '{corr.name}' refers to missing columns {missing}"
            )
        mask = corr.select(out)
        if not mask.any():
            logger.debug("Correction '%s' matched no rows", corr.name)
            continue

        hit = out.loc[mask]
        if corr.action == DROP_ROW:
            for subject, date in zip(hit[SUBJECT_COL], hit[DATE_COL]):
                log_rows.append(
                    {
                        SUBJECT_COL: subject,
                        DATE_COL: date,
                        "correction": corr.name,
                        "action": DROP_ROW,
                        "column": "",
                        "previous_value": np.nan,
                        "reason": corr.reason,
                    }
                )
            out = out.loc[~mask].copy()
        else:
            for col in corr.columns:
                for subject, date, value in zip(hit[SUBJECT_COL], hit[DATE_COL], hit[col]):
                    if pd.isna(value):
                        continue
                    log_rows.append(
                        {
                            SUBJECT_COL: subject,
                            DATE_COL: date,
                            "correction": corr.name,
                            "action": SET_MISSING,
                            "column": col,
                            "previous_value": value,
                            "reason": corr.reason,
                        }
                    )
                out.loc[mask, col] = np.nan
        logger.info(
            "Correction '%s' (%s): %d row(s)%s",
            corr.name,
            corr.action,
            int(mask.sum()),
            f" - {corr.reason}" if corr.reason else "",
        )
    return out, pd.DataFrame(log_rows, columns=LOG_COLUMNS)
