"""
Per-measurement replicate QC pipeline.

Runs ingestion, identity reconciliation, outlier filtering, aggregation,
ad hoc correction and export for every measurement type in a config, in
config order, so a later type (evaporative water loss) can join an earlier
type's aggregated values (plasma osmolality) as auxiliary columns.

Each stage is a pure function of the previous table and the static
reference tables. Nothing is written for a measurement until all of its
stages succeed; outputs of earlier measurements are left untouched when a
later one fails.

Example:
    >>> from lizard_wl_analysis.config import load_config
    >>> results = run_pipeline(load_config("experiment.yaml"))
    >>> results["ewl"].aggregated.head()
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import pandas as pd

from lizard_wl_analysis.assessment.consistency import (
    compute_replicate_consistency,
    flag_high_cv,
)
from lizard_wl_analysis.assessment.outliers import (
    FLAG_COLUMNS,
    OutlierFilterResult,
    filter_replicate_outliers,
)
from lizard_wl_analysis.assessment.summary import (
    pairwise_comparisons,
    summarize_groups,
)
from lizard_wl_analysis.config import MeasurementConfig, PipelineConfig
from lizard_wl_analysis.constants import (
    DATE_COL,
    GROUP_COLS,
    QUALITY_FLAG_COL,
    REVIEW_FLAG_COL,
    SUBJECT_COL,
    TIMESTAMP_COL,
)
from lizard_wl_analysis.data.export import export_table, write_summary_tables
from lizard_wl_analysis.data.io import (
    load_corroborating_timestamps,
    load_exceptions,
    load_exclusions,
    load_measurement_files,
    load_treatments,
)
from lizard_wl_analysis.exceptions import ParseError
from lizard_wl_analysis.processing.aggregation import (
    aggregate_replicates,
    join_auxiliary,
    join_subject_metadata,
)
from lizard_wl_analysis.processing.corrections import (
    apply_corrections,
    correction_from_dict,
)
from lizard_wl_analysis.processing.reconciliation import (
    drop_excluded_subjects,
    reconcile_replicates,
)
from lizard_wl_analysis.report.pdf_builder import build_qc_report_pdf
from lizard_wl_analysis.visualization.replicates import plot_replicate_groups

logger = logging.getLogger(__name__)


@dataclass
class ReferenceTables:
    """Static reference tables shared by every measurement type."""

    exclusions: pd.DataFrame
    exceptions: pd.DataFrame
    corroborating: pd.DataFrame
    treatments: pd.DataFrame

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "ReferenceTables":
        return cls(
            exclusions=load_exclusions(config.exclusions_path),
            exceptions=load_exceptions(config.exceptions_path),
            corroborating=load_corroborating_timestamps(config.corroborating_path),
            treatments=load_treatments(config.treatments_path),
        )


@dataclass
class MeasurementResult:
    name: str
    value_col: str
    inliers: pd.DataFrame
    reconciliation_log: pd.DataFrame
    counts: pd.DataFrame
    outliers: pd.DataFrame
    flags: pd.DataFrame
    consistency: pd.DataFrame
    aggregated: pd.DataFrame
    correction_log: pd.DataFrame
    group_summary: pd.DataFrame
    pairwise: pd.DataFrame
    outputs: dict[str, Path] = field(default_factory=dict)

    @property
    def flagged_groups(self) -> pd.DataFrame:
        mask = self.aggregated[QUALITY_FLAG_COL] | self.aggregated[REVIEW_FLAG_COL]
        return self.aggregated.loc[mask]

    def replicate_table(self) -> pd.DataFrame:
        """Reconciled records with an ``is_outlier`` column."""
        kept = self.inliers.copy()
        kept["is_outlier"] = False
        removed = self.outliers.copy()
        removed["is_outlier"] = True
        return pd.concat([kept, removed], ignore_index=True).sort_values(
            [c for c in (DATE_COL, SUBJECT_COL, TIMESTAMP_COL) if c in kept.columns],
            kind="mergesort",
        )


def ingest(mconfig: MeasurementConfig) -> pd.DataFrame:
    """Stage 1: load and normalize the raw exports of one measurement type."""
    try:
        raw = load_measurement_files(
            mconfig.input_dir, mconfig.schema, pattern=mconfig.pattern
        )
    except ParseError as err:
        raise err.with_context({"measurement": mconfig.name})
    if raw.empty:
        raise ParseError(
            f"No records for '{mconfig.name}' in {mconfig.input_dir}",
            context={"measurement": mconfig.name},
        )
    logger.info("%s: ingested %d record(s)", mconfig.name, len(raw))
    return raw


def filter_outliers_stage(
    records: pd.DataFrame, mconfig: MeasurementConfig
) -> OutlierFilterResult:
    """Stage 3: IQR filtering within replicate groups (or a pass-through)."""
    value_col = mconfig.schema.value_col
    if not mconfig.outlier_filter:
        return OutlierFilterResult(
            inliers=records.copy(),
            outliers=records.iloc[0:0].copy(),
            flags=pd.DataFrame(columns=GROUP_COLS + FLAG_COLUMNS),
        )
    return filter_replicate_outliers(
        records,
        value_col,
        whis=mconfig.iqr_whis,
        min_group_size=mconfig.min_group_size,
        min_retained=mconfig.min_retained,
    )


def aggregate_stage(
    filtered: OutlierFilterResult,
    records: pd.DataFrame,
    mconfig: MeasurementConfig,
    references: ReferenceTables,
    completed: dict[str, pd.DataFrame],
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Stage 4: average replicates, add QC columns and join auxiliary tables."""
    value_col = mconfig.schema.value_col
    consistency = compute_replicate_consistency(
        records, value_col, inliers=filtered.inliers
    )
    consistency = flag_high_cv(consistency, mconfig.cv_review_threshold)

    agg = aggregate_replicates(
        filtered.inliers,
        value_col,
        companion_cols=mconfig.schema.companion_cols,
        outliers=filtered.outliers,
        flags=filtered.flags,
    )
    agg = agg.merge(
        consistency[GROUP_COLS + [REVIEW_FLAG_COL]], on=GROUP_COLS, how="left"
    )
    agg[REVIEW_FLAG_COL] = agg[REVIEW_FLAG_COL].fillna(False).astype(bool)

    for aux in mconfig.auxiliary:
        if aux.measurement not in completed:
            raise KeyError(
                f"'{mconfig.name}' needs '{aux.measurement}', which has not run"
            )
        agg = join_auxiliary(
            agg,
            completed[aux.measurement],
            aux.columns,
            required=aux.required,
            suffix=aux.measurement,
        )

    agg = join_subject_metadata(agg, references.treatments)
    agg = drop_excluded_subjects(agg, references.exclusions)
    return agg, consistency


def summary_stage(
    agg: pd.DataFrame, mconfig: MeasurementConfig
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Group means per treatment and date, plus pairwise treatment comparisons."""
    value_col = mconfig.schema.value_col
    by = mconfig.group_summary_by
    if by and by in agg.columns and agg[by].notna().any():
        summary = summarize_groups(agg, value_col, [by, DATE_COL])
        pairwise = pairwise_comparisons(agg, value_col, by)
    else:
        summary = summarize_groups(agg, value_col, [DATE_COL])
        pairwise = pd.DataFrame()
    return summary, pairwise


def run_measurement(
    mconfig: MeasurementConfig,
    references: ReferenceTables,
    completed: Optional[dict[str, pd.DataFrame]] = None,
) -> MeasurementResult:
    """
    Run stages 1-5 for one measurement type without writing anything.

    Args:
        mconfig: Measurement configuration.
        references: Exclusions, exceptions, corroborating timestamps, treatments.
        completed: Aggregated tables of measurement types already run, by name.

    Raises:
        ParseError: If the exports do not match the schema.
        ReconciliationError: If a replicate group stays unexplained.
    """
    completed = completed or {}
    value_col = mconfig.schema.value_col
    logger.info("Running %s (%s)", mconfig.name, value_col)

    raw = ingest(mconfig)
    reconciled = reconcile_replicates(
        raw,
        references.corroborating,
        expected_count=mconfig.expected_count,
        exceptions=references.exceptions,
        exclusions=references.exclusions,
        neighbor_window=mconfig.neighbor_window,
        tie_margin=mconfig.tie_margin,
    )
    filtered = filter_outliers_stage(reconciled.table, mconfig)
    agg, consistency = aggregate_stage(
        filtered, reconciled.table, mconfig, references, completed
    )
    corrections = [correction_from_dict(c) for c in mconfig.corrections]
    agg, correction_log = apply_corrections(agg, corrections)
    summary, pairwise = summary_stage(agg, mconfig)

    logger.info(
        "%s: %d observation(s), %d outlier(s) removed, %d flagged group(s)",
        mconfig.name,
        len(agg),
        len(filtered.outliers),
        int((agg[QUALITY_FLAG_COL] | agg[REVIEW_FLAG_COL]).sum()),
    )
    return MeasurementResult(
        name=mconfig.name,
        value_col=value_col,
        inliers=filtered.inliers,
        reconciliation_log=reconciled.log,
        counts=reconciled.counts,
        outliers=filtered.outliers,
        flags=filtered.flags,
        consistency=consistency,
        aggregated=agg,
        correction_log=correction_log,
        group_summary=summary,
        pairwise=pairwise,
    )


def export_measurement(
    result: MeasurementResult,
    mconfig: MeasurementConfig,
    output_dir: Path,
    *,
    report: bool = False,
) -> dict[str, Path]:
    """
    Stage 6: write summary CSVs, the optional QC PDF and the aggregated table.

    The aggregated table is written last; if a summary or the report fails,
    no aggregated table is left for the failed run.
    """
    output_dir = Path(output_dir)
    summaries = write_summary_tables(
        {
            "replicates": result.replicate_table(),
            "reconciliation_log": result.reconciliation_log,
            "group_counts": result.counts,
            "outliers": result.outliers,
            "consistency": result.consistency,
            "corrections": result.correction_log,
            "group_summary": result.group_summary,
            "pairwise": result.pairwise,
        },
        output_dir,
        prefix=result.name,
    )
    report_path = write_qc_report(result, mconfig, output_dir) if report else None

    outputs = {"aggregated": export_table(result.aggregated, output_dir / mconfig.output_name)}
    outputs.update(summaries)
    if report_path is not None:
        outputs["report"] = report_path
    result.outputs = outputs
    return outputs


def write_qc_report(
    result: MeasurementResult, mconfig: MeasurementConfig, output_dir: Path
) -> Path:
    """Render the QC PDF for one measurement type."""
    fig = None
    groups = pd.concat(
        [result.flagged_groups[GROUP_COLS], result.outliers[GROUP_COLS]]
    ).drop_duplicates()
    if not groups.empty:
        fig = plot_replicate_groups(
            result.replicate_table(),
            result.value_col,
            outliers=result.outliers,
            groups=groups,
            title=f"{mconfig.name}: groups with outliers or flags",
        )
    path = Path(output_dir) / f"{result.name}_qc_report.pdf"
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        build_qc_report_pdf(
            measurement=result.name,
            value_col=result.value_col,
            counts_table=result.counts,
            reconciliation_log=result.reconciliation_log,
            outliers_table=result.outliers,
            flagged_groups=result.flagged_groups,
            correction_log=result.correction_log,
            group_summary=result.group_summary,
            replicate_fig=fig,
            thresholds={
                "expected_count": mconfig.expected_count,
                "iqr_whis": mconfig.iqr_whis,
                "min_retained": mconfig.min_retained,
                "cv_review_threshold": mconfig.cv_review_threshold,
                "tie_margin": mconfig.tie_margin,
            },
            output_path=path,
        )
    finally:
        if fig is not None:
            plt.close(fig)
    return path


def run_pipeline(
    config: PipelineConfig,
    *,
    write: bool = True,
    report: Optional[bool] = None,
    only: Optional[list[str]] = None,
) -> dict[str, MeasurementResult]:
    """
    Run every configured measurement type in order.

    Args:
        config: Pipeline configuration.
        write: Export tables to ``config.output_dir`` after each measurement.
        report: Build QC PDFs (default: ``config.report``).
        only: Restrict to these measurement names; auxiliary sources they
            need still run first.

    Returns:
        MeasurementResult per measurement name.
    """
    report = config.report if report is None else report
    references = ReferenceTables.from_config(config)

    wanted = None
    if only:
        wanted = set(only)
        for m in reversed(config.measurements):
            if m.name in wanted:
                wanted.update(a.measurement for a in m.auxiliary)

    results: dict[str, MeasurementResult] = {}
    completed: dict[str, pd.DataFrame] = {}
    for mconfig in config.measurements:
        if wanted is not None and mconfig.name not in wanted:
            continue
        result = run_measurement(mconfig, references, completed)
        if write:
            export_measurement(result, mconfig, config.output_dir, report=report)
        results[mconfig.name] = result
        completed[mconfig.name] = result.aggregated
    return results
