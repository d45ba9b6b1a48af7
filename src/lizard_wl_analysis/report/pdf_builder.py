"""
PDF report generation for replicate QC results.

Uses ReportLab to compile the reconciliation log, removed outliers, flagged
groups and group summaries of one measurement type into a single document a
reviewer can sign off on.
"""

import io
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import (
    Image,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from lizard_wl_analysis.utils.labels import format_column_label

MAX_TABLE_ROWS = 40


def _df_to_table_data(
    df: pd.DataFrame,
    *,
    float_fmt: str = "{:.4g}",
) -> list[list[str]]:
    """Convert DataFrame to list of lists for ReportLab Table."""
    df_str = df.copy()
    for c in df_str.select_dtypes(include=["float", "floating"]).columns:
        df_str[c] = df_str[c].apply(
            lambda x: float_fmt.format(x)
            if pd.notna(x) and isinstance(x, (int, float))
            else ""
        )
    for c in df_str.select_dtypes(include=["datetime"]).columns:
        df_str[c] = df_str[c].dt.strftime("%Y-%m-%d %H:%M").str.replace(" 00:00", "")
    df_str = df_str.astype(object).fillna("-")
    headers = [format_column_label(c)[:18] for c in df_str.columns]
    return [headers] + df_str.astype(str).values.tolist()


def _figure_to_image_bytes(fig, *, dpi: int = 150, format: str = "png") -> bytes:
    """Serialize matplotlib Figure to PNG bytes."""
    buf = io.BytesIO()
    fig.savefig(buf, format=format, dpi=dpi, bbox_inches="tight")
    buf.seek(0)
    return buf.getvalue()


def _styled_table(df: pd.DataFrame, header_color: str, band_color: str) -> Table:
    table_data = _df_to_table_data(df.head(MAX_TABLE_ROWS))
    col_count = len(table_data[0])
    usable_width = 7.0 * inch
    col_widths = [usable_width / max(col_count, 1)] * col_count
    t = Table(table_data, colWidths=col_widths, repeatRows=1)
    t.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor(header_color)),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 7),
                ("BOTTOMPADDING", (0, 0), (-1, 0), 6),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                (
                    "ROWBACKGROUNDS",
                    (0, 1),
                    (-1, -1),
                    [colors.white, colors.HexColor(band_color)],
                ),
            ]
        )
    )
    return t


def build_qc_report_pdf(
    *,
    measurement: str,
    value_col: str,
    counts_table: Optional[pd.DataFrame] = None,
    reconciliation_log: Optional[pd.DataFrame] = None,
    outliers_table: Optional[pd.DataFrame] = None,
    flagged_groups: Optional[pd.DataFrame] = None,
    correction_log: Optional[pd.DataFrame] = None,
    group_summary: Optional[pd.DataFrame] = None,
    replicate_fig: Optional[Any] = None,
    thresholds: Optional[dict[str, Any]] = None,
    output_path: Optional[str | Path] = None,
) -> bytes:
    """
    Compile QC results of one measurement type into a PDF report.

    All tables are optional; only provided, non-empty sections are included.
    Long tables are truncated to their first rows with a note.

    Args:
        measurement: Measurement type name (report title).
        value_col: Measured quantity.
        counts_table: Replicate counts with ``explained_by``; only groups
            explained by an exception are listed.
        reconciliation_log: Reassignments and rejected matches.
        outliers_table: Removed replicate readings.
        flagged_groups: Groups with data_quality_flag or needs_review.
        correction_log: Ad hoc corrections applied.
        group_summary: Group mean statistics.
        replicate_fig: matplotlib Figure of flagged replicate groups.
        thresholds: QC thresholds used, listed on the first page.
        output_path: If provided, also save PDF to this path.

    Returns:
        PDF file contents as bytes.
    """
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        rightMargin=0.6 * inch,
        leftMargin=0.6 * inch,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
        title=f"{measurement} QC report",
    )
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "ReportTitle",
        parent=styles["Heading1"],
        fontSize=18,
        spaceAfter=12,
    )
    heading_style = ParagraphStyle(
        "SectionHeading",
        parent=styles["Heading2"],
        fontSize=14,
        spaceBefore=18,
        spaceAfter=8,
    )
    body_style = styles["Normal"]

    flow: list = []
    flow.append(Paragraph(f"Replicate QC Report: {measurement}", title_style))
    flow.append(
        Paragraph(
            f"Measured quantity: {format_column_label(value_col)}. "
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M')}",
            body_style,
        )
    )
    if thresholds:
        items = ", ".join(f"{k} = {v}" for k, v in thresholds.items())
        flow.append(Paragraph(f"Thresholds: {items}", body_style))
    flow.append(Spacer(1, 0.25 * inch))

    sections = [
        (
            "Documented count exceptions",
            "Replicate groups whose size deviates from the design, with the "
            "documented reason.",
            None
            if counts_table is None
            else counts_table.loc[
                ~counts_table["explained_by"].isin(["expected", "not checked"])
            ],
            ("#4472C4", "#f5f5f5"),
        ),
        (
            "Identity reconciliation",
            "Records reassigned to the subject with the nearest corroborating "
            "timestamp, and matches rejected as ambiguous.",
            reconciliation_log,
            ("#70AD47", "#e8f4e4"),
        ),
        (
            "Removed outliers",
            "Readings outside the IQR whiskers of their replicate group.",
            outliers_table,
            ("#ED7D31", "#fde9db"),
        ),
        (
            "Flagged groups",
            "Groups where the retention minimum stopped outlier removal, or "
            "whose CV exceeds the review threshold.",
            flagged_groups,
            ("#C55A11", "#fbe4d5"),
        ),
        (
            "Ad hoc corrections",
            "Values nulled or rows dropped by explicit correction rules.",
            correction_log,
            ("#7030A0", "#ede2f6"),
        ),
        (
            "Group summary",
            "Mean, SD, SEM and 95% confidence interval per group.",
            group_summary,
            ("#4472C4", "#f5f5f5"),
        ),
    ]

    number = 0
    for heading, text, table, (header_color, band_color) in sections:
        if table is None or table.empty:
            continue
        number += 1
        flow.append(Paragraph(f"{number}. {heading}", heading_style))
        flow.append(Paragraph(text, body_style))
        flow.append(Spacer(1, 0.1 * inch))
        flow.append(_styled_table(table, header_color, band_color))
        if len(table) > MAX_TABLE_ROWS:
            flow.append(
                Paragraph(
                    f"<i>(Showing first {MAX_TABLE_ROWS} of {len(table)} rows; "
                    f"see CSV output)</i>",
                    body_style,
                )
            )
        flow.append(Spacer(1, 0.2 * inch))

    if number == 0:
        flow.append(
            Paragraph("No reassignments, outliers or flags for this run.", body_style)
        )

    if replicate_fig is not None:
        img_bytes = _figure_to_image_bytes(replicate_fig)
        img = Image(io.BytesIO(img_bytes), width=6.5 * inch, height=3.5 * inch)
        flow.append(img)

    doc.build(flow)
    pdf_bytes = buffer.getvalue()

    if output_path is not None:
        Path(output_path).write_bytes(pdf_bytes)

    return pdf_bytes
