"""
PDF report generation for replicate QC results.
"""

from .pdf_builder import build_qc_report_pdf

__all__ = [
    "build_qc_report_pdf",
]
