"""Output writers and summary reports."""

from .matrix_exporter import MatrixExporter, read_manifest, staged_directory
from .summary_report import (
    format_analysis_report,
    format_preparation_report,
    preparation_table,
    summary_table,
)

__all__ = [
    'MatrixExporter',
    'read_manifest',
    'staged_directory',
    'format_analysis_report',
    'format_preparation_report',
    'preparation_table',
    'summary_table',
]
