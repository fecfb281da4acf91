"""Summary statistics tables and text reports for the prepare and analyze stages."""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import pandas as pd

from lab_matrices.processing.normalizer import OverlapStats

# (key, label) in report order
ANALYSIS_METRICS: List[Tuple[str, str]] = [
    ('total_cohort_patients', "Total patients in cohort"),
    ('patients_with_lab_data', "Patients with lab data"),
    ('patients_processed', "Total patients processed"),
    ('unique_test_types', "Unique test types"),
    ('total_measurements', "Total lab measurements"),
    ('non_null_measurements', "Non-NA lab measurements"),
    ('matrix_rows', "Lab result matrix rows"),
    ('columns_before_pruning', "Lab result matrix columns before pruning"),
    ('matrix_columns', "Lab result matrix columns"),
    ('digit_columns_removed', "Digit columns removed"),
    ('duplicate_groups', "Duplicate key groups resolved"),
    ('long_format_rows', "Long format rows"),
    ('suffix_matrix_rows', "Suffix matrix rows"),
    ('max_date_diff_days', "Max date difference (days)"),
]

SAMPLE_ROWS = 3
SAMPLE_COLUMNS = 8


def count_non_null_results(detail: pd.DataFrame, column: str) -> int:
    """Results that are present and not empty text."""
    values = detail[column]
    present = values.notna() & (values.astype(str).str.strip() != "")
    return int(present.sum())


def summary_table(summary: Dict) -> pd.DataFrame:
    """Metric/Value table of the analysis counters."""
    rows = [
        {'Metric': label, 'Value': summary.get(key)}
        for key, label in ANALYSIS_METRICS
        if key in summary
    ]
    return pd.DataFrame(rows, columns=['Metric', 'Value'])


def format_analysis_report(
    summary: Dict,
    result_wide: Optional[pd.DataFrame] = None,
    input_dir: Optional[str] = None,
    output_dir: Optional[str] = None,
    generated_at: Optional[datetime] = None,
) -> str:
    """Plain text report written as lab_analysis_summary.txt."""
    generated_at = generated_at or datetime.now()
    lines = [
        "LAB ANALYSIS SUMMARY",
        "=" * 20,
        f"Generated on: {generated_at:%Y-%m-%d %H:%M:%S}",
        f"Input directory: {input_dir}",
        f"Output directory: {output_dir}",
        f"Patients processed: {summary.get('patients_processed')}",
        f"Max date difference: {summary.get('max_date_diff_days')} days",
        "",
        "RESULTS:",
    ]
    for key, label in ANALYSIS_METRICS:
        if key in summary and key not in ('patients_processed', 'max_date_diff_days'):
            lines.append(f"- {label}: {summary[key]}")
    lines.append(
        f"- Final matrix dimensions: {summary.get('matrix_rows')} x {summary.get('matrix_columns')}"
    )

    lines += [
        "",
        "OUTPUT FILES:",
        "- lab_result_matrix.csv/.parquet: Wide format lab results",
        "- lab_date_matrix.csv/.parquet: Wide format lab dates",
        "- detailed_lab_results.csv/.parquet: Matched results with date differences",
        "- lab_long_format.csv/.parquet: Every lab event inside the window",
        "- lab_suffix_result_matrix.csv/.parquet: Wide results, one row per repeated event",
        "- lab_suffix_date_matrix.csv/.parquet: Wide dates, one row per repeated event",
        "- test_type_dictionary.csv/.parquet: Test type code labels",
        "- summary_statistics.csv: Analysis summary",
        "- lab_analysis_summary.txt: This summary",
    ]

    if result_wide is not None and len(result_wide):
        sample = result_wide.iloc[:SAMPLE_ROWS, :SAMPLE_COLUMNS]
        lines += ["", "SAMPLE DATA:", "First few rows of lab result matrix:",
                  sample.to_string(index=False)]
    return "\n".join(lines) + "\n"


def preparation_table(
    stats: OverlapStats,
    n_lab_records: int,
    n_cancer_records: int,
    n_test_types: int,
) -> pd.DataFrame:
    """Metric/Value table written as data_preparation_summary.csv."""
    rows = [
        ("Total patients in cohort", stats.total_cohort_patients),
        ("Patients with lab data", stats.lab_overlap_count),
        ("Patients with cancer data", stats.cancer_overlap_count),
        ("Lab data overlap percentage", f"{stats.lab_overlap_pct}%"),
        ("Cancer data overlap percentage", f"{stats.cancer_overlap_pct}%"),
        ("Total lab records", n_lab_records),
        ("Total cancer records", n_cancer_records),
        ("Unique test types", n_test_types),
    ]
    return pd.DataFrame(rows, columns=['Metric', 'Value'])


def format_preparation_report(
    stats: OverlapStats,
    n_lab_records: int,
    n_cancer_records: int,
    n_test_types: int,
    input_dir: Optional[str] = None,
    output_dir: Optional[str] = None,
    generated_at: Optional[datetime] = None,
) -> str:
    generated_at = generated_at or datetime.now()
    lines = [
        "DATA PREPARATION SUMMARY",
        "=" * 24,
        f"Generated on: {generated_at:%Y-%m-%d %H:%M:%S}",
        f"Input directory: {input_dir}",
        f"Output directory: {output_dir}",
        "",
        "DATA STATISTICS:",
        f"- Total patients in cohort: {stats.total_cohort_patients}",
        f"- Patients with lab data: {stats.lab_overlap_count} ({stats.lab_overlap_pct}%)",
        f"- Patients with cancer data: {stats.cancer_overlap_count} ({stats.cancer_overlap_pct}%)",
        f"- Total lab records: {n_lab_records}",
        f"- Total cancer records: {n_cancer_records}",
        f"- Unique test types: {n_test_types}",
        "",
        "OUTPUT FILES:",
        "- cohort.parquet: Normalized cohort",
        "- lab_subset.parquet: Lab results, required columns",
        "- cancer_subset.parquet: Cancer diagnoses, required columns",
        "- data_preparation_summary.csv: Detailed statistics",
        "",
        "NEXT STEPS:",
        "Run the lab analysis:",
        f"lab-matrices --analyze --prepared-dir {output_dir} --n-patients 5",
    ]
    return "\n".join(lines) + "\n"
