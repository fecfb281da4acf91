"""Loader/normalizer: schema checks, date parsing and cohort overlap statistics."""
from dataclasses import dataclass
from typing import Dict, List, Optional
import logging

import pandas as pd

from lab_matrices.config.matrix_config import (
    COHORT_COLUMNS,
    COLLECTION_DATE,
    COLLECTION_DATE_FORMAT,
    LAB_COLUMNS,
    PATIENT_ID,
    REFERENCE_DATE,
    REPORT_DATE_FORMAT,
    ColumnConfig,
)
from lab_matrices.errors import DateParseError, SchemaError

logger = logging.getLogger(__name__)

# Offending values echoed in a DateParseError
DATE_ERROR_SAMPLE_SIZE = 5


@dataclass(frozen=True)
class OverlapStats:
    """Cohort coverage of the lab and cancer extracts (reporting only)."""

    total_cohort_patients: int
    lab_patients: int
    cancer_patients: int
    lab_overlap_count: int
    lab_overlap_pct: float
    cancer_overlap_count: int
    cancer_overlap_pct: float

    def as_dict(self) -> Dict:
        return {
            'total_cohort_patients': self.total_cohort_patients,
            'lab_patients': self.lab_patients,
            'cancer_patients': self.cancer_patients,
            'lab_overlap_count': self.lab_overlap_count,
            'lab_overlap_pct': self.lab_overlap_pct,
            'cancer_overlap_count': self.cancer_overlap_count,
            'cancer_overlap_pct': self.cancer_overlap_pct,
        }


def require_columns(df: pd.DataFrame, columns: List[str], table: str) -> None:
    """Raise SchemaError naming every required column absent from df."""
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise SchemaError(table, missing)


def parse_date_column(
    df: pd.DataFrame,
    column: str,
    fmt: str,
    table: str,
    allow_missing: bool = False,
) -> pd.DataFrame:
    """Parse a text date column into datetime64 at midnight.

    Args:
        df: Input table (not modified)
        column: Column to parse
        fmt: strptime format, or "ISO8601"
        table: Table name for error messages
        allow_missing: Keep blank values as NaT instead of failing

    Returns:
        Copy of df with the parsed column

    Raises:
        DateParseError: a non-blank value does not match fmt, or a blank value
            when allow_missing is False
    """
    result = df.copy()
    values = result[column]

    if pd.api.types.is_datetime64_any_dtype(values):
        parsed = values
    else:
        text = values.astype("string").str.strip()
        blank = (text.isna() | (text == "")).fillna(True).astype(bool)
        candidates = text.astype(object).where(~blank, None)
        parsed = pd.to_datetime(candidates, format=fmt, errors="coerce")

        bad = parsed.isna() & ~blank
        if not allow_missing:
            bad = bad | blank
        if bad.any():
            samples = values[bad].head(DATE_ERROR_SAMPLE_SIZE).fillna("").tolist()
            raise DateParseError(table, column, fmt, samples)

    result[column] = pd.to_datetime(parsed).dt.normalize()
    return result


def _strip_ids(series: pd.Series) -> pd.Series:
    text = series.astype("string").str.strip()
    return text.astype(object).where(text.notna(), None)


def normalize_cohort(df: pd.DataFrame, columns: Optional[ColumnConfig] = None) -> pd.DataFrame:
    """Project the cohort to patient_id + reference_date and parse DD-Mon-YY dates.

    Duplicate patient rows are passed through.
    """
    columns = columns or ColumnConfig()
    mapping = columns.cohort_mapping()
    if set(COHORT_COLUMNS).issubset(df.columns):
        # Already in canonical form (prepared parquet)
        mapping = {c: c for c in COHORT_COLUMNS}
    require_columns(df, list(mapping), "cohort")

    cohort = df[list(mapping)].rename(columns=mapping)
    cohort[PATIENT_ID] = _strip_ids(cohort[PATIENT_ID])
    cohort = parse_date_column(cohort, REFERENCE_DATE, REPORT_DATE_FORMAT, "cohort")
    return cohort[COHORT_COLUMNS].reset_index(drop=True)


def normalize_labs(df: pd.DataFrame, columns: Optional[ColumnConfig] = None) -> pd.DataFrame:
    """Project lab results to the five required columns and parse collection dates.

    Blank collection dates stay NaT; they can never fall inside a window.
    """
    columns = columns or ColumnConfig()
    mapping = columns.lab_mapping()
    if set(LAB_COLUMNS).issubset(df.columns):
        mapping = {c: c for c in LAB_COLUMNS}
    require_columns(df, list(mapping), "lab")

    labs = df[list(mapping)].rename(columns=mapping)
    labs[PATIENT_ID] = _strip_ids(labs[PATIENT_ID])
    labs = parse_date_column(
        labs, COLLECTION_DATE, COLLECTION_DATE_FORMAT, "lab", allow_missing=True
    )
    return labs[LAB_COLUMNS].reset_index(drop=True)


def normalize_cancer(df: pd.DataFrame, columns: Optional[ColumnConfig] = None) -> pd.DataFrame:
    """Project the cancer registry extract to its seven columns."""
    columns = columns or ColumnConfig()
    required = columns.cancer_columns()
    id_column = columns.patient_id
    if PATIENT_ID in df.columns and id_column not in df.columns:
        required = [PATIENT_ID] + required[1:]
        id_column = PATIENT_ID
    require_columns(df, required, "cancer")

    cancer = df[required].rename(columns={id_column: PATIENT_ID})
    cancer[PATIENT_ID] = _strip_ids(cancer[PATIENT_ID])
    return cancer.reset_index(drop=True)


def _percent(count: int, total: int) -> float:
    if total == 0:
        return 0.0
    return round(count / total * 100, 2)


def compute_overlap_stats(
    cohort: pd.DataFrame,
    labs: pd.DataFrame,
    cancer: pd.DataFrame,
) -> OverlapStats:
    """Count cohort patients that also appear in the lab and cancer tables."""
    cohort_ids = set(cohort[PATIENT_ID].dropna())
    lab_ids = set(labs[PATIENT_ID].dropna())
    cancer_ids = set(cancer[PATIENT_ID].dropna())

    total = len(cohort_ids)
    lab_count = len(cohort_ids & lab_ids)
    cancer_count = len(cohort_ids & cancer_ids)

    stats = OverlapStats(
        total_cohort_patients=total,
        lab_patients=len(lab_ids),
        cancer_patients=len(cancer_ids),
        lab_overlap_count=lab_count,
        lab_overlap_pct=_percent(lab_count, total),
        cancer_overlap_count=cancer_count,
        cancer_overlap_pct=_percent(cancer_count, total),
    )
    logger.info(
        f"Lab results overlap: {lab_count} patients ({stats.lab_overlap_pct}%), "
        f"cancer diagnosis overlap: {cancer_count} patients ({stats.cancer_overlap_pct}%)"
    )
    return stats
