"""Read and normalize the three source tables (raw CSV extracts or prepared parquet)."""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union
import logging

import pandas as pd

from lab_matrices.config.matrix_config import (
    CANCER_FILE,
    CANCER_PASSTHROUGH_COLUMNS,
    COHORT_FILE,
    LAB_FILE,
    PATIENT_ID,
    PREPARED_CANCER,
    PREPARED_COHORT,
    PREPARED_LABS,
    ColumnConfig,
)
from lab_matrices.errors import InputFileNotFoundError
from lab_matrices.extractors.csv_extractor import read_csv_table
from lab_matrices.processing.normalizer import (
    OverlapStats,
    compute_overlap_stats,
    normalize_cancer,
    normalize_cohort,
    normalize_labs,
)

logger = logging.getLogger(__name__)


@dataclass
class SourcePaths:
    """Locations of the cohort, lab and cancer tables."""

    cohort: Path
    labs: Path
    cancer: Optional[Path] = None

    @classmethod
    def from_dir(
        cls,
        input_dir: Union[str, Path],
        cohort_file: str = COHORT_FILE,
        lab_file: str = LAB_FILE,
        cancer_file: Optional[str] = CANCER_FILE,
    ) -> "SourcePaths":
        input_dir = Path(input_dir)
        return cls(
            cohort=input_dir / cohort_file,
            labs=input_dir / lab_file,
            cancer=input_dir / cancer_file if cancer_file else None,
        )

    @classmethod
    def prepared(cls, prepared_dir: Union[str, Path]) -> "SourcePaths":
        """Normalized parquet tables written by the prepare stage."""
        prepared_dir = Path(prepared_dir)
        return cls(
            cohort=prepared_dir / PREPARED_COHORT,
            labs=prepared_dir / PREPARED_LABS,
            cancer=prepared_dir / PREPARED_CANCER,
        )


@dataclass
class SourceTables:
    """Normalized inputs plus their overlap statistics."""

    cohort: pd.DataFrame
    labs: pd.DataFrame
    cancer: pd.DataFrame
    overlap: OverlapStats


def empty_cancer_table() -> pd.DataFrame:
    return pd.DataFrame(columns=[PATIENT_ID] + CANCER_PASSTHROUGH_COLUMNS, dtype=object)


def load_sources(paths: SourcePaths, columns: Optional[ColumnConfig] = None) -> SourceTables:
    """Read the CSV extracts, normalize them and compute overlap statistics.

    Raises:
        InputFileNotFoundError: a configured file does not exist
        SchemaError: a required column is missing
        DateParseError: a date does not match its format
    """
    columns = columns or ColumnConfig()

    cohort = normalize_cohort(
        read_csv_table(paths.cohort, "cohort", list(columns.cohort_mapping())), columns
    )
    labs = normalize_labs(
        read_csv_table(paths.labs, "lab", list(columns.lab_mapping())), columns
    )
    if paths.cancer is None:
        cancer = empty_cancer_table()
    else:
        cancer = normalize_cancer(
            read_csv_table(paths.cancer, "cancer", columns.cancer_columns()), columns
        )

    logger.info(f"Cohort: {len(cohort):,} rows, {cohort[PATIENT_ID].nunique():,} unique patients")
    logger.info(f"Labs: {len(labs):,} rows, {labs[PATIENT_ID].nunique():,} unique patients")
    logger.info(f"Cancer: {len(cancer):,} rows, {cancer[PATIENT_ID].nunique():,} unique patients")

    return SourceTables(
        cohort=cohort,
        labs=labs,
        cancer=cancer,
        overlap=compute_overlap_stats(cohort, labs, cancer),
    )


def _read_parquet(path: Path, table: str) -> pd.DataFrame:
    if not path.exists():
        raise InputFileNotFoundError(path, table)
    logger.info(f"Reading prepared {table} table: {path}")
    return pd.read_parquet(path)


def load_prepared(prepared_dir: Union[str, Path]) -> SourceTables:
    """Load the prepare stage's parquet tables; the cancer table is optional."""
    paths = SourcePaths.prepared(prepared_dir)

    cohort = normalize_cohort(_read_parquet(paths.cohort, "cohort"))
    labs = normalize_labs(_read_parquet(paths.labs, "lab"))
    if paths.cancer.exists():
        cancer = normalize_cancer(_read_parquet(paths.cancer, "cancer"))
    else:
        logger.info("No cancer data found, skipping")
        cancer = empty_cancer_table()

    return SourceTables(
        cohort=cohort,
        labs=labs,
        cancer=cancer,
        overlap=compute_overlap_stats(cohort, labs, cancer),
    )
