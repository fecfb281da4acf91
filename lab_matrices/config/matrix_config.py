"""
Lab Matrices: Configuration
===========================

Central configuration for the cohort / lab matching pipeline.
"""

from pathlib import Path
from dataclasses import dataclass, field, fields, asdict
from typing import Dict, List, Optional, Union
import yaml

from lab_matrices.errors import ConfigError


# =============================================================================
# PATH CONFIGURATION
# =============================================================================

DEFAULT_INPUT_DIR = Path(".")
DEFAULT_PREPARED_DIR = Path("./prepared_data")
DEFAULT_OUTPUT_DIR = Path("./lab_analysis_results")

# Input extracts
COHORT_FILE = "cohortmrn_merge.data.csv"
LAB_FILE = "OUTPT_LAB_RESULTS_LABS.csv"
CANCER_FILE = "CANCER_DIAGNOSIS_CAREG.csv"

# Prepared (normalized) tables
PREPARED_COHORT = "cohort.parquet"
PREPARED_LABS = "lab_subset.parquet"
PREPARED_CANCER = "cancer_subset.parquet"

MANIFEST_FILE = "run_manifest.json"

# =============================================================================
# CANONICAL SCHEMA
# =============================================================================

PATIENT_ID = "patient_id"
REFERENCE_DATE = "reference_date"
COLLECTION_DATE = "collection_date"
TEST_TYPE_CODE = "test_type_code"
TEST_TYPE_DESCRIPTION = "test_type_description"
RESULT_TEXT = "result_text"
DATE_DIFF_DAYS = "date_diff_days"
UNIQUE_PATIENT_ID = "unique_patient_id"
ORIGINAL_PATIENT_ID = "original_patient_id"

COHORT_COLUMNS = [PATIENT_ID, REFERENCE_DATE]
LAB_COLUMNS = [PATIENT_ID, COLLECTION_DATE, TEST_TYPE_CODE, TEST_TYPE_DESCRIPTION, RESULT_TEXT]
MATCHED_COLUMNS = [
    PATIENT_ID, REFERENCE_DATE, TEST_TYPE_CODE,
    RESULT_TEXT, COLLECTION_DATE, DATE_DIFF_DAYS,
]
WIDE_KEY_COLUMNS = [PATIENT_ID, REFERENCE_DATE]
SUFFIX_KEY_COLUMNS = [UNIQUE_PATIENT_ID, REFERENCE_DATE]

# Test type codes become matrix columns, so they may not reuse a key column name
RESERVED_CODES = [PATIENT_ID, REFERENCE_DATE, UNIQUE_PATIENT_ID, ORIGINAL_PATIENT_ID]

# Cancer registry columns kept as-is (only the id column is renamed)
CANCER_PASSTHROUGH_COLUMNS = [
    "SITE_DESCR",
    "HISTOLOGY_DESCR",
    "GRADE_DIFF_DESC",
    "DATE_FIRST_BIOPSY",
    "SSDI_KI_67",
    "SURVIVAL_AFTER_DIAGNOSIS_NBR",
]

# Date formats
REPORT_DATE_FORMAT = "%d-%b-%y"      # e.g. 10-Jan-20
COLLECTION_DATE_FORMAT = "ISO8601"   # 2020-01-05 or 2020-01-05 08:30:00

# Test type codes made only of digits carry no descriptive meaning
DIGIT_ONLY_PATTERN = r"[0-9]+"

# Number of duplicate groups echoed in the warning log
DUPLICATE_SAMPLE_SIZE = 5


# =============================================================================
# SOURCE COLUMN MAPPING
# =============================================================================

@dataclass
class ColumnConfig:
    """Source extract column names mapped onto the canonical schema."""

    patient_id: str = "DFCI_MRN"
    reference_date: str = "REPORT_DT"
    collection_date: str = "SPECIMEN_COLLECT_DT"
    test_type_code: str = "TEST_TYPE_CD"
    test_type_description: str = "TEST_TYPE_DESCR"
    result_text: str = "TEXT_RESULT"

    def cohort_mapping(self) -> Dict[str, str]:
        return {
            self.patient_id: PATIENT_ID,
            self.reference_date: REFERENCE_DATE,
        }

    def lab_mapping(self) -> Dict[str, str]:
        return {
            self.patient_id: PATIENT_ID,
            self.collection_date: COLLECTION_DATE,
            self.test_type_code: TEST_TYPE_CODE,
            self.test_type_description: TEST_TYPE_DESCRIPTION,
            self.result_text: RESULT_TEXT,
        }

    def cancer_columns(self) -> List[str]:
        return [self.patient_id] + CANCER_PASSTHROUGH_COLUMNS


# =============================================================================
# MATCHING CONFIGURATION
# =============================================================================

@dataclass
class MatchingConfig:
    """Matching window, cohort subset and post-processing settings."""

    max_date_diff_days: int = 365
    patient_limit: Optional[int] = 5   # None processes every patient
    prune_digit_only_columns: bool = True
    force_reprocess: bool = False

    # Progress callback cadence (patients)
    progress_every: int = 10

    # joblib workers for per-patient matching
    n_jobs: int = 1

    def __post_init__(self):
        if isinstance(self.patient_limit, str):
            self.patient_limit = parse_patient_limit(self.patient_limit)
        if not _is_positive_int(self.max_date_diff_days):
            raise ConfigError(
                f"max_date_diff_days must be a positive integer, got {self.max_date_diff_days!r}"
            )
        if self.patient_limit is not None and not _is_positive_int(self.patient_limit):
            raise ConfigError(
                f"patient_limit must be a positive integer or 'all', got {self.patient_limit!r}"
            )
        if not _is_positive_int(self.progress_every):
            raise ConfigError(f"progress_every must be a positive integer, got {self.progress_every!r}")
        if not isinstance(self.n_jobs, int) or isinstance(self.n_jobs, bool) or self.n_jobs == 0:
            raise ConfigError(f"n_jobs must be a non-zero integer, got {self.n_jobs!r}")

    def fingerprint_fields(self) -> Dict:
        """Settings that change the produced tables."""
        return {
            'max_date_diff_days': self.max_date_diff_days,
            'patient_limit': self.patient_limit,
            'prune_digit_only_columns': self.prune_digit_only_columns,
        }


@dataclass
class PipelineConfig:
    """Everything a run needs besides the file locations."""

    matching: MatchingConfig = field(default_factory=MatchingConfig)
    columns: ColumnConfig = field(default_factory=ColumnConfig)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def parse_patient_limit(value: Union[str, int, None]) -> Optional[int]:
    """Parse an ``--n-patients`` style value; 'all' means unbounded."""
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        if value <= 0:
            raise ConfigError("n_patients must be a positive number or 'all'")
        return value
    text = str(value).strip().lower()
    if text in ('all', 'inf', 'unbounded'):
        return None
    try:
        limit = int(text)
    except ValueError:
        raise ConfigError("n_patients must be a positive number or 'all'") from None
    if limit <= 0:
        raise ConfigError("n_patients must be a positive number or 'all'")
    return limit


def _build_section(cls, values: Optional[Dict], section: str):
    values = values or {}
    if not isinstance(values, dict):
        raise ConfigError(f"'{section}' section must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown '{section}' option(s): {', '.join(unknown)}")
    return cls(**values)


def load_config(path: Union[str, Path]) -> PipelineConfig:
    """Load a pipeline configuration from YAML.

    Expected layout::

        matching:
          max_date_diff_days: 180
          patient_limit: all
        columns:
          patient_id: MRN
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    with open(path, 'r') as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")

    unknown = sorted(set(raw) - {'matching', 'columns'})
    if unknown:
        raise ConfigError(f"Unknown config section(s): {', '.join(unknown)}")

    return PipelineConfig(
        matching=_build_section(MatchingConfig, raw.get('matching'), 'matching'),
        columns=_build_section(ColumnConfig, raw.get('columns'), 'columns'),
    )


def config_to_dict(config: PipelineConfig) -> Dict:
    return asdict(config)


def ensure_directories(*dirs: Path):
    """Create output directories."""
    for dir_path in dirs:
        Path(dir_path).mkdir(parents=True, exist_ok=True)
