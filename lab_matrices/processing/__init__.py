"""
Lab Matrices Processing
=======================

- Loader/normalizer: schema checks and date parsing
- Nearest-date matcher: closest lab result per (patient, test type)
- Matrix reshaper: wide result and date matrices
- Long format and suffix builder: every in-window lab event
"""

from .normalizer import (
    OverlapStats,
    compute_overlap_stats,
    normalize_cancer,
    normalize_cohort,
    normalize_labs,
    parse_date_column,
    require_columns,
)
from .lab_test_types import LabTestCode, build_test_type_universe, is_digit_only_code
from .nearest_date_matcher import (
    MatchedRecord,
    find_nearest_lab_result,
    match_cohort,
    match_patient,
    select_patient_subset,
)
from .matrix_reshaper import ReshapeResult, reshape_matched_records, resolve_duplicate_keys
from .long_format_builder import build_long_format, build_suffix_matrices, collect_window_rows
from .fingerprint import compute_fingerprint
from .source_loader import SourcePaths, SourceTables, load_prepared, load_sources

__all__ = [
    # Loading
    'OverlapStats',
    'compute_overlap_stats',
    'normalize_cancer',
    'normalize_cohort',
    'normalize_labs',
    'parse_date_column',
    'require_columns',
    'SourcePaths',
    'SourceTables',
    'load_prepared',
    'load_sources',
    # Matching
    'LabTestCode',
    'build_test_type_universe',
    'is_digit_only_code',
    'MatchedRecord',
    'find_nearest_lab_result',
    'match_cohort',
    'match_patient',
    'select_patient_subset',
    # Reshaping
    'ReshapeResult',
    'reshape_matched_records',
    'resolve_duplicate_keys',
    'build_long_format',
    'build_suffix_matrices',
    'collect_window_rows',
    'compute_fingerprint',
]
