"""Matrix reshaper: long matched records -> wide result and date matrices."""
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import logging
import re
import warnings

import numpy as np
import pandas as pd

from lab_matrices.config.matrix_config import (
    COLLECTION_DATE,
    DATE_DIFF_DAYS,
    DIGIT_ONLY_PATTERN,
    DUPLICATE_SAMPLE_SIZE,
    PATIENT_ID,
    REFERENCE_DATE,
    RESULT_TEXT,
    TEST_TYPE_CODE,
    WIDE_KEY_COLUMNS,
)
from lab_matrices.errors import DuplicateConflictWarning
from lab_matrices.processing.lab_test_types import LabTestCode, digit_only_codes

logger = logging.getLogger(__name__)

DUPLICATE_KEY_COLUMNS = [PATIENT_ID, REFERENCE_DATE, TEST_TYPE_CODE]


@dataclass
class DuplicateReport:
    """Groups that collided on the pivot key and were collapsed."""

    n_groups: int = 0
    n_rows_dropped: int = 0
    sample: pd.DataFrame = field(default_factory=pd.DataFrame)

    @property
    def has_duplicates(self) -> bool:
        return self.n_groups > 0


@dataclass
class ReshapeResult:
    """Output of reshape_matched_records."""

    result_wide: pd.DataFrame
    date_wide: pd.DataFrame
    detail: pd.DataFrame
    duplicates: DuplicateReport
    n_columns_before_pruning: int
    removed_columns: List[str]


def attach_reference_dates(matched: pd.DataFrame, cohort_subset: pd.DataFrame) -> pd.DataFrame:
    """Attach each matched record's reference date from the processed cohort.

    The join is many-to-one on the distinct (patient_id, reference_date)
    pairs, so a patient contributing one row per test type is expected.
    Matched rows whose pair is not in the cohort subset are dropped.
    """
    pairs = cohort_subset[WIDE_KEY_COLUMNS].drop_duplicates().copy()
    pairs[REFERENCE_DATE] = pairs[REFERENCE_DATE].astype('datetime64[ns]')

    if REFERENCE_DATE not in matched.columns:
        # Records keyed by patient only: every cohort date of the patient applies
        return matched.merge(pairs, on=PATIENT_ID, how='inner', sort=False)

    matched = matched.copy()
    matched[REFERENCE_DATE] = matched[REFERENCE_DATE].astype('datetime64[ns]')
    merged = matched.merge(
        pairs, on=WIDE_KEY_COLUMNS, how='inner', validate='many_to_one', sort=False
    )

    dropped = len(matched) - len(merged)
    if dropped:
        logger.warning(f"{dropped} matched rows had no cohort reference date and were dropped")
    return merged


def resolve_duplicate_keys(
    df: pd.DataFrame,
    keys: Sequence[str] = DUPLICATE_KEY_COLUMNS,
    sample_size: int = DUPLICATE_SAMPLE_SIZE,
) -> Tuple[pd.DataFrame, DuplicateReport]:
    """Collapse rows colliding on ``keys`` to the one closest in time.

    Within a group the row with the smallest date_diff_days is kept (missing
    diffs rank last); among equal diffs the first row in input order wins.

    Returns:
        (deduplicated copy in input order, DuplicateReport)
    """
    keys = list(keys)
    dup_mask = df.duplicated(subset=keys, keep=False)
    if not dup_mask.any():
        return df.reset_index(drop=True), DuplicateReport()

    ranked = df.reset_index(drop=True)
    order = np.arange(len(ranked))
    rank_diff = ranked[DATE_DIFF_DAYS].astype("Float64").fillna(np.inf).to_numpy(dtype=float)
    ranking = pd.DataFrame({'_diff': rank_diff, '_order': order})
    ranking[keys] = ranked[keys]

    keep = (
        ranking.sort_values(['_diff', '_order'], kind='mergesort')
        .drop_duplicates(subset=keys, keep='first')['_order']
        .sort_values()
        .to_numpy()
    )
    resolved = ranked.iloc[keep].reset_index(drop=True)

    conflicted = ranked[dup_mask.to_numpy()]
    n_groups = conflicted.drop_duplicates(subset=keys).shape[0]
    sample_keys = conflicted[keys].drop_duplicates().head(sample_size)
    sample = conflicted.merge(sample_keys, on=keys, how='inner')

    report = DuplicateReport(
        n_groups=n_groups,
        n_rows_dropped=len(ranked) - len(resolved),
        sample=sample,
    )
    logger.warning(
        f"Found {n_groups} duplicate {tuple(keys)} group(s); kept the closest "
        f"collection date in each. Sample:\n{sample.to_string(index=False)}"
    )
    warnings.warn(DuplicateConflictWarning(n_groups, sample), stacklevel=2)
    return resolved, report


def pivot_wide(
    long_df: pd.DataFrame,
    value_column: str,
    index_columns: Sequence[str] = WIDE_KEY_COLUMNS,
    columns: Sequence[str] = (),
) -> pd.DataFrame:
    """Pivot to one row per key and one column per test type code.

    Args:
        long_df: Long table, unique on index_columns + test_type_code
        value_column: result_text or collection_date
        index_columns: Row key
        columns: Codes that must appear as columns even if never observed

    Returns:
        Wide DataFrame; rows sorted by key, code columns sorted by name
    """
    index_columns = list(index_columns)
    present = long_df[long_df[TEST_TYPE_CODE].notna()]

    if present.empty:
        wide = present[index_columns].drop_duplicates().reset_index(drop=True)
    else:
        wide = present.pivot(index=index_columns, columns=TEST_TYPE_CODE, values=value_column)
        wide.columns = [str(c) for c in wide.columns]
        wide = wide.reset_index()

    missing = sorted(set(map(str, columns)) - set(wide.columns))
    for code in missing:
        wide[code] = pd.NaT if value_column == COLLECTION_DATE else None

    code_columns = sorted(c for c in wide.columns if c not in index_columns)
    wide = wide[index_columns + code_columns].copy()

    if value_column == COLLECTION_DATE:
        for code in code_columns:
            wide[code] = pd.to_datetime(wide[code])
    else:
        for code in code_columns:
            wide[code] = wide[code].astype(object).where(wide[code].notna(), None)

    wide.columns.name = None
    return wide.sort_values(index_columns, kind='mergesort').reset_index(drop=True)


def find_digit_only_columns(
    columns: Sequence[str],
    test_types: Optional[Sequence[LabTestCode]] = None,
    exclude: Sequence[str] = (),
) -> List[str]:
    """Code columns whose identifier is a bare number.

    Uses the test types' own digit-only property when given, otherwise the
    default ``[0-9]+`` full-match rule on the column names.
    """
    candidates = [c for c in columns if c not in set(exclude)]
    if test_types is not None:
        flagged = set(digit_only_codes(test_types))
        return [c for c in candidates if c in flagged]
    pattern = re.compile(DIGIT_ONLY_PATTERN)
    return [c for c in candidates if pattern.fullmatch(str(c))]


def prune_columns(frames: Sequence[pd.DataFrame], drop: Sequence[str]) -> List[pd.DataFrame]:
    """Drop the same columns from every frame."""
    drop = list(drop)
    return [f.drop(columns=[c for c in drop if c in f.columns]) for f in frames]


def reshape_matched_records(
    matched: pd.DataFrame,
    cohort_subset: pd.DataFrame,
    prune_digit_only_columns: bool = True,
    test_types: Optional[Sequence[LabTestCode]] = None,
) -> ReshapeResult:
    """Build the wide result and date matrices from matched records.

    Args:
        matched: Output of match_cohort
        cohort_subset: Processed cohort rows (patient_id, reference_date)
        prune_digit_only_columns: Drop digit-only code columns from both matrices
        test_types: Test type universe; guarantees one column per code

    Returns:
        ReshapeResult
    """
    detail = attach_reference_dates(matched, cohort_subset)
    detail, duplicates = resolve_duplicate_keys(detail)

    universe = [str(t) for t in test_types] if test_types is not None else []
    result_wide = pivot_wide(detail, RESULT_TEXT, columns=universe)
    date_wide = pivot_wide(detail, COLLECTION_DATE, columns=universe)
    n_columns_before = len(result_wide.columns)
    logger.info(f"Wide matrices: {len(result_wide)} x {n_columns_before}")

    removed: List[str] = []
    if prune_digit_only_columns:
        removed = find_digit_only_columns(
            list(result_wide.columns), test_types, exclude=WIDE_KEY_COLUMNS
        )
        if removed:
            logger.info(f"Removing {len(removed)} digit-only columns: "
                        f"{', '.join(removed[:10])}")
            result_wide, date_wide = prune_columns([result_wide, date_wide], removed)
        else:
            logger.info("No digit-only columns found")

    return ReshapeResult(
        result_wide=result_wide,
        date_wide=date_wide,
        detail=detail,
        duplicates=duplicates,
        n_columns_before_pruning=n_columns_before,
        removed_columns=removed,
    )
