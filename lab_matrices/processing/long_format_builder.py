"""Long-format and suffix-disambiguated exports.

Unlike the nearest-date matrices these keep every lab event inside the
window: the long table has one row per event, and the suffix matrices give
the n-th event of each (patient, test type) its own ``<patient>_<n>`` row.
"""
from dataclasses import dataclass
from typing import List, Optional, Sequence
import logging

import numpy as np
import pandas as pd

from lab_matrices.config.matrix_config import (
    COLLECTION_DATE,
    DATE_DIFF_DAYS,
    LAB_COLUMNS,
    ORIGINAL_PATIENT_ID,
    PATIENT_ID,
    REFERENCE_DATE,
    RESULT_TEXT,
    SUFFIX_KEY_COLUMNS,
    TEST_TYPE_CODE,
    TEST_TYPE_DESCRIPTION,
    UNIQUE_PATIENT_ID,
    WIDE_KEY_COLUMNS,
)
from lab_matrices.processing.lab_test_types import LabTestCode
from lab_matrices.processing.matrix_reshaper import (
    find_digit_only_columns,
    pivot_wide,
    prune_columns,
)
from lab_matrices.processing.nearest_date_matcher import DEFAULT_MAX_DATE_DIFF_DAYS

logger = logging.getLogger(__name__)

LONG_FORMAT_COLUMNS = [
    PATIENT_ID,
    REFERENCE_DATE,
    TEST_TYPE_CODE,
    TEST_TYPE_DESCRIPTION,
    RESULT_TEXT,
    COLLECTION_DATE,
    DATE_DIFF_DAYS,
]
LONG_SORT_COLUMNS = [PATIENT_ID, TEST_TYPE_CODE, DATE_DIFF_DAYS]
SUFFIX_ORDINAL = "suffix_ordinal"


@dataclass
class SuffixMatrices:
    """Suffix-disambiguated wide matrices."""

    result_wide: pd.DataFrame
    date_wide: pd.DataFrame
    removed_columns: List[str]


def collect_window_rows(
    cohort_subset: pd.DataFrame,
    lab_table: pd.DataFrame,
    max_date_diff_days: int = DEFAULT_MAX_DATE_DIFF_DAYS,
) -> pd.DataFrame:
    """Every lab row of each processed patient that falls within the window.

    Args:
        cohort_subset: Processed cohort rows (patient_id, reference_date)
        lab_table: Normalized lab table
        max_date_diff_days: Window half-width

    Returns:
        Rows in input order (cohort row, then lab row) with reference_date
        and date_diff_days attached
    """
    cohort = cohort_subset[WIDE_KEY_COLUMNS].reset_index(drop=True).copy()
    cohort['_cohort_row'] = np.arange(len(cohort))
    labs = lab_table[LAB_COLUMNS].reset_index(drop=True).copy()
    labs['_lab_row'] = np.arange(len(labs))

    joined = cohort.merge(labs, on=PATIENT_ID, how='inner', sort=False)
    if joined.empty:
        window = joined.assign(**{DATE_DIFF_DAYS: pd.Series(dtype="Int64")})
    else:
        diffs = (joined[COLLECTION_DATE] - joined[REFERENCE_DATE]).dt.days.abs()
        window = joined[(diffs <= max_date_diff_days).to_numpy(dtype=bool)].copy()
        window[DATE_DIFF_DAYS] = diffs[window.index].astype("Int64")

    window = window.sort_values(['_cohort_row', '_lab_row'], kind='mergesort')
    return window[LONG_FORMAT_COLUMNS].reset_index(drop=True)


def build_long_format(
    cohort_subset: pd.DataFrame,
    lab_table: pd.DataFrame,
    max_date_diff_days: int = DEFAULT_MAX_DATE_DIFF_DAYS,
    window_rows: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """Lossless long table of in-window lab events.

    Sorted by (patient_id, test_type_code, date_diff_days); the sort is stable
    so equal keys keep their input order.
    """
    if window_rows is None:
        window_rows = collect_window_rows(cohort_subset, lab_table, max_date_diff_days)

    long_df = window_rows.sort_values(
        LONG_SORT_COLUMNS, kind='mergesort', na_position='last'
    ).reset_index(drop=True)
    logger.info(f"Long format: {len(long_df):,} lab events for "
                f"{long_df[PATIENT_ID].nunique()} patients")
    return long_df


def assign_suffix_ids(window_rows: pd.DataFrame) -> pd.DataFrame:
    """Number each (patient_id, test_type_code) group's rows 1..n in input order."""
    result = window_rows.copy()
    ordinal = result.groupby([PATIENT_ID, TEST_TYPE_CODE], sort=False, dropna=False).cumcount() + 1
    result[SUFFIX_ORDINAL] = ordinal
    result[UNIQUE_PATIENT_ID] = result[PATIENT_ID].astype(str) + "_" + ordinal.astype(str)
    result[ORIGINAL_PATIENT_ID] = result[PATIENT_ID]
    return result


def _with_original_id_first(wide: pd.DataFrame, suffixed: pd.DataFrame) -> pd.DataFrame:
    lookup = suffixed[[UNIQUE_PATIENT_ID, ORIGINAL_PATIENT_ID, SUFFIX_ORDINAL]].drop_duplicates(
        UNIQUE_PATIENT_ID
    )
    wide = wide.merge(lookup, on=UNIQUE_PATIENT_ID, how='left', sort=False)
    # Numeric ordinal order so that P1_10 follows P1_9
    wide = wide.sort_values(
        [ORIGINAL_PATIENT_ID, SUFFIX_ORDINAL, REFERENCE_DATE], kind='mergesort'
    ).drop(columns=[SUFFIX_ORDINAL])
    ordered = [ORIGINAL_PATIENT_ID] + [c for c in wide.columns if c != ORIGINAL_PATIENT_ID]
    return wide[ordered].reset_index(drop=True)


def build_suffix_matrices(
    window_rows: pd.DataFrame,
    prune_digit_only_columns: bool = True,
    test_types: Optional[Sequence[LabTestCode]] = None,
) -> SuffixMatrices:
    """Wide matrices keyed by unique_patient_id without collapsing duplicates.

    A patient with N in-window events of one test type occupies rows
    ``<id>_1`` .. ``<id>_N``; original_patient_id is the first column.

    Args:
        window_rows: Output of collect_window_rows (input order)
        prune_digit_only_columns: Drop digit-only code columns
        test_types: Test type universe used for the digit-only property

    Returns:
        SuffixMatrices
    """
    suffixed = assign_suffix_ids(window_rows)

    result_wide = _with_original_id_first(
        pivot_wide(suffixed, RESULT_TEXT, index_columns=SUFFIX_KEY_COLUMNS), suffixed
    )
    date_wide = _with_original_id_first(
        pivot_wide(suffixed, COLLECTION_DATE, index_columns=SUFFIX_KEY_COLUMNS), suffixed
    )

    removed: List[str] = []
    if prune_digit_only_columns:
        removed = find_digit_only_columns(
            list(result_wide.columns),
            test_types,
            exclude=[ORIGINAL_PATIENT_ID] + SUFFIX_KEY_COLUMNS,
        )
        result_wide, date_wide = prune_columns([result_wide, date_wide], removed)

    logger.info(f"Suffix matrices: {len(result_wide)} rows x {len(result_wide.columns)} columns")
    return SuffixMatrices(result_wide=result_wide, date_wide=date_wide, removed_columns=removed)
