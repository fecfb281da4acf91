"""Nearest-date matcher: pick each patient's lab result closest to the reference date.

For every (patient, test type) pair the matcher keeps the lab row whose
collection date is nearest to the patient's reference date, provided it lies
within ``max_date_diff_days``. Ties go to the row that comes first in the lab
table. Pairs with nothing in the window produce a null record so that the
wide matrix still gets a cell for every test type.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from lab_matrices.config.matrix_config import (
    COLLECTION_DATE,
    DATE_DIFF_DAYS,
    MATCHED_COLUMNS,
    PATIENT_ID,
    REFERENCE_DATE,
    RESULT_TEXT,
    TEST_TYPE_CODE,
)
from lab_matrices.processing.lab_test_types import LabTestCode

logger = logging.getLogger(__name__)

DEFAULT_MAX_DATE_DIFF_DAYS = 365

# progress(current, total, patient_id)
ProgressCallback = Callable[[int, int, str], None]


@dataclass(frozen=True)
class MatchedRecord:
    """Nearest lab result for one (patient, reference date, test type)."""

    patient_id: str
    reference_date: Optional[pd.Timestamp]
    test_type_code: Optional[str]
    result_text: Optional[str]
    collection_date: Optional[pd.Timestamp]
    date_diff_days: Optional[int]  # None = no match in window

    @property
    def is_match(self) -> bool:
        return self.date_diff_days is not None


def no_match(patient_id: str, reference_date, test_type_code: Optional[str]) -> MatchedRecord:
    """Null record for a pair with no lab result inside the window."""
    return MatchedRecord(
        patient_id=patient_id,
        reference_date=reference_date,
        test_type_code=test_type_code,
        result_text=None,
        collection_date=None,
        date_diff_days=None,
    )


def calculate_date_diff_days(
    collection_dates: pd.Series,
    reference_date: Union[datetime, pd.Timestamp],
) -> pd.Series:
    """Absolute whole-day distance from the reference date (NaN for missing dates)."""
    delta = collection_dates - pd.Timestamp(reference_date)
    return delta.dt.days.abs()


def find_nearest_lab_result(
    patient_id: str,
    reference_date: Union[datetime, pd.Timestamp],
    lab_table: pd.DataFrame,
    test_type_code: Optional[str] = None,
    max_date_diff_days: int = DEFAULT_MAX_DATE_DIFF_DAYS,
) -> MatchedRecord:
    """Find the lab result closest to the reference date.

    Args:
        patient_id: Patient to match
        reference_date: Patient's reference (report) date
        lab_table: Normalized lab table; may hold other patients
        test_type_code: Restrict to this code (None = any code)
        max_date_diff_days: Largest accepted |collection - reference| in days

    Returns:
        MatchedRecord; result/date/diff are None when nothing is in the window
    """
    candidates = lab_table[lab_table[PATIENT_ID] == patient_id]
    if test_type_code is not None:
        candidates = candidates[candidates[TEST_TYPE_CODE] == test_type_code]

    if candidates.empty:
        return no_match(patient_id, reference_date, test_type_code)

    diffs = calculate_date_diff_days(candidates[COLLECTION_DATE], reference_date)
    in_window = (diffs <= max_date_diff_days).to_numpy(dtype=bool)
    if not in_window.any():
        return no_match(patient_id, reference_date, test_type_code)

    candidates = candidates[in_window]
    diffs = diffs[in_window].to_numpy()

    # argmin returns the first occurrence of the minimum: earliest row wins ties
    best = int(np.argmin(diffs))
    row = candidates.iloc[best]

    result = row[RESULT_TEXT]
    return MatchedRecord(
        patient_id=patient_id,
        reference_date=reference_date,
        test_type_code=row[TEST_TYPE_CODE],
        result_text=None if pd.isna(result) else result,
        collection_date=row[COLLECTION_DATE],
        date_diff_days=int(diffs[best]),
    )


def match_patient(
    patient_id: str,
    reference_date: Union[datetime, pd.Timestamp],
    patient_labs: pd.DataFrame,
    test_types: Sequence[Union[LabTestCode, str]],
    max_date_diff_days: int = DEFAULT_MAX_DATE_DIFF_DAYS,
) -> List[MatchedRecord]:
    """Match one patient against every code of the test type universe.

    Args:
        patient_id: Patient to match
        reference_date: Patient's reference date
        patient_labs: Lab rows (at least this patient's)
        test_types: Full universe, in output order
        max_date_diff_days: Window half-width

    Returns:
        One MatchedRecord per code, in universe order
    """
    patient_labs = patient_labs[patient_labs[PATIENT_ID] == patient_id]
    by_code: Dict[str, pd.DataFrame] = {
        code: group for code, group in patient_labs.groupby(TEST_TYPE_CODE, sort=False)
    }

    records = []
    for test_type in test_types:
        code = str(test_type)
        group = by_code.get(code)
        if group is None:
            records.append(no_match(patient_id, reference_date, code))
            continue
        records.append(find_nearest_lab_result(
            patient_id, reference_date, group, code, max_date_diff_days
        ))
    return records


def records_to_frame(records: Sequence[MatchedRecord]) -> pd.DataFrame:
    """Collect matched records into the long matched table."""
    rows = [tuple(getattr(r, column) for column in MATCHED_COLUMNS) for r in records]
    df = pd.DataFrame(rows, columns=MATCHED_COLUMNS)
    df[REFERENCE_DATE] = pd.to_datetime(df[REFERENCE_DATE])
    df[COLLECTION_DATE] = pd.to_datetime(df[COLLECTION_DATE])
    df[DATE_DIFF_DAYS] = df[DATE_DIFF_DAYS].astype("Int64")
    df[RESULT_TEXT] = df[RESULT_TEXT].astype(object)
    return df


def select_patient_subset(
    cohort: pd.DataFrame,
    labs: pd.DataFrame,
    patient_limit: Optional[int] = None,
) -> Dict[str, pd.DataFrame]:
    """Restrict the inputs to the patients that will be processed.

    Labs are restricted to cohort patients, the cohort to rows whose patient
    has lab data, then the first ``patient_limit`` cohort rows are kept
    (input order).

    Returns:
        Dict with 'labs' (cohort labs), 'cohort_with_labs' and 'cohort_subset'
    """
    cohort_ids = set(cohort[PATIENT_ID].dropna())
    cohort_labs = labs[labs[PATIENT_ID].isin(cohort_ids)].reset_index(drop=True)

    lab_ids = set(cohort_labs[PATIENT_ID])
    cohort_with_labs = cohort[cohort[PATIENT_ID].isin(lab_ids)].reset_index(drop=True)
    logger.info(
        f"Patients in cohort with lab data: {len(lab_ids)} out of {len(cohort)}"
    )

    if patient_limit is None:
        cohort_subset = cohort_with_labs
        logger.info(f"Processing ALL patients with lab data: {len(cohort_subset)}")
    else:
        cohort_subset = cohort_with_labs.head(patient_limit).reset_index(drop=True)
        logger.info(f"Processing first {len(cohort_subset)} patients with lab data")

    return {
        'labs': cohort_labs,
        'cohort_with_labs': cohort_with_labs,
        'cohort_subset': cohort_subset,
    }


def _should_report(i: int, total: int, every: int) -> bool:
    return i == 1 or i % every == 0 or i == total


def match_cohort(
    cohort_subset: pd.DataFrame,
    lab_table: pd.DataFrame,
    test_types: Sequence[Union[LabTestCode, str]],
    max_date_diff_days: int = DEFAULT_MAX_DATE_DIFF_DAYS,
    progress: Optional[ProgressCallback] = None,
    progress_every: int = 10,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """Match every cohort row against the full test type universe.

    Args:
        cohort_subset: Cohort rows to process (patient_id, reference_date)
        lab_table: Normalized lab table
        test_types: Test type universe
        max_date_diff_days: Window half-width
        progress: Called as progress(current, total, patient_id)
        progress_every: Report every N patients (plus first and last)
        n_jobs: joblib workers; results keep cohort order either way

    Returns:
        Long matched table, cohort order then universe order
    """
    codes = [str(t) for t in test_types]
    total = len(cohort_subset)
    logger.info(f"Matching {total} patients against {len(codes)} test types "
                f"(max date diff {max_date_diff_days} days)")

    if total == 0:
        return records_to_frame([])

    patient_ids = cohort_subset[PATIENT_ID].tolist()
    reference_dates = cohort_subset[REFERENCE_DATE].tolist()

    # Pre-split labs so each call only scans its own patient
    labs_by_patient = {
        pid: group for pid, group in
        lab_table[lab_table[PATIENT_ID].isin(set(patient_ids))].groupby(PATIENT_ID, sort=False)
    }
    empty_labs = lab_table.iloc[0:0]

    def tasks():
        for pid, ref in zip(patient_ids, reference_dates):
            yield pid, ref, labs_by_patient.get(pid, empty_labs)

    if n_jobs == 1:
        results = (
            match_patient(pid, ref, labs, codes, max_date_diff_days)
            for pid, ref, labs in tasks()
        )
    else:
        results = Parallel(n_jobs=n_jobs, backend="loky", return_as="generator")(
            delayed(match_patient)(pid, ref, labs, codes, max_date_diff_days)
            for pid, ref, labs in tasks()
        )

    records: List[MatchedRecord] = []
    for i, (pid, patient_records) in enumerate(zip(patient_ids, results), start=1):
        records.extend(patient_records)
        if progress is not None and _should_report(i, total, progress_every):
            progress(i, total, pid)

    matched = records_to_frame(records)
    logger.info(f"Matched records: {len(matched):,} "
                f"({int(matched[DATE_DIFF_DAYS].notna().sum()):,} within window)")
    return matched
