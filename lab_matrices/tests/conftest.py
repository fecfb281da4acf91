"""Shared fixtures: small cohort / lab tables in normalized and raw CSV form."""

import pytest
import pandas as pd

from lab_matrices.config.matrix_config import (
    CANCER_FILE,
    CANCER_PASSTHROUGH_COLUMNS,
    COHORT_COLUMNS,
    COHORT_FILE,
    COLLECTION_DATE,
    LAB_COLUMNS,
    LAB_FILE,
    REFERENCE_DATE,
)


@pytest.fixture
def make_cohort():
    """Build a normalized cohort from (patient_id, 'YYYY-MM-DD') tuples."""
    def _make(rows):
        df = pd.DataFrame(rows, columns=COHORT_COLUMNS)
        df[REFERENCE_DATE] = pd.to_datetime(df[REFERENCE_DATE])
        return df
    return _make


@pytest.fixture
def make_labs():
    """Build a normalized lab table from (patient_id, date, code, description, result) tuples."""
    def _make(rows):
        df = pd.DataFrame(rows, columns=LAB_COLUMNS)
        df[COLLECTION_DATE] = pd.to_datetime(df[COLLECTION_DATE])
        return df
    return _make


@pytest.fixture
def sample_cohort(make_cohort):
    return make_cohort([
        ('P1', '2020-01-10'),
        ('P2', '2020-02-01'),
    ])


@pytest.fixture
def sample_labs(make_labs):
    """P1 has two A1C and three CBC rows, P2 a GLU and a digit-only code, P3 is not in the cohort."""
    return make_labs([
        ('P1', '2020-01-05', 'A1C', 'Hemoglobin A1c', '6.5'),
        ('P1', '2020-06-01', 'A1C', 'Hemoglobin A1c', '7.0'),
        ('P1', '2020-01-08', 'CBC', 'Complete blood count', 'WBC 5.1'),
        ('P1', '2020-01-12', 'CBC', 'Complete blood count', 'WBC 5.3'),
        ('P1', '2020-01-20', 'CBC', 'Complete blood count', 'WBC 5.8'),
        ('P2', '2020-02-03', 'GLU', 'Glucose', '98'),
        ('P2', '2020-01-25', '1234', None, 'see note'),
        ('P3', '2020-01-01', 'A1C', 'Hemoglobin A1c', '5.0'),
    ])


@pytest.fixture
def raw_cohort():
    return pd.DataFrame({
        'DFCI_MRN': ['P1', 'P2', 'P4'],
        'REPORT_DT': ['10-Jan-20', '01-Feb-20', '15-Mar-20'],
        'EXTRA': ['a', 'b', 'c'],
    })


@pytest.fixture
def raw_labs():
    return pd.DataFrame({
        'DFCI_MRN': ['P1', 'P1', 'P1', 'P2', 'P2', 'P3'],
        'SPECIMEN_COLLECT_DT': [
            '2020-01-05', '2020-06-01', '2020-01-08 08:30:00',
            '2020-02-03', '2020-01-25', '2020-01-01',
        ],
        'TEST_TYPE_CD': ['A1C', 'A1C', 'CBC', 'GLU', '1234', 'A1C'],
        'TEST_TYPE_DESCR': ['Hemoglobin A1c', 'Hemoglobin A1c', 'Complete blood count',
                            'Glucose', '', 'Hemoglobin A1c'],
        'TEXT_RESULT': ['6.5', '7.0', 'WBC 5.1', '98', 'see note', '5.0'],
        'LAB_STATUS': ['F'] * 6,
    })


@pytest.fixture
def raw_cancer():
    data = {'DFCI_MRN': ['P1', 'P5']}
    for column in CANCER_PASSTHROUGH_COLUMNS:
        data[column] = ['x', 'y']
    return pd.DataFrame(data)


@pytest.fixture
def extract_dir(tmp_path, raw_cohort, raw_labs, raw_cancer):
    """Directory holding the three raw CSV extracts under their default names."""
    input_dir = tmp_path / "raw"
    input_dir.mkdir()
    raw_cohort.to_csv(input_dir / COHORT_FILE, index=False)
    raw_labs.to_csv(input_dir / LAB_FILE, index=False)
    raw_cancer.to_csv(input_dir / CANCER_FILE, index=False)
    return input_dir
