# tests/test_normalizer.py
"""Tests for schema checks, date parsing and overlap statistics."""

import pytest
import pandas as pd

from lab_matrices.config.matrix_config import (
    CANCER_PASSTHROUGH_COLUMNS,
    COHORT_COLUMNS,
    LAB_COLUMNS,
    ColumnConfig,
)
from lab_matrices.errors import DateParseError, SchemaError
from lab_matrices.processing.normalizer import (
    compute_overlap_stats,
    normalize_cancer,
    normalize_cohort,
    normalize_labs,
    parse_date_column,
    require_columns,
)


class TestRequireColumns:
    def test_reports_every_missing_column(self):
        df = pd.DataFrame({'DFCI_MRN': ['P1']})
        with pytest.raises(SchemaError) as exc_info:
            require_columns(df, ['DFCI_MRN', 'REPORT_DT', 'OTHER'], 'cohort')
        assert exc_info.value.missing_columns == ['REPORT_DT', 'OTHER']
        assert exc_info.value.table == 'cohort'


class TestParseDateColumn:
    """Date parsing into midnight timestamps."""

    def test_report_date_format(self):
        df = pd.DataFrame({'d': ['10-Jan-20', '29-Feb-20']})
        result = parse_date_column(df, 'd', '%d-%b-%y', 'cohort')
        assert result['d'].tolist() == [pd.Timestamp('2020-01-10'), pd.Timestamp('2020-02-29')]

    def test_does_not_modify_input(self):
        df = pd.DataFrame({'d': ['10-Jan-20']})
        parse_date_column(df, 'd', '%d-%b-%y', 'cohort')
        assert df['d'].iloc[0] == '10-Jan-20'

    def test_nonconforming_value_raises(self):
        df = pd.DataFrame({'d': ['10-Jan-20', '2020-01-10', 'garbage']})
        with pytest.raises(DateParseError) as exc_info:
            parse_date_column(df, 'd', '%d-%b-%y', 'cohort')
        assert exc_info.value.samples == ['2020-01-10', 'garbage']
        assert exc_info.value.column == 'd'

    def test_blank_raises_unless_allowed(self):
        df = pd.DataFrame({'d': ['2020-01-05', None, '  ']})
        with pytest.raises(DateParseError):
            parse_date_column(df, 'd', 'ISO8601', 'lab')

        result = parse_date_column(df, 'd', 'ISO8601', 'lab', allow_missing=True)
        assert result['d'].isna().tolist() == [False, True, True]

    def test_datetime_column_kept(self):
        """Prepared tables are already parsed."""
        df = pd.DataFrame({'d': pd.to_datetime(['2020-01-05 10:00'])})
        result = parse_date_column(df, 'd', '%d-%b-%y', 'cohort')
        assert result['d'].iloc[0] == pd.Timestamp('2020-01-05')


class TestNormalizeCohort:
    def test_projects_and_parses(self, raw_cohort):
        cohort = normalize_cohort(raw_cohort)

        assert list(cohort.columns) == COHORT_COLUMNS
        assert cohort['patient_id'].tolist() == ['P1', 'P2', 'P4']
        assert cohort['reference_date'].iloc[0] == pd.Timestamp('2020-01-10')

    def test_duplicates_pass_through(self):
        raw = pd.DataFrame({'DFCI_MRN': ['P1', 'P1'], 'REPORT_DT': ['10-Jan-20', '10-Jan-20']})
        assert len(normalize_cohort(raw)) == 2

    def test_ids_are_stripped(self):
        raw = pd.DataFrame({'DFCI_MRN': [' P1 '], 'REPORT_DT': ['10-Jan-20']})
        assert normalize_cohort(raw)['patient_id'].iloc[0] == 'P1'

    def test_missing_report_date(self):
        raw = pd.DataFrame({'DFCI_MRN': ['P1']})
        with pytest.raises(SchemaError) as exc_info:
            normalize_cohort(raw)
        assert exc_info.value.missing_columns == ['REPORT_DT']

    def test_custom_column_names(self):
        raw = pd.DataFrame({'MRN': ['P1'], 'INDEX_DT': ['10-Jan-20']})
        columns = ColumnConfig(patient_id='MRN', reference_date='INDEX_DT')
        cohort = normalize_cohort(raw, columns)
        assert cohort['patient_id'].iloc[0] == 'P1'

    def test_normalized_input_accepted(self, sample_cohort):
        pd.testing.assert_frame_equal(normalize_cohort(sample_cohort), sample_cohort)


class TestNormalizeLabs:
    def test_projects_to_five_columns(self, raw_labs):
        labs = normalize_labs(raw_labs)
        assert list(labs.columns) == LAB_COLUMNS
        assert len(labs) == len(raw_labs)

    def test_datetime_values_truncated_to_date(self, raw_labs):
        labs = normalize_labs(raw_labs)
        assert labs['collection_date'].iloc[2] == pd.Timestamp('2020-01-08')

    def test_blank_collection_date_kept(self, raw_labs):
        raw_labs.loc[0, 'SPECIMEN_COLLECT_DT'] = ''
        labs = normalize_labs(raw_labs)
        assert pd.isna(labs['collection_date'].iloc[0])

    def test_bad_collection_date(self, raw_labs):
        raw_labs.loc[0, 'SPECIMEN_COLLECT_DT'] = '05/01/2020'
        with pytest.raises(DateParseError) as exc_info:
            normalize_labs(raw_labs)
        assert exc_info.value.table == 'lab'

    def test_missing_result_column(self, raw_labs):
        with pytest.raises(SchemaError) as exc_info:
            normalize_labs(raw_labs.drop(columns=['TEXT_RESULT']))
        assert exc_info.value.missing_columns == ['TEXT_RESULT']


class TestNormalizeCancer:
    def test_renames_id_only(self, raw_cancer):
        cancer = normalize_cancer(raw_cancer)
        assert list(cancer.columns) == ['patient_id'] + CANCER_PASSTHROUGH_COLUMNS

    def test_missing_column(self, raw_cancer):
        with pytest.raises(SchemaError):
            normalize_cancer(raw_cancer.drop(columns=['SSDI_KI_67']))


class TestOverlapStats:
    def test_counts_and_percentages(self, raw_cohort, raw_labs, raw_cancer):
        stats = compute_overlap_stats(
            normalize_cohort(raw_cohort), normalize_labs(raw_labs), normalize_cancer(raw_cancer)
        )
        # Cohort P1, P2, P4; labs P1, P2, P3; cancer P1, P5
        assert stats.total_cohort_patients == 3
        assert stats.lab_patients == 3
        assert stats.lab_overlap_count == 2
        assert stats.lab_overlap_pct == 66.67
        assert stats.cancer_overlap_count == 1
        assert stats.cancer_overlap_pct == 33.33

    def test_empty_cohort(self, make_cohort, sample_labs):
        cancer = pd.DataFrame(columns=['patient_id'])
        stats = compute_overlap_stats(make_cohort([]), sample_labs, cancer)
        assert stats.total_cohort_patients == 0
        assert stats.lab_overlap_pct == 0.0
