# tests/test_lab_test_types.py
"""Tests for test type codes and the test type universe."""

import pytest
import pandas as pd

from lab_matrices.errors import ReservedCodeError
from lab_matrices.processing.lab_test_types import (
    LabTestCode,
    build_test_type_dictionary,
    build_test_type_universe,
    digit_only_codes,
    is_digit_only_code,
)


class TestLabTestCode:
    """Digit-only is a property of the code."""

    def test_default_predicate(self):
        assert LabTestCode('1234').is_digit_only
        assert not LabTestCode('A1C').is_digit_only
        assert not LabTestCode('12.5').is_digit_only

    def test_custom_predicate(self):
        """A site may flag its own meaningless codes."""
        code = LabTestCode('ZZ99', predicate=lambda c: c.startswith('ZZ'))
        assert code.is_digit_only

    def test_str_is_code(self):
        assert str(LabTestCode('GLU', 'Glucose')) == 'GLU'

    def test_regex_rule(self):
        assert is_digit_only_code('007')
        assert not is_digit_only_code('')
        assert not is_digit_only_code('1A')

    def test_trailing_newline_is_not_digit_only(self):
        assert not is_digit_only_code('123\n')
        assert not LabTestCode('123\n').is_digit_only


class TestUniverse:
    """Distinct codes of the lab table."""

    def test_first_appearance_order(self, sample_labs):
        universe = build_test_type_universe(sample_labs)
        assert [t.code for t in universe] == ['A1C', 'CBC', 'GLU', '1234']

    def test_label_from_first_description(self, make_labs):
        labs = make_labs([
            ('P1', '2020-01-01', 'GLU', 'Glucose', '98'),
            ('P1', '2020-01-02', 'GLU', 'Glucose, fasting', '101'),
        ])
        assert build_test_type_universe(labs)[0].label == 'Glucose'

    def test_missing_codes_skipped(self, make_labs):
        labs = make_labs([
            ('P1', '2020-01-01', None, 'Unknown', '1'),
            ('P1', '2020-01-02', 'GLU', None, '2'),
        ])
        universe = build_test_type_universe(labs)
        assert [t.code for t in universe] == ['GLU']
        assert universe[0].label is None

    def test_empty(self, make_labs):
        assert build_test_type_universe(make_labs([])) == []

    def test_key_column_name_rejected(self, make_labs):
        """A code named like a key column would overwrite it in the matrices."""
        labs = make_labs([
            ('P1', '2020-01-01', 'GLU', 'Glucose', '98'),
            ('P1', '2020-01-02', 'reference_date', None, '1'),
        ])
        with pytest.raises(ReservedCodeError) as exc_info:
            build_test_type_universe(labs)
        assert exc_info.value.codes == ['reference_date']


class TestDictionary:
    def test_columns(self, sample_labs):
        universe = build_test_type_universe(sample_labs)
        dictionary = build_test_type_dictionary(universe)

        assert list(dictionary.columns) == ['test_type_code', 'test_type_description', 'is_digit_only']
        row = dictionary[dictionary['test_type_code'] == '1234'].iloc[0]
        assert bool(row['is_digit_only'])
        assert digit_only_codes(universe) == ['1234']

    def test_empty(self):
        dictionary = build_test_type_dictionary([])
        assert isinstance(dictionary, pd.DataFrame)
        assert dictionary.empty
