"""Test type identifiers and the test type universe."""
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

import pandas as pd

from lab_matrices.config.matrix_config import (
    DIGIT_ONLY_PATTERN,
    RESERVED_CODES,
    TEST_TYPE_CODE,
    TEST_TYPE_DESCRIPTION,
)
from lab_matrices.errors import ReservedCodeError

_DIGIT_ONLY_RE = re.compile(DIGIT_ONLY_PATTERN)


def is_digit_only_code(code: str) -> bool:
    """Default predicate: ASCII digits only, e.g. '1234'."""
    return bool(_DIGIT_ONLY_RE.fullmatch(str(code)))


@dataclass(frozen=True)
class LabTestCode:
    """A lab test type code with its optional human readable label."""

    code: str
    label: Optional[str] = None
    predicate: Callable[[str], bool] = is_digit_only_code

    @property
    def is_digit_only(self) -> bool:
        """True when the code is a bare number with no descriptive meaning."""
        return self.predicate(self.code)

    def __str__(self) -> str:
        return self.code


def build_test_type_universe(
    labs: pd.DataFrame,
    predicate: Callable[[str], bool] = is_digit_only_code,
) -> List[LabTestCode]:
    """Distinct non-null test type codes in order of first appearance.

    Args:
        labs: Normalized lab table
        predicate: Digit-only rule attached to each code

    Returns:
        List of LabTestCode, label taken from the first description seen

    Raises:
        ReservedCodeError: A code equals a matrix key column name
    """
    if labs.empty:
        return []

    present = labs[labs[TEST_TYPE_CODE].notna()]
    firsts = present.drop_duplicates(subset=[TEST_TYPE_CODE], keep='first')
    clashes = [c for c in firsts[TEST_TYPE_CODE].astype(str) if c in RESERVED_CODES]
    if clashes:
        raise ReservedCodeError(clashes)

    universe = []
    for code, label in zip(firsts[TEST_TYPE_CODE], firsts[TEST_TYPE_DESCRIPTION]):
        universe.append(LabTestCode(
            code=str(code),
            label=None if pd.isna(label) else str(label),
            predicate=predicate,
        ))
    return universe


def digit_only_codes(test_types: Iterable[LabTestCode]) -> List[str]:
    """Codes flagged as digit-only, in the given order."""
    return [t.code for t in test_types if t.is_digit_only]


def build_test_type_dictionary(test_types: Iterable[LabTestCode]) -> pd.DataFrame:
    """Code -> label lookup table written next to the matrices."""
    test_types = list(test_types)
    return pd.DataFrame({
        TEST_TYPE_CODE: [t.code for t in test_types],
        TEST_TYPE_DESCRIPTION: [t.label for t in test_types],
        'is_digit_only': [t.is_digit_only for t in test_types],
    })
