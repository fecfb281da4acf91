"""
Lab Matrices: Error Types
=========================

Every fatal condition derives from LabMatrixError so the CLI can report it
and exit non-zero. Duplicate key conflicts are warnings, not errors.
"""

from pathlib import Path
from typing import Iterable, List, Optional

import pandas as pd


class LabMatrixError(Exception):
    """Base class for pipeline failures."""


class ConfigError(LabMatrixError):
    """Invalid configuration value or configuration file."""


class InputFileNotFoundError(LabMatrixError):
    """A source file does not exist."""

    def __init__(self, path: Path, table: str):
        self.path = Path(path)
        self.table = table
        super().__init__(f"{table} file not found: {self.path}")


class SchemaError(LabMatrixError):
    """A required column is absent from an input table."""

    def __init__(self, table: str, missing_columns: Iterable[str]):
        self.table = table
        self.missing_columns: List[str] = list(missing_columns)
        super().__init__(
            f"{table} table is missing required column(s): "
            f"{', '.join(self.missing_columns)}"
        )


class ReservedCodeError(LabMatrixError):
    """A test type code collides with a matrix key column name."""

    def __init__(self, codes: Iterable[str]):
        self.codes: List[str] = list(codes)
        super().__init__(
            f"lab test type code(s) clash with matrix key columns: {', '.join(self.codes)}"
        )


class DateParseError(LabMatrixError):
    """A date field does not conform to the expected format."""

    def __init__(self, table: str, column: str, fmt: str, samples: Iterable[str]):
        self.table = table
        self.column = column
        self.fmt = fmt
        self.samples: List[str] = [str(s) for s in samples]
        super().__init__(
            f"{table}.{column}: {len(self.samples)} sample value(s) do not match "
            f"format {fmt!r}: {', '.join(repr(s) for s in self.samples)}"
        )


class PipelineStageError(LabMatrixError):
    """A stage failed; carries the stage name and the underlying error."""

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Stage '{stage}' failed: {cause}")


class DuplicateConflictWarning(UserWarning):
    """Matched rows collided on (patient_id, reference_date, test_type_code)."""

    def __init__(self, n_groups: int, sample: Optional[pd.DataFrame] = None):
        self.n_groups = n_groups
        self.sample = sample
        super().__init__(
            f"{n_groups} duplicate (patient_id, reference_date, test_type_code) "
            f"group(s) resolved by closest collection date"
        )
