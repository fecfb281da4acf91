"""
CSV Extractor
=============

Reads the cohort, lab result and cancer diagnosis extracts.
"""

import pandas as pd
from pathlib import Path
from typing import List, Optional, Union
from io import StringIO
import logging

from lab_matrices.errors import InputFileNotFoundError

logger = logging.getLogger(__name__)


class CsvExtractor:
    """Read a comma separated clinical extract as text columns."""

    def __init__(self, path: Union[str, Path], table: str, sep: str = ','):
        """
        Initialize extractor.

        Args:
            path: Path to the CSV extract
            table: Table name used in log and error messages
            sep: Field separator
        """
        self.path = Path(path)
        self.table = table
        self.sep = sep

    def parse(
        self,
        data: Union[str, StringIO, Path],
        columns: Optional[List[str]] = None,
    ) -> pd.DataFrame:
        """
        Parse CSV data with every column read as string.

        Args:
            data: File path or StringIO
            columns: Columns an empty input should still carry

        Returns:
            Parsed DataFrame (empty input gives an empty table)
        """
        try:
            df = pd.read_csv(
                data,
                sep=self.sep,
                dtype=str,
                keep_default_na=False,
                na_values=[''],
                low_memory=False,
            )
        except pd.errors.EmptyDataError:
            logger.warning(f"{self.table} extract is empty")
            df = pd.DataFrame(columns=columns or [], dtype=object)

        # Stray whitespace in headers is common in registry exports
        df.columns = [str(c).strip() for c in df.columns]
        return df

    def extract(self, columns: Optional[List[str]] = None) -> pd.DataFrame:
        """Read the extract from disk."""
        if not self.path.exists():
            raise InputFileNotFoundError(self.path, self.table)

        logger.info(f"Reading {self.table} file: {self.path}")
        df = self.parse(self.path, columns=columns)
        logger.info(f"  {self.table}: {len(df):,} rows x {len(df.columns)} columns")
        return df


def read_csv_table(
    path: Union[str, Path],
    table: str,
    columns: Optional[List[str]] = None,
) -> pd.DataFrame:
    """Read one extract; convenience wrapper around CsvExtractor."""
    return CsvExtractor(path, table).extract(columns=columns)
