"""Source extract readers."""

from .csv_extractor import CsvExtractor, read_csv_table

__all__ = ['CsvExtractor', 'read_csv_table']
