"""Configuration for the lab matrices pipeline."""

from .matrix_config import (
    ColumnConfig,
    MatchingConfig,
    PipelineConfig,
    load_config,
    parse_patient_limit,
)

__all__ = [
    'ColumnConfig',
    'MatchingConfig',
    'PipelineConfig',
    'load_config',
    'parse_patient_limit',
]
