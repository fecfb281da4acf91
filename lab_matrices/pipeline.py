# pipeline.py
"""
Lab Matrices Pipeline
=====================

Prepare: read the cohort, lab and cancer extracts, normalize them and save
them as parquet. Analyze: match every processed patient's labs to their
reference date and build the wide, long and suffix matrices.
"""

import pandas as pd
import argparse
import dataclasses
import logging
import sys
import warnings
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from tqdm import tqdm

from lab_matrices import __version__
from lab_matrices.config.matrix_config import (
    CANCER_FILE,
    COHORT_FILE,
    DEFAULT_INPUT_DIR,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_PREPARED_DIR,
    LAB_FILE,
    PATIENT_ID,
    PREPARED_CANCER,
    PREPARED_COHORT,
    PREPARED_LABS,
    RESULT_TEXT,
    TEST_TYPE_CODE,
    PipelineConfig,
    config_to_dict,
    load_config,
    parse_patient_limit,
)
from lab_matrices.errors import (
    ConfigError,
    DuplicateConflictWarning,
    LabMatrixError,
    PipelineStageError,
)
from lab_matrices.exporters.matrix_exporter import (
    MatrixExporter,
    read_manifest,
    staged_directory,
    write_table,
    write_text,
)
from lab_matrices.exporters.summary_report import (
    count_non_null_results,
    format_analysis_report,
    format_preparation_report,
    preparation_table,
    summary_table,
)
from lab_matrices.processing.fingerprint import compute_fingerprint
from lab_matrices.processing.lab_test_types import (
    build_test_type_dictionary,
    build_test_type_universe,
)
from lab_matrices.processing.long_format_builder import (
    build_long_format,
    build_suffix_matrices,
    collect_window_rows,
)
from lab_matrices.processing.matrix_reshaper import reshape_matched_records
from lab_matrices.processing.nearest_date_matcher import match_cohort, select_patient_subset
from lab_matrices.processing.source_loader import (
    SourcePaths,
    SourceTables,
    load_prepared,
    load_sources,
)

logger = logging.getLogger(__name__)

# Tables written as CSV + parquet, and reloaded on a cache hit
ANALYSIS_TABLES = [
    'lab_result_matrix',
    'lab_date_matrix',
    'detailed_lab_results',
    'lab_long_format',
    'lab_suffix_result_matrix',
    'lab_suffix_date_matrix',
    'test_type_dictionary',
]
SUMMARY_TABLE = 'summary_statistics'
SUMMARY_REPORT = 'lab_analysis_summary.txt'
PREPARATION_TABLE = 'data_preparation_summary'
PREPARATION_REPORT = 'data_preparation_summary.txt'


@dataclass
class PipelineResult:
    """Tables and counters of one analysis run."""

    tables: Dict[str, pd.DataFrame]
    summary: Dict
    fingerprint: str
    cached: bool = False
    warnings: List[str] = field(default_factory=list)
    output_dir: Optional[Path] = None


@contextmanager
def pipeline_stage(stage: str):
    """Re-raise failures inside the block as PipelineStageError(stage, cause)."""
    try:
        yield
    except PipelineStageError:
        raise
    except Exception as e:
        logger.error(f"Stage '{stage}' failed: {e}")
        raise PipelineStageError(stage, e) from e


class _ProgressBar:
    """Adapts match_cohort's progress callback to a tqdm bar."""

    def __init__(self, total: int, enabled: bool = True):
        self.bar = tqdm(total=total, desc="  Matching patients", unit="patient", disable=not enabled)

    def __call__(self, current: int, total: int, patient_id: str):
        self.bar.update(current - self.bar.n)
        self.bar.set_postfix(patient=patient_id, refresh=False)
        logger.debug(f"Progress: {current}/{total} patient {patient_id}")

    def close(self):
        self.bar.close()


class LabMatrixPipeline:
    """Prepare and analyze stages of the cohort lab matrix build."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        prepared_dir: Union[str, Path] = DEFAULT_PREPARED_DIR,
        output_dir: Union[str, Path] = DEFAULT_OUTPUT_DIR,
        show_progress: bool = True,
    ):
        """
        Initialize pipeline.

        Args:
            config: Matching and column settings (defaults if None)
            prepared_dir: Where the prepare stage writes normalized tables
            output_dir: Where the analyze stage writes matrices
            show_progress: Show a tqdm bar while matching
        """
        self.config = config or PipelineConfig()
        self.prepared_dir = Path(prepared_dir)
        self.output_dir = Path(output_dir)
        self.show_progress = show_progress

        if self.prepared_dir.resolve() == self.output_dir.resolve():
            raise ConfigError("prepared_dir and output_dir must be different directories")

    def check_source_paths(self, paths: SourcePaths):
        """Refuse to write into a directory that holds a source extract."""
        source_dirs = {
            p.parent.resolve() for p in (paths.cohort, paths.labs, paths.cancer) if p is not None
        }
        for name, directory in (("prepared_dir", self.prepared_dir), ("output_dir", self.output_dir)):
            if directory.resolve() in source_dirs:
                raise ConfigError(f"{name} {directory} holds the source extracts; choose another directory")

    # -------------------------------------------------------------------------
    # Prepare
    # -------------------------------------------------------------------------

    def prepare(self, paths: SourcePaths) -> SourceTables:
        """
        Load and normalize the CSV extracts and save them to prepared_dir.

        Args:
            paths: Source file locations

        Returns:
            SourceTables
        """
        self.check_source_paths(paths)

        print("=" * 60)
        print("Lab Matrices: Data Preparation")
        print("=" * 60)

        print(f"\n1. Reading extracts from {paths.cohort.parent}...")
        with pipeline_stage("load"):
            sources = load_sources(paths, self.config.columns)
        print(f"   Cohort records: {len(sources.cohort):,}")
        print(f"   Lab records: {len(sources.labs):,}")
        print(f"   Cancer records: {len(sources.cancer):,}")

        overlap = sources.overlap
        print("\n2. Cohort overlap...")
        print(f"   Lab results overlap: {overlap.lab_overlap_count} patients "
              f"({overlap.lab_overlap_pct}%)")
        print(f"   Cancer diagnosis overlap: {overlap.cancer_overlap_count} patients "
              f"({overlap.cancer_overlap_pct}%)")

        print(f"\n3. Saving to {self.prepared_dir}...")
        n_test_types = int(sources.labs[TEST_TYPE_CODE].nunique())
        with pipeline_stage("export"):
            with staged_directory(self.prepared_dir) as staging:
                sources.cohort.to_parquet(staging / PREPARED_COHORT, index=False)
                sources.labs.to_parquet(staging / PREPARED_LABS, index=False)
                sources.cancer.to_parquet(staging / PREPARED_CANCER, index=False)
                write_table(
                    preparation_table(overlap, len(sources.labs), len(sources.cancer), n_test_types),
                    staging, PREPARATION_TABLE, parquet=False,
                )
                write_text(
                    format_preparation_report(
                        overlap, len(sources.labs), len(sources.cancer), n_test_types,
                        input_dir=str(paths.cohort.parent), output_dir=str(self.prepared_dir),
                    ),
                    staging, PREPARATION_REPORT,
                )

        print("=" * 60)
        return sources

    # -------------------------------------------------------------------------
    # Analyze
    # -------------------------------------------------------------------------

    def process_data(self, cohort: pd.DataFrame, labs: pd.DataFrame) -> PipelineResult:
        """
        Build every analysis table from normalized inputs without touching disk.

        Args:
            cohort: Normalized cohort (patient_id, reference_date)
            labs: Normalized lab table

        Returns:
            PipelineResult (fingerprint left empty)
        """
        matching = self.config.matching

        with pipeline_stage("match"):
            subset = select_patient_subset(cohort, labs, matching.patient_limit)
            cohort_labs = subset['labs']
            cohort_subset = subset['cohort_subset']
            test_types = build_test_type_universe(cohort_labs)
            logger.info(f"Found {len(test_types)} unique test types")

            progress = _ProgressBar(len(cohort_subset), enabled=self.show_progress)
            try:
                matched = match_cohort(
                    cohort_subset,
                    cohort_labs,
                    test_types,
                    max_date_diff_days=matching.max_date_diff_days,
                    progress=progress,
                    progress_every=matching.progress_every,
                    n_jobs=matching.n_jobs,
                )
            finally:
                progress.close()

        with pipeline_stage("reshape"):
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always", DuplicateConflictWarning)
                reshaped = reshape_matched_records(
                    matched,
                    cohort_subset,
                    prune_digit_only_columns=matching.prune_digit_only_columns,
                    test_types=test_types,
                )
            messages = [str(w.message) for w in caught
                        if issubclass(w.category, DuplicateConflictWarning)]
            for w in caught:
                if not issubclass(w.category, DuplicateConflictWarning):
                    warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)

        with pipeline_stage("long_format"):
            window_rows = collect_window_rows(
                cohort_subset, cohort_labs, matching.max_date_diff_days
            )
            long_df = build_long_format(
                cohort_subset, cohort_labs, matching.max_date_diff_days, window_rows=window_rows
            )
            suffix = build_suffix_matrices(
                window_rows,
                prune_digit_only_columns=matching.prune_digit_only_columns,
                test_types=test_types,
            )

        tables = {
            'lab_result_matrix': reshaped.result_wide,
            'lab_date_matrix': reshaped.date_wide,
            'detailed_lab_results': reshaped.detail,
            'lab_long_format': long_df,
            'lab_suffix_result_matrix': suffix.result_wide,
            'lab_suffix_date_matrix': suffix.date_wide,
            'test_type_dictionary': build_test_type_dictionary(test_types),
        }

        summary = {
            'total_cohort_patients': int(cohort[PATIENT_ID].nunique()),
            'patients_with_lab_data': int(subset['cohort_with_labs'][PATIENT_ID].nunique()),
            'patients_processed': len(cohort_subset),
            'unique_test_types': len(test_types),
            'total_measurements': len(reshaped.detail),
            'non_null_measurements': count_non_null_results(reshaped.detail, RESULT_TEXT),
            'matrix_rows': len(reshaped.result_wide),
            'columns_before_pruning': reshaped.n_columns_before_pruning,
            'matrix_columns': len(reshaped.result_wide.columns),
            'digit_columns_removed': len(reshaped.removed_columns),
            'duplicate_groups': reshaped.duplicates.n_groups,
            'long_format_rows': len(long_df),
            'suffix_matrix_rows': len(suffix.result_wide),
            'max_date_diff_days': matching.max_date_diff_days,
        }
        return PipelineResult(tables=tables, summary=summary, fingerprint="", warnings=messages)

    def input_fingerprint(self, sources: SourceTables) -> str:
        return compute_fingerprint(
            {'cohort': sources.cohort, 'labs': sources.labs},
            self.config.matching.fingerprint_fields(),
        )

    def load_cached(self, fingerprint: str) -> Optional[PipelineResult]:
        """Previous outputs if they were built from the same inputs and settings."""
        if self.config.matching.force_reprocess:
            return None
        manifest = read_manifest(self.output_dir)
        if manifest is None or manifest.get('fingerprint') != fingerprint:
            return None
        exporter = MatrixExporter(self.output_dir)
        if not exporter.has_tables(ANALYSIS_TABLES):
            return None

        logger.info(f"Inputs unchanged (fingerprint {fingerprint[:12]}); loading {self.output_dir}")
        return PipelineResult(
            tables=exporter.load_tables(ANALYSIS_TABLES),
            summary=manifest.get('summary', {}),
            fingerprint=fingerprint,
            cached=True,
            warnings=manifest.get('warnings', []),
            output_dir=self.output_dir,
        )

    def analyze(self, sources: Optional[SourceTables] = None) -> PipelineResult:
        """
        Build and save the analysis tables.

        Args:
            sources: Normalized tables; read from prepared_dir when None

        Returns:
            PipelineResult
        """
        print("=" * 60)
        print("Lab Matrices: Lab Analysis")
        print("=" * 60)

        matching = self.config.matching
        limit = "ALL" if matching.patient_limit is None else matching.patient_limit
        print(f"   Number of patients: {limit}")
        print(f"   Max date difference: {matching.max_date_diff_days} days")
        print(f"   Remove digit columns: {matching.prune_digit_only_columns}")

        if sources is None:
            print(f"\n1. Loading prepared data from {self.prepared_dir}...")
            with pipeline_stage("load"):
                sources = load_prepared(self.prepared_dir)
        else:
            print("\n1. Using freshly prepared data...")
        print(f"   Cohort records: {len(sources.cohort):,}")
        print(f"   Lab subset records: {len(sources.labs):,}")

        fingerprint = self.input_fingerprint(sources)
        cached = self.load_cached(fingerprint)
        if cached is not None:
            print(f"\n2. Outputs up to date, loaded from {self.output_dir}")
            self._print_summary(cached)
            return cached

        print("\n2. Matching lab results to reference dates...")
        result = self.process_data(sources.cohort, sources.labs)
        result.fingerprint = fingerprint
        result.output_dir = self.output_dir

        print(f"\n3. Saving to {self.output_dir}...")
        report = format_analysis_report(
            result.summary,
            result.tables['lab_result_matrix'],
            input_dir=str(self.prepared_dir),
            output_dir=str(self.output_dir),
        )
        with pipeline_stage("export"):
            MatrixExporter(self.output_dir).export(
                result.tables,
                texts={SUMMARY_REPORT: report},
                csv_only={SUMMARY_TABLE: summary_table(result.summary)},
                manifest={
                    'fingerprint': fingerprint,
                    'summary': result.summary,
                    'warnings': result.warnings,
                    'config': config_to_dict(self.config),
                    'package_version': __version__,
                },
            )

        self._print_summary(result)
        return result

    def run(self, paths: SourcePaths) -> PipelineResult:
        """Prepare then analyze."""
        sources = self.prepare(paths)
        return self.analyze(sources)

    def _print_summary(self, result: PipelineResult):
        summary = result.summary
        print("\n" + "=" * 60)
        print("Analysis Summary")
        print("=" * 60)
        print(f"   Patients processed: {summary.get('patients_processed')}")
        print(f"   Unique test types: {summary.get('unique_test_types')}")
        print(f"   Non-NA measurements: {summary.get('non_null_measurements')} "
              f"of {summary.get('total_measurements')}")
        print(f"   Matrix: {summary.get('matrix_rows')} x {summary.get('matrix_columns')}")
        print(f"   Digit columns removed: {summary.get('digit_columns_removed')}")
        if summary.get('duplicate_groups'):
            print(f"   Duplicate key groups resolved: {summary['duplicate_groups']}")
        print(f"   Long format rows: {summary.get('long_format_rows')}")
        print(f"   Suffix matrix rows: {summary.get('suffix_matrix_rows')}")
        if result.cached:
            print("   (cached)")
        print(f"\n   Output: {self.output_dir}")
        print("=" * 60)


# =============================================================================
# CLI
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build patient x lab test matrices from cohort and lab extracts"
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--prepare', dest='mode', action='store_const', const='prepare',
                      help='Run data preparation only')
    mode.add_argument('--analyze', dest='mode', action='store_const', const='analyze',
                      help='Run lab analysis only (requires prepared data)')
    mode.add_argument('--full', dest='mode', action='store_const', const='full',
                      help='Run preparation and analysis (default)')
    parser.set_defaults(mode='full')

    parser.add_argument('--input-dir', type=Path, default=DEFAULT_INPUT_DIR,
                        help='Directory containing the raw CSV extracts')
    parser.add_argument('--cohort-file', default=COHORT_FILE, help='Cohort file name')
    parser.add_argument('--lab-file', default=LAB_FILE, help='Lab results file name')
    parser.add_argument('--cancer-file', default=CANCER_FILE, help='Cancer diagnosis file name')
    parser.add_argument('--prepared-dir', type=Path, default=DEFAULT_PREPARED_DIR,
                        help='Directory for prepared (normalized) tables')
    parser.add_argument('--output-dir', type=Path, default=DEFAULT_OUTPUT_DIR,
                        help='Directory for analysis results')
    parser.add_argument('--n-patients', default=None,
                        help="Number of patients to process (default: 5, 'all' for all)")
    parser.add_argument('--max-date-diff', type=int, default=None,
                        help='Maximum date difference in days (default: 365)')
    parser.add_argument('--keep-digit-cols', action='store_true',
                        help="Don't remove digit-only test type columns")
    parser.add_argument('--force', action='store_true',
                        help='Recompute even if the outputs are up to date')
    parser.add_argument('--n-jobs', type=int, default=None,
                        help='Parallel workers for matching (default: 1)')
    parser.add_argument('--config', type=Path, default=None, help='YAML configuration file')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    parser.add_argument('--no-progress', action='store_true', help='Hide the progress bar')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    """YAML config (if any) with command line overrides applied."""
    config = load_config(args.config) if args.config else PipelineConfig()

    overrides = {}
    if args.n_patients is not None:
        overrides['patient_limit'] = parse_patient_limit(args.n_patients)
    if args.max_date_diff is not None:
        overrides['max_date_diff_days'] = args.max_date_diff
    if args.keep_digit_cols:
        overrides['prune_digit_only_columns'] = False
    if args.force:
        overrides['force_reprocess'] = True
    if args.n_jobs is not None:
        overrides['n_jobs'] = args.n_jobs

    if overrides:
        config.matching = dataclasses.replace(config.matching, **overrides)
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Command line entry point; returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config = config_from_args(args)
    except ConfigError as e:
        parser.error(str(e))

    start = datetime.now()
    try:
        pipeline = LabMatrixPipeline(
            config,
            prepared_dir=args.prepared_dir,
            output_dir=args.output_dir,
            show_progress=not args.no_progress,
        )
        paths = SourcePaths.from_dir(
            args.input_dir, args.cohort_file, args.lab_file, args.cancer_file
        )
        pipeline.check_source_paths(paths)
        if args.mode == 'prepare':
            pipeline.prepare(paths)
        elif args.mode == 'analyze':
            pipeline.analyze()
        else:
            pipeline.run(paths)
    except LabMatrixError as e:
        logger.error(f"ERROR: {e}")
        return 1

    elapsed = (datetime.now() - start).total_seconds() / 60
    print(f"Total processing time: {elapsed:.2f} minutes")
    return 0


if __name__ == "__main__":
    sys.exit(main())
