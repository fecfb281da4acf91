# tests/test_matrix_exporter.py
"""Tests for output writing, staging and summary reports."""

import json

import pytest
import pandas as pd

from lab_matrices.config.matrix_config import MANIFEST_FILE
from lab_matrices.exporters.matrix_exporter import (
    MatrixExporter,
    read_manifest,
    staged_directory,
    write_table,
)
from lab_matrices.exporters.summary_report import (
    count_non_null_results,
    format_analysis_report,
    format_preparation_report,
    preparation_table,
    summary_table,
)
from lab_matrices.processing.normalizer import OverlapStats


@pytest.fixture
def date_matrix():
    return pd.DataFrame({
        'patient_id': ['P1', 'P2'],
        'reference_date': pd.to_datetime(['2020-01-10', '2020-02-01']),
        'A1C': pd.to_datetime(['2020-01-05', None]),
    })


@pytest.fixture
def overlap():
    return OverlapStats(
        total_cohort_patients=3, lab_patients=3, cancer_patients=2,
        lab_overlap_count=2, lab_overlap_pct=66.67,
        cancer_overlap_count=1, cancer_overlap_pct=33.33,
    )


class TestWriteTable:
    def test_csv_and_parquet(self, tmp_path, date_matrix):
        files = write_table(date_matrix, tmp_path, 'lab_date_matrix')

        assert files == ['lab_date_matrix.csv', 'lab_date_matrix.parquet']
        text = (tmp_path / 'lab_date_matrix.csv').read_text()
        assert '2020-01-05' in text
        assert '00:00:00' not in text
        restored = pd.read_parquet(tmp_path / 'lab_date_matrix.parquet')
        assert restored['A1C'].iloc[0] == pd.Timestamp('2020-01-05')

    def test_csv_only(self, tmp_path, date_matrix):
        assert write_table(date_matrix, tmp_path, 'x', parquet=False) == ['x.csv']
        assert not (tmp_path / 'x.parquet').exists()


class TestStagedDirectory:
    """Outputs appear all at once or not at all."""

    def test_success_publishes_files(self, tmp_path):
        target = tmp_path / "out"
        target.mkdir()
        (target / "notes.txt").write_text("keep me")
        (target / "table.csv").write_text("old")

        with staged_directory(target) as staging:
            (staging / "table.csv").write_text("new")

        assert (target / "table.csv").read_text() == "new"
        assert (target / "notes.txt").read_text() == "keep me"
        assert sorted(p.name for p in target.iterdir()) == ["notes.txt", "table.csv"]
        assert [p.name for p in tmp_path.iterdir()] == ["out"]

    def test_creates_missing_target(self, tmp_path):
        with staged_directory(tmp_path / "a" / "out") as staging:
            (staging / "x.txt").write_text("x")
        assert (tmp_path / "a" / "out" / "x.txt").exists()

    def test_failure_leaves_target_untouched(self, tmp_path):
        target = tmp_path / "out"
        target.mkdir()
        (target / "old.txt").write_text("old")

        with pytest.raises(RuntimeError):
            with staged_directory(target) as staging:
                (staging / "new.txt").write_text("new")
                raise RuntimeError("write failed")

        assert (target / "old.txt").read_text() == "old"
        assert not (target / "new.txt").exists()
        assert [p.name for p in target.iterdir()] == ["old.txt"]
        assert [p.name for p in tmp_path.iterdir()] == ["out"]

    def test_failure_creates_nothing(self, tmp_path):
        with pytest.raises(RuntimeError):
            with staged_directory(tmp_path / "out"):
                raise RuntimeError("boom")
        assert list(tmp_path.iterdir()) == []


class TestMatrixExporter:
    def test_export_writes_manifest(self, tmp_path, date_matrix):
        exporter = MatrixExporter(tmp_path / "results")
        files = exporter.export(
            {'lab_date_matrix': date_matrix},
            texts={'report.txt': 'hello\n'},
            csv_only={'summary_statistics': pd.DataFrame({'Metric': ['a'], 'Value': [1]})},
            manifest={'fingerprint': 'abc', 'summary': {'matrix_rows': 2}},
        )

        assert MANIFEST_FILE in files
        assert (tmp_path / "results" / "summary_statistics.csv").exists()
        manifest = read_manifest(tmp_path / "results")
        assert manifest['fingerprint'] == 'abc'
        assert manifest['summary'] == {'matrix_rows': 2}
        assert 'lab_date_matrix.parquet' in manifest['files']

    def test_export_keeps_unrelated_files(self, tmp_path, date_matrix):
        output_dir = tmp_path / "results"
        output_dir.mkdir()
        (output_dir / "notes.txt").write_text("keep me")

        MatrixExporter(output_dir).export({'lab_date_matrix': date_matrix})
        MatrixExporter(output_dir).export({'lab_date_matrix': date_matrix})

        assert (output_dir / "notes.txt").read_text() == "keep me"
        assert not [p for p in output_dir.iterdir() if p.name.startswith('.staging-')]

    def test_load_tables(self, tmp_path, date_matrix):
        exporter = MatrixExporter(tmp_path / "results")
        exporter.export({'lab_date_matrix': date_matrix})

        assert exporter.has_tables(['lab_date_matrix'])
        assert not exporter.has_tables(['lab_result_matrix'])
        loaded = exporter.load_tables(['lab_date_matrix'])['lab_date_matrix']
        assert loaded['patient_id'].tolist() == ['P1', 'P2']


class TestReadManifest:
    def test_missing(self, tmp_path):
        assert read_manifest(tmp_path) is None

    def test_corrupt(self, tmp_path):
        (tmp_path / MANIFEST_FILE).write_text("{not json")
        assert read_manifest(tmp_path) is None

    def test_other_version(self, tmp_path):
        (tmp_path / MANIFEST_FILE).write_text(json.dumps({'version': 99}))
        assert read_manifest(tmp_path) is None


class TestSummaryReport:
    def test_non_null_counts_skip_blank_text(self):
        detail = pd.DataFrame({'result_text': ['6.5', None, '', '  ', 'NA']})
        assert count_non_null_results(detail, 'result_text') == 2

    def test_summary_table(self):
        table = summary_table({'patients_processed': 5, 'digit_columns_removed': 2})
        assert list(table.columns) == ['Metric', 'Value']
        assert table['Metric'].tolist() == ["Total patients processed", "Digit columns removed"]

    def test_analysis_report(self, date_matrix):
        summary = {'patients_processed': 2, 'max_date_diff_days': 365,
                   'matrix_rows': 2, 'matrix_columns': 3}
        report = format_analysis_report(summary, date_matrix, 'in', 'out')

        assert report.startswith("LAB ANALYSIS SUMMARY")
        assert "Max date difference: 365 days" in report
        assert "Final matrix dimensions: 2 x 3" in report
        assert "SAMPLE DATA:" in report

    def test_preparation_table(self, overlap):
        table = preparation_table(overlap, n_lab_records=6, n_cancer_records=2, n_test_types=4)
        values = dict(zip(table['Metric'], table['Value']))
        assert values["Lab data overlap percentage"] == "66.67%"
        assert values["Unique test types"] == 4

    def test_preparation_report(self, overlap):
        report = format_preparation_report(overlap, 6, 2, 4, 'raw', 'prepared')
        assert "Patients with lab data: 2 (66.67%)" in report
