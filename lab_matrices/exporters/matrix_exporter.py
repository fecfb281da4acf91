"""
Matrix Exporter
===============

Writes the pipeline tables as CSV + parquet. A run is written into a staging
directory inside the output directory and its files are moved into place only
once every file exists, so a failed run leaves the previous outputs untouched.
Files the run does not write are never touched.
"""

import json
import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Union

import numpy as np
import pandas as pd

from lab_matrices.config.matrix_config import MANIFEST_FILE, ensure_directories

logger = logging.getLogger(__name__)

CSV_DATE_FORMAT = "%Y-%m-%d"
MANIFEST_VERSION = 1


class NumpyEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy and pandas scalars."""
    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, (pd.Timestamp, datetime)):
            return obj.isoformat()
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def write_table(df: pd.DataFrame, directory: Path, name: str, parquet: bool = True) -> List[str]:
    """Write ``<name>.csv`` (and ``<name>.parquet``); returns the file names."""
    directory = Path(directory)
    csv_name = f"{name}.csv"
    df.to_csv(directory / csv_name, index=False, date_format=CSV_DATE_FORMAT)
    written = [csv_name]
    if parquet:
        parquet_name = f"{name}.parquet"
        df.to_parquet(directory / parquet_name, index=False)
        written.append(parquet_name)
    return written


def write_text(text: str, directory: Path, file_name: str) -> str:
    with open(Path(directory) / file_name, 'w') as f:
        f.write(text)
    return file_name


def write_manifest(directory: Path, manifest: Dict) -> str:
    with open(Path(directory) / MANIFEST_FILE, 'w') as f:
        json.dump(manifest, f, indent=2, cls=NumpyEncoder)
    return MANIFEST_FILE


def read_manifest(directory: Union[str, Path]) -> Optional[Dict]:
    """Manifest of a previous run, or None if absent or unreadable."""
    path = Path(directory) / MANIFEST_FILE
    if not path.exists():
        return None
    try:
        with open(path, 'r') as f:
            manifest = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable manifest {path}: {e}")
        return None
    if not isinstance(manifest, dict) or manifest.get('version') != MANIFEST_VERSION:
        return None
    return manifest


def _publish(staging: Path, target: Path):
    """Move every staged file into ``target``, replacing same-named files.

    Other files in ``target`` are left alone. The manifest goes last and any
    previous one is removed first, so a cache never points at a partial run.
    """
    staged = sorted(staging.iterdir(), key=lambda p: p.name == MANIFEST_FILE)
    if any(p.name == MANIFEST_FILE for p in staged):
        (target / MANIFEST_FILE).unlink(missing_ok=True)
    for path in staged:
        os.replace(path, target / path.name)


@contextmanager
def staged_directory(target: Union[str, Path]) -> Iterator[Path]:
    """Yield a scratch directory whose files are moved into ``target`` on clean exit.

    On error the scratch directory is removed and ``target`` is left as it was
    (and is not created if it did not exist).
    """
    target = Path(target)
    created = not target.exists()
    ensure_directories(target)
    staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=target))
    try:
        yield staging
        _publish(staging, target)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        if created:
            shutil.rmtree(target, ignore_errors=True)
        raise
    shutil.rmtree(staging, ignore_errors=True)


class MatrixExporter:
    """Persist one run's tables and reload them for cache hits."""

    def __init__(self, output_dir: Union[str, Path]):
        """
        Initialize exporter.

        Args:
            output_dir: Directory that will hold the run's outputs
        """
        self.output_dir = Path(output_dir)

    def export(
        self,
        tables: Mapping[str, pd.DataFrame],
        texts: Optional[Mapping[str, str]] = None,
        csv_only: Optional[Mapping[str, pd.DataFrame]] = None,
        manifest: Optional[Dict] = None,
    ) -> List[str]:
        """
        Write every output; files appear only once all of them were written.

        Args:
            tables: name -> DataFrame, written as CSV and parquet
            texts: file name -> text content
            csv_only: name -> DataFrame, written as CSV only
            manifest: Extra manifest fields (fingerprint, summary, ...)

        Returns:
            Names of the files written
        """
        files: List[str] = []
        with staged_directory(self.output_dir) as staging:
            for name, df in tables.items():
                files.extend(write_table(df, staging, name))
            for name, df in (csv_only or {}).items():
                files.extend(write_table(df, staging, name, parquet=False))
            for file_name, text in (texts or {}).items():
                files.append(write_text(text, staging, file_name))

            record = {
                'version': MANIFEST_VERSION,
                'created_at': datetime.now().isoformat(timespec='seconds'),
                'tables': list(tables),
                'files': list(files),
            }
            record.update(manifest or {})
            files.append(write_manifest(staging, record))

        logger.info(f"Wrote {len(files)} files to {self.output_dir}")
        return files

    def load_tables(self, names: List[str]) -> Dict[str, pd.DataFrame]:
        """Read the parquet copy of each named table."""
        return {name: pd.read_parquet(self.output_dir / f"{name}.parquet") for name in names}

    def has_tables(self, names: List[str]) -> bool:
        return all((self.output_dir / f"{name}.parquet").exists() for name in names)
