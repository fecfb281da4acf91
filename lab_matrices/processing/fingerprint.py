"""Content fingerprint of the inputs used to decide whether prior outputs are reusable."""
import hashlib
import json
from typing import Dict, Mapping, Optional

import pandas as pd


def table_fingerprint(df: pd.DataFrame) -> str:
    """SHA-256 over column names, dtypes, row count and row contents."""
    digest = hashlib.sha256()
    schema = [[str(c), str(t)] for c, t in zip(df.columns, df.dtypes)]
    digest.update(json.dumps({'schema': schema, 'rows': len(df)}).encode('utf-8'))
    if len(df):
        row_hashes = pd.util.hash_pandas_object(df, index=False).to_numpy()
        digest.update(row_hashes.tobytes())
    return digest.hexdigest()


def compute_fingerprint(
    tables: Mapping[str, pd.DataFrame],
    settings: Optional[Dict] = None,
) -> str:
    """Fingerprint of named input tables plus output-relevant settings."""
    digest = hashlib.sha256()
    for name in sorted(tables):
        digest.update(name.encode('utf-8'))
        digest.update(table_fingerprint(tables[name]).encode('utf-8'))
    digest.update(json.dumps(settings or {}, sort_keys=True, default=str).encode('utf-8'))
    return digest.hexdigest()
