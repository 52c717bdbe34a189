"""Tabular views over audit findings.

`findings_frame` flattens findings into a DataFrame; `folder_view` and
`principal_view` are the two presentation groupings (what is wrong in a
folder, where an identity appears). `run_queries` runs the same summaries
with DuckDB over exported parquet, for runs too large to hold in pandas.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence

import duckdb
import pandas as pd

from permaudit.models import Finding, finding_to_row


COLUMNS = [
    "category",
    "folder_path",
    "principal",
    "principal_name",
    "inherited",
    "via_group",
    "via_group_name",
    "rights_user",
    "rights_group",
    "identical",
]

CATEGORIES = ["orphaned", "disabled", "redundant"]


def findings_frame(findings: Sequence[Finding], names: Optional[Dict[str, str]] = None) -> pd.DataFrame:
    rows = [finding_to_row(f, names) for f in findings]
    return pd.DataFrame(rows, columns=COLUMNS)


def folder_view(df: pd.DataFrame) -> pd.DataFrame:
    """One row per folder with a finding count per category."""
    if df.empty:
        return pd.DataFrame(columns=["folder_path"] + CATEGORIES + ["total"])
    counts = df.groupby(["folder_path", "category"]).size().unstack(fill_value=0)  # type: ignore[pandas-stubs]
    for c in CATEGORIES:
        if c not in counts.columns:
            counts[c] = 0
    out = counts[CATEGORIES].copy()
    out["total"] = out.sum(axis=1)
    out = out.reset_index().sort_values(["total", "folder_path"], ascending=[False, True])
    out.columns.name = None
    return out.reset_index(drop=True)


def principal_view(df: pd.DataFrame) -> pd.DataFrame:
    """One row per (principal, category) with the folders it appears on.

    Redundant grants are listed under the user and under the group.
    """
    out_cols = ["principal", "principal_name", "category", "folders", "inherited_entries"]
    if df.empty:
        return pd.DataFrame(columns=out_cols)
    red = df[df["category"] == "redundant"]
    via = red.assign(principal=red["via_group"], principal_name=red["via_group_name"], inherited=False)
    both = pd.concat([df, via], ignore_index=True)
    both["principal_name"] = both["principal_name"].fillna("").astype(str)  # type: ignore[pandas-stubs]
    g = both.groupby(["principal", "principal_name", "category"], dropna=False)
    out = g.agg(folders=("folder_path", "nunique"), inherited_entries=("inherited", "sum")).reset_index()
    out["inherited_entries"] = out["inherited_entries"].astype(int)
    return out.sort_values(["folders", "principal"], ascending=[False, True]).reset_index(drop=True)[out_cols]


SQL_QUERIES = {
    'principal_summary': '''
SELECT
  principal,
  ANY_VALUE(principal_name) AS principal_name,
  category,
  COUNT(DISTINCT folder_path) AS folders
FROM read_parquet('{parquet}/*.parquet')
GROUP BY principal, category
ORDER BY folders DESC, principal
LIMIT 1000;''',

    'folder_summary': '''
SELECT
  folder_path,
  COUNT(*) FILTER (WHERE category = 'orphaned') AS orphaned,
  COUNT(*) FILTER (WHERE category = 'disabled') AS disabled,
  COUNT(*) FILTER (WHERE category = 'redundant') AS redundant,
  COUNT(*) AS total
FROM read_parquet('{parquet}/*.parquet')
GROUP BY folder_path
ORDER BY total DESC, folder_path
LIMIT 1000;''',

    'removable_redundant': '''
SELECT folder_path, principal, principal_name, via_group, via_group_name, rights_user
FROM read_parquet('{parquet}/*.parquet')
WHERE category = 'redundant' AND identical = TRUE
ORDER BY folder_path, principal;''',
}


def query(parquet_dir: Path, name: str) -> pd.DataFrame:
    con = duckdb.connect(database=':memory:')
    try:
        q = SQL_QUERIES[name].format(parquet=Path(parquet_dir).as_posix())
        return con.execute(q).fetchdf()
    finally:
        con.close()


def run_queries(parquet_dir: Path, out_dir: Path) -> List[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []
    for name in SQL_QUERIES:
        print(f'Running: {name}')
        try:
            df = query(parquet_dir, name)
        except duckdb.Error as e:
            print(f'Failed running {name}: {e}')
            continue
        out_file = out_dir / (name + '.csv')
        df.to_csv(out_file, index=False)
        print(f'Wrote: {out_file}')
        written.append(out_file)
    return written
