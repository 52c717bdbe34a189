"""Write audit and remediation results to CSV / parquet."""
from __future__ import annotations

import csv
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd

from permaudit.models import Finding
from permaudit.remediation import RemediationResult
from permaudit.views import CATEGORIES, findings_frame
from permaudit.walker import FolderFailure


def write_findings_csv(findings: Sequence[Finding], out_csv: Path, names: Optional[Dict[str, str]] = None) -> Path:
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    findings_frame(findings, names).to_csv(out_csv, index=False)
    return out_csv


def write_findings_parquet(findings: Sequence[Finding], out_dir: Path, names: Optional[Dict[str, str]] = None) -> Path:
    out_dir.mkdir(parents=True, exist_ok=True)
    out_file = out_dir / "findings.parquet"
    df = findings_frame(findings, names)
    df["identical"] = df["identical"].astype("boolean")
    df.to_parquet(out_file, index=False)
    return out_file


def split_by_category(inpath: Path, out_dir: Path) -> Dict[str, Path]:
    """Split a findings CSV into findings_<category>.csv files."""
    out_dir.mkdir(parents=True, exist_ok=True)
    outs = {c: out_dir / f"findings_{c}.csv" for c in CATEGORIES}

    with inpath.open('r', encoding='utf-8', newline='') as inf:
        rdr = csv.DictReader(inf)
        fieldnames = list(rdr.fieldnames or [])
        writers = {}
        files = {}
        try:
            for cat, path in outs.items():
                f = path.open('w', encoding='utf-8', newline='')
                files[cat] = f
                writers[cat] = csv.DictWriter(f, fieldnames=fieldnames)
                if fieldnames:
                    writers[cat].writeheader()

            for row in rdr:
                cat = (row.get('category') or '').lower()
                if cat in writers:
                    writers[cat].writerow(row)
        finally:
            for f in files.values():
                f.close()
    return outs


def write_failures_csv(failures: Sequence[FolderFailure], out_csv: Path) -> Path:
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    rows: List[Dict[str, str]] = []
    for f in failures:
        d = asdict(f)
        d["kind"] = f.kind.value
        rows.append(d)
    pd.DataFrame(rows, columns=["path", "stage", "kind", "message"]).to_csv(out_csv, index=False)
    return out_csv


def write_remediation_csv(result: RemediationResult, out_csv: Path, names: Optional[Dict[str, str]] = None) -> Path:
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(result.to_rows(names)).to_csv(out_csv, index=False)
    return out_csv
