"""Load and normalise the audit configuration JSON.

Expected keys (all optional, see audit_config.json for defaults):
excluded_identities, transitive_membership, allow_partial_directory,
remove_inherited_orphans, directory_timeout, acl_timeout, acl_retries,
retry_backoff, workers
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Tuple, cast


CONFIG_PATH = Path(__file__).parent / "audit_config.json"


@dataclass
class AuditConfig:
    excluded_identities: List[str] = field(default_factory=list)
    transitive_membership: bool = False
    allow_partial_directory: bool = False
    remove_inherited_orphans: bool = True
    directory_timeout: Optional[float] = 120.0
    acl_timeout: Optional[float] = 30.0
    acl_retries: int = 2
    retry_backoff: float = 0.5
    workers: int = 1
    # (pattern, compiled or None when the pattern is not a valid regex)
    excluded_compiled: List[Tuple[str, Optional[Pattern[str]]]] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        if not self.excluded_compiled and self.excluded_identities:
            self.excluded_compiled = _compile_patterns(self.excluded_identities)


def _compile_patterns(patterns: List[str]) -> List[Tuple[str, Optional[Pattern[str]]]]:
    out: List[Tuple[str, Optional[Pattern[str]]]] = []
    for p in patterns:
        if not p:
            continue
        try:
            out.append((p, re.compile(p, flags=re.I)))
        except re.error:
            out.append((p, None))
    return out


def _as_list(val: Any) -> List[str]:
    if val is None:
        return []
    if isinstance(val, list):
        return [str(x) for x in cast(List[Any], val)]
    return [str(val)]


def _as_bool(val: Any, default: bool) -> bool:
    if val is None:
        return default
    if isinstance(val, str):
        return val.strip().lower() in ("1", "true", "yes", "on")
    return bool(val)


def _as_int(val: Any, default: int) -> int:
    try:
        return int(val) if val is not None and val != "" else default
    except (TypeError, ValueError):
        return default


def _as_timeout(val: Any, default: Optional[float]) -> Optional[float]:
    if val is None or val == "":
        return default
    try:
        f = float(val)
    except (TypeError, ValueError):
        return default
    # zero or negative disables the bound
    return f if f > 0 else None


def config_from_dict(j: Dict[str, Any]) -> AuditConfig:
    defaults = AuditConfig()
    # accept the older key name used by rule files
    excluded = _as_list(j.get("excluded_identities", j.get("admin_identities")))
    try:
        backoff = float(j.get("retry_backoff", defaults.retry_backoff))
    except (TypeError, ValueError):
        backoff = defaults.retry_backoff
    return AuditConfig(
        excluded_identities=excluded,
        transitive_membership=_as_bool(j.get("transitive_membership"), defaults.transitive_membership),
        allow_partial_directory=_as_bool(j.get("allow_partial_directory"), defaults.allow_partial_directory),
        remove_inherited_orphans=_as_bool(j.get("remove_inherited_orphans"), defaults.remove_inherited_orphans),
        directory_timeout=_as_timeout(j.get("directory_timeout"), defaults.directory_timeout),
        acl_timeout=_as_timeout(j.get("acl_timeout"), defaults.acl_timeout),
        acl_retries=max(0, _as_int(j.get("acl_retries"), defaults.acl_retries)),
        retry_backoff=max(0.0, backoff),
        workers=max(1, _as_int(j.get("workers"), defaults.workers)),
    )


def load_config(path: Path = CONFIG_PATH) -> AuditConfig:
    with path.open("r", encoding="utf-8") as fh:
        j = json.load(fh)
    if not isinstance(j, dict):
        raise ValueError(f"config root must be an object: {path}")
    return config_from_dict(cast(Dict[str, Any], j))


def matches_any(value: str, compiled: List[Tuple[str, Optional[Pattern[str]]]]) -> bool:
    if not value:
        return False
    vl = value.lower()
    for raw, rx in compiled:
        if rx is not None:
            if rx.search(value):
                return True
        elif raw.lower() in vl:
            return True
    return False
