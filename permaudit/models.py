"""Core value types: principals, access entries and findings."""
from __future__ import annotations

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional, Union

from permaudit.rights import Rights, rights_to_str


class PrincipalKind(str, Enum):
    USER = "user"
    GROUP = "group"


@dataclass(frozen=True)
class Principal:
    identifier: str
    name: str
    kind: PrincipalKind
    enabled: bool = True
    account: Optional[str] = None

    @property
    def is_user(self) -> bool:
        return self.kind is PrincipalKind.USER

    @property
    def is_group(self) -> bool:
        return self.kind is PrincipalKind.GROUP

    @property
    def is_disabled_user(self) -> bool:
        return self.kind is PrincipalKind.USER and not self.enabled


@dataclass(frozen=True)
class AccessEntry:
    principal_raw: str
    rights: Rights
    allow: bool = True
    inherited: bool = False
    display: Optional[str] = None
    # raw ACE flags (propagation), preserved on write-back
    flags: int = 0

    def same_principal(self, identifier: str) -> bool:
        return self.principal_raw.lower() == identifier.lower()


class FindingCategory(str, Enum):
    ORPHANED = "orphaned"
    DISABLED = "disabled"
    REDUNDANT = "redundant"

    @classmethod
    def parse(cls, value: Union[str, "FindingCategory"]) -> "FindingCategory":
        if isinstance(value, FindingCategory):
            return value
        v = str(value).strip().lower()
        for c in cls:
            if c.value == v or c.name.lower() == v:
                return c
        raise ValueError(f"unknown finding category: {value!r}")


@dataclass(frozen=True)
class OrphanedPrincipal:
    path: str
    principal_raw: str
    inherited: bool

    category = FindingCategory.ORPHANED

    @property
    def principal(self) -> str:
        return self.principal_raw


@dataclass(frozen=True)
class DisabledPrincipal:
    path: str
    principal: str
    inherited: bool

    category = FindingCategory.DISABLED


@dataclass(frozen=True)
class RedundantGrant:
    path: str
    user: str
    rights_user: Rights
    via_group: str
    rights_group: Rights
    identical: bool
    # the user holds the rights only through inherited entries
    inherited: bool = False

    category = FindingCategory.REDUNDANT

    @property
    def principal(self) -> str:
        return self.user


Finding = Union[OrphanedPrincipal, DisabledPrincipal, RedundantGrant]


def finding_to_row(finding: Finding, names: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Flatten a finding into a report row. `names` maps identifiers to display names."""
    names = names or {}
    row: Dict[str, Any] = {
        "category": finding.category.value,
        "folder_path": finding.path,
        "principal": finding.principal,
        "principal_name": names.get(finding.principal, ""),
        "inherited": bool(finding.inherited),
        "via_group": "",
        "via_group_name": "",
        "rights_user": "",
        "rights_group": "",
        "identical": None,
    }
    if isinstance(finding, RedundantGrant):
        d = asdict(finding)
        row.update({
            "via_group": d["via_group"],
            "via_group_name": names.get(d["via_group"], ""),
            "rights_user": rights_to_str(finding.rights_user),
            "rights_group": rights_to_str(finding.rights_group),
            "identical": finding.identical,
        })
    return row
