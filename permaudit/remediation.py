"""Remediation planning and execution.

Policy, per category:

- orphaned:  removable whether explicit or inherited (the principal is gone
             everywhere); `remove_inherited_orphans=False` restricts it to
             explicit entries.
- disabled:  removable only when explicit. Inherited entries are skipped and
             point at the ancestor that defines them.
- redundant: removable only when the user holds an explicit entry and the
             user's rights are identical to the group's rights on that folder.

Execution re-reads each folder's ACL, removes only the matching entries for
the exact principal, and writes it back once per folder. Nothing is touched
unless `confirmed` is true.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from permaudit.acl import AclProvider
from permaudit.acl_export import normalize_path, parent_path
from permaudit.config import AuditConfig
from permaudit.directory import Snapshot
from permaudit.errors import AclReadError, AclWriteError, AuditError
from permaudit.io_policy import bounded_call
from permaudit.models import (
    AccessEntry,
    DisabledPrincipal,
    Finding,
    FindingCategory,
    OrphanedPrincipal,
    RedundantGrant,
    finding_to_row,
)
from permaudit.rights import Rights, normalize, rights_to_str


logger = logging.getLogger(__name__)


class ItemStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class RemediationPlan:
    category: FindingCategory
    removable: List[Finding] = field(default_factory=list)
    skipped: List[Tuple[Finding, str]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.removable)


@dataclass(frozen=True)
class ItemOutcome:
    finding: Finding
    status: ItemStatus
    reason: str = ""
    removed: int = 0


@dataclass
class RemediationResult:
    category: FindingCategory
    confirmed: bool
    items: List[ItemOutcome] = field(default_factory=list)

    def _count(self, status: ItemStatus) -> int:
        return sum(1 for i in self.items if i.status is status)

    @property
    def succeeded(self) -> int:
        return self._count(ItemStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(ItemStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(ItemStatus.SKIPPED)

    def summary(self) -> Dict[str, int]:
        return {"succeeded": self.succeeded, "failed": self.failed, "skipped": self.skipped}

    def to_rows(self, names: Optional[Dict[str, str]] = None) -> List[Dict[str, object]]:
        rows = []
        for item in self.items:
            row = finding_to_row(item.finding, names)
            row.update({"status": item.status.value, "reason": item.reason, "entries_removed": item.removed})
            rows.append(row)
        return rows


def _norm(path: str) -> str:
    return normalize_path(path).replace("/", "\\").lower()


def _is_ancestor(candidate: str, path: str) -> bool:
    c, p = _norm(candidate), _norm(path)
    return p != c and p.startswith(c.rstrip("\\") + "\\")


def find_origin(finding: DisabledPrincipal, findings: Sequence[Finding]) -> Optional[str]:
    """Nearest ancestor folder where the same principal has an explicit entry."""
    best: Optional[str] = None
    for f in findings:
        if (isinstance(f, DisabledPrincipal) and not f.inherited and f.principal == finding.principal
                and _is_ancestor(f.path, finding.path)):
            if best is None or len(_norm(f.path)) > len(_norm(best)):
                best = f.path
    return best


def plan_remediation(
    findings: Sequence[Finding],
    category: Union[str, FindingCategory],
    *,
    remove_inherited_orphans: bool = True,
) -> RemediationPlan:
    cat = FindingCategory.parse(category)
    plan = RemediationPlan(category=cat)
    for f in findings:
        if f.category is not cat:
            continue
        if isinstance(f, OrphanedPrincipal):
            if f.inherited and not remove_inherited_orphans:
                plan.skipped.append((f, "inherited orphaned entry; remove it where it is defined"))
            else:
                plan.removable.append(f)
        elif isinstance(f, DisabledPrincipal):
            if f.inherited:
                origin = find_origin(f, findings) or parent_path(f.path) or "an ancestor"
                plan.skipped.append((f, f"skip - defined on ancestor {origin}"))
            else:
                plan.removable.append(f)
        elif isinstance(f, RedundantGrant):
            if f.inherited:
                plan.skipped.append((f, "user rights are inherited; remove them where they are defined"))
            elif f.identical:
                plan.removable.append(f)
            else:
                plan.skipped.append((f, (
                    f"rights differ from group grant (user: {rights_to_str(f.rights_user)}, "
                    f"group: {rights_to_str(f.rights_group)}); review manually"
                )))
    return plan


def _resolves_to(entry: AccessEntry, identifier: str, snapshot: Optional[Snapshot]) -> bool:
    if entry.same_principal(identifier):
        return True
    if snapshot is not None:
        p = snapshot.resolve(entry.principal_raw)
        return p is not None and p.identifier.lower() == identifier.lower()
    return False


def select_entries(
    finding: Finding, entries: Sequence[AccessEntry], snapshot: Optional[Snapshot]
) -> Tuple[List[int], str]:
    """Indexes of entries in a fresh ACL that `finding` allows removing.

    Returns ([], reason) when nothing should be removed.
    """
    if isinstance(finding, OrphanedPrincipal):
        idx = [i for i, e in enumerate(entries)
               if e.same_principal(finding.principal_raw) and e.inherited == finding.inherited]
        if idx and snapshot is not None and snapshot.resolve(finding.principal_raw) is not None:
            return [], "principal resolves again; not orphaned"
        return idx, "" if idx else "entry no longer present"

    if isinstance(finding, DisabledPrincipal):
        idx = [i for i, e in enumerate(entries)
               if not e.inherited and _resolves_to(e, finding.principal, snapshot)]
        return idx, "" if idx else "entry no longer present"

    if isinstance(finding, RedundantGrant):
        idx: List[int] = []
        r_user = Rights.NONE
        r_group = Rights.NONE
        for i, e in enumerate(entries):
            if not e.allow:
                continue
            if _resolves_to(e, finding.user, snapshot):
                r_user |= e.rights
                if not e.inherited:
                    idx.append(i)
            elif _resolves_to(e, finding.via_group, snapshot):
                r_group |= e.rights
        if not idx:
            return [], "entry no longer present"
        if r_group == Rights.NONE:
            return [], "group grant no longer present"
        if normalize(r_user) != normalize(r_group):
            return [], "rights changed since scan"
        return idx, ""

    return [], "unsupported finding"


def run_remediation(
    findings: Sequence[Finding],
    category: Union[str, FindingCategory],
    confirmed: bool,
    provider: AclProvider,
    *,
    snapshot: Optional[Snapshot] = None,
    config: Optional[AuditConfig] = None,
) -> RemediationResult:
    """Apply the removable part of the plan for one category.

    Returns a per-finding outcome list. Read or write failures on one folder
    mark that folder's items failed and the run moves on.
    """
    config = config or AuditConfig()
    plan = plan_remediation(findings, category, remove_inherited_orphans=config.remove_inherited_orphans)
    result = RemediationResult(category=plan.category, confirmed=bool(confirmed))
    for f, reason in plan.skipped:
        logger.info("skipping %s %s on %s: %s", f.category.value, f.principal, f.path, reason)
        result.items.append(ItemOutcome(f, ItemStatus.SKIPPED, reason))

    if not confirmed:
        for f in plan.removable:
            result.items.append(ItemOutcome(f, ItemStatus.SKIPPED, "operator confirmation not given"))
        logger.warning("remediation of %s not confirmed; nothing changed", plan.category.value)
        return result

    by_path: Dict[str, List[Finding]] = {}
    for f in plan.removable:
        by_path.setdefault(f.path, []).append(f)

    for path, items in by_path.items():
        try:
            fresh = bounded_call(
                lambda: provider.read_acl(path),
                op="read ACL",
                path=path,
                error_cls=AclReadError,
                timeout=config.acl_timeout,
                retries=config.acl_retries,
                backoff=config.retry_backoff,
            )
        except AuditError as e:
            logger.error("cannot re-read ACL of %s: %s", path, e)
            result.items.extend(ItemOutcome(f, ItemStatus.FAILED, f"fresh ACL read failed: {e}") for f in items)
            continue

        remove: set = set()
        selected: List[Tuple[Finding, List[int], str]] = []
        for f in items:
            idx, reason = select_entries(f, fresh, snapshot)
            if idx and not provider.drops_inherited:
                idx = [i for i in idx if not fresh[i].inherited]
                if not idx:
                    reason = "inherited entry; remove it on the folder it is inherited from"
            selected.append((f, idx, reason))
            remove.update(idx)

        if not remove:
            result.items.extend(ItemOutcome(f, ItemStatus.SKIPPED, reason) for f, _idx, reason in selected)
            continue

        kept = [e for i, e in enumerate(fresh) if i not in remove]
        try:
            bounded_call(
                lambda: provider.write_acl(path, kept),
                op="write ACL",
                path=path,
                error_cls=AclWriteError,
                timeout=config.acl_timeout,
                retries=config.acl_retries,
                backoff=config.retry_backoff,
            )
        except AuditError as e:
            logger.error("cannot write ACL of %s: %s", path, e)
            for f, idx, reason in selected:
                if idx:
                    result.items.append(ItemOutcome(f, ItemStatus.FAILED, f"ACL write failed: {e}"))
                else:
                    result.items.append(ItemOutcome(f, ItemStatus.SKIPPED, reason))
            continue

        for f, idx, reason in selected:
            if idx:
                logger.info("removed %d %s entr%s for %s on %s", len(idx), f.category.value,
                            "y" if len(idx) == 1 else "ies", f.principal, path)
                result.items.append(ItemOutcome(f, ItemStatus.SUCCEEDED, "", len(idx)))
            else:
                result.items.append(ItemOutcome(f, ItemStatus.SKIPPED, reason))

    logger.info("remediation of %s finished: %s", plan.category.value, result.summary())
    return result
