"""Classify one folder's access entries against the directory snapshot.

Pure: no I/O. For a folder it reports

- OrphanedPrincipal for entries whose principal does not resolve,
- DisabledPrincipal for entries of disabled user accounts,
- RedundantGrant for every (user, group) pair where the user holds
  Allow rights and a group the user belongs to holds Allow rights on the same
  folder. One finding per qualifying group.

Well-known and excluded principals are dropped before any of that.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Pattern, Sequence, Set, Tuple

from permaudit.directory import Snapshot
from permaudit.models import AccessEntry, DisabledPrincipal, Finding, OrphanedPrincipal, RedundantGrant
from permaudit.rights import Rights, normalize
from permaudit.wellknown import is_well_known


Exclusions = List[Tuple[str, Optional[Pattern[str]]]]


def classify_folder(
    path: str,
    entries: Sequence[AccessEntry],
    snapshot: Snapshot,
    *,
    exclusions: Optional[Exclusions] = None,
    transitive: bool = False,
) -> List[Finding]:
    findings: List[Finding] = []
    seen: Set[Finding] = set()

    def emit(f: Finding) -> None:
        if f not in seen:
            seen.add(f)
            findings.append(f)

    user_rights: Dict[str, Rights] = {}
    user_explicit: Set[str] = set()
    group_rights: Dict[str, Rights] = {}

    for e in entries:
        principal = snapshot.resolve(e.principal_raw)
        name = principal.name if principal else e.display
        if is_well_known(e.principal_raw, name, exclusions):
            continue
        if principal is not None and principal.account and is_well_known(principal.account, None, exclusions):
            continue

        if principal is None:
            emit(OrphanedPrincipal(path=path, principal_raw=e.principal_raw, inherited=e.inherited))
            continue

        if principal.is_disabled_user:
            emit(DisabledPrincipal(path=path, principal=principal.identifier, inherited=e.inherited))

        if not e.allow:
            continue
        if principal.is_user:
            user_rights[principal.identifier] = user_rights.get(principal.identifier, Rights.NONE) | e.rights
            if not e.inherited:
                user_explicit.add(principal.identifier)
        else:
            group_rights[principal.identifier] = group_rights.get(principal.identifier, Rights.NONE) | e.rights

    if user_rights and group_rights:
        folder_groups = set(group_rights)
        for user, r_user in user_rights.items():
            for group in sorted(snapshot.groups_of(user, transitive=transitive) & folder_groups):
                r_group = group_rights[group]
                emit(RedundantGrant(
                    path=path,
                    user=user,
                    rights_user=r_user,
                    via_group=group,
                    rights_group=r_group,
                    identical=normalize(r_user) == normalize(r_group),
                    inherited=user not in user_explicit,
                ))

    return findings
