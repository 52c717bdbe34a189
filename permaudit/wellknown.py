"""Well-known and system principals that are never audit candidates."""
from __future__ import annotations

import re
from typing import List, Optional, Pattern, Tuple

from permaudit.config import matches_any


WELL_KNOWN_SIDS = {
    "s-1-0-0",    # nobody
    "s-1-1-0",    # everyone
    "s-1-2-0",    # local
    "s-1-2-1",    # console logon
    "s-1-3-0",    # creator owner
    "s-1-3-1",    # creator group
    "s-1-3-4",    # owner rights
    "s-1-5-2",    # network
    "s-1-5-4",    # interactive
    "s-1-5-6",    # service
    "s-1-5-7",    # anonymous logon
    "s-1-5-9",    # enterprise domain controllers
    "s-1-5-10",   # principal self
    "s-1-5-11",   # authenticated users
    "s-1-5-18",   # local system
    "s-1-5-19",   # local service
    "s-1-5-20",   # network service
    "s-1-22-1-0",  # unix root on NAS filers
}

WELL_KNOWN_PREFIXES = (
    "s-1-5-32-",  # builtin aliases (administrators, users, backup operators...)
    "s-1-5-80-",  # service SIDs (trustedinstaller)
    "s-1-5-82-",  # iis app pools
    "s-1-15-2-",  # app packages
    "s-1-16-",    # integrity labels
)

# domain-relative RIDs of built-in privileged accounts and groups
WELL_KNOWN_DOMAIN_RIDS = {"500", "502", "512", "516", "518", "519", "520", "521"}

WELL_KNOWN_NAMES = {
    "everyone",
    "creator owner",
    "creator group",
    "owner rights",
    "authenticated users",
    "anonymous logon",
    "system",
    "local service",
    "network service",
    "nt authority\\system",
    "nt authority\\authenticated users",
    "nt authority\\local service",
    "nt authority\\network service",
    "nt authority\\self",
    "nt service\\trustedinstaller",
    "builtin\\administrators",
    "builtin\\users",
    "builtin\\backup operators",
    "builtin\\server operators",
    "administrators",
}

_DOMAIN_SID = re.compile(r"^s-1-5-21-\d+-\d+-\d+-(\d+)$")


def is_well_known(
    identifier: str,
    name: Optional[str] = None,
    excluded: Optional[List[Tuple[str, Optional[Pattern[str]]]]] = None,
) -> bool:
    ident = (identifier or "").strip().lower()
    if ident in WELL_KNOWN_SIDS or ident.startswith(WELL_KNOWN_PREFIXES):
        return True
    m = _DOMAIN_SID.match(ident)
    if m and m.group(1) in WELL_KNOWN_DOMAIN_RIDS:
        return True
    if ident in WELL_KNOWN_NAMES:
        return True
    nm = (name or "").strip().lower()
    if nm and nm in WELL_KNOWN_NAMES:
        return True
    if excluded:
        if matches_any(identifier, excluded) or (name and matches_any(name, excluded)):
            return True
    return False
