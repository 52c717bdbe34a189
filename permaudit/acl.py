"""ACL provider interface and record normalisation shared by providers."""
from __future__ import annotations

from typing import Any, Dict, List

from permaudit.models import AccessEntry
from permaudit.rights import parse_rights, rights_to_str


class AclProvider:
    """Filesystem side of the audit: enumerate folders, read and write DACLs.

    Methods may raise OSError, TimeoutError or an AuditError subclass; the
    walker and remediation executor normalise those into the taxonomy.

    `drops_inherited` says whether `write_acl` can remove an inherited entry
    at the folder itself. A live NTFS DACL cannot: inherited entries come
    back from the parent, so they must be removed where they are defined.
    """

    drops_inherited = True

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def canonical(self, path: str) -> str:
        """Stable identity of a folder, used to detect revisits through links."""
        raise NotImplementedError

    def list_children(self, path: str) -> List[str]:
        raise NotImplementedError

    def read_acl(self, path: str) -> List[AccessEntry]:
        raise NotImplementedError

    def write_acl(self, path: str, entries: List[AccessEntry]) -> None:
        raise NotImplementedError


def _pick(low: Dict[str, Any], *cands: str) -> Any:
    for c in cands:
        v = low.get(c)
        if v is not None and v != "":
            return v
    return None


def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    return str(v).strip().lower() in ("true", "1", "yes", "y")


def _is_allow(v: Any) -> bool:
    if v is None:
        return True
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return int(v) == 0  # AccessControlType: Allow=0, Deny=1
    s = str(v).strip().lower()
    if s in ("0", "allow", "accessallowed", "a"):
        return True
    if s in ("1", "deny", "accessdenied", "d"):
        return False
    raise ValueError(f"unknown access type {v!r}")


def entry_from_record(ace: Dict[str, Any]) -> AccessEntry:
    """Build an AccessEntry from an exported ACE, tolerating exporter key variants."""
    low = {str(k).lower(): v for k, v in ace.items()}
    sid = _pick(low, "sid", "principalid", "accountid", "securityidentifier")
    name = _pick(low, "identity", "identityreference", "name", "displayname", "account",
                 "accountname", "principal", "user", "group", "grantee")
    raw = sid or name
    if not raw:
        raise ValueError("access entry without a principal")
    rights = parse_rights(_pick(low, "rights", "filesystemrights", "mask", "accessmask", "permissions", "access"))
    allow = _is_allow(_pick(low, "type", "accesscontroltype", "ace_type", "acetype"))
    inherited = _as_bool(_pick(low, "isinherited", "inherited"))
    return AccessEntry(
        principal_raw=str(raw).strip(),
        rights=rights,
        allow=allow,
        inherited=inherited,
        display=str(name).strip() if name else None,
    )


def entry_to_record(entry: AccessEntry) -> Dict[str, Any]:
    rec: Dict[str, Any] = {
        "Identity": entry.display or entry.principal_raw,
        "Rights": rights_to_str(entry.rights),
        "Mask": int(entry.rights),
        "Type": "Allow" if entry.allow else "Deny",
        "IsInherited": entry.inherited,
    }
    if entry.principal_raw.upper().startswith("S-1-"):
        rec["Sid"] = entry.principal_raw
    return rec
