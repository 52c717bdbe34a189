"""Identity directory snapshot: principals, memberships and lookups.

The snapshot is loaded once per audit so the folder walk never goes back to
the directory. Lookups are dict based and case-insensitive on identifiers.
"""
from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from permaudit.errors import AuditError, DirectoryQueryError, DirectoryUnavailable, ErrorKind
from permaudit.io_policy import call_with_timeout
from permaudit.models import Principal, PrincipalKind


logger = logging.getLogger(__name__)


def _key(identifier: str) -> str:
    return str(identifier).strip().lower()


class Snapshot:
    """Read-only view of directory principals and user -> group membership."""

    def __init__(
        self,
        principals: Iterable[Principal],
        memberships: Mapping[str, Iterable[str]],
        group_parents: Optional[Mapping[str, Iterable[str]]] = None,
        gaps: Optional[List[str]] = None,
    ):
        self._by_id: Dict[str, Principal] = {}
        for p in principals:
            self._by_id[_key(p.identifier)] = p

        self._aliases: Dict[str, Principal] = {}
        # account names first: they are unique per domain, display names are not
        display: Dict[str, List[Principal]] = {}
        for p in self._by_id.values():
            if p.account:
                self._aliases.setdefault(_key(p.account), p)
            display.setdefault(_key(p.name), []).append(p)
        for nm, ps in display.items():
            if nm and len(ps) == 1:
                self._aliases.setdefault(nm, ps[0])

        # memberships may name principals by SID, account or DOMAIN\name
        self._groups_of: Dict[str, frozenset] = {}
        for uid, gids in memberships.items():
            u = self.resolve(uid)
            if u is None or not u.is_user:
                logger.warning("membership for unknown or non-user principal %s ignored", uid)
                continue
            k = _key(u.identifier)
            self._groups_of[k] = self._groups_of.get(k, frozenset()) | {self._canonical(g) for g in gids}

        self._parents: Dict[str, frozenset] = {}
        for gid, parents in (group_parents or {}).items():
            k = _key(self._canonical(gid))
            self._parents[k] = self._parents.get(k, frozenset()) | {self._canonical(g) for g in parents}

        self.gaps: List[str] = list(gaps or [])

    def _canonical(self, identifier: str) -> str:
        p = self.resolve(identifier)
        return p.identifier if p else str(identifier).strip()

    def resolve(self, identifier: str) -> Optional[Principal]:
        if not identifier:
            return None
        k = _key(identifier)
        p = self._by_id.get(k)
        if p is not None:
            return p
        p = self._aliases.get(k)
        if p is not None:
            return p
        if "\\" in k:
            return self._aliases.get(k.rsplit("\\", 1)[1])
        return None

    def groups_of(self, user_identifier: str, transitive: bool = False) -> frozenset:
        direct = self._groups_of.get(_key(user_identifier), frozenset())
        if not transitive or not direct:
            return direct
        seen: Set[str] = set(direct)
        stack = list(direct)
        while stack:
            g = stack.pop()
            for parent in self._parents.get(_key(g), ()):
                if parent not in seen:
                    seen.add(parent)
                    stack.append(parent)
        return frozenset(seen)

    def principals(self) -> Iterator[Principal]:
        return iter(self._by_id.values())

    def names(self) -> Dict[str, str]:
        return {p.identifier: p.name for p in self._by_id.values()}

    @property
    def degraded(self) -> bool:
        return bool(self.gaps)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and self.resolve(identifier) is not None


class DirectoryService:
    """Interface for directory backends.

    `users()` yields dicts with sid, name, account, enabled; `groups()` dicts
    with sid, name, account; `memberships()` (user_sid, group_sid) pairs;
    `group_parents()` (group_sid, parent_group_sid) pairs for nested groups.
    """

    def users(self) -> Iterable[Dict[str, Any]]:
        raise NotImplementedError

    def groups(self) -> Iterable[Dict[str, Any]]:
        raise NotImplementedError

    def memberships(self) -> Iterable[Tuple[str, str]]:
        raise NotImplementedError

    def group_parents(self) -> Iterable[Tuple[str, str]]:
        return ()


def _fetch(service_call, what: str, timeout: Optional[float]) -> List[Any]:
    try:
        return call_with_timeout(lambda: list(service_call()), timeout)
    except AuditError:
        raise
    except TimeoutError as e:
        raise DirectoryUnavailable(f"directory {what} query timed out", ErrorKind.TIMEOUT) from e
    except (OSError, ConnectionError) as e:
        raise DirectoryUnavailable(f"directory unreachable while fetching {what}: {e}") from e
    except (ValueError, csv.Error) as e:
        # undecodable or malformed export data, UnicodeDecodeError included
        raise DirectoryQueryError(f"directory {what} data unreadable: {e}", ErrorKind.MALFORMED) from e


def _principal_from_record(rec: Dict[str, Any], kind: PrincipalKind) -> Optional[Principal]:
    sid = str(rec.get("sid") or "").strip()
    if not sid:
        return None
    account = str(rec.get("account") or "").strip() or None
    name = str(rec.get("name") or "").strip() or account or sid
    enabled = _parse_enabled(rec.get("enabled")) if kind is PrincipalKind.USER else True
    return Principal(identifier=sid, name=name, kind=kind, enabled=enabled, account=account)


def _parse_enabled(val: Any) -> bool:
    if val is None or val == "":
        return True
    if isinstance(val, bool):
        return val
    return str(val).strip().lower() not in ("false", "0", "no", "disabled", "n")


def load_snapshot(
    service: DirectoryService,
    *,
    allow_partial: bool = False,
    timeout: Optional[float] = None,
) -> Snapshot:
    """Bulk-load users, groups and memberships into a Snapshot.

    Raises DirectoryUnavailable when the service cannot be reached or a call
    times out. Raises DirectoryQueryError on unusable data unless
    `allow_partial`, in which case the gap is logged and recorded.
    """
    gaps: List[str] = []

    def partial(what: str, fn) -> List[Any]:
        try:
            return _fetch(fn, what, timeout)
        except DirectoryQueryError as e:
            if not allow_partial:
                raise
            logger.warning("directory %s could not be loaded, continuing degraded: %s", what, e)
            gaps.append(f"{what}: {e}")
            return []

    user_rows = partial("users", service.users)
    group_rows = partial("groups", service.groups)
    member_rows = partial("memberships", service.memberships)
    parent_rows = partial("group parents", service.group_parents)

    principals: List[Principal] = []
    bad = 0
    for rows, kind in ((user_rows, PrincipalKind.USER), (group_rows, PrincipalKind.GROUP)):
        for rec in rows:
            p = _principal_from_record(rec, kind) if isinstance(rec, dict) else None
            if p is None:
                bad += 1
                continue
            principals.append(p)
    if bad:
        msg = f"{bad} directory record(s) without an identifier"
        if not allow_partial:
            raise DirectoryQueryError(msg)
        logger.warning("%s; those principals will be unresolvable", msg)
        gaps.append(msg)

    memberships: Dict[str, Set[str]] = {}
    for pair in member_rows:
        try:
            uid, gid = pair
        except (TypeError, ValueError):
            logger.debug("malformed membership record skipped: %r", pair)
            continue
        if uid and gid:
            memberships.setdefault(str(uid), set()).add(str(gid))

    parents: Dict[str, Set[str]] = {}
    for pair in parent_rows:
        try:
            gid, parent = pair
        except (TypeError, ValueError):
            continue
        if gid and parent:
            parents.setdefault(str(gid), set()).add(str(parent))

    snap = Snapshot(principals, memberships, parents, gaps)
    logger.info(
        "directory snapshot loaded: %d principals, %d users with memberships%s",
        len(snap), len(memberships), " (degraded)" if gaps else "",
    )
    return snap


class CsvDirectoryService(DirectoryService):
    """Directory backed by CSV exports (users.csv, groups.csv, memberships.csv).

    Column names are matched case-insensitively against the variants the AD
    cmdlets and common export scripts produce. `memberships.csv` is optional
    when users.csv carries a `MemberOf` column (SIDs or names separated by ';').
    `group_parents.csv` (group, parent) is optional.
    """

    def __init__(self, export_dir: Path):
        self.export_dir = Path(export_dir)

    def _rows(self, name: str, required: bool = True) -> List[Dict[str, str]]:
        f = self.export_dir / name
        if not f.exists():
            if required:
                raise DirectoryUnavailable(f"directory export missing {name}", ErrorKind.NOT_FOUND, str(f))
            return []
        rows: List[Dict[str, str]] = []
        with f.open("r", encoding="utf-8-sig", newline="") as fh:
            reader = csv.DictReader(fh)
            for r in reader:
                rows.append({(k or "").strip().lower(): (v or "").strip() for k, v in r.items()})
        return rows

    @staticmethod
    def _pick(row: Dict[str, str], *cands: str) -> str:
        for c in cands:
            v = row.get(c)
            if v:
                return v
        return ""

    def _principal_row(self, r: Dict[str, str]) -> Dict[str, Any]:
        return {
            "sid": self._pick(r, "sid", "objectsid", "securityidentifier", "id"),
            "account": self._pick(r, "samaccountname", "account", "accountname", "username"),
            "name": self._pick(r, "name", "displayname", "cn"),
            "enabled": self._pick(r, "enabled", "isenabled"),
        }

    def users(self) -> Iterable[Dict[str, Any]]:
        return [self._principal_row(r) for r in self._rows("users.csv")]

    def groups(self) -> Iterable[Dict[str, Any]]:
        rows = []
        for r in self._rows("groups.csv"):
            d = self._principal_row(r)
            d.pop("enabled")
            rows.append(d)
        return rows

    def _name_index(self) -> Dict[str, str]:
        idx: Dict[str, str] = {}
        for r in self._rows("groups.csv"):
            d = self._principal_row(r)
            for alias in (d["account"], d["name"]):
                if alias and d["sid"]:
                    idx.setdefault(alias.lower(), d["sid"])
        return idx

    def memberships(self) -> Iterable[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []
        for r in self._rows("memberships.csv", required=False):
            u = self._pick(r, "user_sid", "user", "member", "membersid")
            g = self._pick(r, "group_sid", "group", "groupsid")
            if not u or not g:
                raise DirectoryQueryError("memberships.csv row without user or group", path=str(self.export_dir))
            pairs.append((u, g))
        # MemberOf column on users.csv
        by_name = None
        for r in self._rows("users.csv"):
            mo = self._pick(r, "memberof", "groups")
            uid = self._pick(r, "sid", "objectsid", "securityidentifier", "id")
            if not mo or not uid:
                continue
            for g in (x.strip() for x in mo.split(";")):
                if not g:
                    continue
                if not g.upper().startswith("S-1-"):
                    if by_name is None:
                        by_name = self._name_index()
                    g = by_name.get(g.lower(), g)
                pairs.append((uid, g))
        return pairs

    def group_parents(self) -> Iterable[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []
        for r in self._rows("group_parents.csv", required=False):
            g = self._pick(r, "group_sid", "group")
            p = self._pick(r, "parent_sid", "parent", "parent_group")
            if g and p:
                pairs.append((g, p))
        return pairs
