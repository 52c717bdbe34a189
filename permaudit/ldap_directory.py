"""Active Directory backend over LDAP (ldap3).

Usage:
  svc = LdapDirectoryService('dc01.corp.example', 'corp.example', user='CORP\\\\auditor', password='...')
  snapshot = load_snapshot(svc, timeout=120)
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ldap3 import ALL_ATTRIBUTES, NTLM, SIMPLE, SUBTREE, Connection, Server
from ldap3.core.exceptions import (
    LDAPBindError,
    LDAPCommunicationError,
    LDAPException,
    LDAPSocketOpenError,
    LDAPSocketReceiveError,
)
from ldap3.protocol.formatters.formatters import format_sid

from permaudit.directory import DirectoryService
from permaudit.errors import DirectoryQueryError, DirectoryUnavailable, ErrorKind


logger = logging.getLogger(__name__)

UAC_ACCOUNTDISABLE = 0x2

# people, computer accounts and gMSAs all hold user SIDs that appear on ACLs
USER_FILTER = (
    "(|(&(objectCategory=person)(objectClass=user))"
    "(objectCategory=computer)"
    "(objectClass=msDS-GroupManagedServiceAccount))"
)
GROUP_FILTER = "(objectClass=group)"
USER_ATTRS = ["objectSid", "sAMAccountName", "displayName", "userAccountControl", "memberOf", "primaryGroupID"]
GROUP_ATTRS = ["objectSid", "sAMAccountName", "cn", "distinguishedName", "memberOf"]


def _first(raw: Dict[str, Any], attr: str) -> Optional[bytes]:
    vals = raw.get(attr) or []
    return vals[0] if vals else None


def _text(raw: Dict[str, Any], attr: str) -> str:
    v = _first(raw, attr)
    if v is None:
        return ""
    return v.decode("utf-8", errors="replace") if isinstance(v, (bytes, bytearray)) else str(v)


def _sid(raw: Dict[str, Any]) -> str:
    v = _first(raw, "objectSid")
    if not v:
        return ""
    return format_sid(v) if isinstance(v, (bytes, bytearray)) else str(v)


def user_from_entry(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Turn a searchResEntry's raw_attributes into a user record."""
    uac_text = _text(raw, "userAccountControl")
    try:
        uac = int(uac_text) if uac_text else 0
    except ValueError:
        uac = 0
    return {
        "sid": _sid(raw),
        "account": _text(raw, "sAMAccountName"),
        "name": _text(raw, "displayName") or _text(raw, "sAMAccountName"),
        "enabled": not (uac & UAC_ACCOUNTDISABLE),
        "member_of": [v.decode("utf-8", errors="replace") if isinstance(v, (bytes, bytearray)) else str(v)
                      for v in raw.get("memberOf") or []],
        "primary_group_rid": _text(raw, "primaryGroupID"),
    }


def group_from_entry(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "sid": _sid(raw),
        "account": _text(raw, "sAMAccountName"),
        "name": _text(raw, "cn") or _text(raw, "sAMAccountName"),
        "dn": _text(raw, "distinguishedName"),
        "member_of": [v.decode("utf-8", errors="replace") if isinstance(v, (bytes, bytearray)) else str(v)
                      for v in raw.get("memberOf") or []],
    }


def primary_group_sid(user_sid: str, rid: str) -> str:
    if not user_sid or not rid or "-" not in user_sid:
        return ""
    return user_sid.rsplit("-", 1)[0] + "-" + rid


class LdapDirectoryService(DirectoryService):
    def __init__(
        self,
        server: str,
        domain: str,
        user: Optional[str] = None,
        password: Optional[str] = None,
        *,
        base_dn: Optional[str] = None,
        use_ssl: bool = False,
        port: Optional[int] = None,
        timeout: float = 30.0,
        page_size: int = 500,
    ):
        self.server_name = server
        self.domain = domain
        self.user = user
        self.password = password
        self.base_dn = base_dn or ",".join(f"DC={c}" for c in domain.split("."))
        self.use_ssl = use_ssl
        self.port = port
        self.timeout = timeout
        self.page_size = page_size
        self._conn: Optional[Connection] = None
        self._users: Optional[List[Dict[str, Any]]] = None
        self._groups: Optional[List[Dict[str, Any]]] = None

    def connect(self) -> Connection:
        if self._conn is not None:
            return self._conn
        server = Server(self.server_name, port=self.port, use_ssl=self.use_ssl, connect_timeout=self.timeout)
        auth = NTLM if self.user and "\\" in self.user else SIMPLE
        try:
            conn = Connection(
                server,
                user=self.user,
                password=self.password,
                authentication=auth,
                receive_timeout=self.timeout,
                auto_bind=True,
                read_only=True,
            )
        except (LDAPSocketOpenError, LDAPSocketReceiveError, LDAPCommunicationError) as e:
            raise DirectoryUnavailable(f"cannot reach {self.server_name}: {e}", ErrorKind.UNREACHABLE) from e
        except LDAPBindError as e:
            raise DirectoryUnavailable(f"bind to {self.server_name} failed: {e}", ErrorKind.ACCESS_DENIED) from e
        except LDAPException as e:
            raise DirectoryUnavailable(f"cannot connect to {self.server_name}: {e}", ErrorKind.UNKNOWN) from e
        logger.info("connected to %s (base %s)", self.server_name, self.base_dn)
        self._conn = conn
        return conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.unbind()
            self._conn = None

    def _search(self, search_filter: str, attributes: List[str]) -> List[Dict[str, Any]]:
        conn = self.connect()
        try:
            gen = conn.extend.standard.paged_search(
                search_base=self.base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=attributes or [ALL_ATTRIBUTES],
                paged_size=self.page_size,
                generator=True,
            )
            return [e["raw_attributes"] for e in gen if e.get("type") == "searchResEntry"]
        except (LDAPSocketReceiveError, LDAPCommunicationError) as e:
            raise DirectoryUnavailable(f"lost connection to {self.server_name}: {e}", ErrorKind.UNREACHABLE) from e
        except LDAPException as e:
            raise DirectoryQueryError(f"search {search_filter} failed: {e}") from e

    def _load_users(self) -> List[Dict[str, Any]]:
        if self._users is None:
            self._users = [user_from_entry(r) for r in self._search(USER_FILTER, USER_ATTRS)]
        return self._users

    def _load_groups(self) -> List[Dict[str, Any]]:
        if self._groups is None:
            self._groups = [group_from_entry(r) for r in self._search(GROUP_FILTER, GROUP_ATTRS)]
        return self._groups

    def users(self) -> Iterable[Dict[str, Any]]:
        return [{k: u[k] for k in ("sid", "account", "name", "enabled")} for u in self._load_users()]

    def groups(self) -> Iterable[Dict[str, Any]]:
        return [{k: g[k] for k in ("sid", "account", "name")} for g in self._load_groups()]

    def _dn_index(self) -> Dict[str, str]:
        return {g["dn"].lower(): g["sid"] for g in self._load_groups() if g["dn"] and g["sid"]}

    def memberships(self) -> Iterable[Tuple[str, str]]:
        by_dn = self._dn_index()
        pairs: List[Tuple[str, str]] = []
        for u in self._load_users():
            if not u["sid"]:
                continue
            for dn in u["member_of"]:
                gid = by_dn.get(dn.lower())
                if gid:
                    pairs.append((u["sid"], gid))
                else:
                    logger.debug("memberOf %s for %s is outside the search base", dn, u["account"])
            pg = primary_group_sid(u["sid"], u["primary_group_rid"])
            if pg:
                pairs.append((u["sid"], pg))
        return pairs

    def group_parents(self) -> Iterable[Tuple[str, str]]:
        by_dn = self._dn_index()
        pairs: List[Tuple[str, str]] = []
        for g in self._load_groups():
            for dn in g["member_of"]:
                parent = by_dn.get(dn.lower())
                if g["sid"] and parent:
                    pairs.append((g["sid"], parent))
        return pairs
