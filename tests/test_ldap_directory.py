import struct
import sys
from pathlib import Path

import pytest
from ldap3.core.exceptions import LDAPException

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from permaudit import ldap_directory
from permaudit.directory import load_snapshot
from permaudit.errors import DirectoryUnavailable
from permaudit.ldap_directory import (
    GROUP_FILTER,
    LdapDirectoryService,
    group_from_entry,
    primary_group_sid,
    user_from_entry,
)


def sid_bytes(sid: str) -> bytes:
    parts = sid.split("-")
    revision = int(parts[1])
    authority = int(parts[2])
    subs = [int(x) for x in parts[3:]]
    return (struct.pack("<BB", revision, len(subs)) + authority.to_bytes(6, "big")
            + b"".join(struct.pack("<I", s) for s in subs))


def user_entry(sid, sam, uac=512, member_of=(), pgid=513):
    return {
        "objectSid": [sid_bytes(sid)],
        "sAMAccountName": [sam.encode()],
        "displayName": [sam.title().encode()],
        "userAccountControl": [str(uac).encode()],
        "memberOf": [dn.encode() for dn in member_of],
        "primaryGroupID": [str(pgid).encode()],
    }


def group_entry(sid, name, dn, member_of=()):
    return {
        "objectSid": [sid_bytes(sid)],
        "sAMAccountName": [name.encode()],
        "cn": [name.encode()],
        "distinguishedName": [dn.encode()],
        "memberOf": [x.encode() for x in member_of],
    }


DOM = "S-1-5-21-11-22-33"
SALES_DN = "CN=Sales,OU=Groups,DC=corp,DC=example"
STAFF_DN = "CN=Staff,OU=Groups,DC=corp,DC=example"


def test_user_from_entry_parses_sid_and_disabled_flag():
    rec = user_from_entry(user_entry(f"{DOM}-1105", "bob", uac=514))
    assert rec["sid"] == f"{DOM}-1105"
    assert rec["account"] == "bob"
    assert rec["enabled"] is False
    assert user_from_entry(user_entry(f"{DOM}-1106", "amy"))["enabled"] is True


def test_group_from_entry():
    rec = group_from_entry(group_entry(f"{DOM}-2001", "Sales", SALES_DN, [STAFF_DN]))
    assert rec["sid"] == f"{DOM}-2001"
    assert rec["dn"] == SALES_DN
    assert rec["member_of"] == [STAFF_DN]


def test_primary_group_sid():
    assert primary_group_sid(f"{DOM}-1105", "513") == f"{DOM}-513"
    assert primary_group_sid("", "513") == ""


def test_service_builds_memberships_without_network(monkeypatch):
    svc = LdapDirectoryService("dc01.corp.example", "corp.example")
    assert svc.base_dn == "DC=corp,DC=example"

    users = [user_entry(f"{DOM}-1105", "bob", member_of=[SALES_DN, "CN=Other,DC=elsewhere"])]
    groups = [
        group_entry(f"{DOM}-2001", "Sales", SALES_DN, [STAFF_DN]),
        group_entry(f"{DOM}-2002", "Staff", STAFF_DN),
        group_entry(f"{DOM}-513", "Domain Users", "CN=Domain Users,CN=Users,DC=corp,DC=example"),
    ]

    def fake_search(search_filter, attributes):
        return groups if search_filter == GROUP_FILTER else users

    monkeypatch.setattr(svc, "_search", fake_search)
    snap = load_snapshot(svc)
    assert snap.resolve("bob") is not None
    assert snap.groups_of(f"{DOM}-1105") == frozenset({f"{DOM}-2001", f"{DOM}-513"})
    assert f"{DOM}-2002" in snap.groups_of(f"{DOM}-1105", transitive=True)


def test_computer_and_gmsa_accounts_resolve(monkeypatch):
    svc = LdapDirectoryService("dc01.corp.example", "corp.example")
    users = [
        user_entry(f"{DOM}-1105", "bob", member_of=[SALES_DN]),
        user_entry(f"{DOM}-3001", "SRV01$", uac=4096, member_of=[SALES_DN], pgid=515),
        user_entry(f"{DOM}-3002", "svc-backup$", uac=4096, pgid=515),
    ]
    groups = [group_entry(f"{DOM}-2001", "Sales", SALES_DN)]

    def fake_search(search_filter, attributes):
        if search_filter == GROUP_FILTER:
            return groups
        assert "objectCategory=computer" in search_filter
        assert "msDS-GroupManagedServiceAccount" in search_filter
        return users

    monkeypatch.setattr(svc, "_search", fake_search)
    snap = load_snapshot(svc)
    srv = snap.resolve("SRV01$")
    assert srv is not None and srv.is_user and srv.enabled
    assert snap.resolve(f"{DOM}-3002").is_user
    assert f"{DOM}-2001" in snap.groups_of(f"{DOM}-3001")


def test_unexpected_ldap_error_on_connect_is_directory_unavailable(monkeypatch):
    def broken_connection(*args, **kwargs):
        raise LDAPException("invalid server address")

    monkeypatch.setattr(ldap_directory, "Server", lambda *args, **kwargs: object())
    monkeypatch.setattr(ldap_directory, "Connection", broken_connection)
    svc = LdapDirectoryService("dc01.corp.example", "corp.example")
    with pytest.raises(DirectoryUnavailable):
        load_snapshot(svc)
