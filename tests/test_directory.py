import csv
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fakes import ALICE, BOB, CAROL, FINANCE, SALES, STAFF, default_directory, default_snapshot, user
from permaudit.directory import CsvDirectoryService, Snapshot, load_snapshot
from permaudit.errors import DirectoryQueryError, DirectoryUnavailable, ErrorKind
from permaudit.models import Principal, PrincipalKind


def test_resolve_by_sid_and_aliases():
    snap = default_snapshot()
    assert snap.resolve(ALICE).name == "Alice"
    assert snap.resolve(ALICE.lower()).identifier == ALICE
    assert snap.resolve("alice").identifier == ALICE
    assert snap.resolve("CORP\\Alice").identifier == ALICE
    assert snap.resolve("S-1-5-21-1000-2000-3000-4242") is None
    assert snap.resolve("") is None
    assert "bob" in snap


def test_ambiguous_display_names_are_not_aliases():
    snap = Snapshot(
        [
            Principal("S-1-5-21-1-1-1-1001", "John Smith", PrincipalKind.USER, True, "jsmith"),
            Principal("S-1-5-21-1-1-1-1002", "John Smith", PrincipalKind.USER, True, "jsmith2"),
        ],
        {},
    )
    assert snap.resolve("John Smith") is None
    assert snap.resolve("jsmith2").identifier == "S-1-5-21-1-1-1-1002"


def test_groups_of_direct_and_unknown():
    snap = default_snapshot()
    assert snap.groups_of(ALICE) == frozenset({SALES, FINANCE})
    assert snap.groups_of(SALES) == frozenset()
    assert snap.groups_of("S-1-5-21-1000-2000-3000-4242") == frozenset()


def test_groups_of_transitive_is_cycle_safe():
    principals = list(default_snapshot().principals())
    snap = Snapshot(principals, {BOB: [SALES]}, {SALES: [STAFF], STAFF: [SALES]})
    assert snap.groups_of(BOB) == frozenset({SALES})
    assert snap.groups_of(BOB, transitive=True) == frozenset({SALES, STAFF})


def test_load_snapshot_from_service():
    snap = load_snapshot(default_directory())
    assert len(snap) == 6
    assert snap.resolve(BOB).is_disabled_user
    assert snap.groups_of(CAROL) == frozenset({FINANCE})
    assert snap.groups_of(ALICE, transitive=True) >= {STAFF}
    assert not snap.degraded


def test_load_snapshot_timeout_error_is_unavailable():
    svc = default_directory(fail_on="users", error=TimeoutError("ldap read timed out"))
    with pytest.raises(DirectoryUnavailable) as ei:
        load_snapshot(svc)
    assert ei.value.kind is ErrorKind.TIMEOUT


def test_load_snapshot_connection_error_is_unavailable():
    svc = default_directory(fail_on="groups", error=ConnectionRefusedError("refused"))
    with pytest.raises(DirectoryUnavailable) as ei:
        load_snapshot(svc)
    assert ei.value.kind is ErrorKind.UNREACHABLE


def test_load_snapshot_slow_service_hits_timeout():
    svc = default_directory(delay=1.0)
    with pytest.raises(DirectoryUnavailable) as ei:
        load_snapshot(svc, timeout=0.1)
    assert ei.value.kind is ErrorKind.TIMEOUT


def test_records_without_identifier():
    svc = default_directory()
    svc._users.append(user("", "nosid"))
    with pytest.raises(DirectoryQueryError):
        load_snapshot(svc)

    snap = load_snapshot(svc, allow_partial=True)
    assert snap.degraded
    assert snap.resolve("nosid") is None
    assert snap.resolve("alice") is not None


def test_partial_membership_failure_degrades():
    svc = default_directory(fail_on="memberships", error=DirectoryQueryError("page 3 malformed"))
    with pytest.raises(DirectoryQueryError):
        load_snapshot(svc)
    snap = load_snapshot(svc, allow_partial=True)
    assert snap.degraded
    assert snap.groups_of(ALICE) == frozenset()
    assert snap.resolve(ALICE) is not None


def write_csv(path: Path, header, rows):
    with path.open("w", encoding="utf-8", newline="") as fh:
        w = csv.writer(fh)
        w.writerow(header)
        for r in rows:
            w.writerow(r)


def test_csv_directory_service(tmp_path: Path):
    write_csv(tmp_path / "users.csv", ["SamAccountName", "Name", "SID", "Enabled", "MemberOf"], [
        ["alice", "Alice A", ALICE, "True", "sales"],
        ["bob", "Bob B", BOB, "False", ""],
    ])
    write_csv(tmp_path / "groups.csv", ["SamAccountName", "Name", "SID"], [
        ["sales", "Sales", SALES],
        ["finance", "Finance", FINANCE],
    ])
    write_csv(tmp_path / "memberships.csv", ["user_sid", "group_sid"], [[BOB, FINANCE]])

    snap = load_snapshot(CsvDirectoryService(tmp_path))
    assert snap.resolve("bob").is_disabled_user
    assert not snap.resolve("alice").is_disabled_user
    assert snap.groups_of(ALICE) == frozenset({SALES})
    assert snap.groups_of(BOB) == frozenset({FINANCE})
    assert snap.resolve("Sales").identifier == SALES


def test_csv_directory_missing_export(tmp_path: Path):
    with pytest.raises(DirectoryUnavailable):
        load_snapshot(CsvDirectoryService(tmp_path / "nope"))


def test_csv_memberships_by_account_name(tmp_path: Path):
    write_csv(tmp_path / "users.csv", ["SamAccountName", "Name", "SID", "Enabled"], [
        ["alice", "Alice A", ALICE, "True"],
        ["carol", "Carol C", CAROL, "True"],
    ])
    write_csv(tmp_path / "groups.csv", ["SamAccountName", "Name", "SID"], [
        ["sales", "Sales", SALES],
        ["staff", "Staff", STAFF],
    ])
    write_csv(tmp_path / "memberships.csv", ["user", "group"], [["alice", "sales"], ["CORP\\carol", "Staff"]])
    write_csv(tmp_path / "group_parents.csv", ["group", "parent"], [["sales", "staff"]])

    snap = load_snapshot(CsvDirectoryService(tmp_path))
    assert snap.groups_of(ALICE) == frozenset({SALES})
    assert snap.groups_of(CAROL) == frozenset({STAFF})
    assert snap.groups_of(ALICE, transitive=True) == frozenset({SALES, STAFF})


def test_undecodable_export_is_query_error(tmp_path: Path):
    (tmp_path / "users.csv").write_bytes(b"\xff\xfeS\x00I\x00D\x00\r\x00\n\x00")
    write_csv(tmp_path / "groups.csv", ["SamAccountName", "Name", "SID"], [["sales", "Sales", SALES]])

    with pytest.raises(DirectoryQueryError) as ei:
        load_snapshot(CsvDirectoryService(tmp_path))
    assert ei.value.kind is ErrorKind.MALFORMED

    snap = load_snapshot(CsvDirectoryService(tmp_path), allow_partial=True)
    assert snap.degraded
    assert snap.resolve("sales").identifier == SALES
    assert snap.resolve(ALICE) is None
