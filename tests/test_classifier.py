import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fakes import ALICE, BOB, CAROL, FINANCE, GHOST, SALES, STAFF, ace, default_snapshot
from permaudit.classifier import classify_folder
from permaudit.config import config_from_dict
from permaudit.directory import Snapshot
from permaudit.models import (
    DisabledPrincipal,
    FindingCategory,
    OrphanedPrincipal,
    Principal,
    PrincipalKind,
    RedundantGrant,
)
from permaudit.rights import Rights


FOLDER = r"\\filer\share\Projects"


def only(findings, category):
    return [f for f in findings if f.category is category]


def test_identical_redundant_grant():
    findings = classify_folder(FOLDER, [ace(ALICE, "Modify"), ace(SALES, "Modify")], default_snapshot())
    assert findings == [
        RedundantGrant(FOLDER, ALICE, Rights.MODIFY, SALES, Rights.MODIFY, True),
    ]


def test_non_identical_redundant_grant():
    findings = classify_folder(FOLDER, [ace(ALICE, "FullControl"), ace(SALES, "Read")], default_snapshot())
    assert len(findings) == 1
    f = findings[0]
    assert isinstance(f, RedundantGrant)
    assert f.identical is False
    assert f.rights_user == Rights.FULL_CONTROL
    assert f.rights_group == Rights.READ


def test_orphaned_sid():
    findings = classify_folder(FOLDER, [ace(GHOST, "Read"), ace(CAROL, "Read")], default_snapshot())
    assert findings == [OrphanedPrincipal(FOLDER, GHOST, False)]


def test_orphan_never_part_of_redundancy():
    findings = classify_folder(FOLDER, [ace(GHOST, "Modify"), ace(SALES, "Modify")], default_snapshot())
    assert only(findings, FindingCategory.REDUNDANT) == []
    assert len(only(findings, FindingCategory.ORPHANED)) == 1


def test_one_redundant_finding_per_group():
    findings = classify_folder(
        FOLDER,
        [ace(ALICE, "Read"), ace(SALES, "Read"), ace(FINANCE, "Modify")],
        default_snapshot(),
    )
    red = only(findings, FindingCategory.REDUNDANT)
    assert sorted(f.via_group for f in red) == sorted([SALES, FINANCE])
    assert {f.via_group: f.identical for f in red} == {SALES: True, FINANCE: False}


def test_disabled_user_is_also_checked_for_redundancy():
    findings = classify_folder(FOLDER, [ace(BOB, "Read"), ace(SALES, "Read")], default_snapshot())
    assert DisabledPrincipal(FOLDER, BOB, False) in findings
    assert RedundantGrant(FOLDER, BOB, Rights.READ, SALES, Rights.READ, True) in findings
    assert len(findings) == 2


def test_inherited_disabled_entry_keeps_flag():
    findings = classify_folder(FOLDER, [ace(BOB, "Read", inherited=True)], default_snapshot())
    assert findings == [DisabledPrincipal(FOLDER, BOB, True)]


def test_deny_entries_never_form_redundancy():
    snap = default_snapshot()
    assert classify_folder(FOLDER, [ace(ALICE, "Write", allow=False), ace(SALES, "Write")], snap) == []
    assert classify_folder(FOLDER, [ace(ALICE, "Write"), ace(SALES, "Write", allow=False)], snap) == []


def test_inherited_user_entry_is_flagged_inherited():
    findings = classify_folder(FOLDER, [ace(ALICE, "Read", inherited=True), ace(SALES, "Read")], default_snapshot())
    assert findings == [RedundantGrant(FOLDER, ALICE, Rights.READ, SALES, Rights.READ, True, inherited=True)]


def test_mixed_user_entries_count_as_explicit():
    findings = classify_folder(
        FOLDER,
        [ace(ALICE, "Read"), ace(ALICE, "Write", inherited=True), ace(SALES, "Read, Write")],
        default_snapshot(),
    )
    assert findings == [RedundantGrant(FOLDER, ALICE, Rights.READ | Rights.WRITE, SALES, Rights.READ | Rights.WRITE, True)]


def test_inherited_group_entry_still_counts():
    findings = classify_folder(FOLDER, [ace(ALICE, "Read"), ace(SALES, "Read", inherited=True)], default_snapshot())
    assert len(only(findings, FindingCategory.REDUNDANT)) == 1


def test_rights_are_combined_per_principal():
    findings = classify_folder(
        FOLDER,
        [ace(ALICE, "Read"), ace(ALICE, "Write"), ace(SALES, "Read, Write")],
        default_snapshot(),
    )
    assert len(findings) == 1
    assert findings[0].identical


def test_synchronize_difference_is_still_identical():
    findings = classify_folder(
        FOLDER,
        [ace(ALICE, "ReadAndExecute, Synchronize"), ace(SALES, "ReadAndExecute")],
        default_snapshot(),
    )
    assert findings[0].identical


def test_well_known_principals_are_skipped():
    entries = [
        ace("S-1-5-18", "FullControl"),
        ace("S-1-5-32-544", "FullControl"),
        ace("S-1-1-0", "Read"),
        ace("S-1-5-21-1000-2000-3000-512", "FullControl"),
        ace("NT AUTHORITY\\SYSTEM", "FullControl"),
        ace("CREATOR OWNER", "FullControl"),
    ]
    assert classify_folder(FOLDER, entries, default_snapshot()) == []


def test_configured_exclusions_are_skipped():
    snap = Snapshot(
        list(default_snapshot().principals())
        + [Principal("S-1-5-21-1000-2000-3000-1500", "Backup Service", PrincipalKind.USER, False, "backup_svc")],
        {},
    )
    cfg = config_from_dict({"excluded_identities": ["^backup_svc$", "S-1-5-21-1000-2000-3000-4242"]})
    entries = [ace("S-1-5-21-1000-2000-3000-1500"), ace("S-1-5-21-1000-2000-3000-4242")]
    assert classify_folder(FOLDER, entries, snap, exclusions=cfg.excluded_compiled) == []
    assert len(classify_folder(FOLDER, entries, snap)) == 2


def test_name_references_resolve():
    findings = classify_folder(FOLDER, [ace("CORP\\alice", "Read"), ace("CORP\\sales", "Read")], default_snapshot())
    assert findings == [RedundantGrant(FOLDER, ALICE, Rights.READ, SALES, Rights.READ, True)]


def test_unresolved_name_is_orphaned_once():
    findings = classify_folder(
        FOLDER,
        [ace("CORP\\departed", "Read"), ace("CORP\\departed", "Write")],
        default_snapshot(),
    )
    assert findings == [OrphanedPrincipal(FOLDER, "CORP\\departed", False)]


def test_transitive_membership_is_opt_in():
    snap = default_snapshot()
    entries = [ace(ALICE, "Read"), ace(STAFF, "Read")]
    assert classify_folder(FOLDER, entries, snap) == []
    findings = classify_folder(FOLDER, entries, snap, transitive=True)
    assert findings == [RedundantGrant(FOLDER, ALICE, Rights.READ, STAFF, Rights.READ, True)]


def test_classification_is_deterministic():
    entries = [ace(GHOST), ace(BOB), ace(ALICE), ace(SALES), ace(FINANCE)]
    snap = default_snapshot()
    assert classify_folder(FOLDER, entries, snap) == classify_folder(FOLDER, entries, snap)
