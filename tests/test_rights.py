import sys
from pathlib import Path

import pytest

# allow importing the permaudit package from a checkout
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from permaudit.rights import Rights, normalize, parse_rights, rights_to_str


def test_string_and_mask_forms_agree():
    assert parse_rights("ReadAndExecute, Synchronize") == Rights.READ_AND_EXECUTE | Rights.SYNCHRONIZE
    assert parse_rights(1179817) == parse_rights("ReadAndExecute, Synchronize")
    assert parse_rights("1179817") == parse_rights("ReadAndExecute, Synchronize")
    assert parse_rights("FullControl") == parse_rights(2032127)
    assert parse_rights("Full Control") == Rights.FULL_CONTROL


def test_generic_bits_are_expanded():
    assert parse_rights(268435456) == Rights.FULL_CONTROL
    # GENERIC_READ | GENERIC_EXECUTE as Get-Acl prints it (signed int32)
    assert normalize(parse_rights(-1610612736)) == Rights.READ_AND_EXECUTE


def test_sddl_tokens_and_lists():
    assert parse_rights("FA") == Rights.FULL_CONTROL
    assert parse_rights(["Read", "Write"]) == Rights.READ | Rights.WRITE
    assert parse_rights("0x1f01ff") == Rights.FULL_CONTROL
    assert parse_rights(None) == Rights.NONE
    assert parse_rights("") == Rights.NONE


def test_unknown_token_raises():
    with pytest.raises(ValueError):
        parse_rights("ReadSomething")
    with pytest.raises(ValueError):
        parse_rights(True)


def test_normalize_drops_synchronize():
    assert normalize(Rights.READ | Rights.SYNCHRONIZE) == normalize(Rights.READ)


def test_rights_to_str():
    assert rights_to_str(Rights.FULL_CONTROL) == "FullControl"
    assert rights_to_str(Rights.MODIFY | Rights.SYNCHRONIZE) == "Modify"
    assert rights_to_str(Rights.READ) == "Read"
    assert rights_to_str(Rights.READ | Rights.WRITE) == "Read, Write"
    assert rights_to_str(Rights.NONE) == "None"
    assert rights_to_str(Rights.READ_DATA | Rights.DELETE) == "ReadData, Delete"


def test_rights_to_str_parses_back():
    for r in (Rights.MODIFY, Rights.READ_AND_EXECUTE | Rights.DELETE, Rights.TAKE_OWNERSHIP | Rights.READ):
        assert parse_rights(rights_to_str(r)) == normalize(r)
