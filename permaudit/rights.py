"""File system rights as a flag set.

Exporters write rights in several shapes: the .NET `FileSystemRights` string
("ReadAndExecute, Synchronize"), a numeric access mask (1179817), or SDDL-ish
tokens ("FA", "FR"). `parse_rights` accepts all of them.
"""
from __future__ import annotations

import re
from enum import IntFlag
from typing import Any, List


class Rights(IntFlag):
    NONE = 0
    READ_DATA = 0x1
    WRITE_DATA = 0x2
    APPEND_DATA = 0x4
    READ_EXTENDED_ATTRIBUTES = 0x8
    WRITE_EXTENDED_ATTRIBUTES = 0x10
    EXECUTE_FILE = 0x20
    DELETE_SUBDIRECTORIES_AND_FILES = 0x40
    READ_ATTRIBUTES = 0x80
    WRITE_ATTRIBUTES = 0x100
    DELETE = 0x10000
    READ_PERMISSIONS = 0x20000
    CHANGE_PERMISSIONS = 0x40000
    TAKE_OWNERSHIP = 0x80000
    SYNCHRONIZE = 0x100000

    # composites as FileSystemRights defines them
    READ = READ_DATA | READ_EXTENDED_ATTRIBUTES | READ_ATTRIBUTES | READ_PERMISSIONS
    WRITE = WRITE_DATA | APPEND_DATA | WRITE_EXTENDED_ATTRIBUTES | WRITE_ATTRIBUTES
    READ_AND_EXECUTE = READ | EXECUTE_FILE
    MODIFY = WRITE | READ_AND_EXECUTE | DELETE
    FULL_CONTROL = 0x1F01FF


GENERIC_ALL = 0x10000000
GENERIC_EXECUTE = 0x20000000
GENERIC_WRITE = 0x40000000
GENERIC_READ = 0x80000000

_GENERIC_MAP = {
    GENERIC_ALL: Rights.FULL_CONTROL,
    GENERIC_EXECUTE: Rights.EXECUTE_FILE | Rights.READ_ATTRIBUTES | Rights.READ_PERMISSIONS,
    GENERIC_WRITE: Rights.WRITE | Rights.READ_PERMISSIONS,
    GENERIC_READ: Rights.READ,
}

_ALL_BITS = int(Rights.FULL_CONTROL)

_NAMES = {
    "none": Rights.NONE,
    "fullcontrol": Rights.FULL_CONTROL,
    "full": Rights.FULL_CONTROL,
    "fa": Rights.FULL_CONTROL,
    "modify": Rights.MODIFY,
    "m": Rights.MODIFY,
    "readandexecute": Rights.READ_AND_EXECUTE,
    "rx": Rights.READ_AND_EXECUTE,
    "read": Rights.READ,
    "fr": Rights.READ,
    "r": Rights.READ,
    "write": Rights.WRITE,
    "fw": Rights.WRITE,
    "w": Rights.WRITE,
    "listdirectory": Rights.READ_DATA,
    "readdata": Rights.READ_DATA,
    "createfiles": Rights.WRITE_DATA,
    "writedata": Rights.WRITE_DATA,
    "createdirectories": Rights.APPEND_DATA,
    "appenddata": Rights.APPEND_DATA,
    "readextendedattributes": Rights.READ_EXTENDED_ATTRIBUTES,
    "writeextendedattributes": Rights.WRITE_EXTENDED_ATTRIBUTES,
    "traverse": Rights.EXECUTE_FILE,
    "executefile": Rights.EXECUTE_FILE,
    "x": Rights.EXECUTE_FILE,
    "deletesubdirectoriesandfiles": Rights.DELETE_SUBDIRECTORIES_AND_FILES,
    "dc": Rights.DELETE_SUBDIRECTORIES_AND_FILES,
    "readattributes": Rights.READ_ATTRIBUTES,
    "writeattributes": Rights.WRITE_ATTRIBUTES,
    "delete": Rights.DELETE,
    "d": Rights.DELETE,
    "de": Rights.DELETE,
    "readpermissions": Rights.READ_PERMISSIONS,
    "read_control": Rights.READ_PERMISSIONS,
    "rc": Rights.READ_PERMISSIONS,
    "changepermissions": Rights.CHANGE_PERMISSIONS,
    "write_dac": Rights.CHANGE_PERMISSIONS,
    "wd": Rights.CHANGE_PERMISSIONS,
    "takeownership": Rights.TAKE_OWNERSHIP,
    "write_owner": Rights.TAKE_OWNERSHIP,
    "wo": Rights.TAKE_OWNERSHIP,
    "synchronize": Rights.SYNCHRONIZE,
    "s": Rights.SYNCHRONIZE,
    "genericall": Rights.FULL_CONTROL,
    "ga": Rights.FULL_CONTROL,
    "genericread": Rights.READ,
    "gr": Rights.READ,
    "genericwrite": Rights.WRITE | Rights.READ_PERMISSIONS,
    "gw": Rights.WRITE | Rights.READ_PERMISSIONS,
    "genericexecute": Rights.EXECUTE_FILE | Rights.READ_ATTRIBUTES | Rights.READ_PERMISSIONS,
    "gx": Rights.EXECUTE_FILE | Rights.READ_ATTRIBUTES | Rights.READ_PERMISSIONS,
}

_SPLIT = re.compile(r"[,|;+]+|\s{2,}")


def from_mask(mask: int) -> Rights:
    """Convert a raw access mask, expanding generic bits."""
    mask = int(mask) & 0xFFFFFFFF
    value = Rights(mask & _ALL_BITS)
    for bit, mapped in _GENERIC_MAP.items():
        if mask & bit:
            value |= mapped
    return value


def parse_rights(raw: Any) -> Rights:
    """Parse rights from a mask, a Rights value, a name list or a list of those.

    Unknown tokens raise ValueError so malformed exports are not silently
    treated as "no rights".
    """
    if raw is None:
        return Rights.NONE
    if isinstance(raw, Rights):
        return raw
    if isinstance(raw, bool):
        raise ValueError(f"not a rights value: {raw!r}")
    if isinstance(raw, (int, float)):
        return from_mask(int(raw))
    if isinstance(raw, (list, tuple, set, frozenset)):
        value = Rights.NONE
        for item in raw:
            value |= parse_rights(item)
        return value

    s = str(raw).strip()
    if not s:
        return Rights.NONE
    if re.fullmatch(r"-?\d+", s):
        return from_mask(int(s))
    if re.fullmatch(r"0x[0-9a-fA-F]+", s):
        return from_mask(int(s, 16))

    value = Rights.NONE
    for token in _SPLIT.split(s):
        t = token.strip().replace(" ", "").lower()
        if not t:
            continue
        if t not in _NAMES:
            raise ValueError(f"unknown right {token.strip()!r} in {s!r}")
        value |= _NAMES[t]
    return value


def normalize(rights: Rights) -> Rights:
    """Rights as compared for redundancy: SYNCHRONIZE is implied and dropped."""
    return Rights(int(rights) & ~int(Rights.SYNCHRONIZE))


def rights_to_str(rights: Rights) -> str:
    """Human form using the largest named composites first."""
    r = normalize(rights)
    if r == Rights.NONE:
        return "None"
    if r == normalize(Rights.FULL_CONTROL):
        return "FullControl"
    names: List[str] = []
    for name, composite in (("Modify", Rights.MODIFY), ("ReadAndExecute", Rights.READ_AND_EXECUTE),
                            ("Read", Rights.READ), ("Write", Rights.WRITE)):
        if composite & r == composite:
            names.append(name)
            r = Rights(r & ~composite)
    for member in (Rights.READ_DATA, Rights.WRITE_DATA, Rights.APPEND_DATA,
                   Rights.READ_EXTENDED_ATTRIBUTES, Rights.WRITE_EXTENDED_ATTRIBUTES,
                   Rights.EXECUTE_FILE, Rights.DELETE_SUBDIRECTORIES_AND_FILES,
                   Rights.READ_ATTRIBUTES, Rights.WRITE_ATTRIBUTES, Rights.DELETE,
                   Rights.READ_PERMISSIONS, Rights.CHANGE_PERMISSIONS, Rights.TAKE_OWNERSHIP):
        if r & member:
            names.append("".join(p.capitalize() for p in (member.name or "").split("_")))
    return ", ".join(names)
