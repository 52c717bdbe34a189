"""Live NTFS ACL provider (Windows only, needs pywin32).

Only explicit ACEs are written back; the OS recomputes inherited ACEs from
the parent, so an inherited ACE can only really disappear at its origin.
"""
from __future__ import annotations

import logging
import os
from typing import List

import ntsecuritycon
import pywintypes
import win32security

from permaudit.acl import AclProvider
from permaudit.errors import AclReadError, AclWriteError, ErrorKind, kind_from_winerror
from permaudit.models import AccessEntry
from permaudit.rights import from_mask


logger = logging.getLogger(__name__)

INHERITED_ACE = ntsecuritycon.INHERITED_ACE
SE_DACL_PROTECTED = ntsecuritycon.SE_DACL_PROTECTED


def _kind(e: pywintypes.error) -> ErrorKind:
    return kind_from_winerror(getattr(e, "winerror", None)) or ErrorKind.UNKNOWN


def _sid_from(principal: str):
    if principal.upper().startswith("S-1-"):
        return win32security.ConvertStringSidToSid(principal)
    sid, _domain, _type = win32security.LookupAccountName(None, principal)
    return sid


class WindowsAclProvider(AclProvider):
    drops_inherited = False

    def __init__(self, resolve_names: bool = True):
        self.resolve_names = resolve_names

    def exists(self, path: str) -> bool:
        return os.path.isdir(path)

    def canonical(self, path: str) -> str:
        return os.path.normcase(os.path.realpath(path))

    def list_children(self, path: str) -> List[str]:
        with os.scandir(path) as it:
            return [e.path for e in it if e.is_dir(follow_symlinks=True)]

    def _display(self, sid) -> str:
        if not self.resolve_names:
            return ""
        try:
            name, domain, _type = win32security.LookupAccountSid(None, sid)
        except pywintypes.error:
            return ""
        return f"{domain}\\{name}" if domain else name

    def read_acl(self, path: str) -> List[AccessEntry]:
        try:
            sd = win32security.GetNamedSecurityInfo(
                path, win32security.SE_FILE_OBJECT, win32security.DACL_SECURITY_INFORMATION
            )
        except pywintypes.error as e:
            raise AclReadError(f"GetNamedSecurityInfo failed ({e.winerror})", _kind(e), path) from e
        dacl = sd.GetSecurityDescriptorDacl()
        if dacl is None:
            return []
        entries: List[AccessEntry] = []
        for i in range(dacl.GetAceCount()):
            (ace_type, ace_flags), mask, sid = dacl.GetAce(i)[:3]
            if ace_type not in (ntsecuritycon.ACCESS_ALLOWED_ACE_TYPE, ntsecuritycon.ACCESS_DENIED_ACE_TYPE):
                # object and callback ACEs do not occur on plain folders
                logger.debug("skipping ACE type %s on %s", ace_type, path)
                continue
            entries.append(AccessEntry(
                principal_raw=win32security.ConvertSidToStringSid(sid),
                rights=from_mask(mask),
                allow=ace_type == ntsecuritycon.ACCESS_ALLOWED_ACE_TYPE,
                inherited=bool(ace_flags & INHERITED_ACE),
                display=self._display(sid) or None,
                flags=ace_flags,
            ))
        return entries

    def write_acl(self, path: str, entries: List[AccessEntry]) -> None:
        try:
            sd = win32security.GetNamedSecurityInfo(
                path, win32security.SE_FILE_OBJECT, win32security.DACL_SECURITY_INFORMATION
            )
            control, _rev = sd.GetSecurityDescriptorControl()
            acl = win32security.ACL()
            # canonical order: explicit deny before explicit allow
            explicit = [e for e in entries if not e.inherited]
            for e in sorted(explicit, key=lambda x: x.allow):
                sid = _sid_from(e.principal_raw)
                flags = e.flags & ~INHERITED_ACE
                if e.allow:
                    acl.AddAccessAllowedAceEx(win32security.ACL_REVISION_DS, flags, int(e.rights), sid)
                else:
                    acl.AddAccessDeniedAceEx(win32security.ACL_REVISION_DS, flags, int(e.rights), sid)
            info = win32security.DACL_SECURITY_INFORMATION
            if control & SE_DACL_PROTECTED:
                info |= win32security.PROTECTED_DACL_SECURITY_INFORMATION
            else:
                info |= win32security.UNPROTECTED_DACL_SECURITY_INFORMATION
            win32security.SetNamedSecurityInfo(path, win32security.SE_FILE_OBJECT, info, None, None, acl, None)
        except pywintypes.error as e:
            raise AclWriteError(f"SetNamedSecurityInfo failed ({e.winerror})", _kind(e), path) from e
