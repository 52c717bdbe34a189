"""Error taxonomy for the permission audit engine.

Only `DirectoryUnavailable` and a `PathUnreachable` on the audit root are
allowed to escape `run_audit`. Everything else is recorded per folder or per
remediation item and reported in the summary.
"""
from __future__ import annotations

import errno
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"
    ACCESS_DENIED = "access_denied"
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class AuditError(Exception):
    """Base class. `kind` is what callers branch on, never the message."""

    default_kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: Optional[ErrorKind] = None, path: Optional[str] = None):
        super().__init__(message)
        self.kind = kind or self.default_kind
        self.path = path

    def __str__(self) -> str:
        base = super().__str__()
        if self.path:
            return f"{base} [{self.kind.value}: {self.path}]"
        return f"{base} [{self.kind.value}]"


class DirectoryUnavailable(AuditError):
    default_kind = ErrorKind.UNREACHABLE


class DirectoryQueryError(AuditError):
    default_kind = ErrorKind.MALFORMED


class AclReadError(AuditError):
    pass


class AclWriteError(AuditError):
    pass


class PathUnreachable(AuditError):
    default_kind = ErrorKind.NOT_FOUND


def kind_from_winerror(winerror: Optional[int]) -> Optional[ErrorKind]:
    if winerror in (5, 1307, 1308):  # access denied, invalid owner
        return ErrorKind.ACCESS_DENIED
    if winerror in (2, 3, 53, 67, 1332):  # file/path/network name not found, no mapping
        return ErrorKind.NOT_FOUND
    if winerror in (64, 121, 1231):  # network name gone, semaphore timeout
        return ErrorKind.TRANSIENT
    return None


def kind_from_os_error(exc: OSError) -> ErrorKind:
    """Map an OSError to an ErrorKind using errno/winerror, not the text."""
    kind = kind_from_winerror(getattr(exc, "winerror", None))
    if kind is not None:
        return kind
    if isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.EPERM):
        return ErrorKind.ACCESS_DENIED
    if isinstance(exc, FileNotFoundError) or exc.errno == errno.ENOENT:
        return ErrorKind.NOT_FOUND
    if isinstance(exc, TimeoutError) or exc.errno == errno.ETIMEDOUT:
        return ErrorKind.TIMEOUT
    if exc.errno in (errno.EAGAIN, errno.EBUSY, errno.EIO):
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN
