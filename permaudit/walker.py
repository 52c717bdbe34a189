"""Walk a folder tree and classify every folder's ACL.

Usage:
  session = run_audit(root, provider, directory=CsvDirectoryService(Path('ad_export')))
  for f in session.findings: ...

The directory snapshot is loaded before any filesystem call, so a directory
outage fails fast with DirectoryUnavailable and touches nothing.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

from tqdm import tqdm

from permaudit.acl import AclProvider
from permaudit.classifier import classify_folder
from permaudit.config import AuditConfig
from permaudit.directory import DirectoryService, Snapshot, load_snapshot
from permaudit.errors import AclReadError, AuditError, ErrorKind, PathUnreachable
from permaudit.io_policy import as_audit_error, bounded_call
from permaudit.models import Finding, RedundantGrant


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FolderFailure:
    path: str
    stage: str  # "list" or "read"
    kind: ErrorKind
    message: str


@dataclass
class AuditSession:
    """Everything one audit run owns: root, snapshot, findings and failures."""

    root: str
    snapshot: Snapshot
    config: AuditConfig
    findings: List[Finding] = field(default_factory=list)
    failures: List[FolderFailure] = field(default_factory=list)
    folders_visited: int = 0
    cancelled: bool = False

    def by_folder(self) -> Dict[str, List[Finding]]:
        return findings_by_folder(self.findings)

    def by_principal(self) -> Dict[str, List[Finding]]:
        return findings_by_principal(self.findings)

    def summary(self) -> Dict[str, int]:
        counts = Counter(f.category.value for f in self.findings)
        return {
            "folders_visited": self.folders_visited,
            "folders_failed": len({f.path for f in self.failures}),
            "orphaned": counts.get("orphaned", 0),
            "disabled": counts.get("disabled", 0),
            "redundant": counts.get("redundant", 0),
            "directory_gaps": len(self.snapshot.gaps),
        }


def findings_by_folder(findings: List[Finding]) -> Dict[str, List[Finding]]:
    out: Dict[str, List[Finding]] = {}
    for f in findings:
        out.setdefault(f.path, []).append(f)
    return out


def findings_by_principal(findings: List[Finding]) -> Dict[str, List[Finding]]:
    """Index findings by every identity they name (user and via-group for redundancy)."""
    out: Dict[str, List[Finding]] = {}
    for f in findings:
        out.setdefault(f.principal, []).append(f)
        if isinstance(f, RedundantGrant):
            out.setdefault(f.via_group, []).append(f)
    return out


def _list_children(provider: AclProvider, path: str, config: AuditConfig) -> List[str]:
    return bounded_call(
        lambda: provider.list_children(path),
        op="list folder",
        path=path,
        error_cls=PathUnreachable,
        timeout=config.acl_timeout,
        retries=config.acl_retries,
        backoff=config.retry_backoff,
    )


def iter_folders(
    provider: AclProvider,
    root: str,
    session: AuditSession,
    cancel: Optional[threading.Event] = None,
) -> Iterator[str]:
    """Depth-first, every folder once, keyed by the provider's canonical path.

    Listing failures below the root are recorded on the session and the
    subtree is skipped; a listing failure on the root raises PathUnreachable.
    """
    stack = [root]
    visited: Set[str] = set()
    while stack:
        if cancel is not None and cancel.is_set():
            session.cancelled = True
            logger.warning("audit cancelled with %d folder(s) still queued", len(stack))
            return
        path = stack.pop()
        try:
            key = provider.canonical(path)
        except OSError:
            key = path
        if key in visited:
            logger.debug("already visited %s (link loop?)", path)
            continue
        visited.add(key)

        try:
            children = _list_children(provider, path, session.config)
        except AuditError as e:
            if path == root:
                raise PathUnreachable(f"cannot list audit root: {e}", e.kind, root) from e
            logger.warning("skipping subtree %s: %s", path, e)
            session.failures.append(FolderFailure(path, "list", e.kind, str(e)))
            children = []
        yield path
        stack.extend(reversed(children))


def audit_folder(
    provider: AclProvider, path: str, snapshot: Snapshot, config: AuditConfig
) -> Tuple[str, List[Finding], Optional[FolderFailure]]:
    try:
        entries = bounded_call(
            lambda: provider.read_acl(path),
            op="read ACL",
            path=path,
            error_cls=AclReadError,
            timeout=config.acl_timeout,
            retries=config.acl_retries,
            backoff=config.retry_backoff,
        )
    except AuditError as e:
        logger.warning("skipping %s: %s", path, e)
        return path, [], FolderFailure(path, "read", e.kind, str(e))
    findings = classify_folder(
        path,
        entries,
        snapshot,
        exclusions=config.excluded_compiled,
        transitive=config.transitive_membership,
    )
    return path, findings, None


def _check_root(provider: AclProvider, root: str) -> None:
    try:
        ok = provider.exists(root)
    except Exception as e:  # noqa: BLE001 - any provider failure here means no audit
        err = as_audit_error(e, PathUnreachable, "stat audit root", root)
        raise PathUnreachable(f"audit root unreachable: {err}", err.kind, root) from e
    if not ok:
        raise PathUnreachable("audit root does not exist", ErrorKind.NOT_FOUND, root)


def run_audit(
    root: str,
    provider: AclProvider,
    *,
    directory: Optional[DirectoryService] = None,
    snapshot: Optional[Snapshot] = None,
    config: Optional[AuditConfig] = None,
    cancel: Optional[threading.Event] = None,
    progress: bool = False,
) -> AuditSession:
    """Read-only audit of `root` and everything below it.

    Raises DirectoryUnavailable / DirectoryQueryError from the snapshot load
    and PathUnreachable for the root; every other failure is recorded on the
    returned session.
    """
    config = config or AuditConfig()
    if snapshot is None:
        if directory is None:
            raise ValueError("run_audit needs a directory service or a snapshot")
        snapshot = load_snapshot(
            directory,
            allow_partial=config.allow_partial_directory,
            timeout=config.directory_timeout,
        )

    _check_root(provider, root)
    session = AuditSession(root=root, snapshot=snapshot, config=config)
    folders = tqdm(iter_folders(provider, root, session, cancel), desc="auditing folders", unit="folder",
                   disable=not progress)

    results: List[Tuple[str, List[Finding], Optional[FolderFailure]]] = []
    if config.workers <= 1:
        for path in folders:
            results.append(audit_folder(provider, path, snapshot, config))
    else:
        with ThreadPoolExecutor(max_workers=config.workers, thread_name_prefix="permaudit-walk") as ex:
            futures: List[Future] = []
            for path in folders:
                futures.append(ex.submit(audit_folder, provider, path, snapshot, config))
            # merged here, in walk order, so findings need no lock
            results = [fut.result() for fut in futures]

    for _path, findings, failure in results:
        session.folders_visited += 1
        session.findings.extend(findings)
        if failure is not None:
            session.failures.append(failure)

    logger.info("audit of %s: %s", root, session.summary())
    return session
