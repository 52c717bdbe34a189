#!/usr/bin/env python3
"""ACL provider over folder ACL JSON exports.

Reads the JSON produced by the share collection scripts: either one file or a
run directory containing `folderacls/*.json`. Each folder object carries a
path (`Path`, `UncPath`, `FullName` or `folder_path`) and an ACE list
(`Access`, `Acl`, `Aces`, ...). ACEs use `Identity`/`Sid`, `Rights`, `Type`
and `IsInherited`, with the usual exporter key variants.

A folder object with an `Error` key (and optional `ErrorKind`) marks a folder
whose ACL could not be collected; reading it raises AclReadError.

Writes are applied in memory and persisted with `save()`.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from permaudit.acl import AclProvider, entry_from_record, entry_to_record
from permaudit.errors import AclReadError, AclWriteError, ErrorKind, PathUnreachable
from permaudit.models import AccessEntry


logger = logging.getLogger(__name__)

ACL_KEYS = ("acl", "acls", "aces", "acllist", "access", "accesslist", "rights", "permissions")
PATH_KEYS = ("path", "uncpath", "fullname", "folder_path", "folderpath")


def find_folderacl_files(run_path: Path) -> List[Path]:
    if run_path.is_file():
        return [run_path]
    p1 = run_path / "folderacls"
    if p1.exists():
        return sorted(p1.glob("*.json"))
    return sorted(run_path.rglob("*.json"))


def _get_ci(d: Dict[str, Any], *keys: str) -> Any:
    low = {k.lower(): v for k, v in d.items()}
    for key in keys:
        v = low.get(key)
        if v is not None and v != "":
            return v
    return None


def find_folder_nodes(obj: Any) -> Iterable[Dict[str, Any]]:
    """Yield every dict that carries a folder path and an ACE list or an error."""
    if isinstance(obj, dict):
        has_path = _get_ci(obj, *PATH_KEYS) is not None
        has_acl = any(k.lower() in ACL_KEYS and isinstance(v, list) for k, v in obj.items())
        has_error = _get_ci(obj, "error") is not None
        if has_path and (has_acl or has_error):
            yield obj
            return
        for v in obj.values():
            yield from find_folder_nodes(v)
    elif isinstance(obj, list):
        for item in obj:
            yield from find_folder_nodes(item)


def split_path(path: str) -> List[str]:
    return [seg for seg in path.replace("/", "\\").split("\\") if seg]


def normalize_path(path: str) -> str:
    p = str(path).strip()
    if p.startswith("\\\\") or p.startswith("//"):
        return "\\\\" + "\\".join(split_path(p))
    if "\\" in p:
        return "\\".join(split_path(p))
    if p.startswith("/"):
        return "/" + "/".join(split_path(p))
    return "/".join(split_path(p))


def parent_path(path: str) -> Optional[str]:
    p = normalize_path(path)
    sep = "/" if p.startswith("/") or ("\\" not in p and "/" in p) else "\\"
    idx = p.rfind(sep)
    if idx <= 0 or (p.startswith("\\\\") and idx <= 1):
        return None
    return p[:idx]


class _Folder:
    __slots__ = ("path", "node", "entries", "error", "error_kind")

    def __init__(self, path: str, node: Dict[str, Any]):
        self.path = path
        self.node = node
        self.entries: Optional[List[AccessEntry]] = None
        self.error: Optional[str] = None
        self.error_kind = ErrorKind.UNKNOWN


class JsonAclProvider(AclProvider):
    def __init__(self, source: Path):
        self.source = Path(source)
        self._folders: Dict[str, _Folder] = {}
        self._children: Optional[Dict[str, List[str]]] = None
        self._dirty = False
        self._load()

    @classmethod
    def from_records(cls, records: List[Dict[str, Any]]) -> "JsonAclProvider":
        """Build a provider from in-memory folder records (same shape as the files)."""
        inst = cls.__new__(cls)
        inst.source = Path("<memory>")
        inst._folders = {}
        inst._children = None
        inst._dirty = False
        inst._index(records, "<memory>")
        return inst

    def _load(self) -> None:
        if not self.source.exists():
            raise PathUnreachable("ACL export not found", ErrorKind.NOT_FOUND, str(self.source))
        for f in find_folderacl_files(self.source):
            try:
                with open(f, "r", encoding="utf-8-sig") as fh:
                    data = json.load(fh)
            except (OSError, ValueError) as e:
                logger.warning("failed to parse %s: %s", f, e)
                continue
            self._index(data, str(f))
        logger.info("loaded %d folders from %s", len(self._folders), self.source)

    def _index(self, data: Any, source_file: str) -> None:
        for node in find_folder_nodes(data):
            path = normalize_path(str(_get_ci(node, *PATH_KEYS)))
            key = self.canonical(path)
            if key in self._folders:
                logger.debug("duplicate folder %s in %s, keeping last", path, source_file)
            folder = _Folder(path, node)
            err = _get_ci(node, "error")
            if err is not None:
                folder.error = str(err)
                kind = _get_ci(node, "errorkind")
                try:
                    folder.error_kind = ErrorKind(str(kind).lower()) if kind else ErrorKind.UNKNOWN
                except ValueError:
                    folder.error_kind = ErrorKind.UNKNOWN
            self._folders[key] = folder
        self._children = None

    def _tree(self) -> Dict[str, List[str]]:
        # each folder hangs off its nearest collected ancestor, so a sparse
        # export (missing intermediate levels) is still reachable from the root
        if self._children is None:
            children: Dict[str, List[str]] = {}
            for folder in self._folders.values():
                parent = parent_path(folder.path)
                while parent is not None and self.canonical(parent) not in self._folders:
                    parent = parent_path(parent)
                if parent is not None:
                    children.setdefault(self.canonical(parent), []).append(folder.path)
            self._children = children
        return self._children

    def _folder(self, path: str) -> _Folder:
        f = self._folders.get(self.canonical(path))
        if f is None:
            raise PathUnreachable("folder not in export", ErrorKind.NOT_FOUND, path)
        return f

    def exists(self, path: str) -> bool:
        return self.canonical(path) in self._folders

    def canonical(self, path: str) -> str:
        return normalize_path(path).replace("/", "\\").lower()

    def list_children(self, path: str) -> List[str]:
        self._folder(path)
        return list(self._tree().get(self.canonical(path), []))

    def read_acl(self, path: str) -> List[AccessEntry]:
        f = self._folder(path)
        if f.error is not None:
            raise AclReadError(f"ACL not collected: {f.error}", f.error_kind, path)
        if f.entries is None:
            acl_list: List[Any] = []
            for k, v in f.node.items():
                if k.lower() in ACL_KEYS and isinstance(v, list):
                    acl_list = v
                    break
            entries: List[AccessEntry] = []
            for ace in acl_list:
                if not isinstance(ace, dict):
                    raise AclReadError(f"malformed ACE {ace!r}", ErrorKind.MALFORMED, path)
                try:
                    entries.append(entry_from_record(ace))
                except ValueError as e:
                    raise AclReadError(f"malformed ACE: {e}", ErrorKind.MALFORMED, path) from e
            f.entries = entries
        return list(f.entries)

    def write_acl(self, path: str, entries: List[AccessEntry]) -> None:
        try:
            f = self._folder(path)
        except PathUnreachable as e:
            raise AclWriteError("cannot write ACL of unknown folder", ErrorKind.NOT_FOUND, path) from e
        if f.error is not None:
            raise AclWriteError(f"ACL not writable: {f.error}", f.error_kind, path)
        f.entries = list(entries)
        self._dirty = True

    @property
    def dirty(self) -> bool:
        return self._dirty

    def to_records(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for f in self._folders.values():
            if f.error is not None:
                out.append({"Path": f.path, "Error": f.error, "ErrorKind": f.error_kind.value})
                continue
            entries = self.read_acl(f.path)
            out.append({"Path": f.path, "Access": [entry_to_record(e) for e in entries]})
        return out

    def save(self, out_path: Path) -> Path:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with out_path.open("w", encoding="utf-8") as fh:
            json.dump(self.to_records(), fh, indent=2, ensure_ascii=False)
        self._dirty = False
        return out_path
