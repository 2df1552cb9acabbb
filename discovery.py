"""Markdown file discovery and raw-text sources.

A *source* answers two questions for the viewer: which markdown files
exist (``list_files``) and what a given file contains (``fetch_text``).
``LocalSource`` walks a directory on this machine; ``RemoteSource`` asks
another running instance over HTTP.
"""

import logging
import os
import posixpath
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import requests

log = logging.getLogger(__name__)

ROOT_FOLDER = "root"
DEFAULT_EXCLUDED_DIRS = ("node_modules",)


class DiscoveryError(Exception):
    pass


class FetchError(Exception):

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _parse_timestamp(value) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class FileEntry:
    """One markdown file as reported by discovery. ``path`` is the identity."""

    path: str
    name: str
    folder: str = ROOT_FOLDER
    folder_path: str = ""
    size: int | None = None
    modified: datetime | None = None
    display_name: str = ""

    @property
    def label(self) -> str:
        return self.display_name or self.name

    def to_json(self) -> dict:
        return {
            "path": self.path,
            "name": self.name,
            "folder": self.folder,
            "folderPath": self.folder_path,
            "size": self.size,
            "modified": _format_timestamp(self.modified),
            "displayName": self.label,
        }

    @classmethod
    def from_json(cls, data: dict) -> "FileEntry":
        folder = data.get("folder") or ROOT_FOLDER
        folder_path = data.get("folderPath")
        if folder_path is None:
            folder_path = "" if folder == ROOT_FOLDER else folder
        name = data.get("name") or posixpath.basename(data["path"])
        return cls(
            path=data["path"],
            name=name,
            folder=folder,
            folder_path=folder_path,
            size=data.get("size"),
            modified=_parse_timestamp(data.get("modified")),
            display_name=data.get("displayName") or _strip_md(name),
        )


def _strip_md(name: str) -> str:
    return name[:-3] if name.endswith(".md") else name


def _fallback(path: str, display_name: str) -> FileEntry:
    folder_path = posixpath.dirname(path).lstrip("/")
    return FileEntry(
        path=path,
        name=posixpath.basename(path),
        folder=folder_path or ROOT_FOLDER,
        folder_path=folder_path,
        display_name=display_name,
    )


# Shown when discovery is unreachable.
FALLBACK_FILES = (
    _fallback("/README.md", "README"),
    _fallback("/sample-doc.md", "Sample Document"),
    _fallback("/getting-started.md", "Getting Started"),
    _fallback("/docs/user-guide.md", "User Guide"),
    _fallback("/docs/api-reference.md", "API Reference"),
    _fallback("/examples/example1.md", "Example 1"),
    _fallback("/examples/example2.md", "Example 2"),
)


def _name_key(value: str) -> tuple[str, str]:
    return (value.casefold(), value)


def sort_entries(entries) -> list[FileEntry]:
    """Root files first, then by folder, then by file name."""

    return sorted(
        entries,
        key=lambda e: (e.folder != ROOT_FOLDER, _name_key(e.folder), _name_key(e.name)),
    )


def _walk_markdown(root: Path, excluded_dirs: set[str]):

    stack = [(root, "")]
    while stack:
        directory, rel = stack.pop()
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as exc:
            if not rel:
                raise DiscoveryError(f"cannot scan {root}: {exc}") from exc
            log.warning("Failed to scan directory %s: %s", directory, exc)
            continue
        for entry in entries:
            if entry.name.startswith("."):
                continue
            child_rel = f"{rel}/{entry.name}" if rel else entry.name
            try:
                if entry.is_dir(follow_symlinks=False):
                    if entry.name not in excluded_dirs:
                        stack.append((Path(entry.path), child_rel))
                elif entry.is_file() and entry.name.endswith(".md"):
                    yield rel, entry.name, entry.stat()
            except OSError as exc:
                log.warning("Skipping %s: %s", entry.path, exc)


def discover_markdown_files(root: Path, excluded_dirs=DEFAULT_EXCLUDED_DIRS) -> list[FileEntry]:
    """Recursively list markdown files under ``root``.

    Unreadable subdirectories are skipped with a warning. An unreadable
    ``root`` raises :class:`DiscoveryError`.
    """

    files = []
    for rel, name, st in _walk_markdown(Path(root), set(excluded_dirs)):
        files.append(FileEntry(
            path="/" + (f"{rel}/{name}" if rel else name),
            name=name,
            folder=rel or ROOT_FOLDER,
            folder_path=rel,
            size=st.st_size,
            modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            display_name=_strip_md(name),
        ))
    return sort_entries(files)


def safe_root_path(root: Path, raw_path: str) -> Path | None:
    """Resolve a root-relative path, refusing anything outside ``root``."""

    raw_path = raw_path.lstrip("/")
    if not raw_path:
        return None
    try:
        base = Path(root).resolve()
        candidate = (base / raw_path).resolve()
        candidate.relative_to(base)
    except (ValueError, OSError):
        return None
    return candidate


class LocalSource:

    def __init__(self, root: Path, excluded_dirs=DEFAULT_EXCLUDED_DIRS):
        self.root = Path(root)
        self.excluded_dirs = tuple(excluded_dirs)

    def list_files(self) -> list[FileEntry]:
        return discover_markdown_files(self.root, self.excluded_dirs)

    def fetch_text(self, path: str) -> str:
        fpath = safe_root_path(self.root, path)
        if fpath is None:
            raise FetchError("forbidden path")
        if not fpath.is_file():
            raise FetchError("HTTP error! status: 404")
        try:
            return fpath.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise FetchError(str(exc)) from exc


class RemoteSource:
    """Discovery and raw text served by another instance at ``base_url``."""

    def __init__(self, base_url: str, session: requests.Session | None = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _get(self, path: str):
        return self.session.get(self.base_url + path, timeout=self.timeout)

    def list_files(self) -> list[FileEntry]:
        try:
            resp = self._get("/api/discover-markdown")
        except requests.RequestException as exc:
            raise DiscoveryError(str(exc)) from exc
        if not resp.ok:
            raise DiscoveryError(f"Server responded with {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise DiscoveryError(f"malformed discovery response: {exc}") from exc
        if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
            raise DiscoveryError("malformed discovery response: expected a list of file entries")
        try:
            return [FileEntry.from_json(item) for item in payload]
        except (KeyError, TypeError, AttributeError) as exc:
            raise DiscoveryError(f"malformed discovery response: {exc}") from exc

    def fetch_text(self, path: str) -> str:
        try:
            resp = self._get("/" + path.lstrip("/"))
        except requests.RequestException as exc:
            raise FetchError(str(exc)) from exc
        if not resp.ok:
            raise FetchError(f"HTTP error! status: {resp.status_code}")
        return resp.text
