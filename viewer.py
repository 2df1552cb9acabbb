"""Tree and focus state for one browser viewing the markdown root.

Nothing here touches the DOM. The browser page draws whatever
:meth:`ViewerContext.state` returns and forwards clicks and keys back.
"""

import logging
import threading
from dataclasses import dataclass, field, replace

from content import ContentLoader, LoadResult
from discovery import FALLBACK_FILES, ROOT_FOLDER, DiscoveryError, FileEntry

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeSet:
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    modified: tuple[str, ...] = ()
    first: bool = False

    def __bool__(self) -> bool:
        return self.first or bool(self.added or self.removed or self.modified)


def detect_changes(old, new) -> ChangeSet:
    """Compare two snapshots by path and modification time."""

    if not old:
        return ChangeSet(added=tuple(f.path for f in new), first=True)
    old_by_path = {f.path: f for f in old}
    new_paths = {f.path for f in new}
    added = tuple(f.path for f in new if f.path not in old_by_path)
    removed = tuple(f.path for f in old if f.path not in new_paths)
    modified = []
    for f in new:
        prev = old_by_path.get(f.path)
        if prev is not None and f.modified and prev.modified and f.modified > prev.modified:
            modified.append(f.path)
    return ChangeSet(added=added, removed=removed, modified=tuple(modified))


def _label_key(entry: FileEntry):
    return (entry.label.casefold(), entry.label, entry.path)


def _name_key(entry: FileEntry):
    return (entry.name.casefold(), entry.name, entry.path)


@dataclass
class FolderStructure:
    files: list[FileEntry] = field(default_factory=list)
    folders: dict[str, "FolderStructure"] = field(default_factory=dict)

    def sorted_folders(self):
        return sorted(self.folders.items(), key=lambda kv: (kv[0].casefold(), kv[0]))

    def to_json(self) -> dict:
        return {
            "files": [f.path for f in self.files],
            "folders": {name: node.to_json() for name, node in self.sorted_folders()},
        }


def _sort_node(node: FolderStructure, key):
    node.files.sort(key=key)
    node.folders = dict(node.sorted_folders())
    for child in node.folders.values():
        _sort_node(child, _label_key)


def build_folder_structure(files) -> FolderStructure:
    """Nest a flat file list into folders.

    Root files are ordered by name, files inside folders by display name.
    The result does not depend on the order of ``files``.
    """

    structure = FolderStructure()
    for entry in files:
        current = structure
        if entry.folder != ROOT_FOLDER:
            for part in entry.folder_path.split("/"):
                if not part:
                    continue
                current = current.folders.setdefault(part, FolderStructure())
        current.files.append(entry)
    _sort_node(structure, _name_key)
    return structure


def visible_files(structure: FolderStructure, collapsed=frozenset(), prefix: str = "") -> list[FileEntry]:
    """Depth-first file rows, skipping the contents of collapsed folders."""

    rows = list(structure.files)
    for name, node in structure.sorted_folders():
        folder_path = f"{prefix}/{name}" if prefix else name
        if folder_path in collapsed:
            continue
        rows.extend(visible_files(node, collapsed, folder_path))
    return rows


def _trim(value: float) -> str:
    return f"{value:.1f}".rstrip("0").rstrip(".")


def format_file_size(size: int) -> str:
    if size == 0:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB"):
        if value < 1024:
            return f"{_trim(value)} {unit}"
        value /= 1024
    return f"{_trim(value)} MB"


def _file_row(entry: FileEntry) -> dict:
    row = entry.to_json()
    title = ""
    if entry.modified is not None:
        title = f"Last modified: {entry.modified.date().isoformat()}"
    if entry.size:
        title += f" ({format_file_size(entry.size)})"
    row["title"] = title.strip()
    dot = entry.name.rfind(".")
    row["stem"], row["extension"] = (entry.name[:dot], entry.name[dot:]) if dot > 0 else (entry.name, "")
    return row


def tree_to_json(structure: FolderStructure, collapsed=frozenset(), prefix: str = "") -> dict:
    folders = []
    for name, node in structure.sorted_folders():
        folder_path = f"{prefix}/{name}" if prefix else name
        folders.append({
            "name": name,
            "path": folder_path,
            "collapsed": folder_path in collapsed,
            **tree_to_json(node, collapsed, folder_path),
        })
    return {"files": [_file_row(f) for f in structure.files], "folders": folders}


@dataclass(frozen=True)
class KeyResult:
    handled: bool
    open_path: str | None = None


class TreeFocus:
    """Keyboard focus over the visible file rows.

    ``focus_index`` is -1 while unfocused. Methods that move focus return
    the path that should be opened, or None when nothing needs loading.
    """

    def __init__(self):
        self.focus_index = -1
        self.focused_path: str | None = None

    @property
    def focused(self) -> bool:
        return self.focus_index >= 0

    def _set(self, index: int, rows):
        if 0 <= index < len(rows):
            self.focus_index = index
            self.focused_path = rows[index].path
        else:
            self.clear()

    def clear(self):
        self.focus_index = -1
        self.focused_path = None

    def click(self, index: int, rows) -> str | None:
        self._set(index, rows)
        return self.focused_path

    def move(self, delta: int, rows, current_path: str | None) -> str | None:
        if not rows:
            return None
        if not self.focused:
            index = 0 if delta > 0 else len(rows) - 1
        else:
            index = max(0, min(self.focus_index + delta, len(rows) - 1))
        self._set(index, rows)
        if self.focused_path != current_path:
            return self.focused_path
        return None

    def activate(self, rows) -> str | None:
        if not self.focused or self.focus_index >= len(rows):
            return None
        return rows[self.focus_index].path

    def handle_key(self, key: str, rows, current_path: str | None) -> KeyResult:
        if key == "ArrowDown":
            return KeyResult(True, self.move(1, rows, current_path))
        if key == "ArrowUp":
            return KeyResult(True, self.move(-1, rows, current_path))
        if key == "Enter":
            return KeyResult(True, self.activate(rows))
        return KeyResult(False)

    def resolve(self, rows, current_path: str | None):
        """Re-find focus after the rows were rebuilt."""

        paths = [r.path for r in rows]
        for candidate in (self.focused_path, current_path):
            if candidate is not None and candidate in paths:
                self._set(paths.index(candidate), rows)
                return
        self.clear()

    def to_json(self) -> dict:
        return {"index": self.focus_index, "path": self.focused_path}


class ViewerContext:
    """Everything one browser tab needs: snapshot, tree, focus, open file."""

    def __init__(self, source):
        self.source = source
        self.loader = ContentLoader(source)
        self.focus = TreeFocus()
        self.files: tuple[FileEntry, ...] = ()
        self.structure = FolderStructure()
        self.rows: list[FileEntry] = []
        self.collapsed: set[str] = set()
        self.current_path: str | None = None
        self.fallback = False
        self._lock = threading.RLock()

    def discover(self) -> tuple[FileEntry, ...]:
        try:
            files = tuple(self.source.list_files())
            self.fallback = False
        except DiscoveryError as exc:
            log.warning("Server-side discovery failed, using fallback list: %s", exc)
            files = FALLBACK_FILES
            self.fallback = True
        return files

    def poll(self) -> ChangeSet:
        files = self.discover()
        with self._lock:
            changes = detect_changes(self.files, files)
            if changes.added and not changes.first:
                log.info("Added files: %s", list(changes.added))
            if changes.removed:
                log.info("Removed files: %s", list(changes.removed))
            if changes.modified:
                log.info("Modified files: %s", list(changes.modified))
            if changes:
                self.files = files
                self.structure = build_folder_structure(files)
                self._refresh_rows()
        return changes

    def _refresh_rows(self):
        self.rows = visible_files(self.structure, self.collapsed)
        self.focus.resolve(self.rows, self.current_path)

    def toggle_folder(self, folder_path: str):
        with self._lock:
            if folder_path in self.collapsed:
                self.collapsed.discard(folder_path)
            else:
                self.collapsed.add(folder_path)
            self._refresh_rows()

    def row_index(self, path: str) -> int:
        for i, row in enumerate(self.rows):
            if row.path == path:
                return i
        return -1

    def select(self, path: str) -> str | None:
        with self._lock:
            return self.focus.click(self.row_index(path), self.rows)

    def handle_key(self, key: str) -> KeyResult:
        with self._lock:
            return self.focus.handle_key(key, self.rows, self.current_path)

    def _entry(self, path: str) -> FileEntry | None:
        for entry in self.files:
            if entry.path == path:
                return entry
        return None

    def load(self, path: str) -> LoadResult:
        entry = self._entry(path)
        result = self.loader.load(path, entry.name if entry else None)
        with self._lock:
            if not self.loader.is_current(result.generation):
                return replace(result, stale=True)
            self.current_path = path
        return result

    def state(self, changes: ChangeSet | None = None) -> dict:
        with self._lock:
            return {
                "changed": bool(changes) if changes is not None else False,
                "fallback": self.fallback,
                "tree": tree_to_json(self.structure, self.collapsed),
                "rows": [r.path for r in self.rows],
                "focus": self.focus.to_json(),
                "current": self.current_path,
            }
