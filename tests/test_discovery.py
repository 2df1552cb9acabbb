import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import requests

import discovery
from discovery import (
    FALLBACK_FILES,
    DiscoveryError,
    FetchError,
    FileEntry,
    LocalSource,
    RemoteSource,
    discover_markdown_files,
    safe_root_path,
)


def _write(root: Path, rel: str, text: str = "# doc\n") -> Path:
    target = root / rel
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(text, encoding="utf-8")
    return target


class DiscoverMarkdownFilesTests(unittest.TestCase):
    def test_lists_markdown_files_root_first_then_by_folder(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            _write(root, "zeta.md")
            _write(root, "Alpha.md")
            _write(root, "docs/guide.md")
            _write(root, "docs/api/ref.md")
            _write(root, "blog/post.md")
            _write(root, "notes.txt")

            files = discover_markdown_files(root)

            self.assertEqual(
                [f.path for f in files],
                ["/Alpha.md", "/zeta.md", "/blog/post.md", "/docs/guide.md", "/docs/api/ref.md"],
            )

    def test_entry_fields(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            _write(root, "docs/api/ref.md", "hello")
            _write(root, "readme.md", "hi")

            by_path = {f.path: f for f in discover_markdown_files(root)}

            ref = by_path["/docs/api/ref.md"]
            self.assertEqual(ref.name, "ref.md")
            self.assertEqual(ref.folder, "docs/api")
            self.assertEqual(ref.folder_path, "docs/api")
            self.assertEqual(ref.size, 5)
            self.assertEqual(ref.display_name, "ref")
            self.assertIsNotNone(ref.modified)

            readme = by_path["/readme.md"]
            self.assertEqual(readme.folder, "root")
            self.assertEqual(readme.folder_path, "")

    def test_skips_dot_entries_and_excluded_dirs(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            _write(root, "keep.md")
            _write(root, ".hidden.md")
            _write(root, ".git/notes.md")
            _write(root, "node_modules/pkg/README.md")
            _write(root, "vendor/lib.md")

            paths = [f.path for f in discover_markdown_files(root)]
            self.assertEqual(paths, ["/keep.md", "/vendor/lib.md"])

            paths = [f.path for f in discover_markdown_files(root, excluded_dirs=("vendor",))]
            self.assertEqual(paths, ["/keep.md", "/node_modules/pkg/README.md"])

    def test_unreadable_subtree_is_skipped_with_warning(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            _write(root, "a.md")
            _write(root, "broken/b.md")
            _write(root, "ok/c.md")
            real_scandir = os.scandir

            def flaky_scandir(path):
                if Path(path).name == "broken":
                    raise PermissionError("denied")
                return real_scandir(path)

            with mock.patch.object(discovery.os, "scandir", side_effect=flaky_scandir):
                with self.assertLogs("discovery", level="WARNING") as logs:
                    files = discover_markdown_files(root)

            self.assertEqual([f.path for f in files], ["/a.md", "/ok/c.md"])
            self.assertIn("broken", "\n".join(logs.output))

    def test_missing_root_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(DiscoveryError):
                discover_markdown_files(Path(tmp) / "nope")


class FileEntryJsonTests(unittest.TestCase):
    def test_json_uses_wire_names(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            _write(Path(tmp), "docs/x.md")
            data = discover_markdown_files(Path(tmp))[0].to_json()

        self.assertEqual(
            set(data),
            {"path", "name", "folder", "folderPath", "size", "modified", "displayName"},
        )
        self.assertTrue(data["modified"].endswith("Z"))
        self.assertEqual(FileEntry.from_json(data).modified.isoformat()[:19], data["modified"][:19])

    def test_from_json_derives_folder_path_when_absent(self) -> None:
        entry = FileEntry.from_json({"path": "/docs/a.md", "name": "a.md", "folder": "docs"})
        self.assertEqual(entry.folder_path, "docs")
        self.assertEqual(entry.display_name, "a")
        self.assertIsNone(entry.modified)

        root_entry = FileEntry.from_json({"path": "/b.md", "folder": "root"})
        self.assertEqual(root_entry.folder_path, "")
        self.assertEqual(root_entry.name, "b.md")

    def test_fallback_list(self) -> None:
        self.assertEqual(len(FALLBACK_FILES), 7)
        docs = [f for f in FALLBACK_FILES if f.folder == "docs"]
        self.assertEqual([f.display_name for f in docs], ["User Guide", "API Reference"])
        self.assertTrue(all(f.folder_path == "" for f in FALLBACK_FILES if f.folder == "root"))


class LocalSourceTests(unittest.TestCase):
    def test_fetch_text(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            _write(root, "docs/a.md", "# A\n")
            source = LocalSource(root)

            self.assertEqual(source.fetch_text("/docs/a.md"), "# A\n")
            with self.assertRaises(FetchError) as ctx:
                source.fetch_text("/docs/missing.md")
            self.assertIn("404", ctx.exception.reason)

    def test_refuses_paths_outside_root(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp) / "served"
            root.mkdir()
            _write(Path(tmp), "secret.md")

            self.assertIsNone(safe_root_path(root, "../secret.md"))
            with self.assertRaises(FetchError):
                LocalSource(root).fetch_text("/../secret.md")


def _response(status: int, payload=None, text: str = ""):
    resp = mock.Mock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.json.return_value = payload
    resp.text = text
    return resp


class RemoteSourceTests(unittest.TestCase):
    def test_list_files_parses_response(self) -> None:
        session = mock.Mock()
        session.get.return_value = _response(200, [
            {"path": "/a.md", "name": "a.md", "folder": "root", "folderPath": "",
             "size": 3, "modified": "2024-01-02T03:04:05.000Z", "displayName": "a"},
        ])

        files = RemoteSource("http://example.test/", session=session).list_files()

        session.get.assert_called_once_with("http://example.test/api/discover-markdown", timeout=10.0)
        self.assertEqual(files[0].path, "/a.md")
        self.assertEqual(files[0].modified.year, 2024)

    def test_server_error_raises_discovery_error(self) -> None:
        session = mock.Mock()
        session.get.return_value = _response(500, {"error": "boom"})

        with self.assertRaises(DiscoveryError):
            RemoteSource("http://example.test", session=session).list_files()

    def test_malformed_payload_raises_discovery_error(self) -> None:
        for payload in ({"error": "nope"}, [None], ["/a.md"], [{"name": "a.md"}], None):
            session = mock.Mock()
            session.get.return_value = _response(200, payload)
            with self.subTest(payload=payload):
                with self.assertRaises(DiscoveryError):
                    RemoteSource("http://example.test", session=session).list_files()

    def test_network_error_raises_discovery_error(self) -> None:
        session = mock.Mock()
        session.get.side_effect = requests.ConnectionError("refused")

        with self.assertRaises(DiscoveryError):
            RemoteSource("http://example.test", session=session).list_files()

    def test_fetch_text(self) -> None:
        session = mock.Mock()
        session.get.side_effect = [_response(200, text="# hi"), _response(404)]
        source = RemoteSource("http://example.test", session=session)

        self.assertEqual(source.fetch_text("/docs/a.md"), "# hi")
        with self.assertRaises(FetchError) as ctx:
            source.fetch_text("/docs/b.md")
        self.assertEqual(ctx.exception.reason, "HTTP error! status: 404")


if __name__ == "__main__":
    unittest.main()
