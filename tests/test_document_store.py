import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from calnotes.document_store import DocumentStoreError, MarkdownDocumentStore, normalize_document_path


class MarkdownDocumentStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.store = MarkdownDocumentStore(self.root)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_create_and_list_documents(self) -> None:
        path = self.store.create("Meetings/Standup 2024-03-04.md", {"title": "Standup"}, "# Standup\n")
        self.store.create("Inbox.md", {"title": "Inbox"}, "")
        (self.root / "notes.txt").write_text("ignored", encoding="utf-8")

        self.assertEqual(path, "Meetings/Standup 2024-03-04.md")
        self.assertEqual(self.store.list_documents(), ["Inbox.md", "Meetings/Standup 2024-03-04.md"])
        self.assertEqual(self.store.read_fields(path), {"title": "Standup"})

    def test_create_refuses_existing_path(self) -> None:
        self.store.create("a.md", {"title": "A"}, "")
        with self.assertRaises(FileExistsError):
            self.store.create("a.md", {"title": "B"}, "")
        self.assertEqual(self.store.read_fields("a.md"), {"title": "A"})

    def test_write_fields_merge_only_writes_when_mutated(self) -> None:
        self.store.create("a.md", {"title": "A", "status": "todo"}, "body\n")
        before = (self.root / "a.md").stat().st_mtime_ns

        self.assertFalse(self.store.write_fields_merge("a.md", lambda fields: False))
        self.assertEqual((self.root / "a.md").stat().st_mtime_ns, before)

        def mutate(fields: dict) -> bool:
            fields["status"] = "done"
            return True

        self.assertTrue(self.store.write_fields_merge("a.md", mutate))
        self.assertEqual(self.store.read_fields("a.md"), {"title": "A", "status": "done"})
        self.assertTrue((self.root / "a.md").read_text(encoding="utf-8").endswith("body\n"))
        self.assertFalse((self.root / ".a.md.tmp").exists())

    def test_write_fields_merge_falls_back_when_replace_is_busy(self) -> None:
        self.store.create("a.md", {"title": "A"}, "")
        original_replace = Path.replace

        def replace_side_effect(self: Path, target: Path) -> Path:
            if str(self).endswith(".tmp"):
                raise OSError(errno.EBUSY, "Device or resource busy")
            return original_replace(self, target)

        def mutate(fields: dict) -> bool:
            fields["title"] = "B"
            return True

        with mock.patch("pathlib.Path.replace", new=replace_side_effect):
            self.assertTrue(self.store.write_fields_merge("a.md", mutate))
        self.assertEqual(self.store.read_fields("a.md"), {"title": "B"})

    def test_unreadable_frontmatter_reads_as_none(self) -> None:
        (self.root / "broken.md").write_text("---\ntitle: [unclosed\n---\n", encoding="utf-8")
        self.assertIsNone(self.store.read_fields("broken.md"))
        with self.assertRaises(DocumentStoreError):
            self.store.write_fields_merge("broken.md", lambda fields: True)

    def test_move_and_delete(self) -> None:
        self.store.create("a.md", {"title": "A"}, "")
        self.store.create("Archive/a.md", {"title": "Old"}, "")
        with self.assertRaises(FileExistsError):
            self.store.move("a.md", "Archive/a.md")

        new_path = self.store.move("a.md", "Archive/a (1).md")
        self.assertEqual(new_path, "Archive/a (1).md")
        self.assertFalse(self.store.exists("a.md"))
        self.store.delete(new_path)
        self.assertFalse(self.store.exists(new_path))
        with self.assertRaises(DocumentStoreError):
            self.store.delete(new_path)

    def test_paths_cannot_escape_root(self) -> None:
        self.assertEqual(normalize_document_path("./a//b\\c.md"), "a/b/c.md")
        with self.assertRaises(DocumentStoreError):
            normalize_document_path("../outside.md")


if __name__ == "__main__":
    unittest.main()
