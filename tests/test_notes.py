import tempfile
import unittest
from pathlib import Path

from skillvault.notes import NoteStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestNoteStore(unittest.TestCase):
    def test_set_get_keeps_created_at(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            clock = FakeClock()
            store = NoteStore(Path(td) / ".agent" / ".skill-notes.json", clock=clock)

            first = store.set("pdf", "use for invoices")
            clock.now = 200.0
            second = store.set("pdf.md", "use for reports")

            self.assertEqual(store.get("pdf"), "use for reports")
            self.assertEqual(first.created_at, 100_000)
            self.assertEqual(second.created_at, 100_000)
            self.assertEqual(second.updated_at, 200_000)
            self.assertEqual(list(store.all()), ["pdf"])

    def test_missing_and_delete(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = NoteStore(Path(td) / "notes.json")

            self.assertIsNone(store.get("nothing"))
            self.assertFalse(store.delete("nothing"))

            store.set("a", "x")
            store.set("b", "y")
            self.assertTrue(store.delete("a"))
            self.assertEqual(store.many(["a", "b", "c"]), {"b": "y"})

    def test_malformed_file_is_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "notes.json"
            path.write_text('["not", "an", "object"]', encoding="utf-8")
            store = NoteStore(path)

            self.assertEqual(store.all(), {})
            store.set("a", "x")
            self.assertEqual(store.get("a"), "x")


if __name__ == "__main__":
    unittest.main()
