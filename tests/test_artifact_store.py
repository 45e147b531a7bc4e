import os
import re
import tempfile
import unittest
from datetime import datetime

from artifact_store import ArtifactDirectory


class ArtifactDirectoryTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.store = ArtifactDirectory({"base_dir": os.path.join(tmp.name, "images")})

    def test_name_is_timestamp_and_extension(self) -> None:
        path = self.store.write(b"abc", "webp", when=datetime(2025, 3, 4, 5, 6, 7))
        self.assertEqual(path.name, "2025-03-04_05-06-07.webp")
        self.assertEqual(path.read_bytes(), b"abc")

    def test_default_stamp_format(self) -> None:
        path = self.store.write(b"x", ".jpg")
        self.assertRegex(path.name, re.compile(r"^\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}\.jpg$"))

    def test_same_second_never_overwrites(self) -> None:
        when = datetime(2025, 1, 1, 12, 0, 0)
        first = self.store.write(b"first", "webp", when=when)
        second = self.store.write(b"second", "webp", when=when)
        self.assertNotEqual(first, second)
        self.assertEqual(first.read_bytes(), b"first")
        self.assertEqual(second.name, "2025-01-01_12-00-00_1.webp")

    def test_different_seconds_do_not_collide(self) -> None:
        a = self.store.write(b"a", "webp", when=datetime(2025, 1, 1, 12, 0, 0))
        b = self.store.write(b"b", "webp", when=datetime(2025, 1, 1, 12, 0, 1))
        self.assertNotEqual(a.name, b.name)

    def test_list_is_newest_first_and_filtered(self) -> None:
        old = self.store.write(b"1", "webp", when=datetime(2025, 1, 1, 0, 0, 0))
        new = self.store.write(b"22", "jpg", when=datetime(2025, 1, 1, 0, 0, 1))
        os.utime(old, (1_000, 1_000))
        os.utime(new, (2_000, 2_000))
        (self.store.base_dir / "notes.txt").write_text("ignore me")
        (self.store.base_dir / ".hidden.webp.part").write_bytes(b"partial")

        entries = self.store.list_images()
        self.assertEqual([e.name for e in entries], [new.name, old.name])
        self.assertEqual([e.size for e in entries], [2, 1])
        self.assertEqual(self.store.latest().name, new.name)

    def test_latest_empty(self) -> None:
        self.assertIsNone(self.store.latest())
        self.assertEqual(self.store.list_images(), [])

    def test_resolve_rejects_outside_names(self) -> None:
        path = self.store.write(b"x", "webp", when=datetime(2025, 1, 1))
        self.assertEqual(self.store.resolve(path.name), path)
        for bad in ("../secret.webp", "", ".hidden.webp", "missing.webp", "a/b.webp"):
            self.assertIsNone(self.store.resolve(bad))


if __name__ == "__main__":
    unittest.main()
