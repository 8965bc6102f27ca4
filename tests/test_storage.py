import json
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest import mock

from archive import tree
from archive.errors import NotFoundError, StorageError
from archive.storage import BlobStore, MetadataStore


class MetadataStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "data" / "data.json"
        self.store = MetadataStore(self.path)

    def tearDown(self):
        self.tmp.cleanup()

    def test_initialize_creates_empty_document(self):
        self.store.initialize()
        self.assertTrue(self.path.exists())
        self.assertEqual(json.loads(self.path.read_text()), {"folders": [], "files": []})

    def test_initialize_keeps_existing_document(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps({"folders": [{"id": "a", "name": "A", "parentId": None}], "files": []}))
        self.store.initialize()
        self.assertEqual(len(self.store.read()["folders"]), 1)

    def test_missing_document_reads_empty(self):
        self.assertEqual(self.store.read(), {"folders": [], "files": []})

    def test_corrupt_document_reads_empty(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json")
        with self.assertLogs("archive.storage", level="WARNING"):
            self.assertEqual(self.store.read(), {"folders": [], "files": []})

    def test_non_object_document_reads_empty(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("[1, 2, 3]")
        self.assertEqual(self.store.read(), {"folders": [], "files": []})

    def test_missing_lists_are_repaired(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps({"folders": None}))
        self.assertEqual(self.store.read(), {"folders": [], "files": []})

    def test_non_object_entries_are_dropped(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps({
            "folders": [1, {"id": "a", "name": "A", "parentId": None}],
            "files": ["x", None],
        }))
        with self.assertLogs("archive.storage", level="WARNING"):
            document = self.store.read()
        self.assertEqual(document["folders"], [{"id": "a", "name": "A", "parentId": None}])
        self.assertEqual(document["files"], [])
        with self.assertRaises(NotFoundError):
            tree.update_folder(document, "x", name="y")

    def test_write_replaces_document(self):
        document = {"folders": [], "files": [{"id": "x", "name": "x.txt", "size": 1, "folderId": None, "type": "txt"}]}
        self.store.write(document)
        self.assertEqual(self.store.read(), document)
        self.assertFalse(self.path.with_suffix(".tmp").exists())

    def test_write_failure_raises_storage_error(self):
        self.store.initialize()
        with mock.patch.object(Path, "replace", side_effect=OSError("disk full")):
            with self.assertRaises(StorageError):
                self.store.write({"folders": [{"id": "a"}], "files": []})
        self.assertFalse(self.path.with_suffix(".tmp").exists())
        self.assertEqual(self.store.read(), {"folders": [], "files": []})

    def test_transaction_writes_changes(self):
        self.store.initialize()
        with self.store.transaction() as document:
            folder = tree.create_folder(document, "Docs")
        self.assertEqual(self.store.read()["folders"], [folder])

    def test_transaction_discards_changes_on_error(self):
        self.store.initialize()
        with self.assertRaises(NotFoundError):
            with self.store.transaction() as document:
                tree.create_folder(document, "Docs")
                tree.update_folder(document, "missing", name="x")
        self.assertEqual(self.store.read()["folders"], [])

    def test_sequential_creates_are_all_kept(self):
        self.store.initialize()
        created = []
        for name in ["first", "second"]:
            with self.store.transaction() as document:
                created.append(tree.create_folder(document, name)["id"])
        self.assertEqual([f["id"] for f in self.store.read()["folders"]], created)

    def test_threaded_transactions_are_serialized(self):
        self.store.initialize()
        original_read = self.store.read

        def slow_read():
            document = original_read()
            time.sleep(0.01)
            return document

        self.store.read = slow_read
        names = [f"folder{index}" for index in range(8)]
        barrier = threading.Barrier(len(names))
        errors = []

        def create(name):
            barrier.wait()
            try:
                with self.store.transaction() as document:
                    tree.create_folder(document, name)
            except Exception as error:  # pragma: no cover - reported below
                errors.append(error)

        threads = [threading.Thread(target=create, args=(name,)) for name in names]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        stored = sorted(f["name"] for f in original_read()["folders"])
        self.assertEqual(stored, sorted(names))

    def test_stale_write_loses_earlier_change(self):
        # Without coordination the last full-document write wins.
        self.store.initialize()
        stale = self.store.read()
        with self.store.transaction() as document:
            tree.create_folder(document, "first")
        tree.create_folder(stale, "second")
        self.store.write(stale)
        self.assertEqual([f["name"] for f in self.store.read()["folders"]], ["second"])


class BlobStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name) / "uploads"
        self.blobs = BlobStore(self.root)
        self.blobs.initialize()

    def tearDown(self):
        self.tmp.cleanup()

    def test_put_get_overwrite(self):
        self.blobs.put("abc", b"one")
        self.assertEqual(self.blobs.get("abc"), b"one")
        self.blobs.put("abc", b"two")
        self.assertEqual(self.blobs.get("abc"), b"two")
        self.assertEqual([p.name for p in self.root.iterdir()], ["abc"])

    def test_missing_blob(self):
        self.assertIsNone(self.blobs.get("nope"))
        self.assertFalse(self.blobs.exists("nope"))
        self.assertFalse(self.blobs.delete("nope"))

    def test_delete(self):
        self.blobs.put("abc", b"one")
        self.assertTrue(self.blobs.delete("abc"))
        self.assertFalse(self.blobs.exists("abc"))

    def test_ids_cannot_escape_root(self):
        (Path(self.tmp.name) / "secret").write_bytes(b"hidden")
        for blob_id in ["../secret", "..", ".", "", "a/b"]:
            with self.assertRaises(NotFoundError):
                self.blobs.path_for(blob_id)
            self.assertIsNone(self.blobs.get(blob_id))
            self.assertFalse(self.blobs.delete(blob_id))
        self.assertTrue((Path(self.tmp.name) / "secret").exists())

    def test_put_failure_raises_storage_error(self):
        with mock.patch.object(Path, "write_bytes", side_effect=OSError("read-only")):
            with self.assertRaises(StorageError):
                self.blobs.put("abc", b"one")


if __name__ == "__main__":
    unittest.main()
