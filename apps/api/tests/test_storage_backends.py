#!/usr/bin/env python3

from __future__ import annotations

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from PIL import Image

from apps.api.tilepack_api.storage import atlases as atlas_storage
from apps.api.tilepack_api.storage import object_index
from apps.api.tilepack_api.storage.atlases import FileSystemAtlasStore
from apps.api.tilepack_api.storage.object_index import (
    JsonFileObjectIndexStore,
    SQLiteObjectIndexStore,
)
from packages.tilepack_core.atlas.engine import AtlasPackingEngine, SaveItem
from packages.tilepack_core.atlas.errors import (
    DecodeError,
    IndexConflictError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from packages.tilepack_core.atlas.records import TileIndexRecord

SAMPLE_DOCUMENT = {
    "7f0c": [{"t": "gen1", "i": ["0-3", "9"], "a": 2, "b": 2, "n": "tree", "c": "nature"}],
    "91aa": [{"t": "gen2", "i": ["0"], "a": 1, "b": 1}],
}


class JsonIndexStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "json" / "objectData.json"
        self.store = JsonFileObjectIndexStore(self.path)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_missing_file_reads_empty(self) -> None:
        self.assertEqual(self.store.get_all(), {})
        self.assertEqual(self.store.revision(), object_index.EMPTY_REVISION)

    def test_init_db_creates_empty_document(self) -> None:
        self.store.init_db()
        self.assertEqual(json.loads(self.path.read_text(encoding="utf-8")), {})

    def test_reads_object_data_layout(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps(SAMPLE_DOCUMENT), encoding="utf-8")

        records = self.store.get_all()
        tree = records["7f0c"]
        self.assertEqual(tree.tileset_name, "gen1")
        self.assertEqual(tree.frame_indices(), [0, 1, 2, 3, 9])
        self.assertEqual((tree.width_span, tree.height_span), (2, 2))
        self.assertEqual(tree.metadata, {"n": "tree", "c": "nature"})

    def test_put_all_round_trips_document_shape(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps(SAMPLE_DOCUMENT), encoding="utf-8")

        self.store.put_all(self.store.get_all())
        self.assertEqual(json.loads(self.path.read_text(encoding="utf-8")), SAMPLE_DOCUMENT)
        self.assertFalse(self.path.with_suffix(".json.tmp").exists())

    def test_revision_changes_on_write(self) -> None:
        self.store.init_db()
        before = self.store.revision()
        self.store.put_all({"x": TileIndexRecord("x", "gen1", ["0"], 1, 1)}, expected_revision=before)
        self.assertNotEqual(self.store.revision(), before)

    def test_stale_revision_is_rejected(self) -> None:
        self.store.init_db()
        stale = self.store.revision()
        self.store.put_all({"x": TileIndexRecord("x", "gen1", ["0"], 1, 1)})
        with self.assertRaises(IndexConflictError):
            self.store.put_all({}, expected_revision=stale)
        self.assertIn("x", self.store.get_all())

    def test_invalid_json_fails_closed(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(StoreError) as ctx:
            self.store.get_all()
        self.assertEqual(ctx.exception.error_code, "malformed_index")

    def test_one_entry_per_tileset_lists_fail_closed(self) -> None:
        self.path.parent.mkdir(parents=True)
        document = {
            "x": [
                {"t": "gen1", "i": ["0"], "a": 1, "b": 1},
                {"t": "gen2", "i": ["4"], "a": 1, "b": 1},
            ]
        }
        self.path.write_text(json.dumps(document), encoding="utf-8")
        with self.assertRaises(StoreError) as ctx:
            self.store.get_all()
        self.assertEqual(ctx.exception.error_code, "malformed_index")
        self.assertIn("exactly one object", str(ctx.exception))

    def test_operation_lock_excludes_other_store_instances(self) -> None:
        other = JsonFileObjectIndexStore(self.path, lock_timeout=0.1)
        with self.store.operation_lock():
            with self.assertRaises(IndexConflictError) as ctx:
                with other.operation_lock():
                    pass
            self.assertEqual(ctx.exception.error_code, "index_locked")
            with self.assertRaises(IndexConflictError):
                other.put_all({})
            # The holder itself can still write.
            self.store.put_all({"x": TileIndexRecord("x", "gen1", ["0"], 1, 1)})
        other.put_all({})
        self.assertEqual(other.get_all(), {})

    def test_malformed_record_fails_closed(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps({"x": [{"i": ["0-3"], "a": 1, "b": 1}]}), encoding="utf-8")
        with self.assertRaises(StoreError) as ctx:
            self.store.get_all()
        self.assertEqual(ctx.exception.error_code, "malformed_index")


    def test_legacy_png_suffix_is_normalised(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps({"x": [{"t": " gen1.PNG ", "i": ["0"], "a": 1, "b": 1}]}), encoding="utf-8")
        self.assertEqual(self.store.get_all()["x"].tileset_name, "gen1")


class SQLiteIndexStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SQLiteObjectIndexStore(Path(self.tmp.name) / "index.db")
        self.store.init_db()

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_put_and_get_preserve_order_and_metadata(self) -> None:
        records = {
            "b": TileIndexRecord("b", "gen1", ["2"], 1, 1, {"n": "rock"}),
            "a": TileIndexRecord("a", "gen1", ["0-1"], 2, 1),
        }
        self.store.put_all(records)
        loaded = self.store.get_all()
        self.assertEqual(list(loaded), ["b", "a"])
        self.assertEqual(loaded["b"].metadata, {"n": "rock"})
        self.assertEqual(loaded["a"].frame_ranges, ["0-1"])

    def test_revision_compare_and_swap(self) -> None:
        self.assertEqual(self.store.revision(), "0")
        self.store.put_all({}, expected_revision="0")
        self.assertEqual(self.store.revision(), "1")
        with self.assertRaises(IndexConflictError):
            self.store.put_all({"x": TileIndexRecord("x", "gen1", ["0"], 1, 1)}, expected_revision="0")
        self.assertEqual(self.store.get_all(), {})


class FileSystemAtlasStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name) / "tiles"
        self.store = FileSystemAtlasStore(self.root)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_missing_atlas(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            self.store.read("gen1")
        self.assertEqual(ctx.exception.error_code, "atlas_not_found")
        self.assertFalse(self.store.exists("gen1"))

    def test_write_then_read(self) -> None:
        image = Image.new("RGBA", (2400, 16), (0, 0, 0, 0))
        image.putpixel((5, 5), (10, 20, 30, 255))
        self.store.write("gen1", image)

        self.assertTrue((self.root / "gen1.png").is_file())
        self.assertFalse((self.root / "gen1.png.tmp").exists())
        loaded = self.store.read("gen1.png")
        self.assertEqual(loaded.mode, "RGBA")
        self.assertEqual(loaded.getpixel((5, 5)), (10, 20, 30, 255))

    def test_corrupt_atlas(self) -> None:
        self.root.mkdir(parents=True)
        (self.root / "gen1.png").write_bytes(b"garbage")
        with self.assertRaises(DecodeError) as ctx:
            self.store.read("gen1")
        self.assertEqual(ctx.exception.atlas_name, "gen1")

    def test_path_traversal_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.path_for("../outside")

    def test_list_names_ignores_foreign_files(self) -> None:
        self.root.mkdir(parents=True)
        for name in ("gen2", "gen1"):
            self.store.write(name, Image.new("RGBA", (16, 16)))
        (self.root / "notes.txt").write_text("x", encoding="utf-8")
        (self.root / "bad name.png").write_bytes(b"")
        self.assertEqual(self.store.list_names(), ["gen1", "gen2"])

    def test_unaddressable_name_reads_as_missing(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            self.store.read("old tiles")
        self.assertEqual(ctx.exception.error_code, "atlas_not_found")
        self.assertFalse(self.store.exists("old tiles"))

    def test_delete_isolates_unaddressable_atlas(self) -> None:
        index = JsonFileObjectIndexStore(Path(self.tmp.name) / "objectData.json")
        engine = AtlasPackingEngine(index, self.store)
        sheet = Image.new("RGBA", (16, 16), (0, 0, 200, 255))
        gone, kept = engine.save(
            "gen2",
            [SaveItem(image=sheet, a_coords=[0], b_coords=[0]), SaveItem(image=sheet, a_coords=[0], b_coords=[0])],
        ).uids
        records = index.get_all()
        records["old"] = TileIndexRecord("old", "old tiles", ["0"], 1, 1)
        index.put_all(records)

        outcome = engine.delete(["old", gone])
        self.assertEqual(list(outcome.failed), ["old tiles"])
        self.assertIsInstance(outcome.failed["old tiles"], NotFoundError)
        self.assertEqual(outcome.committed_atlases, ["gen2"])
        records = index.get_all()
        self.assertIn("old", records)
        self.assertNotIn(gone, records)
        self.assertEqual(records[kept].frame_ranges, ["0"])

    def test_engine_over_disk_stores(self) -> None:
        index = JsonFileObjectIndexStore(Path(self.tmp.name) / "objectData.json")
        engine = AtlasPackingEngine(index, self.store)
        sheet = Image.new("RGBA", (32, 16), (200, 0, 0, 255))
        uid = engine.save("gen1", [SaveItem(image=sheet, a_coords=[0, 1], b_coords=[0, 0], metadata={"n": "wall"})]).uids[0]

        document = json.loads((Path(self.tmp.name) / "objectData.json").read_text(encoding="utf-8"))
        self.assertEqual(document[uid], [{"t": "gen1", "i": ["0-1"], "a": 2, "b": 1, "n": "wall"}])
        with Image.open(self.root / "gen1.png") as img:
            self.assertEqual(img.size, (2400, 16))
            self.assertEqual(img.convert("RGBA").getpixel((20, 4)), (200, 0, 0, 255))


class BackendSelectionTests(unittest.TestCase):
    def tearDown(self) -> None:
        object_index.reset_backend_cache_for_tests()
        atlas_storage.reset_backend_cache_for_tests()

    def test_json_backend_by_default(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env = {"TILEPACK_INDEX_PATH": str(Path(tmp) / "objectData.json")}
            with mock.patch.dict(os.environ, env, clear=False):
                os.environ.pop("DATABASE_URL", None)
                object_index.reset_backend_cache_for_tests()
                store = object_index.get_object_index_store()
        self.assertIsInstance(store, JsonFileObjectIndexStore)
        self.assertEqual(store.path, Path(tmp) / "objectData.json")

    def test_sqlite_backend_from_database_url(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env = {"DATABASE_URL": f"sqlite:///{tmp}/index.db"}
            with mock.patch.dict(os.environ, env, clear=False):
                object_index.reset_backend_cache_for_tests()
                store = object_index.get_object_index_store()
        self.assertIsInstance(store, SQLiteObjectIndexStore)
        self.assertEqual(store.db_path.name, "index.db")

    def test_atlas_dir_from_environment(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with mock.patch.dict(os.environ, {"TILEPACK_ATLAS_DIR": tmp}, clear=False):
                atlas_storage.reset_backend_cache_for_tests()
                store = atlas_storage.get_atlas_store()
        self.assertEqual(store.root_dir, Path(tmp))


if __name__ == "__main__":
    unittest.main()
