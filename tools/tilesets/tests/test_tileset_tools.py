#!/usr/bin/env python3

from __future__ import annotations

import json
import subprocess
import tempfile
import unittest
from pathlib import Path

from PIL import Image

from tools.tilesets.add_tiles import grid_cells

ROOT = Path(__file__).resolve().parents[3]
ADD_SCRIPT = ROOT / "tools/tilesets/add_tiles.py"
MOVE_SCRIPT = ROOT / "tools/tilesets/move_items.py"
DELETE_SCRIPT = ROOT / "tools/tilesets/delete_items.py"
INSPECT_SCRIPT = ROOT / "tools/tilesets/inspect_tileset.py"


class GridCellsTests(unittest.TestCase):
    def test_partial_cells_are_included(self) -> None:
        image = Image.new("RGBA", (40, 20), (1, 2, 3, 255))
        a_coords, b_coords = grid_cells(image, 16, skip_empty=False)
        self.assertEqual(a_coords, [0, 1, 2, 0, 1, 2])
        self.assertEqual(b_coords, [0, 0, 0, 1, 1, 1])

    def test_skip_empty_drops_transparent_cells(self) -> None:
        image = Image.new("RGBA", (32, 32), (0, 0, 0, 0))
        image.putpixel((20, 20), (255, 255, 255, 255))
        self.assertEqual(grid_cells(image, 16, skip_empty=True), ([1], [1]))


class TilesetToolsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp.name)
        self.store_args = [
            "--atlas-dir",
            str(self.tmp_path / "tiles"),
            "--index",
            str(self.tmp_path / "objectData.json"),
        ]

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _run(self, script: Path, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["python3", str(script), *args, *self.store_args],
            cwd=ROOT,
            capture_output=True,
            text=True,
            check=False,
        )

    def _add(self, name: str, columns: int, color: tuple[int, int, int, int], tileset: str = "gen1") -> str:
        src = self.tmp_path / f"{name}.png"
        Image.new("RGBA", (columns * 16, 16), color).save(src)
        result = self._run(ADD_SCRIPT, tileset, str(src), "--name", name)
        self.assertEqual(result.returncode, 0, msg=result.stdout + result.stderr)
        payload = json.loads(result.stdout)
        self.assertEqual(len(payload), 1)
        return next(iter(payload))

    def _index(self) -> dict:
        return json.loads((self.tmp_path / "objectData.json").read_text(encoding="utf-8"))

    def test_add_move_delete_cycle(self) -> None:
        fence = self._add("fence", 3, (120, 80, 40, 255))
        rock = self._add("rock", 1, (90, 90, 90, 255))
        self.assertEqual(self._index()[rock][0]["i"], ["3"])

        moved = self._run(MOVE_SCRIPT, "gen2", fence)
        self.assertEqual(moved.returncode, 0, msg=moved.stdout + moved.stderr)
        self.assertEqual(json.loads(moved.stdout)["moved"], [fence])
        self.assertEqual(self._index()[fence][0]["t"], "gen2")

        inspect = self._run(INSPECT_SCRIPT, "gen1")
        self.assertEqual(inspect.returncode, 0, msg=inspect.stderr)
        self.assertEqual(json.loads(inspect.stdout)["gen1"]["holes"], [0, 1, 2])

        # Deleting the moved item compacts gen2 only; gen1 keeps its holes.
        deleted = self._run(DELETE_SCRIPT, fence)
        self.assertEqual(deleted.returncode, 0, msg=deleted.stdout + deleted.stderr)
        self.assertEqual(json.loads(deleted.stdout)["deleted"], [fence])
        self.assertEqual(list(self._index()), [rock])

    def test_delete_compacts_tileset(self) -> None:
        first = self._add("first", 2, (255, 0, 0, 255))
        second = self._add("second", 2, (0, 255, 0, 255))

        deleted = self._run(DELETE_SCRIPT, first)
        self.assertEqual(deleted.returncode, 0, msg=deleted.stdout + deleted.stderr)
        self.assertEqual(self._index()[second][0]["i"], ["0-1"])
        with Image.open(self.tmp_path / "tiles" / "gen1.png") as img:
            self.assertEqual(img.convert("RGBA").getpixel((8, 8)), (0, 255, 0, 255))
            self.assertEqual(img.convert("RGBA").getpixel((40, 8)), (0, 0, 0, 0))

    def test_inspect_writes_previews(self) -> None:
        uid = self._add("wall", 2, (10, 10, 200, 255))
        preview_dir = self.tmp_path / "previews"
        result = self._run(INSPECT_SCRIPT, "--preview-dir", str(preview_dir))
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertIn("gen1", json.loads(result.stdout))
        with Image.open(preview_dir / f"{uid}.png") as img:
            self.assertEqual(img.size, (32, 16))

    def test_move_unknown_item_fails(self) -> None:
        self._add("rock", 1, (90, 90, 90, 255))
        result = self._run(MOVE_SCRIPT, "gen2", "does-not-exist")
        self.assertEqual(result.returncode, 1)
        self.assertIn("ERROR", result.stdout)

    def test_invalid_tileset_name_fails(self) -> None:
        src = self.tmp_path / "x.png"
        Image.new("RGBA", (16, 16), (1, 1, 1, 255)).save(src)
        result = self._run(ADD_SCRIPT, "../escape", str(src))
        self.assertEqual(result.returncode, 1)
        self.assertIn("ERROR", result.stdout)


if __name__ == "__main__":
    unittest.main()
