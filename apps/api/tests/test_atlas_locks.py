#!/usr/bin/env python3

from __future__ import annotations

import threading
import unittest

from packages.tilepack_core.atlas.locks import INDEX_LOCK_KEY, AtlasLockRegistry


class AtlasLockRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = AtlasLockRegistry()

    def test_entries_are_dropped_after_release(self) -> None:
        for n in range(50):
            with self.registry.hold([f"atlas-{n}"]):
                self.assertEqual(self.registry.active_keys(), [f"atlas-{n}"])
        with self.registry.hold_index():
            self.assertEqual(self.registry.active_keys(), [INDEX_LOCK_KEY])
        self.assertEqual(self.registry.active_keys(), [])

    def test_nested_holds_are_reentrant(self) -> None:
        with self.registry.hold(["gen1", "gen2"]):
            with self.registry.hold(["gen2"]):
                self.assertEqual(self.registry.active_keys(), ["gen1", "gen2"])
            self.assertEqual(self.registry.active_keys(), ["gen1", "gen2"])
        self.assertEqual(self.registry.active_keys(), [])

    def test_waiter_keeps_entry_alive_and_is_excluded(self) -> None:
        acquired = threading.Event()
        finished = threading.Event()

        def contender() -> None:
            with self.registry.hold(["gen1"]):
                acquired.set()
            finished.set()

        with self.registry.hold(["gen1"]):
            worker = threading.Thread(target=contender)
            worker.start()
            self.assertFalse(acquired.wait(timeout=0.2))
            self.assertEqual(self.registry.active_keys(), ["gen1"])
        self.assertTrue(finished.wait(timeout=5))
        worker.join(timeout=5)
        self.assertEqual(self.registry.active_keys(), [])


if __name__ == "__main__":
    unittest.main()
