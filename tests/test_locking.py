"""Tests for the KeyedLockRegistry."""

import threading
import time

import pytest

from clinicaldata.double_data_entry.locking import (
    KeyedLockRegistry,
    discrepancy_key,
    form_instance_key,
)
from clinicaldata.exceptions import LockTimeoutError


class TestKeyedLockRegistry:
    """Per-key mutual exclusion."""

    def test_key_helpers(self):
        assert form_instance_key("ecrf-001") == "form_instance:ecrf-001"
        assert discrepancy_key("d-1") == "discrepancy:d-1"

    def test_duplicates_ignored(self):
        registry = KeyedLockRegistry()
        with registry.acquire(["a", "b", "a"]) as held:
            assert held == ["a", "b"]

    def test_keys_acquired_in_sorted_order(self):
        registry = KeyedLockRegistry()
        keys = [form_instance_key("ecrf-001"), discrepancy_key("d-1")]
        with registry.acquire(keys) as held:
            assert held == ["discrepancy:d-1", "form_instance:ecrf-001"]

    def test_reentrant_in_same_thread(self):
        registry = KeyedLockRegistry()
        with registry.acquire(["a"]):
            with registry.acquire(["a"], timeout=0.05):
                pass

    def test_entries_released(self):
        registry = KeyedLockRegistry()
        with registry.acquire(["a", "b"]):
            assert registry.active_keys == 2
        assert registry.active_keys == 0

    def test_timeout_releases_already_held_keys(self):
        registry = KeyedLockRegistry()
        held = threading.Event()
        release = threading.Event()

        def _holder():
            with registry.acquire(["b"]):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=_holder)
        thread.start()
        held.wait(5)
        try:
            with pytest.raises(LockTimeoutError) as exc_info:
                with registry.acquire(["a", "b"], timeout=0.05):
                    pass
            assert exc_info.value.lock_key == "b"
            # "a" must be free again
            with registry.acquire(["a"], timeout=0.05):
                pass
        finally:
            release.set()
            thread.join(5)

    def test_serializes_same_key(self):
        registry = KeyedLockRegistry()
        inside = []
        overlaps = []

        def _worker():
            with registry.acquire(["ecrf-001"]):
                if inside:
                    overlaps.append(True)
                inside.append(True)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=_worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        assert overlaps == []
        assert registry.active_keys == 0

    def test_different_keys_do_not_block(self):
        registry = KeyedLockRegistry()
        held = threading.Event()
        release = threading.Event()

        def _holder():
            with registry.acquire(["a"]):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=_holder)
        thread.start()
        held.wait(5)
        try:
            with registry.acquire(["b"], timeout=0.05):
                pass
        finally:
            release.set()
            thread.join(5)
