# -*- coding: utf-8 -*-
"""
Per-key mutual exclusion for double data-entry operations.

KeyedLockRegistry hands out one re-entrant lock per key
(``form_instance:<id>``, ``discrepancy:<id>``). Entries are reference
counted and dropped once no thread holds or waits on them, so the registry
does not grow with the number of form instances ever touched.

This serializes operations inside one process. Cross-process exclusion
comes from the ``SELECT ... FOR UPDATE`` row lock taken by the storage
adapter.

Example:
    >>> registry = KeyedLockRegistry()
    >>> with registry.acquire(["form_instance:ecrf-001"], timeout=5.0):
    ...     pass
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Generator, Iterable, List, Optional

from clinicaldata.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

__all__ = ["KeyedLockRegistry", "form_instance_key", "discrepancy_key"]


def form_instance_key(form_instance_id: str) -> str:
    return f"form_instance:{form_instance_id}"


def discrepancy_key(discrepancy_id: str) -> str:
    return f"discrepancy:{discrepancy_id}"


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.refs = 0


class KeyedLockRegistry:
    """Registry of re-entrant locks keyed by string."""

    def __init__(self) -> None:
        self._entries: Dict[str, _Entry] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.refs += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs <= 0:
                self._entries.pop(key, None)

    @contextmanager
    def acquire(
        self, keys: Iterable[str], timeout: Optional[float] = None,
    ) -> Generator[List[str], None, None]:
        """Hold every lock in ``keys`` for the block.

        Keys are acquired in sorted order.

        Args:
            keys: Lock keys; duplicates are ignored.
            timeout: Seconds to wait per lock; None waits forever.

        Yields:
            The keys actually held, sorted.

        Raises:
            LockTimeoutError: If a lock is not acquired within ``timeout``.
        """
        ordered: List[str] = sorted(set(keys))

        held: List[tuple] = []
        try:
            for key in ordered:
                entry = self._checkout(key)
                acquired = entry.lock.acquire(
                    timeout=-1 if timeout is None else timeout,
                )
                if not acquired:
                    self._checkin(key, entry)
                    logger.warning("Lock timeout on %s after %.1fs", key, timeout)
                    raise LockTimeoutError(
                        f"Timed out waiting for lock {key}",
                        lock_key=key,
                        timeout_seconds=timeout,
                    )
                held.append((key, entry))
            yield ordered
        finally:
            for key, entry in reversed(held):
                entry.lock.release()
                self._checkin(key, entry)

    @property
    def active_keys(self) -> int:
        """Number of keys currently held or awaited."""
        with self._guard:
            return len(self._entries)
