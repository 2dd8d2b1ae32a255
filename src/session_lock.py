"""
SessionLockManager - cross-process locks keyed by conversation id.

One orchestration turn per conversation at a time: the debounce trigger
holds the conversation lock while the engine runs. Uses filesystem locks
(fcntl) so several worker processes sharing one database serialize too.
"""

from __future__ import annotations

import hashlib
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import fcntl


class SessionLockManager:
    """Acquire per-conversation locks across processes."""

    def __init__(self, lock_dir: Optional[str] = None):
        self._lock_dir = Path(
            lock_dir or os.getenv("CONVERSATION_LOCK_DIR", "/tmp/crm_action_engine_locks")
        ).resolve()
        self._lock_dir.mkdir(parents=True, exist_ok=True)

    @property
    def lock_dir(self) -> Path:
        return self._lock_dir

    def _lock_path(self, conversation_id: str) -> Path:
        digest = hashlib.sha256(conversation_id.encode("utf-8")).hexdigest()
        return self._lock_dir / f"{digest}.lock"

    @contextmanager
    def lock(self, conversation_id: str) -> Iterator[None]:
        """Block until the conversation lock is held."""
        path = self._lock_path(conversation_id)
        with open(path, "a", encoding="utf-8") as handle:
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    @contextmanager
    def try_lock(self, conversation_id: str) -> Iterator[bool]:
        """
        Non-blocking variant.

        Yields:
            True when the lock was acquired, False when another turn holds it
        """
        path = self._lock_path(conversation_id)
        with open(path, "a", encoding="utf-8") as handle:
            try:
                fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                yield False
                return
            try:
                yield True
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)
