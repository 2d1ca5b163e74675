"""In-memory store for Raft state and snapshots."""

from __future__ import annotations

import threading


class Persister:
    """Holds the Raft state and snapshot bytes, saved together atomically."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._raft_state = b""
        self._snapshot = b""

    def copy(self) -> Persister:
        with self._lock:
            other = Persister()
            other._raft_state = self._raft_state
            other._snapshot = self._snapshot
            return other

    def read_raft_state(self) -> bytes:
        with self._lock:
            return self._raft_state

    def raft_state_size(self) -> int:
        with self._lock:
            return len(self._raft_state)

    def save(self, raft_state, snapshot) -> None:
        """Store both the Raft state and the snapshot in one step."""
        with self._lock:
            self._raft_state = bytes(raft_state or b"")
            self._snapshot = bytes(snapshot or b"")

    def read_snapshot(self) -> bytes:
        with self._lock:
            return self._snapshot

    def snapshot_size(self) -> int:
        with self._lock:
            return len(self._snapshot)