"""
Write-path adapter: the commit strategy used for every table open and write.

Lance's default commit handler on local disk finalises a version by
hard-linking the new manifest into place. Sandboxed filesystems (Android
SELinux for untrusted apps, some container mounts) deny hardlink(), so the
degraded strategy hands Lance a commit lock that never touches the
filesystem. The manifest is then written with a plain put: no hardlink, but
also no crash atomicity. A process killed mid-commit can leave a table that
no longer opens, which the upsert path recovers from.

The strategy is chosen once per store handle and threaded through every
call; nothing branches on filesystem capability per call.
"""

from __future__ import annotations

import contextlib
import os
import threading
from collections.abc import Iterator

import lance
import pyarrow as pa

# One lock per table URI, shared by every handle in the process.
_write_locks: dict[str, threading.Lock] = {}
_write_locks_guard = threading.Lock()


def _unsafe_commit_lock(version: int) -> contextlib.AbstractContextManager:
    """Commit lock that grants every version without filesystem coordination."""
    return contextlib.nullcontext()


class WritePath:
    """Opens, creates and appends to Lance tables under one commit strategy."""

    def __init__(self, unsafe: bool = True):
        self.unsafe = unsafe

    def __repr__(self) -> str:
        return f"WritePath(unsafe={self.unsafe})"

    @property
    def commit_lock(self):
        return _unsafe_commit_lock if self.unsafe else None

    @staticmethod
    def table_uri(db_path: str, name: str) -> str:
        return os.path.join(db_path, f"{name}.lance")

    @contextlib.contextmanager
    def writing(self, uri: str) -> Iterator[None]:
        """Serialise in-process writers to one table."""
        with _write_locks_guard:
            lock = _write_locks.setdefault(uri, threading.Lock())
        with lock:
            yield

    def open(self, uri: str) -> lance.LanceDataset:
        return lance.dataset(uri, commit_lock=self.commit_lock)

    def create(self, uri: str, data: pa.RecordBatch) -> None:
        self._write(uri, data, mode="create")

    def append(self, uri: str, data: pa.RecordBatch) -> None:
        self._write(uri, data, mode="append")

    def delete(self, uri: str, predicate: str) -> None:
        # Reopen under the lock so the delete commits against the latest version.
        with self.writing(uri):
            self.open(uri).delete(predicate)

    def _write(self, uri: str, data: pa.RecordBatch, mode: str) -> None:
        with self.writing(uri):
            lance.write_dataset(
                pa.Table.from_batches([data]),
                uri,
                mode=mode,
                commit_lock=self.commit_lock,
            )
