"""
LanceDB key-value store for semantic memory.

A ``LanceKVHandle`` owns a store path and a fixed embedding dimension. Every
operation connects afresh, opens the managed table if it needs it, does its
work on the shared worker pool and releases everything before returning.

Upsert is synthesised as delete-then-append because Lance tables are
append-only with no unique-key constraint. The two steps are not
transactional: concurrent ``store``/``delete`` calls on the same key can
interleave and leave zero or two live rows. Callers that write the same key
concurrently must serialise externally, or open the handle with
``serialize_keys=True``.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import sys
import threading
from collections.abc import Iterator, Sequence
from concurrent.futures import Executor, ThreadPoolExecutor
from pathlib import Path
from typing import Any

import lancedb
import numpy as np

from codec import batch_to_keys, batch_to_results, records_to_batch
from errors import (
    ConnectionFailed,
    DeleteError,
    InsertError,
    QueryError,
    SchemaError,
    TableError,
)
from models import DEFAULT_TABLE, SearchResult, memory_model
from utils import key_predicate, now_ms, prefix_predicate
from write_path import WritePath

WORKER_THREADS = 2

# =============================================================================
# Worker Pool (lazy, process-wide)
# =============================================================================

_lock = threading.Lock()
_executor: ThreadPoolExecutor | None = None


def get_executor() -> ThreadPoolExecutor:
    """Get or create the shared worker pool (thread-safe)."""
    global _executor
    if _executor is None:
        with _lock:
            if _executor is None:  # Double-check after acquiring lock
                _executor = ThreadPoolExecutor(
                    max_workers=WORKER_THREADS, thread_name_prefix="lancedb-kv"
                )
    return _executor


class _KeyLocks:
    """Per-key lock table; entries live only while someone holds or waits."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                lock, users = self._locks[key]
                if users == 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)


def _table_names(db: lancedb.DBConnection) -> list[str]:
    try:
        response = db.list_tables()
    except AttributeError:
        return list(db.table_names())
    return list(getattr(response, "tables", response))


# =============================================================================
# Store Handle
# =============================================================================


class LanceKVHandle:
    """Handle on one on-disk store. Holds no open connection between calls."""

    def __init__(
        self,
        db_path: str,
        embedding_dim: int,
        *,
        write_path: WritePath | None = None,
        executor: Executor | None = None,
        serialize_keys: bool = False,
    ):
        self.db_path = db_path
        self.embedding_dim = embedding_dim
        self.write_path = write_path or WritePath()
        self._executor = executor
        self._key_locks = _KeyLocks() if serialize_keys else None

    def __repr__(self) -> str:
        return f"LanceKVHandle({self.db_path!r}, embedding_dim={self.embedding_dim})"

    @classmethod
    async def open(
        cls,
        db_path: str | Path,
        embedding_dim: int,
        *,
        unsafe_commit: bool = True,
        executor: Executor | None = None,
        serialize_keys: bool = False,
    ) -> LanceKVHandle:
        """Open (or create) a store at ``db_path``.

        Args:
            db_path: Store root directory; created with parents if missing.
            embedding_dim: Fixed vector width for every record and query.
            unsafe_commit: Use the degraded commit strategy that never
                hard-links files. Fixed for the lifetime of the handle.
            executor: Worker pool to run engine calls on. Defaults to the
                shared process-wide pool.
            serialize_keys: Serialise ``store``/``delete`` per key.
        """
        if embedding_dim <= 0:
            raise SchemaError(f"embedding_dim must be > 0, got {embedding_dim}")

        db_path = str(db_path)
        try:
            Path(db_path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConnectionFailed(f"Cannot create db directory: {e}") from e

        handle = cls(
            db_path,
            embedding_dim,
            write_path=WritePath(unsafe=unsafe_commit),
            executor=executor,
            serialize_keys=serialize_keys,
        )
        # Verify we can connect
        await handle._run(handle._connect)
        return handle

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def store(
        self,
        key: str,
        agent_id: str,
        text: str,
        embedding: Sequence[float],
        metadata: str | None = None,
    ) -> None:
        """Store a record, replacing any existing record with the same key."""
        if len(embedding) != self.embedding_dim:
            raise InsertError(
                f"embedding length {len(embedding)} != expected {self.embedding_dim}"
            )
        await self._run(self._store_sync, key, agent_id, text, list(embedding), metadata)

    async def search(
        self,
        query_vector: Sequence[float],
        limit: int,
        filter: str | None = None,
    ) -> list[SearchResult]:
        """Return up to ``limit`` nearest records to ``query_vector``.

        ``filter`` is a SQL-like predicate passed through verbatim
        (e.g. ``"agent_id = 'main'"``).
        """
        if len(query_vector) != self.embedding_dim:
            raise QueryError(
                f"query_vector length {len(query_vector)} != expected {self.embedding_dim}"
            )
        if limit <= 0:
            return []
        return await self._run(self._search_sync, list(query_vector), limit, filter)

    async def delete(self, key: str) -> None:
        """Delete a record by key. Unknown keys and absent tables are no-ops."""
        await self._run(self._delete_sync, key)

    async def list_keys(self, prefix: str | None = None, limit: int | None = None) -> list[str]:
        """List keys, optionally restricted to a literal prefix."""
        if limit is not None and limit <= 0:
            return []
        return await self._run(self._list_sync, prefix, limit)

    async def clear(self, collection: str | None = None) -> None:
        """Drop ``collection`` (default table if None). Absent tables are a no-op."""
        await self._run(self._clear_sync, collection or DEFAULT_TABLE)

    async def count(self) -> int:
        """Number of records in the default table; 0 if it does not exist."""
        return await self._run(self._count_sync)

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    async def _run(self, fn, *args: Any):
        loop = asyncio.get_running_loop()
        executor = self._executor or get_executor()
        return await loop.run_in_executor(executor, functools.partial(fn, *args))

    def _connect(self) -> lancedb.DBConnection:
        try:
            return lancedb.connect(self.db_path)
        except Exception as e:
            raise ConnectionFailed(str(e)) from e

    def _table_exists(self, db: lancedb.DBConnection, name: str = DEFAULT_TABLE) -> bool:
        try:
            return name in _table_names(db)
        except Exception as e:
            raise TableError(str(e)) from e

    def _table_uri(self, name: str = DEFAULT_TABLE) -> str:
        return self.write_path.table_uri(self.db_path, name)

    def _open(self, error: type[Exception] = TableError):
        try:
            return self.write_path.open(self._table_uri())
        except Exception as e:
            raise error(str(e)) from e

    def _key_lock(self, key: str) -> contextlib.AbstractContextManager:
        if self._key_locks is None:
            return contextlib.nullcontext()
        return self._key_locks.hold(key)

    # -------------------------------------------------------------------------
    # Upsert engine
    # -------------------------------------------------------------------------

    def _store_sync(
        self,
        key: str,
        agent_id: str,
        text: str,
        embedding: list[float],
        metadata: str | None,
    ) -> None:
        with self._key_lock(key):
            db = self._connect()
            uri = self._table_uri()

            # Delete existing entry with this key (upsert semantics)
            try:
                self.write_path.delete(uri, key_predicate(key))
            except Exception:  # noqa: S110 - usually "no table yet"
                pass

            try:
                record = memory_model(self.embedding_dim)(
                    key=key,
                    agent_id=agent_id,
                    text=text,
                    embedding=embedding,
                    metadata=metadata,
                    created_at=now_ms(),
                )
            except ValueError as e:
                raise InsertError(f"Invalid record: {e}") from e
            batch = records_to_batch([record], self.embedding_dim)

            if not self._table_exists(db):
                self._create(uri, batch)
                return

            # Corruption check only; the append reopens under the write lock.
            try:
                self.write_path.open(uri)
            except Exception as e:
                self._recreate(db, uri, batch, e)
                return

            try:
                self.write_path.append(uri, batch)
            except Exception as e:
                raise InsertError(str(e)) from e

    def _create(self, uri: str, batch) -> None:
        try:
            self.write_path.create(uri, batch)
        except Exception as e:
            raise TableError(str(e)) from e

    def _recreate(self, db: lancedb.DBConnection, uri: str, batch, cause: Exception) -> None:
        """Replace an unreadable table with one holding only ``batch``."""
        print(
            f"[lancedb-kv] Table '{DEFAULT_TABLE}' at {self.db_path} cannot be opened ({cause}); "
            "dropping and recreating it. Previously stored records are lost.",
            file=sys.stderr,
        )
        try:
            db.drop_table(DEFAULT_TABLE)
        except Exception as e:
            raise TableError(f"Failed to drop corrupted table: {e}") from e
        self._create(uri, batch)

    # -------------------------------------------------------------------------
    # Query engine
    # -------------------------------------------------------------------------

    def _search_sync(
        self, query_vector: list[float], limit: int, filter: str | None
    ) -> list[SearchResult]:
        db = self._connect()
        if not self._table_exists(db):
            return []

        dataset = self._open(QueryError)
        try:
            result = dataset.to_table(
                nearest={
                    "column": "embedding",
                    "q": np.asarray(query_vector, dtype=np.float32),
                    "k": limit,
                },
                filter=filter,
                prefilter=filter is not None,
            )
        except Exception as e:
            raise QueryError(str(e)) from e
        return batch_to_results(result)

    def _list_sync(self, prefix: str | None, limit: int | None) -> list[str]:
        db = self._connect()
        if not self._table_exists(db):
            return []

        dataset = self._open()
        try:
            result = dataset.to_table(
                columns=["key"],
                filter=prefix_predicate(prefix) if prefix is not None else None,
                limit=limit,
            )
        except Exception as e:
            raise QueryError(str(e)) from e
        return batch_to_keys(result)

    def _count_sync(self) -> int:
        db = self._connect()
        if not self._table_exists(db):
            return 0

        dataset = self._open()
        try:
            return dataset.count_rows()
        except Exception as e:
            raise QueryError(str(e)) from e

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _delete_sync(self, key: str) -> None:
        with self._key_lock(key):
            db = self._connect()
            if not self._table_exists(db):
                return

            # Opened separately so an unreadable table reports TableError, not DeleteError.
            self._open()
            try:
                self.write_path.delete(self._table_uri(), key_predicate(key))
            except Exception as e:
                raise DeleteError(str(e)) from e

    def _clear_sync(self, name: str) -> None:
        db = self._connect()
        if not self._table_exists(db, name):
            return

        with self.write_path.writing(self._table_uri(name)):
            try:
                db.drop_table(name)
            except Exception as e:
                raise TableError(str(e)) from e


# Same name as the storage API's "list" operation.
LanceKVHandle.list = LanceKVHandle.list_keys
