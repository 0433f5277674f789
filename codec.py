"""Conversion between logical records and Arrow record batches."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pyarrow as pa

from errors import InsertError
from models import SearchResult, memory_schema

if TYPE_CHECKING:
    from lancedb.pydantic import LanceModel


def records_to_batch(records: list[LanceModel], embedding_dim: int) -> pa.RecordBatch:
    """Encode records into one batch matching the table schema.

    Embeddings are flattened into a single contiguous float32 buffer and
    segmented by ``embedding_dim``.
    """
    schema = memory_schema(embedding_dim)
    try:
        for record in records:
            if len(record.embedding) != embedding_dim:
                raise ValueError(
                    f"embedding length {len(record.embedding)} != expected {embedding_dim}"
                )
        flat = np.asarray([r.embedding for r in records], dtype=np.float32).reshape(-1)
        embeddings = pa.FixedSizeListArray.from_arrays(pa.array(flat, type=pa.float32()), embedding_dim)
        return pa.RecordBatch.from_arrays(
            [
                pa.array([r.key for r in records], type=pa.utf8()),
                pa.array([r.agent_id for r in records], type=pa.utf8()),
                pa.array([r.text for r in records], type=pa.utf8()),
                embeddings,
                pa.array([r.metadata for r in records], type=pa.utf8()),
                pa.array([r.created_at for r in records], type=pa.int64()),
            ],
            schema=schema,
        )
    except (pa.ArrowException, ValueError, TypeError) as e:
        raise InsertError(f"Failed to create record batch: {e}") from e


def _column(table: pa.Table, name: str) -> list | None:
    if name not in table.column_names:
        return None
    return table.column(name).to_pylist()


def batch_to_results(table: pa.Table) -> list[SearchResult]:
    """Decode a nearest-neighbour result into search results.

    Rows keep the engine's order. A missing ``metadata`` or ``_distance``
    column decodes to ``None`` / a score of ``0.0``; rows without a readable
    key or text are skipped.
    """
    keys = _column(table, "key")
    texts = _column(table, "text")
    if keys is None or texts is None:
        return []
    metas = _column(table, "metadata")
    distances = _column(table, "_distance")

    results = []
    for i, (key, text) in enumerate(zip(keys, texts)):
        if key is None or text is None:
            continue
        distance = distances[i] if distances is not None else None
        results.append(
            SearchResult(
                key=key,
                text=text,
                score=1.0 - float(distance) if distance is not None else 0.0,
                metadata=metas[i] if metas is not None else None,
            )
        )
    return results


def batch_to_keys(table: pa.Table) -> list[str]:
    """Decode a key-only projection, skipping null keys."""
    keys = _column(table, "key") or []
    return [k for k in keys if k is not None]
