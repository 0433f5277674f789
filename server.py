#!/usr/bin/env python3
"""
LanceDB KV MCP Server - semantic memory key-value store

Exposes an embedded LanceDB store as MCP tools:
- store / search / delete / list / clear over caller-supplied embeddings
- remember / recall / forget over natural language, embedded server-side
- context / capture hooks, workspace markdown indexing, flush prompt
- Upsert by key (delete-then-append), nearest-neighbour search with optional filter
- Degraded commit mode for sandboxes that forbid hardlinks
- Deprecated memory_* aliases kept for older clients
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from embeddings import Embedder
from errors import LanceKVError
from memory import MemoryManager, MemorySettings, flush_prompt
from models import DEFAULT_TABLE
from store import LanceKVHandle

# =============================================================================
# Configuration
# =============================================================================


def _resolve_db_path(raw: str | Path) -> Path:
    """Absolute paths pass through; relative ones live under the home directory."""
    path = Path(raw).expanduser()
    return path if path.is_absolute() else Path.home() / path


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    db_path: Path = _resolve_db_path(
        os.environ.get("LANCEDB_KV_PATH", Path.home() / ".lancedb-kv" / "memory-lancedb")
    )
    embedding_dim: int = int(os.environ.get("EMBEDDING_DIM", "1536"))
    agent_id: str = os.environ.get("LANCEDB_KV_AGENT_ID", "main")
    unsafe_commit: bool = os.environ.get("LANCEDB_KV_UNSAFE_COMMIT", "1") != "0"
    worker_threads: int = int(os.environ.get("LANCEDB_KV_WORKERS", "2"))
    default_limit: int = 5
    max_limit: int = 50

    # Text embedding for the natural-language tools
    embedding_provider: str = os.environ.get(
        "EMBEDDING_PROVIDER", "openai" if os.environ.get("OPENAI_API_KEY") else "hash"
    )  # hash | openai | ollama
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
    openai_api_key: str | None = field(default=os.environ.get("OPENAI_API_KEY"), repr=False)
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")

    # Memory behaviour
    workspace: Path = Path(os.environ.get("LANCEDB_KV_WORKSPACE", Path.cwd())).expanduser()
    auto_recall: bool = os.environ.get("LANCEDB_KV_AUTO_RECALL", "1") != "0"
    auto_capture: bool = os.environ.get("LANCEDB_KV_AUTO_CAPTURE", "1") != "0"
    recall_limit: int = 3
    recall_min_score: float = 0.3
    capture_max_chars: int = 500
    dup_threshold: float = 0.95


CONFIG = Config()

# =============================================================================
# Store Handle (Lazy Singleton)
# =============================================================================

_handle: LanceKVHandle | None = None
_executor: ThreadPoolExecutor | None = None
_handle_lock = asyncio.Lock()


def get_executor() -> ThreadPoolExecutor:
    """Worker pool owned by the server, injected into the store handle."""
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(
            max_workers=CONFIG.worker_threads, thread_name_prefix="lancedb-kv"
        )
    return _executor


async def get_handle() -> LanceKVHandle:
    """Get or open the store handle."""
    global _handle
    if _handle is None:
        async with _handle_lock:
            if _handle is None:  # Double-check after acquiring lock
                _handle = await LanceKVHandle.open(
                    CONFIG.db_path,
                    CONFIG.embedding_dim,
                    unsafe_commit=CONFIG.unsafe_commit,
                    executor=get_executor(),
                )
    return _handle


async def get_memory() -> MemoryManager:
    """Memory manager over the current handle, configured from CONFIG."""
    handle = await get_handle()
    embedder = Embedder(
        dim=handle.embedding_dim,
        provider=CONFIG.embedding_provider,
        model=CONFIG.embedding_model,
        openai_api_key=CONFIG.openai_api_key,
        ollama_base_url=CONFIG.ollama_base_url,
    )
    settings = MemorySettings(
        agent_id=CONFIG.agent_id,
        recall_limit=CONFIG.recall_limit,
        recall_min_score=CONFIG.recall_min_score,
        capture_max_chars=CONFIG.capture_max_chars,
        dup_threshold=CONFIG.dup_threshold,
        auto_recall=CONFIG.auto_recall,
        auto_capture=CONFIG.auto_capture,
        workspace=CONFIG.workspace,
    )
    return MemoryManager(handle, embedder, settings)


def _error(e: Exception) -> str:
    print(f"[lancedb-kv] {e}", file=sys.stderr)
    return f"Error: {e}"


def _limit_error(limit: int) -> str | None:
    if limit <= 0:
        return f"Error: limit must be positive, got {limit}"
    if limit > CONFIG.max_limit:
        return f"Error: limit cannot exceed {CONFIG.max_limit}, got {limit}"
    return None


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "lancedb-kv",
    instructions=(
        "Embedded LanceDB key-value store: upsert by key, vector search, prefix listing. "
        "remember/recall/forget take plain text and embed it server-side."
    ),
)


@mcp.tool(
    name="store",
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    },
)
async def kv_store(
    key: str,
    text: str,
    embedding: list[float],
    agent_id: str | None = None,
    metadata: str | None = None,
) -> str:
    """Store an entry, overwriting any existing entry with the same key.

    Args:
        key: Unique key for the entry
        text: Free-form content
        embedding: Vector of exactly the configured dimension
        agent_id: Tenant tag (defaults to the configured agent)
        metadata: Optional opaque payload, usually JSON
    """
    if not key:
        return "Error: key is required"
    handle = await get_handle()
    try:
        await handle.store(key, agent_id or CONFIG.agent_id, text, embedding, metadata)
    except LanceKVError as e:
        return _error(e)
    return json.dumps({"action": "stored", "key": key})


@mcp.tool(
    name="search",
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    },
)
async def kv_search(
    query_vector: list[float],
    limit: int = 5,
    filter: str | None = None,
) -> str:
    """Nearest-neighbour search over stored embeddings.

    Args:
        query_vector: Vector of exactly the configured dimension
        limit: Max results (default 5, max 50)
        filter: Optional SQL-like predicate, e.g. "agent_id = 'main'"
    """
    error = _limit_error(limit)
    if error:
        return error

    handle = await get_handle()
    try:
        results = await handle.search(query_vector, limit, filter)
    except LanceKVError as e:
        return _error(e)
    return json.dumps({"results": [asdict(r) for r in results]})


@mcp.tool(
    name="delete",
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    },
)
async def kv_delete(key: str) -> str:
    """Delete an entry by key. Unknown keys are not an error.

    Args:
        key: Key of the entry to delete
    """
    handle = await get_handle()
    try:
        await handle.delete(key)
    except LanceKVError as e:
        return _error(e)
    return json.dumps({"action": "deleted", "key": key})


@mcp.tool(
    name="list",
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    },
)
async def kv_list(prefix: str | None = None, limit: int | None = None) -> str:
    """List stored keys, optionally filtered by a literal prefix.

    Args:
        prefix: Only keys starting with this string
        limit: Max keys to return
    """
    handle = await get_handle()
    try:
        keys = await handle.list_keys(prefix, limit)
    except LanceKVError as e:
        return _error(e)
    return json.dumps({"keys": keys})


@mcp.tool(
    name="clear",
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    },
)
async def kv_clear(collection: str | None = None) -> str:
    """Drop all entries of a collection (the default table if omitted).

    Args:
        collection: Table name to drop
    """
    handle = await get_handle()
    try:
        await handle.clear(collection)
    except LanceKVError as e:
        return _error(e)
    return json.dumps({"action": "cleared", "collection": collection or DEFAULT_TABLE})


@mcp.tool(
    name="stats",
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    },
)
async def kv_stats() -> str:
    """Store statistics - total entries, database size, configuration."""
    handle = await get_handle()
    try:
        total = await handle.count()
    except LanceKVError as e:
        return _error(e)

    db_path = Path(handle.db_path)
    db_size = sum(f.stat().st_size for f in db_path.rglob("*") if f.is_file()) / 1024

    lines = [
        "=== LanceDB KV Statistics ===",
        f"Total: {total} entries",
        f"Database: {db_size:.1f} KB",
        f"Path: {db_path}",
        f"Embedding dim: {handle.embedding_dim}",
        f"Embedding provider: {CONFIG.embedding_provider}",
        f"Commit mode: {'unsafe (no hardlinks)' if handle.write_path.unsafe else 'standard'}",
    ]
    return "\n".join(lines)


# =============================================================================
# Natural-language Memory Tools
# =============================================================================


@mcp.tool(
    name="remember",
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    },
)
async def memory_remember(text: str, category: str | None = None) -> str:
    """Save important information in long-term memory. Checks for duplicates.

    Args:
        text: Information to remember
        category: One of preference, fact, decision, entity, other (auto-detected if omitted)
    """
    memory = await get_memory()
    try:
        result = await memory.remember(text, category)
    except (LanceKVError, ValueError) as e:
        return _error(e)
    return json.dumps(result)


@mcp.tool(
    name="recall",
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    },
)
async def memory_recall(query: str, limit: int = 5) -> str:
    """Search long-term memories by meaning: preferences, past decisions, earlier topics.

    Args:
        query: Natural language search query
        limit: Max results (default 5, max 50)
    """
    error = _limit_error(limit)
    if error:
        return error
    memory = await get_memory()
    try:
        result = await memory.recall(query, limit)
    except LanceKVError as e:
        return _error(e)
    return json.dumps(result)


@mcp.tool(
    name="forget",
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    },
)
async def memory_forget(key: str | None = None, query: str | None = None) -> str:
    """Delete a memory by key, or by a query that matches exactly one memory closely.

    Args:
        key: Key of the memory to delete
        query: Search query to find the memory to forget
    """
    memory = await get_memory()
    try:
        result = await memory.forget(key, query)
    except (LanceKVError, ValueError) as e:
        return _error(e)
    return json.dumps(result)


@mcp.tool(
    name="context",
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    },
)
async def memory_context(prompt: str) -> str:
    """Relevant memories for a prompt as a <relevant-memories> block; empty if none.

    Args:
        prompt: The upcoming user prompt
    """
    memory = await get_memory()
    try:
        block = await memory.context(prompt)
    except LanceKVError as e:
        return _error(e)
    return block or ""


@mcp.tool(
    name="capture",
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    },
)
async def memory_capture(text: str) -> str:
    """Store a user message automatically if it contains memorable content.

    Args:
        text: The user message
    """
    memory = await get_memory()
    try:
        captured = await memory.capture(text)
    except LanceKVError as e:
        return _error(e)
    return json.dumps({"captured": captured})


@mcp.tool(
    name="index_files",
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    },
)
async def memory_index_files() -> str:
    """Re-index MEMORY.md and memory/*.md from the workspace for search_files."""
    memory = await get_memory()
    try:
        result = await memory.index_files()
    except LanceKVError as e:
        return _error(e)
    return json.dumps(result)


@mcp.tool(
    name="search_files",
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    },
)
async def memory_search_files(query: str, max_results: int = 5) -> str:
    """Semantic search across indexed MEMORY.md and memory/*.md chunks.

    Args:
        query: Search query
        max_results: Max results (default 5, max 50)
    """
    error = _limit_error(max_results)
    if error:
        return error
    memory = await get_memory()
    try:
        result = await memory.search_files(query, max_results)
    except LanceKVError as e:
        return _error(e)
    return json.dumps(result)


@mcp.tool(
    name="get_file",
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    },
)
async def memory_get_file(path: str, from_line: int = 1, lines: int | None = None) -> str:
    """Read MEMORY.md or a memory/*.md file, optionally a line range.

    Args:
        path: Relative path, e.g. "MEMORY.md" or "memory/2026-02-26.md"
        from_line: Start line (1-indexed)
        lines: Number of lines to read
    """
    memory = await get_memory()
    try:
        result = memory.get_file(path, from_line, lines)
    except ValueError as e:
        return _error(e)
    return json.dumps(result)


@mcp.tool(
    name="flush_prompt",
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    },
)
async def memory_flush_prompt() -> str:
    """Prompt to send the agent before context compaction so it saves durable memories."""
    return flush_prompt()


# Deprecated memory-prefixed aliases
for _alias, _fn in {
    "memory_store": kv_store,
    "memory_search": kv_search,
    "memory_delete": kv_delete,
    "memory_list": kv_list,
    "memory_clear": kv_clear,
}.items():
    mcp.add_tool(
        _fn,
        name=_alias,
        description=f"Deprecated: use {_alias.removeprefix('memory_')} instead.",
    )


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server():
    """Open the store, then serve MCP over stdio."""
    handle = await get_handle()
    print(f"[lancedb-kv] Store ready at {handle.db_path} ({handle.embedding_dim}D)", file=sys.stderr)
    await mcp.run_stdio_async()


def main():
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
