#!/usr/bin/env python3
"""
Test suite for the LanceDB KV MCP tools.

Run with: pytest test_server.py -v
"""

import json

import pytest

import server as server_module
from server import (
    CONFIG,
    kv_clear,
    kv_delete,
    kv_list,
    kv_search,
    kv_stats,
    kv_store,
    mcp,
)
from store import LanceKVHandle

DIM = 4


@pytest.fixture(autouse=True)
async def setup_db(tmp_path):
    """Point the server at an isolated test database."""
    server_module._handle = await LanceKVHandle.open(tmp_path / "lancedb-kv-test", DIM)
    yield
    server_module._handle = None


# =============================================================================
# Core CRUD Tests
# =============================================================================


class TestStoreTool:
    async def test_store_basic(self):
        result = await kv_store(key="k1", text="hello", embedding=[1.0, 0.0, 0.0, 0.0])
        assert json.loads(result) == {"action": "stored", "key": "k1"}

    async def test_store_uses_configured_agent(self):
        await kv_store(key="k1", text="hello", embedding=[1.0, 0.0, 0.0, 0.0])
        result = await kv_search(
            query_vector=[1.0, 0.0, 0.0, 0.0],
            filter=f"agent_id = '{CONFIG.agent_id}'",
        )
        assert [r["key"] for r in json.loads(result)["results"]] == ["k1"]

    async def test_store_empty_key_fails(self):
        result = await kv_store(key="", text="hello", embedding=[1.0, 0.0, 0.0, 0.0])
        assert result.startswith("Error")

    async def test_store_wrong_dimension_fails(self):
        result = await kv_store(key="k1", text="hello", embedding=[1.0, 0.0])
        assert result.startswith("Error: InsertError")


class TestSearchTool:
    async def test_search_results(self):
        await kv_store(key="color-blue", text="blue", embedding=[1.0, 0.0, 0.0, 0.0])
        await kv_store(
            key="color-red", text="red", embedding=[0.9, 0.1, 0.0, 0.0], metadata='{"c": "red"}'
        )

        result = json.loads(await kv_search(query_vector=[1.0, 0.0, 0.0, 0.0], limit=2))

        keys = [r["key"] for r in result["results"]]
        assert keys == ["color-blue", "color-red"]
        assert result["results"][1]["metadata"] == '{"c": "red"}'
        assert result["results"][0]["score"] >= result["results"][1]["score"]

    async def test_search_empty_store(self):
        result = json.loads(await kv_search(query_vector=[1.0, 0.0, 0.0, 0.0]))
        assert result == {"results": []}

    @pytest.mark.parametrize("limit", [0, -1, CONFIG.max_limit + 1])
    async def test_search_invalid_limit_fails(self, limit):
        result = await kv_search(query_vector=[1.0, 0.0, 0.0, 0.0], limit=limit)
        assert result.startswith("Error")

    async def test_search_wrong_dimension_fails(self):
        result = await kv_search(query_vector=[1.0])
        assert result.startswith("Error: QueryError")


class TestLifecycleTools:
    async def test_delete(self):
        await kv_store(key="k1", text="hello", embedding=[1.0, 0.0, 0.0, 0.0])
        assert json.loads(await kv_delete(key="k1"))["action"] == "deleted"
        assert json.loads(await kv_list()) == {"keys": []}

    async def test_delete_nonexistent(self):
        assert json.loads(await kv_delete(key="missing"))["action"] == "deleted"

    async def test_list_prefix(self):
        for key in ["proj:a", "proj:b", "other:c"]:
            await kv_store(key=key, text=key, embedding=[1.0, 0.0, 0.0, 0.0])

        assert sorted(json.loads(await kv_list(prefix="proj:"))["keys"]) == ["proj:a", "proj:b"]
        assert len(json.loads(await kv_list())["keys"]) == 3

    async def test_clear(self):
        await kv_store(key="k1", text="hello", embedding=[1.0, 0.0, 0.0, 0.0])
        assert json.loads(await kv_clear())["collection"] == "memories"
        assert json.loads(await kv_list()) == {"keys": []}

    async def test_stats(self):
        await kv_store(key="k1", text="hello", embedding=[1.0, 0.0, 0.0, 0.0])
        result = await kv_stats()
        assert "LanceDB KV Statistics" in result
        assert "Total: 1 entries" in result
        assert "unsafe" in result


# =============================================================================
# Tool Registration
# =============================================================================


class TestToolRegistration:
    async def test_tools_registered(self):
        names = {tool.name for tool in await mcp.list_tools()}
        assert {"store", "search", "delete", "list", "clear", "stats"} <= names
        assert {
            "remember",
            "recall",
            "forget",
            "context",
            "capture",
            "index_files",
            "search_files",
            "get_file",
            "flush_prompt",
        } <= names

    async def test_deprecated_aliases_registered(self):
        tools = {tool.name: tool for tool in await mcp.list_tools()}
        for alias in ["memory_store", "memory_search", "memory_delete", "memory_list", "memory_clear"]:
            assert alias in tools
            assert tools[alias].description.startswith("Deprecated")


class TestConfig:
    def test_defaults(self):
        assert CONFIG.max_limit == 50
        assert CONFIG.worker_threads > 0
        assert CONFIG.recall_min_score == 0.3
        assert CONFIG.dup_threshold == 0.95

    def test_api_key_not_in_repr(self):
        assert "openai_api_key" not in repr(CONFIG)

    def test_relative_path_resolves_under_home(self):
        from pathlib import Path

        assert server_module._resolve_db_path("memory-lancedb") == Path.home() / "memory-lancedb"
        assert server_module._resolve_db_path("/tmp/x") == Path("/tmp/x")
