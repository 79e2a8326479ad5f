"""Tests for MCP server tools (search, context, maintenance, status)."""
import pytest

from memoria.documents import ChatTurn, Conversation, Note
from memoria.server import create_mcp_server


@pytest.fixture
def server_env(engine, health):
    engine.on_document_saved(Note(
        id="geo", title="Geography", content="Paris is the capital of France",
        url="https://example.org/geo",
    ))
    engine.on_document_saved(Conversation(id="c1", title="Bread chat", turns=[
        ChatTurn("user", "How often should I feed my sourdough starter at home?", 1700000000000),
    ]))
    engine.flush(5)
    mcp = create_mcp_server(engine, health)
    return {"mcp": mcp, "engine": engine, "health": health}


def _call_tool(mcp, name, **kwargs):
    """Call an MCP tool by name, passing kwargs as arguments."""
    tool = None
    for t in mcp._tool_manager._tools.values():
        if t.name == name:
            tool = t
            break
    assert tool is not None, f"Tool {name} not found"
    import asyncio
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(tool.run(kwargs))
    finally:
        loop.close()


class TestSearchTools:
    def test_search_knowledge(self, server_env):
        result = _call_tool(server_env["mcp"], "search_knowledge", query="capital of France")
        assert "Note: Geography" in result
        assert "Paris is the capital of France" in result
        assert server_env["health"].status["searches_by_surface"]["mcp"] == 1

    def test_search_chat(self, server_env):
        result = _call_tool(server_env["mcp"], "search_knowledge", query="sourdough starter")
        assert "Chat (user): Bread chat" in result

    def test_no_results(self, server_env):
        result = _call_tool(server_env["mcp"], "search_knowledge", query="")
        assert "No matching" in result

    def test_chat_context(self, server_env):
        result = _call_tool(server_env["mcp"], "get_chat_context", query="Paris")
        assert "[Content Source [^1]]" in result
        assert '[^1]: Note: "Geography" (URL: https://example.org/geo)' in result


class TestMaintenanceTools:
    def test_rebuild_all(self, server_env):
        result = _call_tool(server_env["mcp"], "rebuild_index")
        assert "Keyword index rebuild complete" in result
        assert "Embedding rebuild complete" in result
        assert "Embedded: 2" in result

    def test_rebuild_bad_target(self, server_env):
        result = _call_tool(server_env["mcp"], "rebuild_index", target="everything")
        assert "Unknown target" in result

    def test_update_missing(self, server_env):
        result = _call_tool(server_env["mcp"], "update_missing_embeddings")
        assert "Embedded: 0" in result

    def test_update_missing_without_model(self, server_env):
        server_env["engine"].set_embedding_model(None)
        result = _call_tool(server_env["mcp"], "update_missing_embeddings")
        assert "failed" in result
        assert "No active embedding model" in result


class TestStatusTool:
    def test_status(self, server_env):
        result = _call_tool(server_env["mcp"], "get_index_status")
        assert "**State:** idle" in result
        assert "**Chunks:** 2" in result
        assert "fake/fake-embed-v1" in result
        assert "**Keyword index rebuilt:** never" in result
