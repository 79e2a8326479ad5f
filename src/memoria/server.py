# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
MCP Server factory – creates a FastMCP instance with tools that share
the KnowledgeEngine from the main process.

Tools:
  - search_knowledge: Hybrid search over notes and chat history
  - get_chat_context: Search results formatted as footnoted LLM context
  - rebuild_index: Rebuild the keyword index, the embeddings, or both
  - update_missing_embeddings: Embed chunks that have no vector yet
  - get_index_status: Index timestamps, state and counts
"""
from mcp.server.fastmcp import FastMCP

from .engine import KnowledgeEngine
from .health import HealthTracker


def _format_report(title: str, result: dict) -> str:
    if not result.get("success"):
        return f"{title} failed: {result.get('error', 'unknown error')}"
    lines = [f"{title} complete."]
    if result.get("operation") != "rebuild_lexical":
        lines.append(
            f"- Embedded: {result['embedded']}, failed: {result['failed']}, "
            f"skipped: {result['skipped']}"
        )
    else:
        lines.append(f"- Chunks indexed: {result['total']}")
    if result.get("failed") or result.get("skipped"):
        lines.append("- Chunks without a vector stay searchable by keyword; run update_missing_embeddings() later.")
    return "\n".join(lines)


def create_mcp_server(
    engine: KnowledgeEngine,
    health: HealthTracker | None = None,
) -> FastMCP:
    """Factory: returns a configured FastMCP server that shares state with web.py."""

    health = health or engine.health

    mcp = FastMCP(
        "memoria",
        instructions=(
            "Hybrid (keyword + semantic) search over the user's notes and past chats.\n\n"
            "WORKFLOW for the assistant:\n"
            "1. search_knowledge() to find passages the user wrote or discussed\n"
            "2. get_chat_context() when you want ready-to-cite context with footnotes\n"
            "3. Prefer 2-3 targeted searches over one vague query\n"
            "4. If results look stale, check get_index_status()"
        ),
    )

    @mcp.tool()
    def search_knowledge(query: str, top_k: int = 5) -> str:
        """Hybrid search over notes and chat conversations.

        Args:
            query: What you are looking for (natural language or keywords)
            top_k: Number of results (default: 5)

        Returns:
            Matching chunks with their source and scores
        """
        result = engine.search(query, top_k=top_k, surface="mcp")
        if not result["success"]:
            return f"Search failed: {result['error']}"
        results = result["results"]
        if not results:
            return "No matching notes or chats found. Try different keywords."

        output = []
        if result.get("lexical_only"):
            output.append("_(semantic search unavailable, keyword matches only)_\n")
        for r in results:
            source = "Note" if r["kind"] == "note" else f"Chat ({r['role']})"
            path = " > ".join(r["heading_path"])
            heading = f" > _{path}_" if path else ""
            output.append(
                f"**{source}: {r['parent_title'] or r['parent_id']}**{heading} "
                f"(Score: {r['hybrid_score']:.3f}, keyword: {r['normalized_lexical_score']:.2f}, "
                f"semantic: {r['normalized_semantic_score']:.2f})\n\n"
                f"{r['content']}\n\n---"
            )
        return "\n".join(output)

    @mcp.tool()
    def get_chat_context(query: str, top_k: int = 5) -> str:
        """Search and return the hits as footnoted context for an answer.

        Args:
            query: The user's question
            top_k: Number of chunks to include (default: 5)
        """
        result = engine.search_context(query, top_k=top_k, surface="mcp")
        if not result["success"]:
            return f"Search failed: {result['error']}"
        if not result["sources"]:
            return result["prompt_context"]
        return f"{result['prompt_context']}\n\n{result['sources']}"

    @mcp.tool()
    def rebuild_index(target: str = "all") -> str:
        """Rebuild search indexes from the stored chunks.

        Args:
            target: "lexical", "embeddings" or "all" (default)
        """
        if target not in ("all", "lexical", "embeddings"):
            return f"Unknown target '{target}'. Use one of: all, lexical, embeddings"
        parts = []
        if target in ("all", "lexical"):
            parts.append(_format_report("Keyword index rebuild", engine.rebuild_lexical_index()))
        if target in ("all", "embeddings"):
            parts.append(_format_report("Embedding rebuild", engine.rebuild_all_embeddings()))
        return "\n\n".join(parts)

    @mcp.tool()
    def update_missing_embeddings() -> str:
        """Compute embeddings for chunks that do not have one yet
        (e.g. after a provider outage). Already embedded chunks are untouched."""
        return _format_report("Embedding update", engine.update_missing_embeddings())

    @mcp.tool()
    def get_index_status() -> str:
        """Index timestamps, active embedding model, state and counts."""
        s = engine.status()
        meta = s["metadata"]
        model = meta.get("embedding_model")
        model_label = f"{model['name'] or model['kind']}/{model['model']}" if model else "none"
        lines = [
            "## Index Status",
            f"- **State:** {s['state']}" + (f" ({s['running']})" if s["running"] else ""),
            f"- **Chunks:** {s['chunks']} (keyword index: {s['lexical_chunks']})",
            f"- **Embedded:** {s['vectorized']}, missing: {s['missing']}",
            f"- **Embedding model:** {model_label}",
            f"- **Keyword index rebuilt:** {meta.get('bm25_last_rebuild') or 'never'}",
            f"- **Embeddings rebuilt:** {meta.get('embeddings_last_rebuild') or 'never'}",
            f"- **Embeddings updated:** {meta.get('embeddings_last_update') or 'never'}",
        ]
        if health:
            h = health.status
            lines.append(
                f"- **Searches:** {h['searches_total']} "
                f"({h['searches_hits']} hits, {h['searches_misses']} misses)"
            )
        return "\n".join(lines)

    return mcp
