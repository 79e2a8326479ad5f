# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Unified entry point: python -m memoria

Runs Web API + MCP Server in a single process with shared state.
Web API in a background thread, MCP server in the main thread.
"""
import threading

import uvicorn

from .config import Config
from .engine import KnowledgeEngine
from .health import HealthTracker
from .scheduler import MaintenanceScheduler
from .server import create_mcp_server
from .web import create_web_app


def _run_mcp_sse(mcp_server, host: str, port: int):
    """Run MCP server via SSE."""
    try:
        sse_app = mcp_server.sse_app()
        uvicorn.run(sse_app, host=host, port=port, log_level="warning")
    except AttributeError:
        mcp_server.settings.host = host
        mcp_server.settings.port = port
        mcp_server.run(transport="sse")


def main():
    config = Config.load()
    health = HealthTracker()

    print(f"Loading index from {config.data_path} ...")
    engine = KnowledgeEngine(config, health=health)
    model = engine.metadata.active_model
    print(f"Embedding model: {model.label if model else 'none (keyword search only)'}")

    scheduler = MaintenanceScheduler(config, engine.coordinator, health)
    scheduler.start()

    web_app = create_web_app(config, engine, scheduler, health)
    mcp_server = create_mcp_server(engine, health)

    def run_web():
        uvicorn.run(
            web_app, host=config.web_host, port=config.web_port,
            log_level="warning",
        )

    web_thread = threading.Thread(target=run_web, daemon=True)
    web_thread.start()
    print(f"Web API running on http://{config.web_host}:{config.web_port}")

    print(f"MCP server starting ({config.transport} transport)...")
    try:
        if config.transport == "sse":
            _run_mcp_sse(mcp_server, config.web_host, config.sse_port)
        else:
            mcp_server.run(transport="stdio")
    finally:
        scheduler.stop()
        engine.close()


if __name__ == "__main__":
    main()
