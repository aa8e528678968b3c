"""Server assembly: state store, calendar module and the FastMCP server.

Startup sequence:

1. Configure structured logging
2. Open the state store (in-memory or Postgres)
3. Create FastMCP and register the calendar module's tools
4. Run module startup (provider connect, reminder sweep)
5. Serve over stdio, or over SSE / streamable HTTP with uvicorn
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import uvicorn
from fastmcp import FastMCP

from gcal_mcp.config import ServerConfig, StorageConfig
from gcal_mcp.core.logging import configure_logging
from gcal_mcp.core.state import InMemoryStateStore, PostgresStateStore, StateStore
from gcal_mcp.modules.calendar.module import CalendarModule

logger = logging.getLogger(__name__)


async def open_state_store(storage: StorageConfig) -> StateStore:
    """Open the configured state store backend."""
    if storage.backend == "postgres":
        assert storage.dsn is not None
        store = await PostgresStateStore.connect(storage.dsn)
        logger.info("Connected Postgres state store")
        return store
    logger.info("Using in-memory state store; tokens and webhooks are lost on restart")
    return InMemoryStateStore()


class CalendarServer:
    """Owns the lifecycle of one gcal-mcp server process."""

    def __init__(self, config: ServerConfig, *, module: CalendarModule | None = None) -> None:
        self.config = config
        self.module = module or CalendarModule()
        self.mcp: FastMCP | None = None
        self.store: StateStore | None = None
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        log_root = self.config.logging.log_root
        configure_logging(
            level=self.config.logging.level,
            fmt=self.config.logging.format,
            log_root=Path(log_root) if log_root else None,
        )

        self.store = await open_state_store(self.config.storage)

        self.mcp = FastMCP(self.config.name)
        self._register_core_tools()
        await self.module.register_tools(self.mcp, self.config.calendar, self.store)
        await self.module.on_startup(self.config.calendar, self.store, self.config.google)
        logger.info(
            "Server %s ready (transport=%s)", self.config.name, self.config.transport
        )

    def _register_core_tools(self) -> None:
        assert self.mcp is not None
        server = self

        @self.mcp.tool()
        async def describe_actions() -> dict[str, Any]:
            """Describe every calendar action, its parameters and the error types."""
            dispatcher = server.module.dispatcher
            if dispatcher is None:
                return {
                    "name": "Google Calendar MCP",
                    "authenticated": False,
                    "message": "Authorize calendar access to list available actions",
                }
            return dispatcher.describe_actions()

    async def serve(self) -> None:
        """Start the server and block until the transport exits."""
        await self.start()
        assert self.mcp is not None
        try:
            if self.config.transport == "stdio":
                await self.mcp.run_async(transport="stdio")
            else:
                await self._start_http_server()
                assert self._server_task is not None
                await self._server_task
        finally:
            await self.shutdown()

    async def _start_http_server(self) -> None:
        """Start the FastMCP HTTP app under uvicorn as a background task."""
        assert self.mcp is not None
        app = self.mcp.http_app(transport=self.config.transport)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.port,
            log_level="info",
            timeout_graceful_shutdown=0,
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())

    async def shutdown(self) -> None:
        """Graceful shutdown: HTTP server, module, then the state store."""
        logger.info("Shutting down %s", self.config.name)

        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None and not self._server_task.done():
            try:
                await self._server_task
            except Exception:
                logger.exception("Error while stopping MCP server")
        self._server_task = None
        self._server = None

        try:
            await self.module.on_shutdown()
        except Exception:
            logger.exception("Error during shutdown of module: %s", self.module.name)

        if self.store is not None:
            await self.store.close()
        self.store = None
