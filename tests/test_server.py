"""Tests for server assembly and lifecycle."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from gcal_mcp.config import GoogleConfig, ServerConfig, StorageConfig
from gcal_mcp.core.state import InMemoryStateStore
from gcal_mcp.modules.calendar.module import CalendarModule
from gcal_mcp.server import CalendarServer, open_state_store

pytestmark = pytest.mark.unit


class _StubMCP:
    def __init__(self) -> None:
        self.tools: dict[str, object] = {}

    def tool(self, *_args, **_kwargs):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn

        return decorator


@pytest.fixture
def module() -> AsyncMock:
    module = AsyncMock(spec=CalendarModule)
    module.name = "calendar"
    module.dispatcher = None
    return module


@pytest.fixture
def config() -> ServerConfig:
    return ServerConfig(
        name="test-cal",
        google=GoogleConfig(client_id="id", client_secret="secret"),
        calendar={"timezone": "Europe/Berlin"},
    )


async def _start(server: CalendarServer) -> _StubMCP:
    stub = _StubMCP()
    with (
        patch("gcal_mcp.server.configure_logging") as configure,
        patch("gcal_mcp.server.FastMCP", return_value=stub) as fastmcp,
    ):
        await server.start()
    configure.assert_called_once_with(level="INFO", fmt="text", log_root=None)
    fastmcp.assert_called_once_with("test-cal")
    return stub


class TestOpenStateStore:
    async def test_memory_backend(self):
        assert isinstance(await open_state_store(StorageConfig()), InMemoryStateStore)

    async def test_postgres_backend(self):
        sentinel = MagicMock()
        with patch(
            "gcal_mcp.server.PostgresStateStore.connect", new=AsyncMock(return_value=sentinel)
        ) as connect:
            store = await open_state_store(
                StorageConfig(backend="postgres", dsn="postgresql://localhost/gcal")
            )
        assert store is sentinel
        connect.assert_awaited_once_with("postgresql://localhost/gcal")


class TestCalendarServer:
    async def test_start_wires_module(self, config, module):
        server = CalendarServer(config, module=module)
        stub = await _start(server)

        assert isinstance(server.store, InMemoryStateStore)
        module.register_tools.assert_awaited_once_with(stub, config.calendar, server.store)
        module.on_startup.assert_awaited_once_with(config.calendar, server.store, config.google)
        assert "describe_actions" in stub.tools

    async def test_describe_actions_before_authorization(self, config, module):
        stub = await _start(CalendarServer(config, module=module))

        result = await stub.tools["describe_actions"]()

        assert result["authenticated"] is False

    async def test_describe_actions_from_dispatcher(self, config, module):
        module.dispatcher = MagicMock()
        module.dispatcher.describe_actions.return_value = {"actions": {}}
        stub = await _start(CalendarServer(config, module=module))

        assert await stub.tools["describe_actions"]() == {"actions": {}}

    async def test_shutdown_closes_module_and_store(self, config, module):
        server = CalendarServer(config, module=module)
        await _start(server)

        await server.shutdown()

        module.on_shutdown.assert_awaited_once()
        assert server.store is None

    async def test_shutdown_survives_module_errors(self, config, module, caplog):
        module.on_shutdown.side_effect = RuntimeError("boom")
        server = CalendarServer(config, module=module)
        await _start(server)

        await server.shutdown()

        assert "Error during shutdown of module: calendar" in caplog.text
        assert server.store is None

    async def test_stdio_serve_runs_and_shuts_down(self, config, module):
        server = CalendarServer(config, module=module)
        stub = _StubMCP()
        stub.run_async = AsyncMock()
        with (
            patch("gcal_mcp.server.configure_logging"),
            patch("gcal_mcp.server.FastMCP", return_value=stub),
        ):
            await server.serve()

        stub.run_async.assert_awaited_once_with(transport="stdio")
        module.on_shutdown.assert_awaited_once()
