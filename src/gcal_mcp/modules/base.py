"""Abstract base class for server modules."""

from __future__ import annotations

import abc
from typing import Any

from pydantic import BaseModel


class Module(abc.ABC):
    """Abstract base class for server modules.

    A module owns one domain: it validates its own configuration, registers
    its MCP tools, and manages whatever background work it needs between
    ``on_startup`` and ``on_shutdown``.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Unique module name (e.g., 'calendar')."""
        ...

    @property
    @abc.abstractmethod
    def config_schema(self) -> type[BaseModel]:
        """Pydantic model class for this module's configuration."""
        ...

    @abc.abstractmethod
    async def register_tools(self, mcp: Any, config: Any, store: Any) -> None:
        """Register MCP tools on the FastMCP server."""
        ...

    @abc.abstractmethod
    async def on_startup(self, config: Any, store: Any, credentials: Any = None) -> None:
        """Called once the state store is available.

        Parameters
        ----------
        config:
            Module-specific validated configuration object (or raw dict).
        store:
            The server's :class:`~gcal_mcp.core.state.StateStore`.
        credentials:
            Optional provider client settings. May be ``None`` in tests.
        """
        ...

    @abc.abstractmethod
    async def on_shutdown(self) -> None:
        """Called during server shutdown."""
        ...
