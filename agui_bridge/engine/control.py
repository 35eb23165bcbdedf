"""Named control operations over the correlation layer.

Thin typed wrappers around ControlCorrelator.issue(). Operations that
change agent settings also patch the locally cached capability fields
once the agent has acknowledged the change.
"""
from __future__ import annotations

import logging
from typing import Any

from .correlation import ControlCorrelator
from .errors import AlreadyInitializedError
from .models import SessionInitData
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class SessionControls:
    """Control operations keyed by session id."""

    def __init__(
        self,
        registry: SessionRegistry,
        correlator: ControlCorrelator,
        system_prompt: str = "",
        append_system_prompt: str = "",
    ) -> None:
        self._registry = registry
        self._correlator = correlator
        self._system_prompt = system_prompt
        self._append_system_prompt = append_system_prompt
        # Sessions with an initialize request awaiting its response.
        self._initializing: set[str] = set()

    async def send(
        self,
        session_id: str,
        request: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send an arbitrary control request. ``request`` must carry a subtype."""
        if not request.get("subtype"):
            raise ValueError("control request needs a 'subtype'")
        return await self._correlator.issue(session_id, request, timeout)

    async def initialize(
        self,
        session_id: str,
        *,
        hooks: dict[str, Any] | None = None,
        sdk_mcp_servers: list[str] | None = None,
        json_schema: dict[str, Any] | None = None,
        system_prompt: str | None = None,
        append_system_prompt: str | None = None,
        agents: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send ``initialize``. Allowed once per session.

        A call made while another initialize for the same session is still
        in flight raises AlreadyInitializedError as well. A failed request
        leaves the session uninitialized so it can be retried.
        """
        session = self._registry.require(session_id)
        if session.initialized or session_id in self._initializing:
            raise AlreadyInitializedError(session_id)

        request: dict[str, Any] = {"subtype": "initialize"}
        optional = {
            "hooks": hooks,
            "sdkMcpServers": sdk_mcp_servers,
            "jsonSchema": json_schema,
            "systemPrompt": system_prompt if system_prompt is not None else (self._system_prompt or None),
            "appendSystemPrompt": (
                append_system_prompt if append_system_prompt is not None
                else (self._append_system_prompt or None)
            ),
            "agents_config": agents,
        }
        request.update({k: v for k, v in optional.items() if v is not None})

        self._initializing.add(session_id)
        try:
            result = await self.send(session_id, request, timeout)
        finally:
            self._initializing.discard(session_id)

        session.initialized = True
        session.init_data = SessionInitData.from_response(result)
        logger.info(
            "Session %s initialized: %d commands, %d models",
            session_id[:8], len(session.init_data.commands), len(session.init_data.models),
        )
        return result

    async def interrupt(self, session_id: str, timeout: float | None = None) -> None:
        await self.send(session_id, {"subtype": "interrupt"}, timeout)

    async def set_model(self, session_id: str, model: str) -> None:
        """Switch model. "default" resets to the agent's default."""
        await self.send(session_id, {"subtype": "set_model", "model": model})
        session = self._registry.get(session_id)
        if session is not None and session.capabilities is not None:
            session.capabilities.model = model

    async def set_permission_mode(self, session_id: str, mode: str) -> dict[str, Any]:
        result = await self.send(session_id, {"subtype": "set_permission_mode", "mode": mode})
        session = self._registry.get(session_id)
        if session is not None and session.capabilities is not None:
            session.capabilities.permission_mode = result.get("mode") or mode
        return result

    async def set_max_thinking_tokens(self, session_id: str, max_thinking_tokens: int | None) -> None:
        """None removes the limit."""
        await self.send(session_id, {
            "subtype": "set_max_thinking_tokens",
            "max_thinking_tokens": max_thinking_tokens,
        })

    # ── MCP ──

    async def mcp_status(self, session_id: str) -> dict[str, Any]:
        return await self.send(session_id, {"subtype": "mcp_status"})

    async def mcp_reconnect(self, session_id: str, server_name: str) -> None:
        await self.send(session_id, {"subtype": "mcp_reconnect", "serverName": server_name})

    async def mcp_toggle(self, session_id: str, server_name: str, enabled: bool) -> None:
        await self.send(session_id, {
            "subtype": "mcp_toggle",
            "serverName": server_name,
            "enabled": enabled,
        })

    async def mcp_set_servers(self, session_id: str, servers: dict[str, Any]) -> None:
        await self.send(session_id, {"subtype": "mcp_set_servers", "servers": servers})

    async def mcp_message(self, session_id: str, server_name: str, message: Any) -> dict[str, Any]:
        """Forward a JSON-RPC message to one MCP server."""
        return await self.send(session_id, {
            "subtype": "mcp_message",
            "server_name": server_name,
            "message": message,
        })

    # ── Files ──

    async def rewind_files(
        self, session_id: str, user_message_id: str, dry_run: bool = False,
    ) -> dict[str, Any]:
        """Undo file changes made after ``user_message_id``."""
        return await self.send(session_id, {
            "subtype": "rewind_files",
            "user_message_id": user_message_id,
            "dry_run": dry_run,
        })
