"""
WorkIQ session manager — owns the long-lived ``workiq mcp`` process.

The manager is the bridge between remote-query endpoints and the running
tool server. It is constructed once by the host and shared by every
handler that needs it.

Usage:
    client = WorkIQClient(WorkIQSettings.from_env())

    # Connects lazily on first use
    answer = await client.ask("What meetings do I have on Monday?")

    # Terminate the child on shutdown
    await client.close()

Handshake (must finish, in order, before a query is accepted):
    1. initialize                  → protocol version + client info
    2. notifications/initialized   → no response
    3. tools/list                  → tool catalog
    4. accept_eula (if listed)     → failure is only a warning
    5. state = READY
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from lambda_service import __version__
from lambda_service.errors import RpcError, ToolError, ToolNotFoundError, TransportClosedError
from lambda_service.session import DEFAULT_REQUEST_TIMEOUT, RpcSession
from lambda_service.transport import StdioTransport

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "ai-lambda-service"


@dataclass
class WorkIQSettings:
    """Where the ``workiq`` binary lives and how to talk to it."""
    binary: str = "workiq"
    bin_dir: str | None = None
    server_args: list[str] = field(default_factory=lambda: ["mcp"])
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    cli_timeout: float = 180.0
    cli_max_output: int = 10 * 1024 * 1024
    query_tool: str = "ask_work_iq"
    query_argument: str = "question"
    consent_tool: str = "accept_eula"
    consent_arguments: dict[str, Any] = field(
        default_factory=lambda: {"eulaUrl": "https://github.com/microsoft/work-iq-mcp"}
    )

    @classmethod
    def from_env(cls) -> WorkIQSettings:
        settings = cls()
        settings.binary = os.getenv("WORKIQ_BIN", settings.binary)
        settings.bin_dir = os.getenv("WORKIQ_BIN_DIR") or None
        settings.request_timeout = float(os.getenv("WORKIQ_REQUEST_TIMEOUT", settings.request_timeout))
        settings.cli_timeout = float(os.getenv("WORKIQ_CLI_TIMEOUT", settings.cli_timeout))
        return settings

    @property
    def server_command(self) -> list[str]:
        return [self.binary, *self.server_args]


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"


TransportFactory = Callable[..., StdioTransport]


class WorkIQClient:
    """
    Manages the lifecycle of one WorkIQ tool server process.

    Responsibilities:
    - Launch the server lazily and run the handshake
    - Keep the discovered tool catalog
    - Answer ``ask()`` queries through ``tools/call``
    - Reset on process exit; reconnect on the next query
    """

    def __init__(
        self,
        settings: WorkIQSettings | None = None,
        transport_factory: TransportFactory = StdioTransport,
    ):
        self.settings = settings or WorkIQSettings()
        self._transport_factory = transport_factory
        self._transport: StdioTransport | None = None
        self._session: RpcSession | None = None
        self._state = SessionState.DISCONNECTED
        self._tools: list[dict[str, Any]] = []
        self._connect_lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    def list_tools(self) -> list[dict[str, Any]]:
        """Tool catalog discovered during the last handshake."""
        return list(self._tools)

    async def connect(self) -> None:
        """
        Start the server and run the handshake.

        Concurrent callers share one handshake: the lock admits one at a
        time and later callers return as soon as they see READY.
        """
        async with self._connect_lock:
            if self.is_ready:
                return
            try:
                await self._connect()
            except BaseException:
                await self._teardown()
                raise

    async def _connect(self) -> None:
        self._state = SessionState.CONNECTING
        transport = self._transport_factory(
            self.settings.server_command,
            bin_dir=self.settings.bin_dir,
        )
        session = RpcSession(transport, timeout=self.settings.request_timeout)
        transport.on_message = session.handle_message
        transport.on_exit = lambda returncode: self._on_exit(transport, returncode)
        self._transport, self._session = transport, session
        await transport.start()

        self._state = SessionState.HANDSHAKING
        init = await session.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": CLIENT_NAME, "version": __version__},
        })
        server_info = (init or {}).get("serverInfo", {}) if isinstance(init, dict) else {}
        logger.info(f"WorkIQ initialized: {server_info.get('name', 'unknown')} {server_info.get('version', '')}".rstrip())

        await session.notify("notifications/initialized")

        listing = await session.request("tools/list")
        self._tools = list((listing or {}).get("tools", [])) if isinstance(listing, dict) else []
        logger.info(f"WorkIQ tools: {[t.get('name') for t in self._tools]}")

        if self._find_tool(self.settings.consent_tool):
            try:
                await session.request("tools/call", {
                    "name": self.settings.consent_tool,
                    "arguments": self.settings.consent_arguments,
                })
                logger.info("WorkIQ EULA accepted")
            except RpcError as e:
                # Consent may already be on record.
                logger.warning(f"EULA acceptance failed (may already be accepted): {e}")

        if self._state is not SessionState.HANDSHAKING or not transport.is_alive():
            raise TransportClosedError("WorkIQ process exited during handshake")
        self._state = SessionState.READY

    async def ask(self, query: str) -> str:
        """
        Send a natural-language query and return the text answer.

        Raises:
            ToolNotFoundError: the server exposes no query tool.
            ToolError: the tool reported ``isError``.
        """
        if not self.is_ready:
            await self.connect()
        session = self._session
        if session is None:
            raise TransportClosedError("WorkIQ session closed")

        tool = self._find_tool(self.settings.query_tool)
        if tool is None:
            raise ToolNotFoundError(self.settings.query_tool, [t.get("name", "?") for t in self._tools])

        key = self._argument_key(tool)
        logger.debug(f"Calling {self.settings.query_tool} with key '{key}'")
        result = await session.request("tools/call", {
            "name": self.settings.query_tool,
            "arguments": {key: query},
        })

        text = first_text(result)
        if isinstance(result, dict) and result.get("isError"):
            raise ToolError(text or "WorkIQ tool returned an error")
        if text is not None:
            return text
        return result if isinstance(result, str) else json.dumps(result)

    async def close(self) -> None:
        """Stop the server process."""
        async with self._connect_lock:
            await self._teardown()

    def _argument_key(self, tool: dict[str, Any]) -> str:
        # First declared property wins; fragile if the server reorders its schema.
        schema = tool.get("inputSchema") or {}
        properties = schema.get("properties") or {}
        return next(iter(properties), self.settings.query_argument)

    def _find_tool(self, name: str) -> dict[str, Any] | None:
        return next((t for t in self._tools if t.get("name") == name), None)

    def _on_exit(self, transport: StdioTransport, returncode: int | None) -> None:
        if transport is not self._transport:
            return
        logger.warning(f"WorkIQ process exited (code {returncode}); will reconnect on next query")
        self._state = SessionState.DISCONNECTED
        self._tools = []
        if self._session:
            self._session.fail_all(TransportClosedError(f"WorkIQ process exited with code {returncode}"))

    async def _teardown(self) -> None:
        transport, session = self._transport, self._session
        self._transport = self._session = None
        self._state = SessionState.DISCONNECTED
        self._tools = []
        if session:
            session.fail_all(TransportClosedError("WorkIQ session closed"))
        if transport:
            await transport.stop()


def first_text(result: Any) -> str | None:
    """First ``{"type": "text"}`` item of a tools/call result, if any."""
    if not isinstance(result, dict):
        return None
    for item in result.get("content") or []:
        if isinstance(item, dict) and item.get("type") == "text":
            return item.get("text", "")
    return None
