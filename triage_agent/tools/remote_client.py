"""
remote_client.py — Connection manager for the issue tracker's MCP server.

The connection is owned by a RemoteToolClient with an explicit lifecycle:

    DISCONNECTED ──get_handle()──▶ CONNECTING ──ok──▶ CONNECTED
          ▲                            │                  │
          └────────── failure ─────────┘◀── invalidate() ─┘

While a connection attempt is in flight every other caller awaits the same
future instead of starting its own attempt. Transport failures surface as
ConnectivityError so callers can invalidate and retry without looking at
message text.
"""

import asyncio
import base64
import json
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Protocol

import anyio
import httpx
from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from mcp.types import Implementation

from triage_agent.config import (
    TOOL_CLIENT_NAME,
    TOOL_CLIENT_VERSION,
    TOOL_GATEWAY_API_KEY,
    TOOL_SERVER_URL,
    require,
)
from triage_agent.errors import ConnectivityError, TriageError, UpstreamError
from triage_agent.tools.catalog import RemoteTool, ToolCallResult

logger = logging.getLogger(__name__)

# JSON-RPC code the MCP SDK uses when the transport closes under a request
_CONNECTION_CLOSED_CODE = -32000

_TRANSPORT_ERRORS = (
    httpx.TransportError,
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    asyncio.TimeoutError,
    OSError,
)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ToolSession(Protocol):
    async def list_tools(self) -> Any:
        ...

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        ...


Closer = Callable[[], Awaitable[None]]
Connector = Callable[[], Awaitable[tuple[ToolSession, Closer | None]]]


def build_server_url(base_url: str, config: dict[str, Any] | None, api_key: str | None = None) -> str:
    """Attach the base64-encoded JSON server config (and gateway key) as query params."""
    params: dict[str, str] = {}
    if config:
        params["config"] = base64.b64encode(json.dumps(config).encode("utf-8")).decode("ascii")
    if api_key:
        params["api_key"] = api_key
    if not params:
        return base_url
    return str(httpx.URL(base_url).copy_merge_params(params))


class SessionOwner:
    """
    Runs a session's async context inside one dedicated task.

    The MCP transport keeps an anyio task group open for the life of the
    session, and anyio requires it to be exited by the task that entered it.
    Requests, retries and shutdown all happen in other tasks, so none of
    them enter or exit the context themselves: `start()` spawns the owner
    task and waits until the session is ready, `aclose()` signals the owner
    and waits for it to unwind.
    """

    def __init__(self, open_session: Callable[[], AsyncContextManager[ToolSession]], name: str = "tool-session") -> None:
        self._open_session = open_session
        self._name = name
        self._closing = asyncio.Event()
        self._ready: asyncio.Future | None = None
        self._task: asyncio.Task | None = None

    async def start(self) -> ToolSession:
        self._ready = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run(), name=self._name)
        try:
            await asyncio.wait({self._ready, self._task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._task.cancel()
            raise
        if not self._ready.done():
            raise ConnectivityError("Tool server session ended while connecting")
        return self._ready.result()

    async def _run(self) -> None:
        try:
            async with self._open_session() as session:
                self._ready.set_result(session)
                await self._closing.wait()
        except Exception as exc:
            if not self._ready.done():
                self._ready.set_exception(exc)
                return
            logger.warning("SessionOwner[%s]: session ended with error: %s", self._name, exc)

    async def aclose(self) -> None:
        self._closing.set()
        if self._task is not None:
            await self._task


@asynccontextmanager
async def _mcp_session(url: str) -> AsyncIterator[ClientSession]:
    async with streamablehttp_client(url) as (read_stream, write_stream, _):
        async with ClientSession(
            read_stream,
            write_stream,
            client_info=Implementation(name=TOOL_CLIENT_NAME, version=TOOL_CLIENT_VERSION),
        ) as session:
            await session.initialize()
            yield session


async def open_mcp_session() -> tuple[ToolSession, Closer]:
    """Default connector: streamable-HTTP MCP session to the configured server."""
    url = build_server_url(
        TOOL_SERVER_URL,
        {"token": require("TRACKER_API_KEY")},
        TOOL_GATEWAY_API_KEY,
    )
    logger.info("Connecting to tool server %s", TOOL_SERVER_URL)
    owner = SessionOwner(lambda: _mcp_session(url), name="mcp-session")
    session = await owner.start()
    return session, owner.aclose


def _classify(exc: Exception, action: str) -> TriageError:
    if isinstance(exc, TriageError):
        return exc
    if isinstance(exc, _TRANSPORT_ERRORS):
        return ConnectivityError(f"Tool server connection lost during {action}: {exc!r}")
    if isinstance(exc, McpError) and getattr(exc.error, "code", None) == _CONNECTION_CLOSED_CODE:
        return ConnectivityError(f"Tool server connection closed during {action}: {exc}")
    return UpstreamError(f"Tool server error during {action}: {exc}")


class RemoteToolClient:
    """
    Lazily connected, explicitly invalidated handle to the remote tool server.

    Example:
        client = RemoteToolClient()
        tools = await client.list_tools()
        result = await client.call_tool("search_issues", {"query": "login", "first": 10})
    """

    def __init__(self, connector: Connector | None = None) -> None:
        self._connector = connector or open_mcp_session
        self._state = ConnectionState.DISCONNECTED
        self._session: ToolSession | None = None
        self._closer: Closer | None = None
        self._pending: asyncio.Future | None = None
        self.connect_attempts = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def get_handle(self) -> ToolSession:
        """Return the connected session, connecting first if needed."""
        if self._state is ConnectionState.CONNECTED and self._session is not None:
            return self._session
        if self._pending is not None:
            return await asyncio.shield(self._pending)

        pending = asyncio.get_running_loop().create_future()
        self._pending = pending
        self._state = ConnectionState.CONNECTING
        self.connect_attempts += 1
        logger.info("RemoteToolClient: connecting (attempt #%d)", self.connect_attempts)
        t0 = time.perf_counter()

        try:
            session, closer = await self._connector()
        except asyncio.CancelledError:
            self._state = ConnectionState.DISCONNECTED
            self._pending = None
            pending.cancel()
            raise
        except Exception as exc:
            self._state = ConnectionState.DISCONNECTED
            self._pending = None
            error = exc if isinstance(exc, ConnectivityError) else ConnectivityError(
                f"Failed to connect to tool server: {exc!r}"
            )
            logger.error("RemoteToolClient: connection failed: %s", exc)
            pending.set_exception(error)
            pending.exception()   # waiters may be absent
            if error is exc:
                raise
            raise error from exc

        self._session, self._closer = session, closer
        self._state = ConnectionState.CONNECTED
        self._pending = None
        pending.set_result(session)
        logger.info("RemoteToolClient: connected in %.3fs", time.perf_counter() - t0)
        return session

    async def invalidate(self) -> None:
        """Drop the cached connection; the next get_handle() reconnects."""
        logger.warning("RemoteToolClient: connection marked as disconnected")
        closer = self._closer
        self._session = None
        self._closer = None
        if self._state is ConnectionState.CONNECTED:
            self._state = ConnectionState.DISCONNECTED
        if closer is not None:
            try:
                await closer()
            except Exception as exc:
                logger.warning("RemoteToolClient: error closing stale connection: %s", exc)

    async def aclose(self) -> None:
        await self.invalidate()

    async def list_tools(self) -> list[RemoteTool]:
        """Snapshot of the server's tool catalog."""
        session = await self.get_handle()
        try:
            listing = await session.list_tools()
        except Exception as exc:
            raise _classify(exc, "list_tools") from exc

        tools = []
        for tool in getattr(listing, "tools", None) or []:
            name = getattr(tool, "name", None)
            if not isinstance(name, str):
                continue
            tools.append(
                RemoteTool(
                    name=name,
                    description=getattr(tool, "description", None),
                    input_schema=getattr(tool, "inputSchema", None),
                )
            )
        logger.info("MCP tools available: %s", ", ".join(t.name for t in tools) or "none")
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolCallResult:
        """
        Invoke a remote tool.

        Raises:
            ConnectivityError: Transport failure; invalidate and retry.
            UpstreamError:     The server or the tool reported an error.
        """
        session = await self.get_handle()
        logger.info("Calling MCP tool: %s with params: %s", name, arguments)
        try:
            raw = await session.call_tool(name, arguments=arguments)
        except Exception as exc:
            raise _classify(exc, f"call_tool({name})") from exc

        result = ToolCallResult(
            texts=[
                part.text
                for part in getattr(raw, "content", None) or []
                if isinstance(getattr(part, "text", None), str)
            ],
            is_error=bool(getattr(raw, "isError", False)),
        )
        if result.is_error:
            raise UpstreamError(f"Tool {name} reported an error: {result.first_text[:200]}")
        logger.info("MCP tool call successful — %d text part(s)", len(result.texts))
        return result


# ─── Process-wide instance ────────────────────────────────────────────────────
_remote_client: RemoteToolClient | None = None


def get_remote_client() -> RemoteToolClient:
    global _remote_client
    if _remote_client is None:
        _remote_client = RemoteToolClient()
    return _remote_client
