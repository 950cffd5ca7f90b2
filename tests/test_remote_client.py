"""
Tests for the remote tool connection manager.
"""

import asyncio
import base64
import json
import logging
from contextlib import asynccontextmanager
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import anyio
import pytest

from fakes import CountingConnector, FakeToolSession
from triage_agent.errors import ConnectivityError, UpstreamError
from triage_agent.tools.remote_client import ConnectionState, RemoteToolClient, SessionOwner, build_server_url


class TestConnectionLifecycle:

    async def test_connects_lazily_and_reuses_handle(self, remote_client, connector):
        assert remote_client.state is ConnectionState.DISCONNECTED
        assert connector.calls == 0

        first = await remote_client.get_handle()
        second = await remote_client.get_handle()

        assert first is second
        assert connector.calls == 1
        assert remote_client.state is ConnectionState.CONNECTED

    async def test_invalidate_triggers_exactly_one_reconnect(self, remote_client, connector):
        await remote_client.get_handle()

        await remote_client.invalidate()
        assert remote_client.state is ConnectionState.DISCONNECTED

        await remote_client.get_handle()
        await remote_client.get_handle()
        assert connector.calls == 2

    async def test_concurrent_callers_share_one_connection_attempt(self):
        gate = asyncio.Event()
        session = FakeToolSession()
        calls = []

        async def slow_connector():
            calls.append(1)
            await gate.wait()
            return session, None

        client = RemoteToolClient(connector=slow_connector)
        waiters = [asyncio.create_task(client.get_handle()) for _ in range(3)]
        await asyncio.sleep(0)
        assert client.state is ConnectionState.CONNECTING

        gate.set()
        handles = await asyncio.gather(*waiters)

        assert len(calls) == 1
        assert all(h is session for h in handles)

    async def test_connection_failure_raises_connectivity_error_and_resets(self):
        connector = CountingConnector(errors=[OSError("dns failure")])
        client = RemoteToolClient(connector=connector)

        with pytest.raises(ConnectivityError):
            await client.get_handle()
        assert client.state is ConnectionState.DISCONNECTED

        await client.get_handle()
        assert connector.calls == 2
        assert client.state is ConnectionState.CONNECTED

    async def test_invalidate_closes_the_previous_transport(self):
        closed = []

        async def close():
            closed.append(True)

        async def connector():
            return FakeToolSession(), close

        client = RemoteToolClient(connector=connector)
        await client.get_handle()
        await client.aclose()

        assert closed == [True]


@asynccontextmanager
async def _task_group_session(log):
    """Holds an anyio task group open for the life of the session, like the MCP transport."""
    async with anyio.create_task_group() as tg:
        tg.start_soon(anyio.sleep_forever)
        log.append(("enter", asyncio.current_task()))
        try:
            yield FakeToolSession()
        finally:
            log.append(("exit", asyncio.current_task()))
            tg.cancel_scope.cancel()


class TestSessionOwner:

    async def test_connect_invalidate_and_reconnect_from_separate_tasks(self, caplog):
        log = []

        async def connector():
            owner = SessionOwner(lambda: _task_group_session(log))
            return await owner.start(), owner.aclose

        client = RemoteToolClient(connector=connector)
        with caplog.at_level(logging.WARNING):
            await asyncio.create_task(client.list_tools())
            await asyncio.create_task(client.call_tool("search_issues", {"query": "q"}))
            await asyncio.create_task(client.invalidate())
            await asyncio.create_task(client.list_tools())
            await asyncio.create_task(client.aclose())

        enters = [task for kind, task in log if kind == "enter"]
        exits = [task for kind, task in log if kind == "exit"]
        assert len(enters) == 2
        assert exits == enters
        assert "error closing stale connection" not in caplog.text
        assert "session ended with error" not in caplog.text

    async def test_failed_open_is_raised_from_start(self):
        @asynccontextmanager
        async def refused():
            raise OSError("handshake refused")
            yield

        with pytest.raises(OSError, match="handshake refused"):
            await SessionOwner(refused).start()

    async def test_failed_open_surfaces_as_connectivity_error(self):
        @asynccontextmanager
        async def refused():
            raise OSError("handshake refused")
            yield

        async def connector():
            owner = SessionOwner(refused)
            return await owner.start(), owner.aclose

        client = RemoteToolClient(connector=connector)
        with pytest.raises(ConnectivityError):
            await client.get_handle()
        assert client.state is ConnectionState.DISCONNECTED


class TestToolCalls:

    async def test_list_tools_builds_descriptors(self, remote_client):
        tools = await remote_client.list_tools()

        assert [t.name for t in tools] == ["search_issues"]
        assert tools[0].description == "search_issues tool"
        assert tools[0].input_schema == {"type": "object"}

    async def test_call_tool_normalises_text_parts(self, remote_client, tool_session):
        result = await remote_client.call_tool("search_issues", {"query": "x", "first": 10})

        assert result.is_error is False
        assert json.loads(result.first_text)[0]["title"] == "Checkout button unresponsive on iOS"
        assert tool_session.calls == [("search_issues", {"query": "x", "first": 10})]

    async def test_transport_errors_become_connectivity_errors(self):
        session = FakeToolSession(failures=[TimeoutError("read timed out")])
        client = RemoteToolClient(connector=CountingConnector(session))

        with pytest.raises(ConnectivityError):
            await client.call_tool("search_issues", {})

    async def test_tool_reported_error_is_upstream_error(self):
        class ErrorSession(FakeToolSession):
            async def call_tool(self, name, arguments=None):
                return SimpleNamespace(content=[SimpleNamespace(text="rate limited")], isError=True)

        client = RemoteToolClient(connector=CountingConnector(ErrorSession()))

        with pytest.raises(UpstreamError, match="rate limited"):
            await client.call_tool("search_issues", {})

    async def test_other_failures_are_upstream_errors(self):
        session = FakeToolSession(failures=[ValueError("bad arguments")])
        client = RemoteToolClient(connector=CountingConnector(session))

        with pytest.raises(UpstreamError):
            await client.call_tool("search_issues", {})


def test_build_server_url_encodes_config():
    url = build_server_url("https://tools.example.com/mcp", {"token": "abc"}, "gw-key")

    query = parse_qs(urlparse(url).query)
    assert url.startswith("https://tools.example.com/mcp?")
    assert json.loads(base64.b64decode(query["config"][0])) == {"token": "abc"}
    assert query["api_key"] == ["gw-key"]


def test_build_server_url_without_config():
    assert build_server_url("https://tools.example.com/mcp", None) == "https://tools.example.com/mcp"
