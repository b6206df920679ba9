"""
Tests for McpSession.

Two kinds of tests live here:
1. Cache and gating tests that put a session straight into the ready
   state with a mocked ``mcp.ClientSession``
2. Connect-flow tests that patch the transport and ClientSession so the
   whole lifecycle runs without a server process

Protocol tests against a real server live in test_integration.py.
"""

import asyncio
import io
import logging
import os
import sys
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import anyio
import pytest
from mcp import types

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from microscope.client.errors import ConnectError, InvalidLogLevelError, NotConnectedError
from microscope.client.models import ResourceInfo, ToolInfo
from microscope.client.session import LOG_LEVELS, McpSession, SessionState, format_log_line
from microscope.client.targets import resolve_server_spec


ECHO_TOOL = types.Tool(
    name="echo",
    description="Echo a message",
    inputSchema={
        "type": "object",
        "properties": {"message": {"type": "string"}},
        "required": ["message"],
    },
)

FULL_CAPABILITIES = types.ServerCapabilities(
    tools=types.ToolsCapability(),
    logging=types.LoggingCapability(),
    resources=types.ResourcesCapability(listChanged=True),
)


def ready_session(client, output=None):
    """Session put directly into the ready state around a mocked client."""
    session = McpSession(output=output)
    session._client = client
    session._transport = (MagicMock(), MagicMock())
    session._server_capabilities = {}
    session._state = SessionState.READY
    return session


def make_client(capabilities=None, tools=(), resources=()):
    """Mocked ``mcp.ClientSession`` usable as an async context manager."""
    client = MagicMock()
    client.__aenter__.return_value = client
    client.initialize = AsyncMock(
        return_value=types.InitializeResult(
            protocolVersion=types.LATEST_PROTOCOL_VERSION,
            capabilities=capabilities or types.ServerCapabilities(),
            serverInfo=types.Implementation(name="test-server", version="0.1.0"),
        )
    )
    client.set_logging_level = AsyncMock()
    client.send_roots_list_changed = AsyncMock()
    client.list_tools = AsyncMock(return_value=types.ListToolsResult(tools=list(tools)))
    client.list_resources = AsyncMock(
        return_value=types.ListResourcesResult(resources=list(resources))
    )
    client.read_resource = AsyncMock()
    client.call_tool = AsyncMock()
    return client


@asynccontextmanager
async def fake_transport(target, env=None):
    yield MagicMock(), MagicMock()


def resource(uri, name=""):
    return types.Resource(uri=uri, name=name)


class TestResourceCache:
    """Replace-on-success and preserve-on-failure semantics of the resource map."""

    @pytest.mark.asyncio
    async def test_relist_replaces_map(self):
        client = make_client(resources=[resource("file:///a", "a"), resource("file:///b", "b")])
        session = ready_session(client)
        session._resources = {"file:///gone": ResourceInfo(uri="file:///gone")}

        assert await session.update_resources_list("relist failed") is True

        assert [r.uri for r in session.get_resources()] == ["file:///a", "file:///b"]
        assert session.get_resource("file:///gone") is None

    @pytest.mark.asyncio
    async def test_failed_relist_preserves_map(self, caplog):
        client = make_client()
        client.list_resources.side_effect = RuntimeError("server went away")
        session = ready_session(client)
        before = {"file:///a": ResourceInfo(uri="file:///a", name="a")}
        session._resources = dict(before)

        with caplog.at_level(logging.WARNING, logger="microscope.client.session"):
            assert await session.update_resources_list("relist failed") is False

        assert session._resources == before
        assert "relist failed: server went away" in caplog.text

    @pytest.mark.asyncio
    async def test_malformed_listing_preserves_map(self):
        client = make_client()
        client.list_resources.return_value = MagicMock(resources=[{"name": "no uri"}])
        session = ready_session(client)
        session._resources = {"file:///a": ResourceInfo(uri="file:///a")}

        assert await session.update_resources_list("relist failed") is False
        assert list(session._resources) == ["file:///a"]

    @pytest.mark.asyncio
    async def test_update_without_client_raises(self):
        session = McpSession()
        with pytest.raises(NotConnectedError):
            await session.update_resources_list("relist failed")

    @pytest.mark.asyncio
    async def test_resource_updated_upserts_single_entry(self):
        client = make_client()
        client.read_resource.return_value = types.ReadResourceResult(
            contents=[types.TextResourceContents(uri="file:///a", mimeType="text/plain", text="new")]
        )
        session = ready_session(client)
        other = ResourceInfo(uri="file:///b", name="b")
        session._resources = {
            "file:///a": ResourceInfo(uri="file:///a", name="a"),
            "file:///b": other,
        }

        await session._on_resource_updated(
            types.ResourceUpdatedNotification(
                method="notifications/resources/updated",
                params=types.ResourceUpdatedNotificationParams(uri="file:///a"),
            )
        )

        updated = session.get_resource("file:///a")
        assert updated.name == "a"
        assert updated.mime_type == "text/plain"
        assert session.get_resource("file:///b") is other

    @pytest.mark.asyncio
    async def test_failed_read_leaves_map_untouched(self, caplog):
        client = make_client()
        client.read_resource.side_effect = RuntimeError("not found")
        session = ready_session(client)
        before = {"file:///a": ResourceInfo(uri="file:///a", name="a")}
        session._resources = dict(before)

        with caplog.at_level(logging.WARNING, logger="microscope.client.session"):
            await session._on_resource_updated(
                types.ResourceUpdatedNotification(
                    method="notifications/resources/updated",
                    params=types.ResourceUpdatedNotificationParams(uri="file:///a"),
                )
            )

        assert session._resources == before
        assert "Failed to update resource file:///a" in caplog.text

    def test_get_resources_returns_copy(self):
        session = ready_session(make_client())
        session._resources = {"file:///a": ResourceInfo(uri="file:///a")}
        session.get_resources().clear()
        assert len(session.get_resources()) == 1


class TestTools:

    def test_get_tools_returns_new_list(self):
        session = ready_session(make_client())
        session._tools = [ToolInfo.from_payload(ECHO_TOOL)]

        snapshot = session.get_tools()
        snapshot.append(ToolInfo(name="injected"))

        assert [t.name for t in session.get_tools()] == ["echo"]
        assert session.get_tools() is not session.get_tools()

    def test_describe_tool(self):
        session = ready_session(make_client())
        session._tools = [ToolInfo.from_payload(ECHO_TOOL)]

        assert session.describe_tool("echo").required == ["message"]
        assert session.describe_tool("missing") is None

    @pytest.mark.asyncio
    async def test_refresh_tools(self):
        client = make_client(tools=[ECHO_TOOL])
        session = ready_session(client)

        tools = await session.refresh_tools()

        assert [t.name for t in tools] == ["echo"]
        client.list_tools.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_call_tool_passes_result_through(self):
        client = make_client()
        result = types.CallToolResult(
            content=[types.TextContent(type="text", text="boom")],
            isError=True,
        )
        client.call_tool.return_value = result
        session = ready_session(client)

        assert await session.call_tool("echo", {"message": "hi"}) is result
        client.call_tool.assert_awaited_once_with("echo", {"message": "hi"})

    @pytest.mark.asyncio
    async def test_call_tool_defaults_to_empty_arguments(self):
        client = make_client()
        session = ready_session(client)

        await session.call_tool("ping")

        client.call_tool.assert_awaited_once_with("ping", {})

    @pytest.mark.asyncio
    async def test_call_tool_propagates_errors(self):
        client = make_client()
        client.call_tool.side_effect = RuntimeError("transport closed")
        session = ready_session(client)

        with pytest.raises(RuntimeError, match="transport closed"):
            await session.call_tool("echo", {})


class TestLoggingLevel:

    def test_log_levels(self):
        session = McpSession()
        levels = session.get_log_levels()
        assert levels == list(LOG_LEVELS)
        levels.append("verbose")
        assert "verbose" not in session.get_log_levels()

    @pytest.mark.asyncio
    async def test_set_logging_level(self):
        client = make_client()
        session = ready_session(client)

        await session.set_logging_level("debug")

        client.set_logging_level.assert_awaited_once_with("debug")

    @pytest.mark.asyncio
    async def test_invalid_level_is_never_sent(self):
        client = make_client()
        session = ready_session(client)

        with pytest.raises(InvalidLogLevelError):
            await session.set_logging_level("verbose")

        client.set_logging_level.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_level_match_is_case_sensitive(self):
        session = ready_session(make_client())
        with pytest.raises(InvalidLogLevelError):
            await session.set_logging_level("DEBUG")

    @pytest.mark.asyncio
    async def test_invalid_level_checked_before_connection(self):
        with pytest.raises(InvalidLogLevelError):
            await McpSession().set_logging_level("verbose")


class TestNotConnected:
    """Operations outside the ready state."""

    @pytest.mark.asyncio
    async def test_operations_require_ready_state(self):
        session = McpSession()

        with pytest.raises(NotConnectedError):
            session.get_tools()
        with pytest.raises(NotConnectedError):
            session.describe_tool("echo")
        with pytest.raises(NotConnectedError):
            session.get_resources()
        with pytest.raises(NotConnectedError):
            await session.call_tool("echo", {})
        with pytest.raises(NotConnectedError) as exc_info:
            await session.set_logging_level("info")

        assert "state: unconnected" in str(exc_info.value)

    def test_handshake_info_before_connect(self):
        session = McpSession()
        info = session.get_handshake_info()

        assert info.connected is False
        assert info.server_capabilities is None
        assert info.client_capabilities == {"roots": {"listChanged": True}}
        assert session.verify_handshake() is False


class TestNotificationHandlers:

    @pytest.mark.asyncio
    async def test_log_message_is_printed(self):
        output = io.StringIO()
        session = ready_session(make_client(), output=output)

        await session._on_log_message(
            types.LoggingMessageNotification(
                method="notifications/message",
                params=types.LoggingMessageNotificationParams(level="warning", logger="db", data="slow query"),
            )
        )

        assert output.getvalue() == "[warning] db: slow query\n"

    @pytest.mark.asyncio
    async def test_quiet_session_suppresses_log_messages(self):
        output = io.StringIO()
        session = ready_session(make_client(), output=output)
        session._quiet = True

        await session._on_log_message(
            types.LoggingMessageNotification(
                method="notifications/message",
                params=types.LoggingMessageNotificationParams(level="info", data="hidden"),
            )
        )

        assert output.getvalue() == ""

    @pytest.mark.asyncio
    async def test_unhandled_notification_is_logged(self, caplog):
        session = ready_session(make_client())

        with caplog.at_level(logging.WARNING, logger="microscope.client.session"):
            await session._on_unhandled_notification(
                types.ToolListChangedNotification(method="notifications/tools/list_changed")
            )

        assert "Notification type handling not implemented in client" in caplog.text
        assert "notifications/tools/list_changed" in caplog.text

    def test_format_log_line(self):
        assert format_log_line("info", None, "plain") == "[info]: plain"
        assert format_log_line("error", "api", {"code": 1}) == '[error] api: {"code": 1}'


class TestConnect:
    """Full lifecycle with the transport and ClientSession patched out."""

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        client = make_client(
            capabilities=FULL_CAPABILITIES,
            tools=[ECHO_TOOL],
            resources=[resource("file:///a", "a")],
        )

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client) as session_cls:
            session = McpSession()
            await session.connect(resolve_server_spec("./server.py"), handshake_timeout=5)

            assert session.state is SessionState.READY
            assert session_cls.call_args.kwargs["client_info"].name == "MiCroscoPe"
            client.set_logging_level.assert_awaited_once_with("info")
            client.send_roots_list_changed.assert_awaited_once()
            assert [t.name for t in session.get_tools()] == ["echo"]
            assert [r.uri for r in session.get_resources()] == ["file:///a"]

            info = session.get_handshake_info()
            assert info.connected is True
            assert info.transport_type == "stdio"
            assert info.server_info["name"] == "test-server"
            assert "logging" in info.server_capabilities
            assert session.verify_handshake() is True

            await session.disconnect()

        assert session.state is SessionState.DISCONNECTED
        assert session.get_handshake_info().connected is False
        with pytest.raises(NotConnectedError):
            session.get_tools()

        # Idempotent
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_optional_capabilities_are_skipped(self):
        client = make_client(tools=[ECHO_TOOL])

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client):
            async with McpSession() as session:
                await session.connect(resolve_server_spec("./server.py"), handshake_timeout=5)

                client.set_logging_level.assert_not_awaited()
                client.list_resources.assert_not_awaited()
                assert session.get_resources() == []

    @pytest.mark.asyncio
    async def test_initial_resource_failure_does_not_fail_connect(self):
        client = make_client(capabilities=FULL_CAPABILITIES, tools=[ECHO_TOOL])
        client.list_resources.side_effect = RuntimeError("not yet")

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client):
            async with McpSession() as session:
                await session.connect(resolve_server_spec("./server.py"), handshake_timeout=5)
                assert session.state is SessionState.READY
                assert session.get_resources() == []

    @pytest.mark.asyncio
    async def test_notifications_are_dispatched_after_connect(self):
        client = make_client(capabilities=FULL_CAPABILITIES)
        client.list_resources.side_effect = [
            types.ListResourcesResult(resources=[resource("file:///a")]),
            types.ListResourcesResult(resources=[resource("file:///b")]),
        ]

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client) as session_cls:
            async with McpSession() as session:
                await session.connect(resolve_server_spec("./server.py"), handshake_timeout=5)
                message_handler = session_cls.call_args.kwargs["message_handler"]

                await message_handler(
                    types.ServerNotification(
                        types.ResourceListChangedNotification(method="notifications/resources/list_changed")
                    )
                )
                await anyio.wait_all_tasks_blocked()

                assert [r.uri for r in session.get_resources()] == ["file:///b"]

    @pytest.mark.asyncio
    async def test_handshake_failure_raises_connect_error(self):
        client = make_client()
        client.initialize.side_effect = RuntimeError("protocol version rejected")

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client):
            session = McpSession()
            with pytest.raises(ConnectError, match="protocol version rejected"):
                await session.connect(resolve_server_spec("./server.py"), handshake_timeout=5)

        assert session.state is SessionState.DISCONNECTED
        assert session.get_handshake_info().connected is False
        assert session.verify_handshake() is False

    @pytest.mark.asyncio
    async def test_handshake_timeout(self):
        client = make_client()

        async def hang():
            await anyio.sleep(10)

        client.initialize.side_effect = hang

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client):
            session = McpSession()
            with pytest.raises(ConnectError, match="timed out"):
                await session.connect(resolve_server_spec("./server.py"), handshake_timeout=0.05)

        assert session.state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_missing_capabilities_fail_handshake(self):
        client = make_client()
        client.initialize.return_value = MagicMock(capabilities=None)

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client):
            session = McpSession()
            with pytest.raises(ConnectError, match="no server capabilities"):
                await session.connect(resolve_server_spec("./server.py"), handshake_timeout=5)

    @pytest.mark.asyncio
    async def test_transport_failure_raises_connect_error(self):
        @asynccontextmanager
        async def broken_transport(target, env=None):
            raise FileNotFoundError("node: command not found")
            yield

        with patch("microscope.client.session.open_transport", broken_transport):
            session = McpSession()
            with pytest.raises(ConnectError, match="command not found"):
                await session.connect(resolve_server_spec("./server.js"))

        assert session.state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_session_is_single_use(self):
        session = McpSession()
        await session.disconnect()

        with pytest.raises(ConnectError, match="create a new McpSession"):
            await session.connect(resolve_server_spec("./server.py"))

    @pytest.mark.asyncio
    async def test_verify_handshake_is_false_until_capabilities_arrive(self):
        client = make_client(tools=[ECHO_TOOL])
        result = client.initialize.return_value
        session = McpSession()
        seen = {}

        async def initialize():
            seen["state"] = session.state
            seen["connected"] = session.get_handshake_info().connected
            seen["verified"] = session.verify_handshake()
            return result

        client.initialize.side_effect = initialize

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client):
            await session.connect(resolve_server_spec("./server.py"), handshake_timeout=5)
            assert session.verify_handshake() is True
            await session.disconnect()

        assert seen == {"state": SessionState.HANDSHAKING, "connected": True, "verified": False}

    @pytest.mark.asyncio
    async def test_no_handler_runs_after_disconnect(self):
        client = make_client(capabilities=FULL_CAPABILITIES)
        relist_started = anyio.Event()
        relists_done = []

        async def list_resources():
            if client.list_resources.await_count > 1:
                relist_started.set()
                await anyio.sleep_forever()
            relists_done.append(client.list_resources.await_count)
            return types.ListResourcesResult(resources=[resource("file:///a")])

        client.list_resources.side_effect = list_resources
        notification = types.ServerNotification(
            types.ResourceListChangedNotification(method="notifications/resources/list_changed")
        )

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client) as session_cls:
            session = McpSession()
            await session.connect(resolve_server_spec("./server.py"), handshake_timeout=5)
            message_handler = session_cls.call_args.kwargs["message_handler"]

            # A relist handler is left pending when the session goes away
            await message_handler(notification)
            await relist_started.wait()
            await session.disconnect()

            await message_handler(notification)
            await anyio.wait_all_tasks_blocked()

        assert relists_done == [1]
        assert client.list_resources.await_count == 2
        assert session.state is SessionState.DISCONNECTED


class TestCallerTimeouts:
    """connect() wrapped in the caller's own timeout, torn down from elsewhere."""

    @pytest.mark.asyncio
    async def test_connect_under_wait_for(self):
        client = make_client(tools=[ECHO_TOOL])

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client):
            session = McpSession()
            await asyncio.wait_for(
                session.connect(resolve_server_spec("./server.py"), handshake_timeout=5),
                timeout=5,
            )
            assert [t.name for t in session.get_tools()] == ["echo"]

            await session.disconnect()

        assert session.state is SessionState.DISCONNECTED
        client.__aexit__.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_under_fail_after(self):
        client = make_client(tools=[ECHO_TOOL])

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client):
            session = McpSession()
            with anyio.fail_after(5):
                await session.connect(resolve_server_spec("./server.py"), handshake_timeout=5)
            assert session.state is SessionState.READY

            await session.disconnect()

        assert session.state is SessionState.DISCONNECTED
        client.__aexit__.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disconnect_from_another_task(self):
        client = make_client(tools=[ECHO_TOOL])

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client):
            session = McpSession()
            await session.connect(resolve_server_spec("./server.py"), handshake_timeout=5)

            async with anyio.create_task_group() as tg:
                tg.start_soon(session.disconnect)

        assert session.state is SessionState.DISCONNECTED
        client.__aexit__.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expired_caller_timeout_tears_connection_down(self):
        client = make_client()

        async def hang():
            await anyio.sleep(10)

        client.initialize.side_effect = hang

        with patch("microscope.client.session.open_transport", fake_transport), \
                patch("microscope.client.session.ClientSession", return_value=client):
            session = McpSession()
            with pytest.raises(TimeoutError):
                with anyio.fail_after(0.05):
                    await session.connect(resolve_server_spec("./server.py"), handshake_timeout=30)

        assert session.state is SessionState.DISCONNECTED
        assert session.get_handshake_info().connected is False
        client.__aexit__.assert_awaited_once()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
