"""
MCP session: connection lifecycle, handshake and cached server state.

An McpSession owns exactly one transport and one ``mcp.ClientSession``.
It drives the lifecycle

    UNCONNECTED -> CONNECTING -> HANDSHAKING -> READY -> DISCONNECTED

and keeps an in-memory mirror of what the server advertises:

- the tool list, fetched once while connecting and re-fetched only when
  the caller asks for it (there is no "tool list changed" subscription)
- the resource map, fetched while connecting and kept current through the
  "resource list changed" and "resource updated" notifications

A session is single-use. Create a new McpSession to reconnect.

Usage:
    session = McpSession()
    await session.connect(resolve_server_spec("./server.py"))
    print([tool.name for tool in session.get_tools()])
    result = await session.call_tool("echo", {"message": "hi"})
    await session.disconnect()
"""

import asyncio
import copy
import json
import logging
from contextlib import AsyncExitStack
from enum import Enum
from typing import Any, Dict, List, Optional, TextIO, Tuple

import anyio
import anyio.abc
from mcp import ClientSession, types

from .. import config
from .errors import ConnectError, InvalidLogLevelError, NotConnectedError
from .models import HandshakeInfo, ResourceInfo, ToolInfo
from .notifications import NotificationRouter
from .targets import ServerTarget
from .transport import open_transport, transport_type

logger = logging.getLogger(__name__)


# Severities defined by the protocol, lowest first
LOG_LEVELS = ("debug", "info", "notice", "warning", "error", "critical", "alert", "emergency")

# Capabilities ClientSession.initialize sends for this client: roots only,
# because a roots callback is installed and no sampling or elicitation
# callback is. The protocol has no client-side logging capability.
CLIENT_CAPABILITIES: Dict[str, Any] = types.ClientCapabilities(
    roots=types.RootsCapability(listChanged=True),
).model_dump(mode="json", exclude_none=True)


class SessionState(str, Enum):
    """Lifecycle states of an McpSession."""
    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    DISCONNECTED = "disconnected"


def format_log_line(level: str, logger_name: Optional[str], data: Any) -> str:
    """Render a server log notification as ``[level] logger: data``."""
    prefix = f"[{level}] {logger_name}:" if logger_name else f"[{level}]:"
    if not isinstance(data, str):
        data = json.dumps(data, default=str)
    return f"{prefix} {data}"


class McpSession:
    """
    Client-side MCP session with handshake and cached server state.

    Notification handlers run as independent tasks next to whatever call
    the owner is awaiting. They only ever replace the resource map or
    upsert one entry of it; when a relist and a single-resource update
    overlap, the later write wins.
    """

    def __init__(self, output: Optional[TextIO] = None):
        """
        Initialize an unconnected session.

        Args:
            output: Stream server log lines are printed to (default: stdout)
        """
        self._state = SessionState.UNCONNECTED
        self._output = output
        self._quiet = False

        # Owner task of the transport, the ClientSession and the handler tasks
        self._runner: Optional[asyncio.Task] = None
        self._run_scope: Optional[anyio.CancelScope] = None
        self._settled: Optional[anyio.Event] = None
        self._stop: Optional[anyio.Event] = None
        self._closed: Optional[anyio.Event] = None
        self._connect_error: Optional[ConnectError] = None

        self._transport: Optional[Tuple[Any, Any]] = None
        self._transport_type = "unknown"
        self._client: Optional[ClientSession] = None
        self._tasks: Optional[anyio.abc.TaskGroup] = None
        self._router = NotificationRouter()

        self._server_capabilities: Optional[Dict[str, Any]] = None
        self._server_info: Optional[Dict[str, Any]] = None
        self._tools: List[ToolInfo] = []
        self._resources: Dict[str, ResourceInfo] = {}

    async def __aenter__(self) -> "McpSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def server_capabilities(self) -> Optional[Dict[str, Any]]:
        """Capabilities captured at handshake (a copy)."""
        return copy.deepcopy(self._server_capabilities)

    @property
    def server_info(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._server_info)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(
        self,
        target: ServerTarget,
        quiet: bool = False,
        env: Optional[Dict[str, str]] = None,
        handshake_timeout: Optional[float] = None,
    ) -> None:
        """
        Launch the transport, perform the handshake and load server state.

        Returns only once the initial tool list has been fetched. The
        connection lives in a task owned by the session, so ``connect()``
        may be wrapped in a caller's timeout and ``disconnect()`` may be
        awaited from any task. Requires the asyncio backend.

        Args:
            target: Resolved server target
            quiet: Suppress rendering of server log notifications, for
                one-shot runs whose stdout must stay machine-readable
            env: Extra environment variables for stdio servers
            handshake_timeout: Seconds allowed for ``initialize``
                (default from ``MCP_HANDSHAKE_TIMEOUT``)

        Raises:
            ConnectError: If the session was already used, or if the
                transport, the handshake or the initial loading fails
        """
        if self._state is not SessionState.UNCONNECTED:
            raise ConnectError(
                f"Session cannot connect from state '{self._state.value}'; "
                "create a new McpSession"
            )

        if handshake_timeout is None:
            handshake_timeout = config.get_handshake_timeout()

        self._quiet = quiet
        self._transport_type = transport_type(target)
        self._state = SessionState.CONNECTING
        self._run_scope = anyio.CancelScope()
        self._settled = anyio.Event()
        self._stop = anyio.Event()
        self._closed = anyio.Event()
        self._runner = asyncio.get_running_loop().create_task(
            self._run_connection(target, env, handshake_timeout)
        )

        try:
            await self._settled.wait()
        except BaseException:
            # The caller gave up (timeout or cancellation) while connecting
            with anyio.CancelScope(shield=True):
                await self.disconnect()
            raise

        if self._connect_error is not None:
            with anyio.CancelScope(shield=True):
                await self._closed.wait()
            error = self._connect_error
            raise error from error.cause

        logger.info(
            "Connected to %s over %s. Tools: %s",
            (self._server_info or {}).get("name", "server"),
            self._transport_type,
            ", ".join(tool.name for tool in self._tools) or "(none)",
        )

    async def disconnect(self) -> None:
        """
        Close the transport and clear cached state.

        Pending notification handlers are cancelled, so none fires after
        this returns. Requests still in flight have no defined outcome.
        Safe to call more than once, and from any task.
        """
        if self._closed is None:
            self._state = SessionState.DISCONNECTED
            return

        was_ready = self._state is SessionState.READY
        self._router.close()
        self._stop.set()
        if not self._settled.is_set():
            self._run_scope.cancel()

        with anyio.CancelScope(shield=True):
            await self._closed.wait()
        self._runner = None

        if was_ready:
            logger.info("MCP client disconnected")

    async def _run_connection(
        self,
        target: ServerTarget,
        env: Optional[Dict[str, str]],
        handshake_timeout: Optional[float],
    ) -> None:
        # Every context below is entered and exited in this task
        try:
            with self._run_scope:
                async with AsyncExitStack() as stack:
                    try:
                        await self._open(stack, target, env, handshake_timeout)
                    except TimeoutError as exc:
                        self._connect_error = ConnectError(
                            f"Handshake timed out after {handshake_timeout}s", exc
                        )
                        return
                    except Exception as exc:
                        self._connect_error = ConnectError("Failed to connect to MCP server", exc)
                        return

                    self._state = SessionState.READY
                    self._settled.set()
                    await self._stop.wait()

                    self._router.close()
                    self._tasks.cancel_scope.cancel()
        except Exception as exc:
            if self._connect_error is None:
                logger.warning("Error while closing MCP connection: %s", exc)
            else:
                logger.debug("Error while closing a failed connection", exc_info=True)
        finally:
            self._router.close()
            self._clear()
            self._state = SessionState.DISCONNECTED
            self._settled.set()
            self._closed.set()

    async def _open(
        self,
        stack: AsyncExitStack,
        target: ServerTarget,
        env: Optional[Dict[str, str]],
        handshake_timeout: Optional[float],
    ) -> None:
        self._transport = await stack.enter_async_context(open_transport(target, env))
        read_stream, write_stream = self._transport

        self._state = SessionState.HANDSHAKING
        self._client = await stack.enter_async_context(
            ClientSession(
                read_stream,
                write_stream,
                list_roots_callback=self._list_roots,
                message_handler=self._router,
                client_info=types.Implementation(
                    name=config.CLIENT_DISPLAY_NAME,
                    version=config.CLIENT_VERSION,
                ),
            )
        )

        with anyio.fail_after(handshake_timeout):
            result = await self._client.initialize()
        self._capture_handshake(result)

        self._tasks = await stack.enter_async_context(anyio.create_task_group())
        self._router.bind(self._tasks)

        await self._register_handlers()
        await self._client.send_roots_list_changed()
        self._tools = await self._fetch_tools(self._client)

    def _clear(self) -> None:
        self._transport = None
        self._client = None
        self._tasks = None
        self._tools = []
        self._resources = {}

    def _capture_handshake(self, result: types.InitializeResult) -> None:
        if result is None or result.capabilities is None:
            raise ValueError("initialize result carries no server capabilities")
        self._server_capabilities = result.capabilities.model_dump(mode="json", exclude_none=True)
        if result.serverInfo is not None:
            self._server_info = result.serverInfo.model_dump(mode="json", exclude_none=True)

    def _supports(self, capability: str) -> bool:
        return bool(self._server_capabilities) and self._server_capabilities.get(capability) is not None

    async def _register_handlers(self) -> None:
        if self._supports("logging"):
            await self._send_logging_level(config.get_default_log_level())
            self._router.subscribe(types.LoggingMessageNotification, self._on_log_message)

        if self._supports("resources"):
            await self.update_resources_list("Failed to load initial resources list")
            self._router.subscribe(types.ResourceListChangedNotification, self._on_resource_list_changed)
            self._router.subscribe(types.ResourceUpdatedNotification, self._on_resource_updated)

        self._router.set_fallback(self._on_unhandled_notification)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _list_roots(self, context: Any) -> types.ListRootsResult:
        # This client exposes no filesystem roots
        return types.ListRootsResult(roots=[])

    async def _on_log_message(self, notification: types.LoggingMessageNotification) -> None:
        if self._quiet:
            return
        params = notification.params
        print(format_log_line(params.level, params.logger, params.data), file=self._output)

    async def _on_resource_list_changed(self, notification: types.ResourceListChangedNotification) -> None:
        await self.update_resources_list("Failed to list resources after change notification")

    async def _on_resource_updated(self, notification: types.ResourceUpdatedNotification) -> None:
        client = self._client
        if client is None:
            return

        uri = str(notification.params.uri)
        try:
            result = await client.read_resource(notification.params.uri)
        except Exception as exc:
            logger.warning("Failed to update resource %s: %s", uri, exc)
            return

        self._resources[uri] = ResourceInfo.from_read_result(uri, result, self._resources.get(uri))

    async def _on_unhandled_notification(self, notification: Any) -> None:
        logger.warning(
            "Notification type handling not implemented in client: %s %s",
            getattr(notification, "method", type(notification).__name__),
            getattr(notification, "params", None),
        )

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def update_resources_list(self, failure_message: str) -> bool:
        """
        Re-list resources and replace the cached map.

        The map is rebuilt from scratch on success, so resources the server
        no longer lists disappear. On failure the message is logged and the
        existing map is left exactly as it was.

        Args:
            failure_message: Logged if the request fails

        Returns:
            True if the cache was replaced
        """
        client = self._client
        if client is None:
            raise NotConnectedError("list resources", self._state.value)

        try:
            result = await client.list_resources()
            resources = {}
            for entry in result.resources:
                info = ResourceInfo.from_payload(entry)
                resources[info.uri] = info
        except Exception as exc:
            logger.warning("%s: %s", failure_message, exc)
            return False

        self._resources = resources
        return True

    def get_resources(self) -> List[ResourceInfo]:
        """Cached resources, in the order the server listed them."""
        self._require_ready("get resources")
        return list(self._resources.values())

    def get_resource(self, uri: str) -> Optional[ResourceInfo]:
        self._require_ready("get resource")
        return self._resources.get(uri)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    @staticmethod
    async def _fetch_tools(client: ClientSession) -> List[ToolInfo]:
        result = await client.list_tools()
        return [ToolInfo.from_payload(tool) for tool in result.tools]

    async def refresh_tools(self) -> List[ToolInfo]:
        """
        Re-fetch the tool list from the server.

        Returns:
            The new tool list (a copy)
        """
        client = self._require_ready("refresh tools")
        self._tools = await self._fetch_tools(client)
        return self.get_tools()

    def get_tools(self) -> List[ToolInfo]:
        """Last fetched tool list. Each call returns a new list."""
        self._require_ready("get tools")
        return list(self._tools)

    def describe_tool(self, name: str) -> Optional[ToolInfo]:
        """Look a tool up by name."""
        self._require_ready("describe tool")
        return next((tool for tool in self._tools if tool.name == name), None)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> types.CallToolResult:
        """
        Invoke a tool on the server.

        Server-side failures are not reinterpreted: an error result comes
        back with ``isError`` set and protocol errors raise ``mcp.McpError``.

        Args:
            name: Tool name
            arguments: JSON arguments for the tool

        Returns:
            The server's CallToolResult

        Raises:
            NotConnectedError: If the session is not ready
        """
        client = self._require_ready("call tool")
        return await client.call_tool(name, arguments if arguments is not None else {})

    # ------------------------------------------------------------------
    # Logging level
    # ------------------------------------------------------------------

    def get_log_levels(self) -> List[str]:
        return list(LOG_LEVELS)

    async def set_logging_level(self, level: str) -> None:
        """
        Ask the server to change its logging level.

        Raises:
            InvalidLogLevelError: If ``level`` is not a protocol severity;
                nothing is sent in that case
            NotConnectedError: If the session is not ready
        """
        if level not in LOG_LEVELS:
            raise InvalidLogLevelError(level, LOG_LEVELS)
        client = self._require_ready("set logging level")
        await client.set_logging_level(level)

    async def _send_logging_level(self, level: str) -> None:
        # Initial level applied while connecting, before the session is ready
        if level not in LOG_LEVELS:
            raise InvalidLogLevelError(level, LOG_LEVELS)
        await self._client.set_logging_level(level)

    # ------------------------------------------------------------------
    # Handshake introspection
    # ------------------------------------------------------------------

    def get_handshake_info(self) -> HandshakeInfo:
        """Snapshot of the connection state and exchanged capabilities."""
        return HandshakeInfo(
            connected=self._transport is not None and self._client is not None,
            client_info={
                "name": config.CLIENT_DISPLAY_NAME,
                "version": config.CLIENT_VERSION,
                "title": config.CLIENT_DISPLAY_NAME,
            },
            client_capabilities=copy.deepcopy(CLIENT_CAPABILITIES),
            server_capabilities=copy.deepcopy(self._server_capabilities),
            server_info=copy.deepcopy(self._server_info),
            transport_type=self._transport_type,
        )

    def verify_handshake(self) -> bool:
        """True only once the handshake has produced server capabilities."""
        return (
            self._client is not None
            and self._transport is not None
            and self._server_capabilities is not None
        )

    def _require_ready(self, operation: str) -> ClientSession:
        if self._state is not SessionState.READY or self._client is None:
            raise NotConnectedError(operation, self._state.value)
        return self._client
