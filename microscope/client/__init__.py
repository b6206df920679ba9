"""
MCP (Model Context Protocol) client layer.

Built on the official ``mcp`` SDK, which provides JSON-RPC framing,
request/response plumbing and the stdio / streamable HTTP transports.
This package adds what sits on top of it:

- Server spec resolution (``targets``): ``./server.py``, ``./server.js``,
  ``npx:@scope/pkg[@ver][#bin]`` or an ``http(s)://`` URL
- Transport construction per target (``transport``)
- The session state machine with capability negotiation and a cached
  mirror of the server's tools and resources (``session``)
- Notification routing (``notifications``)

### Library usage
    from microscope.client import McpSession, resolve_server_spec

    session = McpSession()
    await session.connect(resolve_server_spec("npx:@modelcontextprotocol/server-everything stdio"))
    tools = session.get_tools()
    result = await session.call_tool("echo", {"message": "hello"})
    await session.disconnect()
"""

from .errors import (
    ConnectError,
    InvalidLogLevelError,
    InvalidSpecError,
    McpClientError,
    NotConnectedError,
)
from .models import HandshakeInfo, ResourceInfo, ToolInfo
from .notifications import NotificationRouter
from .session import LOG_LEVELS, McpSession, SessionState
from .targets import (
    HttpTarget,
    Interpreter,
    NpxTarget,
    ScriptTarget,
    ServerTarget,
    resolve_server_spec,
)

__all__ = [
    # Session
    "McpSession",
    "SessionState",
    "LOG_LEVELS",
    "NotificationRouter",
    # Targets
    "ServerTarget",
    "ScriptTarget",
    "NpxTarget",
    "HttpTarget",
    "Interpreter",
    "resolve_server_spec",
    # Records
    "ToolInfo",
    "ResourceInfo",
    "HandshakeInfo",
    # Errors
    "McpClientError",
    "InvalidSpecError",
    "ConnectError",
    "NotConnectedError",
    "InvalidLogLevelError",
]
