"""
MiCroscoPe: command-line and library client for MCP servers.

Run ``microscope --help`` for the CLI, or use McpSession directly.
"""

from .config import CLIENT_VERSION as __version__
from .client import (
    ConnectError,
    HttpTarget,
    InvalidLogLevelError,
    InvalidSpecError,
    McpClientError,
    McpSession,
    NotConnectedError,
    NpxTarget,
    ResourceInfo,
    ScriptTarget,
    ServerTarget,
    ToolInfo,
    resolve_server_spec,
)

__all__ = [
    "__version__",
    "McpSession",
    "resolve_server_spec",
    "ServerTarget",
    "ScriptTarget",
    "NpxTarget",
    "HttpTarget",
    "ToolInfo",
    "ResourceInfo",
    "McpClientError",
    "InvalidSpecError",
    "ConnectError",
    "NotConnectedError",
    "InvalidLogLevelError",
]
