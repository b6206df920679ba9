"""
Error taxonomy for the MCP client layer.

Only two kinds of failure are absorbed locally (resource fetch failures and
unrecognised notifications, both logged by the session). Everything defined
here is raised to the caller. Tool failures are not wrapped: a failed
``tools/call`` comes back as the SDK's ``CallToolResult`` (``isError: true``)
or raises ``mcp.McpError`` exactly as the server reported it.
"""

from typing import Iterable, Optional


class McpClientError(Exception):
    """Base class for all errors raised by the client layer."""


class InvalidSpecError(McpClientError, ValueError):
    """
    Exception raised when a server specification string cannot be resolved.

    Raised before any connection attempt is made.
    """

    def __init__(self, spec: str, reason: Optional[str] = None):
        self.spec = spec
        self.reason = reason or (
            "Provide a .js/.py path, an http(s):// URL, "
            "or use the form npx:@scope/pkg[@ver][#bin]"
        )
        super().__init__(f"Invalid server spec '{spec}': {self.reason}")


class ConnectError(McpClientError):
    """
    Exception raised when connecting to a server fails.

    Wraps transport spawn failures, handshake timeouts or rejections and
    malformed capabilities. The session is unusable afterwards.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        if cause is not None:
            message = f"{message}: {_describe(cause)}"
        super().__init__(message)


class NotConnectedError(McpClientError):
    """Exception raised when an operation is attempted outside the ready state."""

    def __init__(self, operation: str, state: str):
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation}: client not connected (state: {state})")


class InvalidLogLevelError(McpClientError, ValueError):
    """Exception raised for a logging level outside the protocol's eight severities."""

    def __init__(self, level: str, allowed: Iterable[str]):
        self.level = level
        self.allowed = tuple(allowed)
        super().__init__(
            f"Invalid logging level '{level}'. Allowed: {', '.join(self.allowed)}"
        )


def _describe(exc: BaseException) -> str:
    # anyio task groups surface transport failures as exception groups
    inner = getattr(exc, "exceptions", None)
    if inner:
        return "; ".join(_describe(e) for e in inner)
    return str(exc) or type(exc).__name__
