"""
Transport construction for each kind of server target.

Script and npx targets are spawned as subprocesses speaking MCP over
stdio; HTTP targets use the SDK's streamable HTTP client. Either way the
caller gets back the pair of memory streams that ``mcp.ClientSession``
consumes.
"""

import os
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Tuple, Any

from mcp import StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from .. import config
from .targets import HttpTarget, Interpreter, NpxTarget, ScriptTarget, ServerTarget


STDIO_TRANSPORT = "stdio"
HTTP_TRANSPORT = "streamable-http"


def safe_env(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Copy of the current environment with only string entries, plus overrides.

    Args:
        extra: Variables to add or override

    Returns:
        Environment mapping for a child process
    """
    cleaned = {
        key: value for key, value in os.environ.items()
        if isinstance(key, str) and isinstance(value, str)
    }
    cleaned.update(extra or {})
    return cleaned


def npx_command() -> str:
    return "npx.cmd" if sys.platform == "win32" else "npx"


def build_stdio_parameters(
    target: ServerTarget,
    env: Optional[Dict[str, str]] = None,
) -> StdioServerParameters:
    """
    Build the subprocess launch parameters for a stdio target.

    Args:
        target: A ScriptTarget or NpxTarget
        env: Extra environment variables for the server process

    Returns:
        StdioServerParameters for ``stdio_client``

    Raises:
        TypeError: If the target is not launched over stdio
    """
    if isinstance(target, ScriptTarget):
        if target.interpreter is Interpreter.NODE:
            command = "node"
        else:
            command = config.get_python_command()
        return StdioServerParameters(
            command=command,
            args=[target.path, *target.args],
            env=safe_env(env),
        )

    if isinstance(target, NpxTarget):
        if target.bin:
            args = [*target.npx_args, "-p", target.package_with_version, target.bin, *target.args]
        else:
            args = [*target.npx_args, target.package_with_version, *target.args]
        # npx's update notifier writes to the same pipes the protocol uses
        return StdioServerParameters(
            command=npx_command(),
            args=args,
            env=safe_env({"NO_UPDATE_NOTIFIER": "1", **(env or {})}),
        )

    raise TypeError(f"Not a stdio server target: {target!r}")


def transport_type(target: ServerTarget) -> str:
    """Tag describing which transport a target is reached through."""
    if isinstance(target, HttpTarget):
        return HTTP_TRANSPORT
    if isinstance(target, (ScriptTarget, NpxTarget)):
        return STDIO_TRANSPORT
    raise TypeError(f"Unknown server target: {target!r}")


@asynccontextmanager
async def open_transport(
    target: ServerTarget,
    env: Optional[Dict[str, str]] = None,
) -> AsyncIterator[Tuple[Any, Any]]:
    """
    Open the transport for a target.

    Args:
        target: Where the server lives
        env: Extra environment variables (stdio targets only)

    Yields:
        ``(read_stream, write_stream)`` for ``mcp.ClientSession``
    """
    if isinstance(target, HttpTarget):
        async with streamablehttp_client(target.url, headers=target.headers or None) as (read, write, _):
            yield read, write
    elif isinstance(target, (ScriptTarget, NpxTarget)):
        async with stdio_client(build_stdio_parameters(target, env)) as (read, write):
            yield read, write
    else:
        raise TypeError(f"Unknown server target: {target!r}")
