"""
Command-line entry point for the MiCroscoPe MCP client.

Supports three modes against a single server:
- interactive shell (default)
- one-shot tool call (--call-tool), printing the JSON result
- tool listing (--list-tools)
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, List, Optional

from dotenv import load_dotenv

from . import config
from .client import (
    LOG_LEVELS,
    HttpTarget,
    InvalidSpecError,
    McpSession,
    ServerTarget,
    resolve_server_spec,
)
from .shell import InteractiveShell, format_tool_list, parse_tool_call, to_json


EPILOG = """
Server specifications:
  npx:package[@version][#bin] [args...]  MCP server via npx with optional arguments
  ./server.js                            Local JavaScript server
  ./server.py                            Local Python server
  http(s)://host:port/mcp                Streamable HTTP server

Examples:
  # Interactive mode (default)
  microscope --server "npx:@modelcontextprotocol/server-everything stdio"
  microscope --server ./server.py -- --stdio

  # Execute a specific tool and exit
  microscope --server ./server.js --call-tool 'echo {"message":"hello"}'

  # Show tools list
  microscope --server http://localhost:8080/mcp --list-tools

Environment:
  LOG_LEVEL               Initial server logging level (default: info)
  PYTHON_CMD              Interpreter for .py servers (default: python)
  MCP_HANDSHAKE_TIMEOUT   Seconds allowed for the handshake (default: 30)
"""


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="microscope",
        description="MiCroscoPe - client for interacting with MCP (Model Context Protocol) servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument(
        "--server",
        metavar="SPEC",
        help="MCP server specification (required)",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--call-tool",
        metavar='"<tool> <jsonArgs>"',
        help="Execute a specific tool and exit",
    )
    mode.add_argument(
        "--list-tools",
        action="store_true",
        help="Show list of available tools with their arguments and exit",
    )

    parser.add_argument(
        "--log-level",
        type=str.lower,
        choices=LOG_LEVELS,
        help="Configure server logging level after connecting",
    )
    parser.add_argument(
        "--header",
        action="append",
        default=[],
        metavar='"Name: value"',
        help="HTTP header sent to streamable HTTP servers (repeatable)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show client diagnostics",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {config.CLIENT_VERSION}",
    )
    parser.add_argument(
        "server_args",
        nargs="*",
        help="Arguments passed to the server (put them after --)",
    )
    return parser


def parse_headers(values: List[str]) -> Dict[str, str]:
    """
    Parse ``Name: value`` strings into a header dict.

    Raises:
        ValueError: If an entry has no colon or an empty name
    """
    headers = {}
    for value in values:
        name, sep, content = value.partition(":")
        if not sep or not name.strip():
            raise ValueError(f"Invalid header '{value}'. Expected \"Name: value\"")
        headers[name.strip()] = content.strip()
    return headers


def configure_logging(quiet: bool, verbose: bool = False) -> None:
    """Send client diagnostics to stderr so stdout stays clean."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    package_logger = logging.getLogger("microscope")
    if quiet:
        package_logger.setLevel(logging.ERROR)
    elif verbose:
        package_logger.setLevel(logging.INFO)


async def run_tool_call(session: McpSession, raw: str) -> int:
    """
    Execute ``<tool> <jsonArgs>`` and print the result as one JSON line.

    Returns:
        0 on success, 1 for invalid JSON, a failed call or an error result
    """
    try:
        name, arguments = parse_tool_call(raw)
    except json.JSONDecodeError as e:
        print(f"Invalid JSON for --call-tool: {e}", file=sys.stderr)
        return 1

    try:
        result = await session.call_tool(name, arguments)
    except Exception as e:
        print(str(e), file=sys.stderr)
        return 1

    sys.stdout.write(f"{to_json(result, indent=None)}\n")
    return 1 if result.isError else 0


async def run_client(
    target: ServerTarget,
    call_tool: Optional[str] = None,
    list_tools: bool = False,
    log_level: Optional[str] = None,
) -> int:
    """
    Connect to the server, run the selected mode and always disconnect.

    Returns:
        Process exit code
    """
    session = McpSession()
    try:
        await session.connect(target, quiet=bool(call_tool or list_tools))

        if log_level:
            await session.set_logging_level(log_level)

        if call_tool is not None:
            return await run_tool_call(session, call_tool)

        if list_tools:
            print(format_tool_list(session.get_tools()))
            return 0

        return await InteractiveShell(session).run()
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await session.disconnect()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.server:
        parser.error("--server requires a server specification")
    if args.call_tool is not None and not args.call_tool.strip():
        parser.error('--call-tool requires a quoted string: "<tool> <jsonArgs>"')

    try:
        headers = parse_headers(args.header)
    except ValueError as e:
        parser.error(str(e))

    configure_logging(quiet=bool(args.call_tool or args.list_tools), verbose=args.verbose)

    try:
        target = resolve_server_spec(args.server, args.server_args)
    except InvalidSpecError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if isinstance(target, HttpTarget):
        target.headers.update(headers)

    try:
        return asyncio.run(
            run_client(
                target,
                call_tool=args.call_tool,
                list_tools=args.list_tools,
                log_level=args.log_level,
            )
        )
    except KeyboardInterrupt:
        print("\nCaught SIGINT. Exiting...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
