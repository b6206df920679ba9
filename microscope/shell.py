"""
Interactive shell for exploring a connected MCP server.

The shell only uses McpSession's public query/invoke surface. Line editing,
tab completion and guided argument entry are left to the terminal: a tool
called without JSON arguments receives ``{}``.
"""

import asyncio
import concurrent.futures
import json
import threading
from typing import Any, Callable, List, Tuple

from .client import McpSession, ResourceInfo, ToolInfo


HELP_TEXT = """
Commands:
- list [json]                  List available tools (add "json" for JSON format)
- describe <tool>              Show tool details
- call <tool> ['<jsonArgs>']   Call tool with JSON arguments (default: {})
- setLoggingLevel <level>      Set server logging level
- resources                    List known resources
- resource <uri>               Show resource details
- refresh                      Re-fetch the tool list from the server
- info                         Show handshake and capability information
- help                         Show this help
- exit | quit                  Exit the client
""".strip()


def strip_quotes(text: str) -> str:
    """Remove one pair of matching surrounding quotes."""
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    return text


def parse_tool_call(raw: str) -> Tuple[str, Any]:
    """
    Split ``<tool> <jsonArgs>`` into a name and decoded arguments.

    Args:
        raw: Tool name optionally followed by JSON (possibly quoted)

    Returns:
        Tuple of (tool name, arguments); arguments default to {}

    Raises:
        json.JSONDecodeError: If the arguments are not valid JSON
    """
    name, _, rest = raw.strip().partition(" ")
    rest = strip_quotes(rest.strip())
    return name, (json.loads(rest) if rest else {})


def format_tool_list(tools: List[ToolInfo]) -> str:
    """Human-readable tool listing with each tool's arguments."""
    if not tools:
        return "(no tools)"

    lines = ["Available tools:", ""]
    for tool in tools:
        lines.append(tool.name)
        if tool.input_schema is None:
            lines.append("  Arguments: (no schema available)")
        elif not tool.properties:
            lines.append("  Arguments: (none)")
        else:
            lines.append("  Arguments:")
            required = tool.required
            for prop_name, prop in tool.properties.items():
                prop = prop if isinstance(prop, dict) else {}
                prop_type = prop.get("type") or "string"
                flag = " [REQUIRED]" if prop_name in required else ""
                lines.append(f"    {prop_name} ({prop_type}){flag}")
                if prop.get("description"):
                    lines.append(f"      Description: {prop['description']}")
                if isinstance(prop.get("enum"), list):
                    options = ", ".join(str(value) for value in prop["enum"])
                    lines.append(f"      Available options: {options}")
        lines.append("")
    return "\n".join(lines).rstrip()


def format_resource_list(resources: List[ResourceInfo]) -> str:
    if not resources:
        return "(no resources)"
    lines = []
    for resource in resources:
        name = f" ({resource.name})" if resource.name else ""
        mime_type = f" [{resource.mime_type}]" if resource.mime_type else ""
        lines.append(f"- {resource.uri}{name}{mime_type}")
    return "\n".join(lines)


def to_json(data: Any, indent: int = 2) -> str:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json", exclude_none=True)
    return json.dumps(data, indent=indent)


class InteractiveShell:
    """
    Read-eval-print loop over a connected McpSession.

    Each command's errors are printed and the loop carries on; only
    ``exit``/``quit``, end of input or a lost connection end it.
    """

    def __init__(
        self,
        session: McpSession,
        prompt: str = "> ",
        input_func: Callable[[str], str] = input,
    ):
        self.session = session
        self.prompt = prompt
        self._input = input_func

    async def run(self) -> int:
        """
        Run the loop until the user leaves.

        Returns:
            Process exit code
        """
        if not self.session.get_handshake_info().connected:
            print("Error: Client not connected. Cannot start interactive mode.")
            return 1
        if not self.session.verify_handshake():
            print("Error: Handshake verification failed. Cannot start interactive mode.")
            return 1

        print('Interactive MCP client. Type "help" for commands.')

        while True:
            if not self.session.get_handshake_info().connected:
                print("Error: Connection lost. Exiting interactive mode.")
                return 1

            try:
                line = (await self._read_line()).strip()
            except (EOFError, KeyboardInterrupt):
                print()
                return 0

            if not line:
                continue

            try:
                if not await self.handle(line):
                    return 0
            except Exception as e:
                print(f"Command error: {e}")

    async def _read_line(self) -> str:
        # Daemon thread: a reader blocked in input() must not keep the process alive after Ctrl-C
        future: concurrent.futures.Future = concurrent.futures.Future()

        def reader():
            try:
                future.set_result(self._input(self.prompt))
            except BaseException as exc:
                future.set_exception(exc)

        threading.Thread(target=reader, name="shell-input", daemon=True).start()
        return await asyncio.wrap_future(future)

    async def handle(self, line: str) -> bool:
        """
        Execute one command line.

        Returns:
            False when the shell should exit
        """
        command, _, rest = line.strip().partition(" ")
        rest = rest.strip()
        command = command.lower()

        if command == "help":
            print(HELP_TEXT)
        elif command in ("exit", "quit"):
            return False
        elif command == "list":
            self._list(rest)
        elif command == "describe":
            self._describe(rest)
        elif command == "call":
            await self._call(rest)
        elif command == "setlogginglevel":
            await self._set_logging_level(rest)
        elif command == "resources":
            print(format_resource_list(self.session.get_resources()))
        elif command == "resource":
            self._resource(rest)
        elif command == "refresh":
            tools = await self.session.refresh_tools()
            print(f"Tools refreshed: {', '.join(t.name for t in tools) or '(none)'}")
        elif command == "info":
            print(to_json(self.session.get_handshake_info().to_dict()))
        else:
            print(f"Unknown command: {command}")
            print(HELP_TEXT)
        return True

    def _list(self, args: str) -> None:
        tools = self.session.get_tools()
        if args.lower() == "json":
            print(to_json([tool.to_dict() for tool in tools]))
        else:
            print(format_tool_list(tools))

    def _describe(self, name: str) -> None:
        if not name:
            print("Usage: describe <toolName>")
            return
        tool = self.session.describe_tool(name)
        if tool is None:
            print(f"Tool not found: {name}")
            return
        print(to_json(tool.to_dict()))

    async def _call(self, args: str) -> None:
        if not args:
            print("Usage: call <toolName> ['<jsonArgs>']")
            return

        try:
            name, arguments = parse_tool_call(args)
        except json.JSONDecodeError as e:
            print(f"Invalid JSON args: {e}")
            tool = self.session.describe_tool(args.split(" ", 1)[0])
            if tool is not None and tool.input_schema:
                print("\nExpected input schema:")
                print(to_json(tool.input_schema))
                if tool.required:
                    print(f"\nRequired properties: {', '.join(tool.required)}")
            return

        try:
            result = await self.session.call_tool(name, arguments)
        except Exception as e:
            print(f"Error calling tool {name}: {e}")
            return
        print(to_json(result))

    async def _set_logging_level(self, level: str) -> None:
        level = level.lower()
        if not level:
            print("Usage: setLoggingLevel <level>")
            return
        if level not in self.session.get_log_levels():
            print(f"Invalid level. Allowed: {', '.join(self.session.get_log_levels())}")
            return
        await self.session.set_logging_level(level)
        print(f"Logging level set to {level}")

    def _resource(self, uri: str) -> None:
        if not uri:
            print("Usage: resource <uri>")
            return
        resource = self.session.get_resource(uri)
        if resource is None:
            print(f"Resource not found: {uri}")
            return
        print(to_json(resource.to_dict()))
