"""
Server targets and the resolver that builds them from a spec string.

A server spec takes one of three forms:

    http://host:port/mcp            streamable HTTP endpoint
    npx:@scope/pkg[@ver][#bin] ...  package launched through npx
    ./server.py | ./server.js       local script run by python or node

The resolver is a pure function: it never touches the filesystem or the
network, it only decides which launch description the spec denotes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple, Union

from .errors import InvalidSpecError


NPX_PREFIX = "npx:"
HTTP_PREFIXES = ("http://", "https://")

# Flags consumed by npx itself rather than forwarded to the server
NPX_YES_FLAGS = ("-y", "--yes")
NPX_PACKAGE_FLAGS = ("-p", "--package")
NPX_FLAGS = NPX_YES_FLAGS + NPX_PACKAGE_FLAGS


class Interpreter(str, Enum):
    """Interpreters able to run a local server script."""
    NODE = "node"
    PYTHON = "python"


SCRIPT_EXTENSIONS = {
    ".js": Interpreter.NODE,
    ".py": Interpreter.PYTHON,
}


@dataclass(frozen=True)
class ScriptTarget:
    """A local server script run over stdio."""
    interpreter: Interpreter
    path: str
    args: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NpxTarget:
    """A published package launched through the npx package runner."""
    pkg: str
    version: Optional[str] = None
    bin: Optional[str] = None
    args: Tuple[str, ...] = ()
    npx_args: Tuple[str, ...] = ("-y",)

    @property
    def package_with_version(self) -> str:
        return f"{self.pkg}@{self.version}" if self.version else self.pkg


@dataclass(frozen=True)
class HttpTarget:
    """
    A streamable HTTP endpoint.

    Headers are never parsed from the spec; callers fill the dict in
    before connecting.
    """
    url: str
    headers: Dict[str, str] = field(default_factory=dict)


ServerTarget = Union[ScriptTarget, NpxTarget, HttpTarget]


def resolve_server_spec(raw: str, extra_args: Sequence[str] = ()) -> ServerTarget:
    """
    Resolve a server spec string into a launch description.

    Args:
        raw: The spec as typed by the user
        extra_args: Additional server arguments (for example the ones given
            after ``--`` on the command line), appended last

    Returns:
        One of ScriptTarget, NpxTarget or HttpTarget

    Raises:
        InvalidSpecError: If the spec matches none of the accepted forms
    """
    if not raw:
        raise InvalidSpecError("", "server spec is empty")

    if raw.startswith(HTTP_PREFIXES):
        return HttpTarget(url=raw, headers={})

    if raw.startswith(NPX_PREFIX):
        return _resolve_npx(raw, extra_args)

    for extension, interpreter in SCRIPT_EXTENSIONS.items():
        if raw.endswith(extension):
            return ScriptTarget(
                interpreter=interpreter,
                path=raw,
                args=tuple(extra_args),
            )

    raise InvalidSpecError(raw)


def _resolve_npx(raw: str, extra_args: Sequence[str]) -> NpxTarget:
    tokens = [t for t in raw[len(NPX_PREFIX):].split(" ") if t]
    if not tokens:
        raise InvalidSpecError(raw, "npx spec is missing a package name")

    package_spec, additional = tokens[0], tokens[1:]

    npx_args = [arg for arg in additional if arg in NPX_FLAGS]
    server_args = [arg for arg in additional if arg not in NPX_FLAGS]

    # Without an assume-yes flag npx may prompt and block the stdio pipe
    if not any(flag in npx_args for flag in NPX_YES_FLAGS):
        npx_args.insert(0, "-y")

    pieces = package_spec.split("#")
    pkg, version = split_package_version(pieces[0])
    bin_name = pieces[1] if len(pieces) > 1 and pieces[1] else None

    if not pkg:
        raise InvalidSpecError(raw, "npx spec is missing a package name")

    return NpxTarget(
        pkg=pkg,
        version=version,
        bin=bin_name,
        args=tuple(server_args) + tuple(extra_args),
        npx_args=tuple(npx_args),
    )


def split_package_version(pkg_and_version: str) -> Tuple[str, Optional[str]]:
    """
    Split ``name@version`` while leaving scoped names intact.

    The last ``@`` denotes a version only when it is not the first character
    and not directly preceded by ``/``, so ``@scope/name`` stays whole.
    """
    at_idx = pkg_and_version.rfind("@")
    if at_idx > 0 and pkg_and_version[at_idx - 1] != "/":
        version = pkg_and_version[at_idx + 1:]
        return pkg_and_version[:at_idx], version or None
    return pkg_and_version, None
