"""
Environment-backed settings.

Values are read when they are needed rather than at import time, so a
``.env`` file loaded by the CLI (or variables set by a test) are honoured.
"""

import os
from typing import Optional

# Client identity announced during the initialize handshake
CLIENT_NAME = "microscope-mcp-client"
CLIENT_DISPLAY_NAME = "MiCroscoPe"
CLIENT_VERSION = "1.0.0"

DEFAULT_LOG_LEVEL = "info"
DEFAULT_PYTHON_CMD = "python"
DEFAULT_HANDSHAKE_TIMEOUT = 30.0


def get_default_log_level() -> str:
    """Initial server logging level, overridable with ``LOG_LEVEL``."""
    return os.environ.get("LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().lower()


def get_python_command() -> str:
    """Interpreter used to launch ``.py`` servers, overridable with ``PYTHON_CMD``."""
    return os.environ.get("PYTHON_CMD") or DEFAULT_PYTHON_CMD


def get_handshake_timeout() -> Optional[float]:
    """
    Seconds to wait for the initialize handshake.

    ``MCP_HANDSHAKE_TIMEOUT=0`` disables the limit.
    """
    raw = os.environ.get("MCP_HANDSHAKE_TIMEOUT")
    if not raw:
        return DEFAULT_HANDSHAKE_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_HANDSHAKE_TIMEOUT
    return value if value > 0 else None
