"""
Typed records for server-advertised tools and resources.

Responses coming back from the SDK are pydantic models, but servers in the
wild still send loosely shaped payloads (snake_case schema keys, extra
fields, missing descriptions). Everything is converted here, once, so the
rest of the client only ever sees ToolInfo and ResourceInfo.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


# Field names servers have been seen using for a tool's input schema
INPUT_SCHEMA_KEYS = ("inputSchema", "input_schema", "inputschema")


def _as_dict(payload: Any) -> Dict[str, Any]:
    """Turn an SDK model or a plain mapping into a dict, anything else into {}."""
    if hasattr(payload, "model_dump"):
        return payload.model_dump(mode="json", exclude_none=True)
    if isinstance(payload, dict):
        return payload
    return {}


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _dict_or_none(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


@dataclass(frozen=True)
class ToolInfo:
    """A tool exposed by the connected server."""
    name: str
    description: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ToolInfo":
        """
        Build a ToolInfo from an SDK ``Tool`` or a raw dict.

        Args:
            payload: One entry of a ``tools/list`` result

        Returns:
            The typed tool record

        Raises:
            ValueError: If the entry has no usable name
        """
        data = _as_dict(payload)
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError(f"Tool entry without a name: {data!r}")

        schema = None
        for key in INPUT_SCHEMA_KEYS:
            if data.get(key) is not None:
                schema = _dict_or_none(data[key])
                break

        return cls(
            name=name,
            description=_str_or_none(data.get("description")),
            input_schema=schema,
        )

    @property
    def properties(self) -> Dict[str, Any]:
        """Schema properties keyed by argument name (empty without a schema)."""
        if not self.input_schema:
            return {}
        return _dict_or_none(self.input_schema.get("properties")) or {}

    @property
    def required(self) -> List[str]:
        """Names of the required arguments."""
        if not self.input_schema:
            return []
        required = self.input_schema.get("required")
        return [r for r in required if isinstance(r, str)] if isinstance(required, list) else []

    def to_dict(self) -> Dict[str, Any]:
        """Serialise using the protocol's field names."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass(frozen=True)
class ResourceInfo:
    """A URI-addressed resource exposed by the connected server."""
    uri: str
    name: str = ""
    description: Optional[str] = None
    mime_type: Optional[str] = None
    annotations: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ResourceInfo":
        """
        Build a ResourceInfo from one entry of a ``resources/list`` result.

        Raises:
            ValueError: If the entry has no URI
        """
        data = _as_dict(payload)
        uri = data.get("uri")
        if not isinstance(uri, str) or not uri:
            raise ValueError(f"Resource entry without a URI: {data!r}")

        return cls(
            uri=uri,
            name=_str_or_none(data.get("name")) or "",
            description=_str_or_none(data.get("description")),
            mime_type=_str_or_none(data.get("mimeType")),
            annotations=_dict_or_none(data.get("annotations")),
        )

    @classmethod
    def from_read_result(
        cls,
        uri: str,
        payload: Any,
        previous: Optional["ResourceInfo"] = None,
    ) -> "ResourceInfo":
        """
        Build a ResourceInfo from a ``resources/read`` result.

        A read result is not a resource listing, so every field is checked
        for shape and dropped when it does not fit. The name falls back to
        the previously cached one; the MIME type may come from the content
        block carrying the same URI.

        Args:
            uri: URI the update notification referred to
            payload: The read result (SDK model or dict)
            previous: Cached entry for the same URI, if any

        Returns:
            The entry to store under ``uri``
        """
        data = _as_dict(payload)

        mime_type = _str_or_none(data.get("mimeType"))
        if mime_type is None:
            for content in data.get("contents") or []:
                if isinstance(content, dict) and content.get("uri") == uri:
                    mime_type = _str_or_none(content.get("mimeType"))
                    break

        name = _str_or_none(data.get("name"))
        if name is None:
            name = previous.name if previous else ""

        return cls(
            uri=uri,
            name=name,
            description=_str_or_none(data.get("description")),
            mime_type=mime_type,
            annotations=_dict_or_none(data.get("annotations")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uri": self.uri,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
            "annotations": self.annotations,
        }


@dataclass(frozen=True)
class HandshakeInfo:
    """Snapshot of the connection and the capabilities exchanged at handshake."""
    connected: bool
    client_info: Dict[str, str]
    client_capabilities: Dict[str, Any]
    server_capabilities: Optional[Dict[str, Any]] = None
    server_info: Optional[Dict[str, Any]] = None
    transport_type: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "clientInfo": self.client_info,
            "clientCapabilities": self.client_capabilities,
            "serverCapabilities": self.server_capabilities,
            "serverInfo": self.server_info,
            "transportType": self.transport_type,
        }
