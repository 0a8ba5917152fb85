"""JSON-RPC message types and the abstract transport interface."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

JSONRPC_VERSION = "2.0"


class TransportError(Exception):
    """Raised when a transport cannot send, receive or decode a message."""


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


@dataclass
class JSONRPCRequest:
    """A JSON-RPC request sent from the client to the server."""

    id: int
    method: str
    params: Any = None
    jsonrpc: str = JSONRPC_VERSION

    def to_dict(self) -> Dict[str, Any]:
        """Return the wire form; ``params`` is left out when it is None."""
        message: Dict[str, Any] = {
            "jsonrpc": self.jsonrpc,
            "id": self.id,
            "method": self.method,
        }
        if self.params is not None:
            message["params"] = self.params
        return message

    def to_json(self) -> str:
        """Serialise the request as compact JSON."""
        return _dumps(self.to_dict())


@dataclass
class JSONRPCErrorDetail:
    """The ``error`` member of a JSON-RPC response."""

    code: int = 0
    message: str = ""
    data: Any = None


@dataclass
class JSONRPCResponse:
    """A message received from the server; ``id`` is None for notifications."""

    id: Optional[int]
    result: Any = None
    error: Optional[JSONRPCErrorDetail] = None
    jsonrpc: str = JSONRPC_VERSION

    @classmethod
    def from_dict(cls, data: Any) -> "JSONRPCResponse":
        """Build a response from a decoded JSON object."""
        if not isinstance(data, dict):
            raise TransportError("JSON-RPC message must be an object")
        jsonrpc = data.get("jsonrpc", "")
        if not isinstance(jsonrpc, str):
            raise TransportError("jsonrpc member must be a string")
        message_id = data.get("id")
        if message_id is not None and (
            isinstance(message_id, bool) or not isinstance(message_id, int)
        ):
            raise TransportError(f"invalid JSON-RPC id: {message_id!r}")
        error = data.get("error")
        detail = None
        if error is not None:
            if not isinstance(error, dict):
                raise TransportError("error member must be an object")
            code = error.get("code", 0)
            message = error.get("message", "")
            if isinstance(code, bool) or not isinstance(code, int):
                raise TransportError(f"invalid error code: {code!r}")
            if not isinstance(message, str):
                raise TransportError("error message must be a string")
            detail = JSONRPCErrorDetail(code=code, message=message, data=error.get("data"))
        return cls(id=message_id, result=data.get("result"), error=detail, jsonrpc=jsonrpc)

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "JSONRPCResponse":
        """Decode a response from JSON text."""
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise TransportError(f"invalid JSON-RPC message: {exc}") from exc
        return cls.from_dict(data)


@dataclass
class JSONRPCNotification:
    """A JSON-RPC notification, which carries no id and expects no reply."""

    method: str
    params: Dict[str, Any] = field(default_factory=dict)
    jsonrpc: str = JSONRPC_VERSION

    def to_dict(self) -> Dict[str, Any]:
        """Return the wire form of the notification."""
        return {"jsonrpc": self.jsonrpc, "method": self.method, "params": dict(self.params)}

    def to_json(self) -> str:
        """Serialise the notification as compact JSON."""
        return _dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> "JSONRPCNotification":
        """Build a notification from a decoded JSON object."""
        if not isinstance(data, dict):
            raise TransportError("JSON-RPC message must be an object")
        method = data.get("method", "")
        if not isinstance(method, str):
            raise TransportError("method member must be a string")
        params = data.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise TransportError("notification params must be an object")
        jsonrpc = data.get("jsonrpc", "")
        if not isinstance(jsonrpc, str):
            raise TransportError("jsonrpc member must be a string")
        return cls(method=method, params=dict(params), jsonrpc=jsonrpc)


NotificationHandler = Callable[[JSONRPCNotification], None]


class Transport(ABC):
    """The connection a client uses to exchange JSON-RPC messages with a server."""

    @abstractmethod
    async def start(self) -> None:
        """Open the connection; call once before sending anything."""

    @abstractmethod
    async def send_request(self, request: JSONRPCRequest) -> JSONRPCResponse:
        """Send a request and wait for the matching response."""

    @abstractmethod
    async def send_notification(self, notification: JSONRPCNotification) -> None:
        """Send a notification to the server."""

    @abstractmethod
    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        """Set the callable that receives server notifications, replacing any earlier one."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""

    async def __aenter__(self) -> "Transport":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()