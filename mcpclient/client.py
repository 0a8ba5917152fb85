"""A client for servers that speak the Model Context Protocol over JSON-RPC."""

from __future__ import annotations

import itertools
from typing import Any, Callable, Dict, List, Mapping, Optional

from .transport.base import (
    JSONRPCNotification,
    JSONRPCRequest,
    NotificationHandler,
    Transport,
    TransportError,
)

INITIALIZE_METHOD = "initialize"
INITIALIZED_NOTIFICATION = "notifications/initialized"


class ClientError(Exception):
    """Raised when a request fails or the server answers with an error."""


class Client:
    """Send MCP requests to a server through a transport.

    Call :meth:`start` first, then :meth:`initialize`; every other request is
    refused until the server has been initialized.
    """

    def __init__(
        self,
        transport: Optional[Transport],
        client_capabilities: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._transport = transport
        self._client_capabilities: Dict[str, Any] = dict(client_capabilities or {})
        self._server_capabilities: Dict[str, Any] = {}
        self._handlers: List[NotificationHandler] = []
        self._ids = itertools.count(1)
        self._initialized = False

    async def __aenter__(self) -> "Client":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        """Open the transport and route its notifications to the registered handlers."""
        if self._transport is None:
            raise ClientError("transport is nil")
        await self._transport.start()
        self._transport.set_notification_handler(self._dispatch_notification)

    def _dispatch_notification(self, notification: JSONRPCNotification) -> None:
        for handler in list(self._handlers):
            handler(notification)

    async def close(self) -> None:
        """Close the transport."""
        if self._transport is not None:
            await self._transport.close()

    def on_notification(self, handler: Callable[[JSONRPCNotification], None]) -> None:
        """Register a handler; handlers run in the order they were added."""
        self._handlers.append(handler)

    async def _send_request(self, method: str, params: Any = None) -> Any:
        if not self._initialized and method != INITIALIZE_METHOD:
            raise ClientError("client not initialized")
        if self._transport is None:
            raise ClientError("transport is nil")
        request = JSONRPCRequest(id=next(self._ids), method=method, params=params)
        try:
            response = await self._transport.send_request(request)
        except TransportError as exc:
            raise ClientError(f"transport error: {exc}") from exc
        if response.error is not None:
            raise ClientError(response.error.message)
        return response.result

    async def _request_object(self, method: str, params: Any = None) -> Dict[str, Any]:
        result = await self._send_request(method, params)
        if not isinstance(result, dict):
            raise ClientError(f"failed to unmarshal response: expected an object, got {result!r}")
        return result

    async def initialize(
        self,
        protocol_version: str,
        client_info: Mapping[str, Any],
        capabilities: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Negotiate with the server and announce that initialization is done."""
        params = {
            "protocolVersion": protocol_version,
            "clientInfo": dict(client_info),
            "capabilities": dict(capabilities or {}),
        }
        result = await self._request_object(INITIALIZE_METHOD, params)
        capabilities_result = result.get("capabilities") or {}
        self._server_capabilities = dict(capabilities_result) if isinstance(capabilities_result, dict) else {}

        notification = JSONRPCNotification(method=INITIALIZED_NOTIFICATION)
        try:
            await self._transport.send_notification(notification)
        except TransportError as exc:
            raise ClientError(f"failed to send initialized notification: {exc}") from exc

        self._initialized = True
        return result

    async def ping(self) -> None:
        """Check that the server is alive."""
        await self._send_request("ping")

    @staticmethod
    def _page_params(cursor: Optional[str]) -> Dict[str, Any]:
        return {"cursor": cursor} if cursor else {}

    async def _list_by_page(self, method: str, cursor: Optional[str]) -> Dict[str, Any]:
        return await self._request_object(method, self._page_params(cursor))

    async def _list_all(self, method: str, key: str, cursor: Optional[str]) -> Dict[str, Any]:
        result = await self._list_by_page(method, cursor)
        items = list(result.get(key) or [])
        next_cursor = result.get("nextCursor") or ""
        while next_cursor:
            page = await self._list_by_page(method, next_cursor)
            items.extend(page.get(key) or [])
            next_cursor = page.get("nextCursor") or ""
        result[key] = items
        result.pop("nextCursor", None)
        return result

    async def list_resources_by_page(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        """Return one page of resources."""
        return await self._list_by_page("resources/list", cursor)

    async def list_resources(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        """Return every resource, following pagination cursors."""
        return await self._list_all("resources/list", "resources", cursor)

    async def list_resource_templates_by_page(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        """Return one page of resource templates."""
        return await self._list_by_page("resources/templates/list", cursor)

    async def list_resource_templates(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        """Return every resource template, following pagination cursors."""
        return await self._list_all("resources/templates/list", "resourceTemplates", cursor)

    async def read_resource(
        self, uri: str, arguments: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        """Read the contents of a resource."""
        params: Dict[str, Any] = {"uri": uri}
        if arguments:
            params["arguments"] = dict(arguments)
        return await self._request_object("resources/read", params)

    async def subscribe(self, uri: str) -> None:
        """Ask to be notified when a resource changes."""
        await self._send_request("resources/subscribe", {"uri": uri})

    async def unsubscribe(self, uri: str) -> None:
        """Stop notifications for a resource."""
        await self._send_request("resources/unsubscribe", {"uri": uri})

    async def list_prompts_by_page(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        """Return one page of prompts."""
        return await self._list_by_page("prompts/list", cursor)

    async def list_prompts(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        """Return every prompt, following pagination cursors."""
        return await self._list_all("prompts/list", "prompts", cursor)

    async def get_prompt(
        self, name: str, arguments: Optional[Mapping[str, str]] = None
    ) -> Dict[str, Any]:
        """Fetch a prompt, filled in with the given arguments."""
        params: Dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = dict(arguments)
        return await self._request_object("prompts/get", params)

    async def list_tools_by_page(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        """Return one page of tools."""
        return await self._list_by_page("tools/list", cursor)

    async def list_tools(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        """Return every tool, following pagination cursors."""
        return await self._list_all("tools/list", "tools", cursor)

    async def call_tool(
        self, name: str, arguments: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        """Invoke a tool on the server."""
        params: Dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = dict(arguments)
        return await self._request_object("tools/call", params)

    async def set_level(self, level: str) -> None:
        """Set the server's logging level."""
        await self._send_request("logging/setLevel", {"level": level})

    async def complete(
        self, ref: Mapping[str, Any], argument_name: str, argument_value: str
    ) -> Dict[str, Any]:
        """Ask the server for completions of an argument value."""
        params = {
            "ref": dict(ref),
            "argument": {"name": argument_name, "value": argument_value},
        }
        return await self._request_object("completion/complete", params)

    def transport(self) -> Optional[Transport]:
        """Return the underlying transport."""
        return self._transport

    def server_capabilities(self) -> Dict[str, Any]:
        """Return the capabilities the server reported during initialization."""
        return dict(self._server_capabilities)

    def client_capabilities(self) -> Dict[str, Any]:
        """Return the capabilities this client was created with."""
        return dict(self._client_capabilities)