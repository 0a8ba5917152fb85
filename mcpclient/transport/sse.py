"""Transport that receives messages over server-sent events and posts requests."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import AsyncIterator, Dict, Mapping, Optional
from urllib.parse import urljoin, urlsplit

import httpx

from .base import (
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    NotificationHandler,
    Transport,
    TransportError,
)
from .events import SSEEvent, SSEParser

logger = logging.getLogger(__name__)

_ACCEPTED_STATUSES = (200, 202)


def _origin(url: str) -> str:
    """Return host and port of a URL, without any user information."""
    return urlsplit(url).netloc.rpartition("@")[2]


class SSETransport(Transport):
    """Keep an event stream open to receive messages and POST requests to the server.

    The server announces, through an ``endpoint`` event, the URL that requests
    are posted to. Responses arrive as ``message`` events on the stream and are
    routed to waiting requests by id; messages without an id go to the
    notification handler.
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[Mapping[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        endpoint_timeout: float = 30.0,
    ) -> None:
        try:
            parsed = urlsplit(base_url)
        except ValueError as exc:
            raise TransportError(f"invalid URL: {exc}") from exc
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise TransportError(f"invalid URL: {base_url!r}")
        self._base_url = base_url
        self._headers: Dict[str, str] = dict(headers or {})
        self._client = http_client
        self._owns_client = http_client is None
        self._endpoint_timeout = endpoint_timeout
        self._endpoint: Optional[str] = None
        self._endpoint_ready: Optional[asyncio.Event] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._handler: Optional[NotificationHandler] = None
        self._response: Optional[httpx.Response] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._started = False
        self._closed = False

    async def start(self) -> None:
        """Open the event stream and wait until the server announces its endpoint."""
        if self._started or self._reader_task is not None:
            raise TransportError("has already started")
        if self._closed:
            raise TransportError("transport has been closed")
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=None)

        headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            **self._headers,
        }
        request = self._client.build_request("GET", self._base_url, headers=headers)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise TransportError(f"failed to connect to SSE stream: {exc}") from exc
        if response.status_code != 200:
            await response.aclose()
            raise TransportError(f"unexpected status code: {response.status_code}")

        loop = asyncio.get_running_loop()
        self._response = response
        self._endpoint_ready = asyncio.Event()
        self._reader_task = loop.create_task(self._read_stream(response))
        waiter = loop.create_task(self._endpoint_ready.wait())
        succeeded = False
        try:
            await asyncio.wait(
                {waiter, self._reader_task},
                timeout=self._endpoint_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if self._endpoint_ready.is_set():
                succeeded = True
            elif self._closed:
                raise TransportError("transport closed while waiting for endpoint")
            elif self._reader_task.done():
                raise TransportError("SSE stream ended before endpoint was received")
            else:
                raise TransportError("timeout waiting for endpoint")
        finally:
            if not waiter.done():
                waiter.cancel()
            if not succeeded:
                await self._stop_stream()
        self._started = True

    async def _lines(self, response: httpx.Response) -> AsyncIterator[str]:
        buffer = b""
        async for chunk in response.aiter_bytes():
            buffer += chunk
            *complete, buffer = buffer.split(b"\n")
            for raw in complete:
                yield raw.decode("utf-8", errors="replace")
        # A trailing partial line is discarded, as the stream ended mid-line.

    async def _read_stream(self, response: httpx.Response) -> None:
        parser = SSEParser()
        try:
            async for line in self._lines(response):
                event = parser.feed_line(line)
                if event is not None:
                    self._handle_event(event)
            pending = parser.finish()
            if pending is not None:
                self._handle_event(pending)
        except httpx.HTTPError as exc:
            if not self._closed:
                logger.error("SSE stream error: %s", exc)
        finally:
            with contextlib.suppress(Exception):
                await response.aclose()
            self._fail_pending("SSE stream closed")

    def _handle_event(self, event: SSEEvent) -> None:
        if event.event == "endpoint":
            self._handle_endpoint(event.data)
        elif event.event == "message":
            self._handle_message(event.data)

    def _handle_endpoint(self, data: str) -> None:
        try:
            endpoint = urljoin(self._base_url, data)
            endpoint_origin = _origin(endpoint)
        except ValueError as exc:
            logger.error("Error parsing endpoint URL: %s", exc)
            return
        if endpoint_origin != _origin(self._base_url):
            logger.error("Endpoint origin does not match connection origin")
            return
        self._endpoint = endpoint
        if self._endpoint_ready is not None:
            self._endpoint_ready.set()

    def _handle_message(self, data: str) -> None:
        try:
            response = JSONRPCResponse.from_json(data)
        except TransportError as exc:
            logger.error("Error unmarshaling message: %s", exc)
            return
        if response.id is None:
            try:
                notification = JSONRPCNotification.from_dict(json.loads(data))
            except (TransportError, ValueError):
                return
            handler = self._handler
            if handler is not None:
                try:
                    handler(notification)
                except Exception:
                    logger.exception("Notification handler failed")
            return
        future = self._pending.pop(response.id, None)
        if future is not None and not future.done():
            future.set_result(response)

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(TransportError(reason))

    def _post_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", **self._headers}

    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        """Set the callable that receives notifications, replacing any earlier one."""
        self._handler = handler

    async def send_request(self, request: JSONRPCRequest) -> JSONRPCResponse:
        """Post a request and wait for its response to arrive on the stream."""
        if not self._started:
            raise TransportError("transport not started yet")
        if self._closed:
            raise TransportError("transport has been closed")
        if self._endpoint is None:
            raise TransportError("endpoint not received")
        try:
            body = request.to_json().encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise TransportError(f"failed to marshal request: {exc}") from exc

        future = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future
        try:
            try:
                response = await self._client.post(
                    self._endpoint, content=body, headers=self._post_headers()
                )
            except httpx.HTTPError as exc:
                raise TransportError(f"failed to send request: {exc}") from exc
            if response.status_code not in _ACCEPTED_STATUSES:
                raise TransportError(
                    f"request failed with status {response.status_code}: {response.text}"
                )
            return await future
        finally:
            if self._pending.get(request.id) is future:
                del self._pending[request.id]

    async def send_notification(self, notification: JSONRPCNotification) -> None:
        """Post a notification; no reply is awaited."""
        if self._endpoint is None or self._client is None:
            raise TransportError("endpoint not received")
        try:
            body = notification.to_json().encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise TransportError(f"failed to marshal notification: {exc}") from exc
        try:
            response = await self._client.post(
                self._endpoint, content=body, headers=self._post_headers()
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"failed to send notification: {exc}") from exc
        if response.status_code not in _ACCEPTED_STATUSES:
            raise TransportError(
                f"notification failed with status {response.status_code}: {response.text}"
            )

    async def _stop_stream(self) -> None:
        task = self._reader_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._response is not None:
            with contextlib.suppress(Exception):
                await self._response.aclose()

    async def close(self) -> None:
        """Stop the event stream and fail every request still waiting."""
        if self._closed:
            return
        self._closed = True
        await self._stop_stream()
        self._fail_pending("transport has been closed")
        if self._owns_client and self._client is not None:
            await self._client.aclose()

    def endpoint(self) -> Optional[str]:
        """Return the URL requests are posted to, once the server has sent it."""
        return self._endpoint

    def base_url(self) -> str:
        """Return the URL of the event stream given at construction."""
        return self._base_url