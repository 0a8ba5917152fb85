import asyncio
import contextlib
import json

import httpx
import pytest

from mcpclient.transport.base import JSONRPCNotification, JSONRPCRequest, TransportError
from mcpclient.transport.sse import SSETransport

BASE_URL = "http://testserver/sse"


class MockSSEServer:
    """An in-process echo server speaking the SSE transport protocol."""

    def __init__(self, endpoint="/message", stream_status=200, stream_body=None):
        self.endpoint = endpoint
        self.stream_status = stream_status
        self.stream_body = stream_body
        self.queue = None
        self.requests = []

    @staticmethod
    def _frame(payload):
        return f"event: message\ndata: {json.dumps(payload)}\n\n".encode()

    async def handler(self, request):
        self.requests.append(request)
        if request.method == "GET":
            if self.stream_status != 200:
                return httpx.Response(self.stream_status, content=b"nope")
            if self.stream_body is not None:
                return httpx.Response(
                    200, headers={"Content-Type": "text/event-stream"}, content=self.stream_body
                )
            queue = asyncio.Queue()
            self.queue = queue

            async def stream():
                yield f"event: endpoint\ndata: {self.endpoint}\n\n".encode()
                while True:
                    yield await queue.get()

            return httpx.Response(
                200, headers={"Content-Type": "text/event-stream"}, content=stream()
            )

        body = json.loads(request.content)
        method = body.get("method")
        if method == "debug/silent":
            return httpx.Response(202)
        if method == "debug/reject":
            return httpx.Response(500, content=b"rejected")
        response = {"jsonrpc": "2.0", "id": body.get("id"), "result": body}
        if method == "debug/echo_notification":
            self.queue.put_nowait(
                self._frame({"jsonrpc": "2.0", "method": "debug/test", "params": body})
            )
        elif method == "debug/echo_error_string":
            response["error"] = {"code": -1, "message": json.dumps(body)}
        if "id" in body:
            self.queue.put_nowait(self._frame(response))
        return httpx.Response(202)


@contextlib.asynccontextmanager
async def running(server, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    transport = SSETransport(BASE_URL, http_client=client, **kwargs)
    await transport.start()
    try:
        yield transport
    finally:
        await transport.close()
        await client.aclose()


@pytest.mark.asyncio
async def test_endpoint_is_resolved_against_base_url():
    async with running(MockSSEServer()) as transport:
        assert transport.endpoint() == "http://testserver/message"
        assert transport.base_url() == BASE_URL


@pytest.mark.asyncio
async def test_send_request_echo():
    async with running(MockSSEServer()) as transport:
        request = JSONRPCRequest(
            id=1,
            method="debug/echo",
            params={"string": "hello world", "array": [1, 2, 3]},
        )
        response = await transport.send_request(request)
        result = response.result
        assert response.id == 1
        assert result["jsonrpc"] == "2.0"
        assert result["id"] == 1
        assert result["method"] == "debug/echo"
        assert result["params"]["string"] == "hello world"
        assert len(result["params"]["array"]) == 3


@pytest.mark.asyncio
async def test_request_timeout_then_transport_still_works():
    async with running(MockSSEServer()) as transport:
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                transport.send_request(JSONRPCRequest(id=3, method="debug/silent")), timeout=0.1
            )
        response = await transport.send_request(JSONRPCRequest(id=3, method="debug/echo"))
        assert response.result["method"] == "debug/echo"


@pytest.mark.asyncio
async def test_send_notification_and_notification_handler():
    async with running(MockSSEServer()) as transport:
        received = []
        arrived = asyncio.Event()

        def handler(notification):
            received.append(notification)
            arrived.set()

        transport.set_notification_handler(handler)
        notification = JSONRPCNotification(
            method="debug/echo_notification", params={"test": "value"}
        )
        await transport.send_notification(notification)
        await asyncio.wait_for(arrived.wait(), timeout=1.0)
        assert len(received) == 1
        assert received[0].method == "debug/test"
        assert received[0].params == notification.to_dict()


@pytest.mark.asyncio
async def test_multiple_concurrent_requests():
    async with running(MockSSEServer()) as transport:
        requests = [
            JSONRPCRequest(id=100 + idx, method="debug/echo", params={"requestIndex": idx})
            for idx in range(5)
        ]
        responses = await asyncio.gather(*(transport.send_request(r) for r in requests))
        for idx, response in enumerate(responses):
            assert response.id == 100 + idx
            assert response.result["id"] == 100 + idx
            assert response.result["method"] == "debug/echo"
            assert response.result["params"]["requestIndex"] == idx


@pytest.mark.asyncio
async def test_response_error():
    async with running(MockSSEServer()) as transport:
        response = await transport.send_request(
            JSONRPCRequest(id=100, method="debug/echo_error_string")
        )
        assert response.error is not None
        assert response.error.code == -1
        echoed = json.loads(response.error.message)
        assert echoed["method"] == "debug/echo_error_string"
        assert echoed["id"] == 100
        assert echoed["jsonrpc"] == "2.0"


@pytest.mark.asyncio
async def test_rejected_request_raises_with_status():
    async with running(MockSSEServer()) as transport:
        with pytest.raises(TransportError, match="status 500: rejected"):
            await transport.send_request(JSONRPCRequest(id=7, method="debug/reject"))


@pytest.mark.asyncio
async def test_custom_headers_are_sent():
    server = MockSSEServer()
    async with running(server, headers={"X-Client-Name": "tests"}) as transport:
        await transport.send_request(JSONRPCRequest(id=1, method="debug/echo"))
    stream_request, post_request = server.requests[0], server.requests[1]
    assert stream_request.headers["Accept"] == "text/event-stream"
    assert stream_request.headers["X-Client-Name"] == "tests"
    assert post_request.headers["X-Client-Name"] == "tests"
    assert post_request.headers["Content-Type"] == "application/json"


@pytest.mark.asyncio
async def test_close_fails_pending_request():
    server = MockSSEServer()
    async with running(server) as transport:
        pending = asyncio.ensure_future(
            transport.send_request(JSONRPCRequest(id=5, method="debug/silent"))
        )
        await asyncio.sleep(0.05)
        await transport.close()
        with pytest.raises(TransportError):
            await pending
    posted = json.loads(server.requests[-1].content)
    assert posted["id"] == 5
    assert posted["method"] == "debug/silent"


def test_invalid_url():
    with pytest.raises(TransportError, match="invalid URL"):
        SSETransport("://invalid-url")


@pytest.mark.asyncio
async def test_non_existent_url():
    transport = SSETransport("http://localhost:1")
    with pytest.raises(TransportError, match="failed to connect"):
        await transport.start()
    await transport.close()


@pytest.mark.asyncio
async def test_unexpected_status_code():
    server = MockSSEServer(stream_status=503)
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    transport = SSETransport(BASE_URL, http_client=client)
    with pytest.raises(TransportError, match="unexpected status code: 503"):
        await transport.start()
    await client.aclose()


@pytest.mark.asyncio
async def test_stream_ending_without_endpoint():
    server = MockSSEServer(stream_body=b"event: other\ndata: x\n\n")
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    transport = SSETransport(BASE_URL, http_client=client)
    with pytest.raises(TransportError, match="ended before endpoint"):
        await transport.start()
    assert transport.endpoint() is None
    await client.aclose()


@pytest.mark.asyncio
async def test_endpoint_with_foreign_origin_is_ignored():
    server = MockSSEServer(endpoint="http://elsewhere.example.com/message")
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    transport = SSETransport(BASE_URL, http_client=client, endpoint_timeout=0.2)
    with pytest.raises(TransportError, match="timeout waiting for endpoint"):
        await transport.start()
    assert transport.endpoint() is None
    await transport.close()
    await client.aclose()


@pytest.mark.asyncio
async def test_request_before_start():
    transport = SSETransport(BASE_URL)
    with pytest.raises(TransportError, match="not started"):
        await transport.send_request(JSONRPCRequest(id=99, method="ping"))


@pytest.mark.asyncio
async def test_request_after_close():
    async with running(MockSSEServer()) as transport:
        await transport.close()
        await asyncio.sleep(0.05)
        with pytest.raises(TransportError, match="closed"):
            await transport.send_request(JSONRPCRequest(id=1, method="ping"))


@pytest.mark.asyncio
async def test_start_twice_raises():
    async with running(MockSSEServer()) as transport:
        with pytest.raises(TransportError, match="already started"):
            await transport.start()