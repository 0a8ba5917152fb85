# mcpclient

An asyncio client for the Model Context Protocol (MCP). It speaks JSON-RPC 2.0 to an MCP
server over one of two transports:

- **stdio**: `mcpclient.transport.stdio.StdioTransport` starts the server as a
  subprocess and exchanges newline-delimited JSON over its standard input and output.
  `StdioTransport.from_streams(reader, writer, stderr)` uses streams you already have
  instead of spawning a process. `stderr()` returns the stream carrying the process's
  error output.
- **SSE**: `mcpclient.transport.sse.SSETransport` keeps a Server-Sent Events stream open
  to receive responses and notifications, and sends requests with HTTP POST to the
  endpoint the server announces in an `endpoint` event. `start()` waits up to
  `endpoint_timeout` seconds (30 by default) for that event. `endpoint()` and
  `base_url()` return the announced endpoint and the stream URL.

Both implement the abstract `mcpclient.transport.base.Transport` and can be used as
async context managers. The JSON-RPC message types (`JSONRPCRequest`,
`JSONRPCResponse`, `JSONRPCNotification`) live in the same module; transport failures
raise `TransportError`. `mcpclient.transport.events` holds the line-oriented SSE
parser (`SSEParser`, `iter_sse_events`).

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Using the client

`mcpclient.client.Client` wraps a transport and offers the MCP operations: `initialize`,
`ping`, `list_tools`, `call_tool`, `list_resources`, `list_resource_templates`,
`read_resource`, `subscribe`, `unsubscribe`, `list_prompts`, `get_prompt`, `set_level`
and `complete`. Results are returned as the decoded JSON objects the server sent. The
`list_*` methods follow `nextCursor` until every page has been fetched; the
`list_*_by_page` variants return a single page for a given cursor.

Call `start()` (or use the client as an async context manager) before anything else.
Requests other than `initialize` are refused with `ClientError` until the client has
been initialized. An error returned by the server, or a transport failure, is raised
as `ClientError`.

A typical session over SSE:

```python
import asyncio

from mcpclient.client import Client
from mcpclient.transport.sse import SSETransport


async def main():
    async with Client(SSETransport("http://localhost:8080/sse")) as client:
        await client.initialize(
            "2025-03-26",
            {"name": "example-client", "version": "1.0.0"},
        )
        tools = await client.list_tools()
        print(tools)
        result = await client.call_tool("echo", {"message": "hello"})
        print(result)


asyncio.run(main())
```

Over stdio, pass the command, extra `KEY=VALUE` environment entries and arguments:

```python
transport = StdioTransport("my-mcp-server", [], ["--flag"])
```

Notifications sent by the server are passed to every handler registered with
`client.on_notification(handler)`, in the order the handlers were added.
`server_capabilities()` returns what the server reported during initialization.

## What it does not do

- There is no Streamable HTTP transport; only stdio and SSE are provided.
- There are no ready-made constructors that build a started client in one call:
  create the transport, wrap it in `Client`, and call `start()`.
- The package installs no command-line program; it is a library only.
- It is a client only; it contains no MCP server.