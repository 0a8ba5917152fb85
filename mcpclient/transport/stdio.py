"""Transport that talks JSON-RPC over a subprocess's standard streams."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Any, Dict, Iterable, Optional, Sequence

from .base import (
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    NotificationHandler,
    Transport,
    TransportError,
)

logger = logging.getLogger(__name__)

_LINE_LIMIT = 16 * 1024 * 1024


class StdioTransport(Transport):
    """Exchange newline-delimited JSON-RPC messages with a child process.

    Responses are routed to waiting requests by id; messages without an id
    are passed to the notification handler.
    """

    def __init__(
        self,
        command: str = "",
        env: Optional[Iterable[str]] = None,
        args: Sequence[str] = (),
    ) -> None:
        self._command = command
        self._args = list(args)
        self._env = list(env or [])
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Any = None
        self._stderr: Any = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._handler: Optional[NotificationHandler] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

    @classmethod
    def from_streams(cls, reader: asyncio.StreamReader, writer: Any, stderr: Any = None) -> "StdioTransport":
        """Use existing streams instead of spawning a process.

        ``writer`` needs ``write`` and ``close``; ``drain`` and ``wait_closed``
        are awaited when present.
        """
        transport = cls()
        transport._reader = reader
        transport._writer = writer
        transport._stderr = stderr
        return transport

    def _environment(self) -> Dict[str, str]:
        merged = dict(os.environ)
        for entry in self._env:
            key, sep, value = entry.partition("=")
            if sep:
                merged[key] = value
        return merged

    async def _spawn(self) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self._command,
                *self._args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._environment(),
                limit=_LINE_LIMIT,
            )
        except OSError as exc:
            raise TransportError(f"failed to start command: {exc}") from exc
        self._process = process
        self._reader = process.stdout
        self._writer = process.stdin
        self._stderr = process.stderr

    async def start(self) -> None:
        """Spawn the command, if any, and begin reading messages."""
        if self._reader_task is not None:
            raise TransportError("has already started")
        if self._command:
            await self._spawn()
        if self._reader is None:
            raise TransportError("no command or streams to communicate with")
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop())

    async def _read_loop(self) -> None:
        reader = self._reader
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError as exc:
                    logger.error("Error reading response: %s", exc)
                    continue
                except ConnectionError as exc:
                    logger.error("Error reading response: %s", exc)
                    return
                if not line:
                    return
                self._dispatch(line)
        finally:
            self._fail_pending("connection closed")

    def _dispatch(self, line: bytes) -> None:
        try:
            response = JSONRPCResponse.from_json(line)
        except TransportError:
            return
        if response.id is None:
            try:
                notification = JSONRPCNotification.from_json_line(line) if False else None
            except TransportError:
                return
            self._notify(line)
            return
        future = self._pending.pop(response.id, None)
        if future is not None and not future.done():
            future.set_result(response)

    def _notify(self, line: bytes) -> None:
        import json

        try:
            notification = JSONRPCNotification.from_dict(json.loads(line))
        except (TransportError, ValueError):
            return
        handler = self._handler
        if handler is None:
            return
        try:
            handler(notification)
        except Exception:
            logger.exception("Notification handler failed")

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(TransportError(reason))

    async def _write(self, payload: bytes, what: str) -> None:
        if self._closed:
            raise TransportError(f"failed to write {what}: transport closed")
        try:
            self._writer.write(payload)
            drain = getattr(self._writer, "drain", None)
            if drain is not None:
                await drain()
        except (OSError, RuntimeError) as exc:
            raise TransportError(f"failed to write {what}: {exc}") from exc

    async def send_request(self, request: JSONRPCRequest) -> JSONRPCResponse:
        """Write a request and wait for the response with the same id."""
        if self._writer is None:
            raise TransportError("stdio client not started")
        try:
            payload = (request.to_json() + "\n").encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise TransportError(f"failed to marshal request: {exc}") from exc
        future = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future
        try:
            await self._write(payload, "request")
            return await future
        finally:
            if self._pending.get(request.id) is future:
                del self._pending[request.id]

    async def send_notification(self, notification: JSONRPCNotification) -> None:
        """Write a notification; no reply is awaited."""
        if self._writer is None:
            raise TransportError("stdio client not started")
        try:
            payload = (notification.to_json() + "\n").encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise TransportError(f"failed to marshal notification: {exc}") from exc
        await self._write(payload, "notification")

    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        """Set the callable that receives notifications, replacing any earlier one."""
        self._handler = handler

    async def close(self) -> None:
        """Close stdin, wait for the process to exit and stop reading."""
        if self._closed:
            return
        self._closed = True
        self._fail_pending("transport closed")
        if self._writer is not None:
            with contextlib.suppress(OSError, RuntimeError):
                self._writer.close()
            wait_closed = getattr(self._writer, "wait_closed", None)
            if wait_closed is not None:
                with contextlib.suppress(OSError, RuntimeError):
                    await wait_closed()
        returncode = None
        if self._process is not None:
            returncode = await self._process.wait()
        task = self._reader_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if returncode:
            raise TransportError(f"process exited with status {returncode}")

    def stderr(self) -> Any:
        """Return the stream carrying the process's error output."""
        return self._stderr