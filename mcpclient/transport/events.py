"""Line-oriented parsing of server-sent event streams."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional


@dataclass(frozen=True)
class SSEEvent:
    """One server-sent event: its type and its data."""

    event: str
    data: str


class SSEParser:
    """Incremental parser that turns stream lines into events.

    An event is emitted at a blank line once both an ``event:`` and a
    ``data:`` field have been seen; a later field of the same kind replaces
    the earlier one, and other lines are ignored.
    """

    def __init__(self) -> None:
        self._event = ""
        self._data = ""

    def _take(self) -> Optional[SSEEvent]:
        if self._event and self._data:
            emitted = SSEEvent(self._event, self._data)
            self._event = ""
            self._data = ""
            return emitted
        return None

    def feed_line(self, line: str) -> Optional[SSEEvent]:
        """Process one line; return the event it completes, if any."""
        line = line.rstrip("\r\n")
        if not line:
            return self._take()
        if line.startswith("event:"):
            self._event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            self._data = line[len("data:"):].strip()
        return None

    def finish(self) -> Optional[SSEEvent]:
        """Return an event left pending when the stream ends."""
        return self._take()


def iter_sse_events(lines: Iterable[str]) -> Iterator[SSEEvent]:
    """Yield the events found in an iterable of stream lines."""
    parser = SSEParser()
    for line in lines:
        emitted = parser.feed_line(line)
        if emitted is not None:
            yield emitted
    pending = parser.finish()
    if pending is not None:
        yield pending