"""Response sinks and the capturing writer used to record runner output."""

from collections.abc import Iterator
from typing import Protocol, runtime_checkable


class ResponseSink(Protocol):
    """Destination of a response: a status line followed by body bytes."""

    def write(self, data: bytes) -> int: ...

    def write_header(self, status_code: int) -> None: ...


@runtime_checkable
class Flusher(Protocol):
    """Sink that can push buffered output to the client immediately."""

    def flush(self) -> None: ...


class ResponseCapturingWriter:
    """Pass everything through to *sink* while keeping a copy of the body.

    The tracked status is the most recent one passed to ``write_header``.
    """

    def __init__(self, sink: ResponseSink):
        self.sink = sink
        self.status_code = 200
        self._body = bytearray()

    def write(self, data: bytes) -> int:
        self._body.extend(data)
        return self.sink.write(data)

    def write_header(self, status_code: int) -> None:
        self.status_code = status_code
        self.sink.write_header(status_code)

    def flush(self) -> None:
        if isinstance(self.sink, Flusher):
            self.sink.flush()

    @property
    def body(self) -> bytes:
        return bytes(self._body)

    @property
    def text(self) -> str:
        return self._body.decode("utf-8", errors="replace")


class ChunkSink:
    """In-memory sink whose chunks are drained by a streaming response."""

    def __init__(self):
        self.status_code = 200
        self._pending: list[bytes] = []
        self._ready: list[bytes] = []

    def write(self, data: bytes) -> int:
        self._pending.append(data)
        return len(data)

    def write_header(self, status_code: int) -> None:
        self.status_code = status_code

    def flush(self) -> None:
        self._ready.extend(self._pending)
        self._pending.clear()

    def drain(self) -> Iterator[bytes]:
        """Yield and forget every chunk written so far."""
        self.flush()
        chunks, self._ready = self._ready, []
        yield from chunks
