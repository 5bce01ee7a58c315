import codecs
import logging
from typing import Iterable, Iterator, List, NamedTuple, Optional, Union

logger = logging.getLogger("inkstream.sse")

DONE_SENTINEL = "[DONE]"

# Standard SSE fields that carry nothing for the generation stream.
_SILENT_FIELDS = ("id:", "retry:")

Chunk = Union[str, bytes, bytearray]


class SSERecord(NamedTuple):
    event: str
    data: str


class SSEDemultiplexer:
    """Turns arbitrarily chunked stream text into complete ``(event, data)`` records.

    Chunks may split a record anywhere, including inside a line or inside a
    multi-byte character. Only complete lines are interpreted; the trailing
    partial line is kept until the next chunk (or ``close()``) completes it.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._event = ""
        self._data_lines: List[str] = []
        self._done = False
        self._closed = False
        self.ignored_lines = 0

    @property
    def done(self) -> bool:
        """True once the ``[DONE]`` sentinel has been seen."""
        return self._done

    def feed(self, chunk: Chunk) -> List[SSERecord]:
        if self._done or self._closed or not chunk:
            return []
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = chunk
        lines = (self._pending + text).split("\n")
        self._pending = lines.pop()
        return self._consume_lines(lines)

    def close(self) -> List[SSERecord]:
        """Flush the trailing line and any record still being accumulated."""
        if self._closed:
            return []
        self._closed = True
        if self._done:
            return []

        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        records = self._consume_lines(tail.split("\n") if tail else [])
        if not self._done:
            record = self._flush_record()
            if record is not None:
                records.append(record)
        return records

    def _consume_lines(self, lines: List[str]) -> List[SSERecord]:
        records: List[SSERecord] = []
        for line in lines:
            record = self._consume_line(line)
            if record is not None:
                records.append(record)
            if self._done:
                break
        return records

    def _consume_line(self, line: str) -> Optional[SSERecord]:
        if line.endswith("\r"):
            line = line[:-1]

        if not line.strip():
            return self._flush_record()

        if line.startswith("event:"):
            self._event = _field_value(line[6:]).strip()
            return None

        if line.startswith("data:"):
            value = _field_value(line[5:])
            if value.strip() == DONE_SENTINEL:
                record = self._flush_record() if self._data_lines else None
                self._done = True
                self._event = ""
                self._data_lines = []
                logger.debug("sse done sentinel received")
                return record
            self._data_lines.append(value)
            return None

        if line.startswith(":") or line.startswith(_SILENT_FIELDS):
            return None

        self.ignored_lines += 1
        logger.debug("sse malformed line ignored line=%r", line[:80])
        return None

    def _flush_record(self) -> Optional[SSERecord]:
        if not self._data_lines and not self._event:
            return None
        record = SSERecord(self._event, "\n".join(self._data_lines))
        self._event = ""
        self._data_lines = []
        return record


def _field_value(raw: str) -> str:
    # "data: x" and "data:x" are both accepted; only one separator space is dropped.
    return raw[1:] if raw.startswith(" ") else raw


def iter_records(chunks: Iterable[Chunk]) -> Iterator[SSERecord]:
    demux = SSEDemultiplexer()
    for chunk in chunks:
        yield from demux.feed(chunk)
        if demux.done:
            return
    yield from demux.close()
