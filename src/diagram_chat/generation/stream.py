import codecs
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from ..errors import ErrorCategory, FrameDecodeError, PipelineError

logger = logging.getLogger(__name__)

FRAME_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


@dataclass
class StreamEvent:
    """A decoded frame surfaced by the consumer."""

    type: str  # "content" or "error"
    data: str = ""


def decode_frame(line: str) -> StreamEvent | None:
    """Decode one line of the event stream.

    Returns None for lines that carry nothing: blank lines, the termination
    sentinel, lines without the frame prefix and empty content records.
    Raises FrameDecodeError when the payload is not valid JSON and
    PipelineError when it is JSON but not a content/error record.
    """
    stripped = line.strip()
    if not stripped or stripped == FRAME_PREFIX + DONE_SENTINEL:
        return None
    if not line.startswith(FRAME_PREFIX):
        return None

    payload = line[len(FRAME_PREFIX):]
    try:
        record = json.loads(payload)
    except json.JSONDecodeError as e:
        raise FrameDecodeError(code="FRAME_DECODE_ERROR", message=str(e)) from e

    if not isinstance(record, dict):
        raise PipelineError(
            code="MALFORMED_STREAM",
            message=f"Failed to parse the response stream: unexpected frame {payload[:80]!r}",
            category=ErrorCategory.MALFORMED_STREAM,
        )

    content = record.get("content")
    error = record.get("error")
    if content:
        if not isinstance(content, str):
            raise PipelineError(
                code="MALFORMED_STREAM",
                message="Failed to parse the response stream: content is not a string",
                category=ErrorCategory.MALFORMED_STREAM,
            )
        return StreamEvent(type="content", data=content)
    if error:
        if not isinstance(error, str):
            raise PipelineError(
                code="MALFORMED_STREAM",
                message="Failed to parse the response stream: error is not a string",
                category=ErrorCategory.MALFORMED_STREAM,
            )
        return StreamEvent(type="error", data=error)
    return None


class StreamConsumer:
    """Accumulates the text of a server-sent event stream.

    Reads arbitrary byte chunks, reassembles lines that were split across
    reads and decodes each ``data: {...}`` frame. Content is appended to
    ``text``; an error frame stops consumption with a PipelineError.
    """

    def __init__(self) -> None:
        self.text = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    async def iter_content(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
        """Yield each content fragment as it arrives."""
        async for chunk in chunks:
            self._buffer += self._decoder.decode(chunk)
            lines = self._buffer.split("\n")
            self._buffer = lines.pop()
            for line in lines:
                fragment = self._handle_line(line)
                if fragment:
                    yield fragment

        # Flush a final frame that was not newline-terminated
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer:
            line, self._buffer = self._buffer, ""
            fragment = self._handle_line(line)
            if fragment:
                yield fragment

    async def consume(self, chunks: AsyncIterator[bytes]) -> str:
        async for _ in self.iter_content(chunks):
            pass
        return self.text

    def _handle_line(self, line: str) -> str | None:
        try:
            event = decode_frame(line.rstrip("\r"))
        except FrameDecodeError as e:
            logger.warning("Skipping undecodable frame: %s", e.message)
            return None

        if event is None:
            return None
        if event.type == "error":
            self.text = ""
            raise PipelineError(code="STREAM_ERROR", message=event.data)

        self.text += event.data
        return event.data
