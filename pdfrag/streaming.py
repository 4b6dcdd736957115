"""Incremental decoding of streamed generate frames.

The backend sends one JSON object per frame, each terminated by a newline.
Network reads may split a frame or batch several together, so raw bytes
are buffered and complete objects are parsed with a real JSON decoder.
Partial frames stay buffered until the next read.
"""
import codecs
import json
from typing import Iterator
import structlog
from pydantic import ValidationError

from pdfrag.errors import ProtocolError
from pdfrag.schemas import GenerateFrame

logger = structlog.get_logger()

MAX_FRAME_CHARS = 1_000_000


class FrameDecoder:
    """Turns arbitrary byte fragments into GenerateFrame objects."""

    def __init__(self, max_frame_chars: int = MAX_FRAME_CHARS):
        self.max_frame_chars = max_frame_chars
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._json = json.JSONDecoder()
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Buffered text not yet parsed into a frame."""
        return self._buffer

    def feed(self, data: bytes) -> Iterator[GenerateFrame]:
        """Add raw bytes and yield every frame completed by them.

        Raises:
            ProtocolError: On a complete but malformed frame
        """
        try:
            self._buffer += self._utf8.decode(data)
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Invalid UTF-8 in stream: {e}") from e

        yield from self._drain()

    def close(self) -> Iterator[GenerateFrame]:
        """Flush the buffer at end of stream.

        Raises:
            ProtocolError: If an unterminated frame remains
        """
        try:
            self._buffer += self._utf8.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Truncated UTF-8 at end of stream: {e}") from e

        yield from self._drain()

        if self._buffer.strip():
            preview = self._buffer[:100]
            self._buffer = ""
            raise ProtocolError(f"Incomplete frame at end of stream: {preview!r}")

    def _drain(self) -> Iterator[GenerateFrame]:
        while True:
            text = self._buffer.lstrip()
            self._buffer = text
            if not text:
                return

            try:
                obj, end = self._json.raw_decode(text)
            except json.JSONDecodeError as e:
                # A newline terminates every frame, so a failure before one is malformed
                if "\n" in text:
                    line = text.split("\n", 1)[0]
                    self._buffer = text[len(line) + 1:]
                    raise ProtocolError(f"Malformed frame: {e.msg}: {line[:100]!r}") from e
                if len(text) > self.max_frame_chars:
                    self._buffer = ""
                    raise ProtocolError(
                        f"Frame exceeds {self.max_frame_chars} characters without terminating"
                    ) from e
                return

            self._buffer = text[end:]

            if not isinstance(obj, dict):
                raise ProtocolError(f"Expected a JSON object frame, got {type(obj).__name__}")

            try:
                frame = GenerateFrame.model_validate(obj)
            except ValidationError as e:
                raise ProtocolError(f"Invalid frame: {e}") from e

            yield frame
