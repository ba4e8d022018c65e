"""
SSE Frame Parser - turns an arbitrarily chunked text/event-stream body into frames

Chunks may split anywhere: inside a line, between the two newlines of a frame
delimiter, or in the middle of a multi-byte UTF-8 character. Only complete
(blank-line terminated) frames are emitted, so the frames produced never
depend on where the transport happened to split the stream.

Usage:
    async for frame in iter_sse_frames(response.aiter_bytes()):
        payload = frame.json()
"""

import codecs
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Union

from shipyard.core.logging_config import logger


DONE_EVENT = "done"
FRAME_DELIMITER = "\n\n"

Chunk = Union[bytes, str]


class FrameDecodeError(ValueError):
    """A frame's data field is not valid JSON"""

    def __init__(self, frame: "SSEFrame", reason: str):
        super().__init__(f"Malformed JSON in SSE frame: {reason}")
        self.frame = frame


@dataclass
class SSEFrame:
    """One Server-Sent Event"""
    data: str
    event: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.event == DONE_EVENT

    def json(self) -> Any:
        """Decode the data field, raising FrameDecodeError for this frame only"""
        try:
            return json.loads(self.data)
        except (json.JSONDecodeError, TypeError) as e:
            raise FrameDecodeError(self, str(e))

    def to_sse(self) -> str:
        """Serialize back to wire format"""
        lines = []
        if self.event:
            lines.append(f"event: {self.event}")
        lines.extend(f"data: {line}" for line in self.data.split("\n"))
        return "\n".join(lines) + FRAME_DELIMITER


class SSEFrameParser:
    """
    Incremental parser, one instance per stream.

    feed() returns the frames completed by a chunk; the trailing incomplete
    segment stays buffered. After an `event: done` frame the parser is
    finished and ignores further input.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_cr = False
        self.done = False

    @property
    def buffered(self) -> str:
        return self._buffer

    def feed(self, chunk: Chunk) -> List[SSEFrame]:
        if self.done:
            return []

        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += self._normalize_newlines(text)

        frames: List[SSEFrame] = []
        while FRAME_DELIMITER in self._buffer:
            segment, self._buffer = self._buffer.split(FRAME_DELIMITER, 1)
            frame = self._parse_segment(segment)
            if frame is None:
                continue
            frames.append(frame)
            if frame.is_done:
                self.done = True
                self._buffer = ""
                break
        return frames

    def close(self) -> List[SSEFrame]:
        """
        Signal end of stream.

        A frame that never received its terminating blank line is discarded.
        """
        if self.done:
            return []

        tail = self._decoder.decode(b"", final=True)
        if self._pending_cr:
            tail += "\n"
            self._pending_cr = False
        self._buffer += tail.replace("\r\n", "\n").replace("\r", "\n")

        frames: List[SSEFrame] = []
        if FRAME_DELIMITER in self._buffer:
            frames = self.feed("")

        if self._buffer.strip():
            logger.warning(
                f"[SSEParser] Discarding unterminated frame at end of stream ({len(self._buffer)} chars)",
                extra={"event_type": "sse_partial_frame", "partial_length": len(self._buffer)}
            )
        self._buffer = ""
        self.done = True
        return frames

    def _normalize_newlines(self, text: str) -> str:
        # A CR at the end of a chunk may be the first half of a CRLF
        if self._pending_cr:
            text = "\r" + text
            self._pending_cr = False
        if text.endswith("\r"):
            text = text[:-1]
            self._pending_cr = True
        return text.replace("\r\n", "\n").replace("\r", "\n")

    @staticmethod
    def _parse_segment(segment: str) -> Optional[SSEFrame]:
        event: Optional[str] = None
        data_lines: List[str] = []

        for line in segment.split("\n"):
            if not line or line.startswith(":"):
                continue
            if ":" not in line:
                continue

            field, value = line.split(":", 1)
            if value.startswith(" "):
                value = value[1:]

            if field == "event":
                event = value
            elif field == "data":
                data_lines.append(value)
            # id / retry are not used

        if event is None and not data_lines:
            return None
        return SSEFrame(data="\n".join(data_lines), event=event)


async def iter_sse_frames(chunks: AsyncIterator[Chunk]) -> AsyncIterator[SSEFrame]:
    """
    Lazily parse frames from an async chunk iterator.

    Stops after an `event: done` frame even if the transport stays open.
    Transport errors raised by `chunks` propagate to the caller.
    """
    parser = SSEFrameParser()
    async for chunk in chunks:
        for frame in parser.feed(chunk):
            yield frame
        if parser.done:
            return

    for frame in parser.close():
        yield frame
