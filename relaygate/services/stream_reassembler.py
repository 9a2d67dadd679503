"""Reassemble a streamed completion body into the reply text.

Producers frame the stream differently. Each complete line is one frame:

- ``0:"Hello"``: a single tag character, a colon, then a JSON string literal
  (or an object carrying ``textDelta``/``delta``). Tag ``3`` carries errors.
- ``data: {...}``: a Server-Sent-Events frame. ``data: [DONE]`` ends the stream.
  Text comes from ``{"type": "text-delta", "delta"|"textDelta": ...}`` or from
  chat-completion chunks ``{"choices": [{"delta": {"content": ...}}]}``.
- a bare JSON string literal.

Anything else is logged and skipped.
"""

import codecs
import enum
import json
import logging
import re
from collections.abc import AsyncIterable
from typing import Any

logger = logging.getLogger(__name__)

FALLBACK_REPLY = (
    "I received your message but couldn't put together a proper reply. Please try again."
)

_TAGGED_FRAME = re.compile(r"^([^:\s]):(.*)$", re.DOTALL)
_ERROR_TAG = "3"
_SSE_CONTROL_FIELDS = ("event:", "id:", "retry:")


class FrameKind(enum.Enum):
    TAGGED = "tagged"
    SSE_DATA = "sse_data"
    SSE_DONE = "sse_done"
    BARE_JSON = "bare_json"
    SKIP = "skip"


def classify_frame(line: str) -> tuple[FrameKind, str]:
    """Decide how a complete line should be read, without parsing its payload."""
    if not line.strip() or line.startswith(":"):
        return FrameKind.SKIP, line
    match = _TAGGED_FRAME.match(line)
    if match:
        return FrameKind.TAGGED, line
    if line.startswith("data:"):
        payload = line[len("data:"):].strip()
        if payload == "[DONE]":
            return FrameKind.SSE_DONE, payload
        return FrameKind.SSE_DATA, payload
    if line.startswith(_SSE_CONTROL_FIELDS):
        return FrameKind.SKIP, line
    return FrameKind.BARE_JSON, line


def _delta_from_object(obj: dict[str, Any]) -> str | None:
    for field in ("textDelta", "delta"):
        value = obj.get(field)
        if isinstance(value, str):
            return value
    return None


def _delta_from_sse(obj: Any) -> str | None:
    if not isinstance(obj, dict):
        return None
    if obj.get("type") in ("text-delta", "text_delta"):
        return _delta_from_object(obj)
    choices = obj.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("content"), str):
            return delta["content"]
    return None


class StreamReassembler:
    """
    Buffered line splitter plus per-frame dispatch.

    Feed raw chunks in any size; bytes are decoded incrementally so multi-byte
    characters split across chunks survive. Only complete lines are parsed,
    the trailing partial line waits for the next chunk or for finish().
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._parts: list[str] = []
        self.done = False
        self.skipped = 0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: bytes | str) -> list[str]:
        """Consume a chunk and return the text deltas it completed."""
        if self.done:
            return []
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        deltas: list[str] = []
        while not self.done and "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            delta = self._process_line(line.rstrip("\r"))
            if delta:
                deltas.append(delta)
        return deltas

    def finish(self) -> str:
        """Flush the decoder and the last unterminated line, return the whole text."""
        if not self.done:
            self._buffer += self._decoder.decode(b"", final=True)
            remainder, self._buffer = self._buffer, ""
            if remainder.strip():
                self._process_line(remainder.rstrip("\r"))
            self.done = True
        return self.text

    def _process_line(self, line: str) -> str | None:
        kind, payload = classify_frame(line)
        if kind is FrameKind.SKIP:
            return None
        if kind is FrameKind.SSE_DONE:
            self.done = True
            return None

        if kind is FrameKind.TAGGED:
            delta = self._read_tagged(payload)
        elif kind is FrameKind.SSE_DATA:
            delta = self._read_json(payload, _delta_from_sse)
        else:
            delta = self._read_json(payload, lambda obj: obj if isinstance(obj, str) else None)

        if delta is None:
            self.skipped += 1
            logger.debug(f"Skipping unreadable stream frame: {line[:120]!r}")
            return None
        self._parts.append(delta)
        return delta

    def _read_tagged(self, line: str) -> str | None:
        tag, payload = line[0], line[2:]
        if tag == _ERROR_TAG:
            logger.warning(f"Completion stream reported an error: {payload[:200]}")
            return None

        def extract(obj: Any) -> str | None:
            if isinstance(obj, dict):
                return _delta_from_object(obj)
            if not isinstance(obj, str):
                return None
            # a string that itself encodes a text-delta object
            if obj.startswith("{") and obj.endswith("}"):
                try:
                    inner = json.loads(obj)
                except ValueError:
                    return obj
                if isinstance(inner, dict):
                    nested = _delta_from_object(inner)
                    if nested is not None:
                        return nested
            return obj

        return self._read_json(payload, extract)

    @staticmethod
    def _read_json(payload: str, extract) -> str | None:
        try:
            obj = json.loads(payload)
        except ValueError:
            return None
        return extract(obj)


async def reassemble(chunks: AsyncIterable[bytes | str]) -> str:
    """Read a whole stream. Returns the stripped text, possibly empty."""
    reassembler = StreamReassembler()
    try:
        async for chunk in chunks:
            reassembler.feed(chunk)
            if reassembler.done:
                break
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
    text = reassembler.finish()
    if reassembler.skipped:
        logger.info(f"Reassembled {len(text)} characters, skipped {reassembler.skipped} frames")
    return text.strip()
