"""Newline-delimited JSON framing for the assistant protocol."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

import orjson

from .errors import MalformedFrame
from .frames import FRAME_TAGS, FRAME_TYPES, Frame

logger = logging.getLogger(__name__)

# Tool inputs and results can be large; anything past this is treated as garbage.
MAX_LINE_BYTES = 16 * 1024 * 1024


def _check_field(annotation: str, value: Any) -> str | None:
    """Describe what ``value`` should have been, or None if it fits ``annotation``.

    Annotations are the frame dataclasses' string annotations; ``None`` values
    never get here, so an optional field is checked as its base type.
    """
    base = annotation.removesuffix(" | None")
    if base == "Any":
        return None
    if base == "str":
        return None if isinstance(value, str) else "a string"
    if base == "bool":
        return None if isinstance(value, bool) else "a boolean"
    if base == "int":
        return None if isinstance(value, int) and not isinstance(value, bool) else "an integer"
    if base == "float":
        return None if isinstance(value, (int, float)) and not isinstance(value, bool) else "a number"
    if base.startswith("dict["):
        return None if isinstance(value, dict) else "an object"
    if base.startswith("list["):
        if not isinstance(value, list):
            return "a list"
        item = base[len("list["):-1]
        if item == "str" and not all(isinstance(v, str) for v in value):
            return "a list of strings"
        if item.startswith("dict[") and not all(isinstance(v, dict) for v in value):
            return "a list of objects"
        return None
    raise TypeError(f"unsupported frame field annotation: {annotation!r}")


def decode_frame(line: bytes | str) -> Frame:
    """Decode one line into a Frame. Raises ``MalformedFrame``."""
    raw = line.encode("utf-8") if isinstance(line, str) else line
    try:
        obj = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise MalformedFrame(raw, f"invalid JSON: {e}") from None

    if not isinstance(obj, dict):
        raise MalformedFrame(raw, "frame is not a JSON object")

    tag = obj.get("type")
    cls = FRAME_TYPES.get(tag) if isinstance(tag, str) else None
    if cls is None:
        raise MalformedFrame(raw, f"unrecognized frame type: {tag!r}")

    kwargs: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if f.name not in obj or obj[f.name] is None:
            continue
        value = obj[f.name]
        problem = _check_field(f.type, value)
        if problem is not None:
            raise MalformedFrame(raw, f"{tag}.{f.name} must be {problem}")
        kwargs[f.name] = value

    try:
        return cls(**kwargs)
    except TypeError as e:
        raise MalformedFrame(raw, f"{tag}: {e}") from None


def encode_frame(frame: Frame) -> bytes:
    """Serialize a frame to exactly one newline-terminated record."""
    tag = FRAME_TAGS.get(type(frame))
    if tag is None:
        raise TypeError(f"not a protocol frame: {frame!r}")
    payload: dict[str, Any] = {"type": tag}
    for f in dataclasses.fields(frame):
        value = getattr(frame, f.name)
        if value is not None:
            payload[f.name] = value
    # orjson never emits raw newlines, so one frame is always one line.
    return orjson.dumps(payload) + b"\n"


class FrameDecoder:
    """Incremental decoder: feed it bytes, get back frames for complete lines.

    Each item returned is either a :class:`Frame` or a :class:`MalformedFrame`
    describing the one line that failed. Partial lines stay buffered until
    their newline arrives, so the result is independent of how the byte
    stream was chunked.
    """

    def __init__(self, max_line_bytes: int = MAX_LINE_BYTES) -> None:
        self._buffer = bytearray()
        self._max_line_bytes = max_line_bytes
        self._discarding = False

    @property
    def buffered(self) -> int:
        """Number of bytes held for an incomplete line."""
        return len(self._buffer)

    def reset(self) -> None:
        """Drop all buffered state (used when a new connection starts)."""
        self._buffer.clear()
        self._discarding = False

    def feed(self, data: bytes) -> list[Frame | MalformedFrame]:
        results: list[Frame | MalformedFrame] = []
        self._buffer.extend(data)

        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            if self._discarding:
                # Tail of an oversized line that was already reported.
                self._discarding = False
                continue
            self._decode_into(line, results)

        if len(self._buffer) > self._max_line_bytes and not self._discarding:
            results.append(MalformedFrame(bytes(self._buffer[:200]), "line too long"))
            self._buffer.clear()
            self._discarding = True
        elif self._discarding:
            self._buffer.clear()

        return results

    def flush(self) -> list[Frame | MalformedFrame]:
        """Decode whatever is left when the stream ends without a newline."""
        results: list[Frame | MalformedFrame] = []
        if self._buffer and not self._discarding:
            self._decode_into(bytes(self._buffer), results)
        self.reset()
        return results

    @staticmethod
    def _decode_into(line: bytes, results: list[Frame | MalformedFrame]) -> None:
        if not line.strip():
            return
        try:
            results.append(decode_frame(line))
        except MalformedFrame as e:
            results.append(e)
