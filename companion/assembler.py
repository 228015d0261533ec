"""MessageAssembler — folds streaming frames into history messages."""

from __future__ import annotations

import logging
from typing import Any

import orjson

from .frames import (
    AssistantDelta,
    ErrorFrame,
    Frame,
    MessageEnd,
    ProcessExit,
    ThinkingDelta,
    ToolResult,
    ToolUseDelta,
    ToolUseEnd,
    ToolUseStart,
    TurnComplete,
)
from .types import ContentBlock, Message, MessageStatus, Role

logger = logging.getLogger(__name__)

# How many finished message ids and warnings are remembered per session.
FINISHED_ID_LIMIT = 1024
WARNING_LIMIT = 200


def extract_tool_result_text(content: Any) -> str:
    """Flatten a tool_result ``content`` (string or list of blocks) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
            elif isinstance(item, str):
                parts.append(item)
        return "\n".join(parts)
    return orjson.dumps(content).decode()


class MessageAssembler:
    """Apply inbound content frames to one session's history.

    The assembler appends to ``history`` and only ever mutates the message it
    is currently streaming, which is always the last one it appended. Anything
    unexpected (unknown tool ids, deltas for finished messages, orphaned
    results) is logged and recorded in ``warnings`` rather than raised.
    """

    def __init__(self, history: list[Message]) -> None:
        self._history = history
        self._current: Message | None = None
        # Insertion-ordered so the oldest ids can be dropped first.
        self._finished_ids: dict[str, None] = {}
        # Tool-use blocks whose input is still streaming, with their raw chunks.
        self._open_tools: dict[str, ContentBlock] = {}
        self._buffers: dict[str, list[str]] = {}
        # Tool-use blocks that have not received a result yet.
        self._awaiting_result: dict[str, ContentBlock] = {}
        self.warnings: list[str] = []

    @property
    def current(self) -> Message | None:
        """The message still streaming, if any."""
        return self._current

    def apply(self, frame: Frame) -> Message | None:
        """Fold one frame in. Returns the message it touched, if any."""
        if isinstance(frame, AssistantDelta):
            return self._append_text(frame.message_id, "text", frame.text)
        if isinstance(frame, ThinkingDelta):
            return self._append_text(frame.message_id, "thinking", frame.text)
        if isinstance(frame, ToolUseStart):
            return self._start_tool(frame)
        if isinstance(frame, ToolUseDelta):
            return self._extend_tool(frame)
        if isinstance(frame, ToolUseEnd):
            return self._end_tool(frame)
        if isinstance(frame, ToolResult):
            return self._add_result(frame)
        if isinstance(frame, MessageEnd):
            if self._current is not None and self._current.message_id == frame.message_id:
                return self.complete()
            self._warn(f"message_end for unknown or finished message {frame.message_id!r}")
            return None
        if isinstance(frame, TurnComplete):
            return self.complete()
        if isinstance(frame, (ProcessExit, ErrorFrame)):
            return self.truncate()
        return None

    def complete(self) -> Message | None:
        """Freeze the streaming message as complete."""
        return self._finish(truncated=False)

    def truncate(self) -> Message | None:
        """Freeze the streaming message as complete but cut short."""
        return self._finish(truncated=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _message_for(self, message_id: str) -> Message | None:
        if self._current is not None:
            if self._current.message_id == message_id:
                return self._current
            logger.debug("Message %s started while %s was streaming", message_id, self._current.message_id)
            self.complete()
        if message_id in self._finished_ids:
            self._warn(f"delta for finished message {message_id!r} ignored")
            return None
        message = Message(role=Role.ASSISTANT, message_id=message_id, status=MessageStatus.STREAMING)
        self._history.append(message)
        self._current = message
        return message

    def _append_text(self, message_id: str, kind: str, text: str) -> Message | None:
        message = self._message_for(message_id)
        if message is None:
            return None
        last = message.blocks[-1] if message.blocks else None
        if last is not None and last.type == kind:
            last.text = (last.text or "") + text
        else:
            message.blocks.append(ContentBlock(type=kind, text=text))
        return message

    def _start_tool(self, frame: ToolUseStart) -> Message | None:
        message = self._message_for(frame.message_id)
        if message is None:
            return None
        if frame.tool_use_id in self._open_tools:
            self._warn(f"tool_use_start repeated for {frame.tool_use_id!r}")
            return message
        block = ContentBlock(
            type="tool_use",
            tool_use_id=frame.tool_use_id,
            tool_name=frame.name,
            status="open",
        )
        message.blocks.append(block)
        self._open_tools[frame.tool_use_id] = block
        self._buffers[frame.tool_use_id] = []
        self._awaiting_result[frame.tool_use_id] = block
        return message

    def _extend_tool(self, frame: ToolUseDelta) -> Message | None:
        buffer = self._buffers.get(frame.tool_use_id)
        if buffer is None:
            self._warn(f"tool_use_delta for unknown tool use {frame.tool_use_id!r}")
            return None
        buffer.append(frame.partial_input)
        return self._current

    def _end_tool(self, frame: ToolUseEnd) -> Message | None:
        if frame.tool_use_id not in self._open_tools:
            self._warn(f"tool_use_end for unknown tool use {frame.tool_use_id!r}")
            return None
        self._resolve_tool(frame.tool_use_id)
        return self._current

    def _resolve_tool(self, tool_use_id: str) -> None:
        block = self._open_tools.pop(tool_use_id)
        raw = "".join(self._buffers.pop(tool_use_id, []))
        if not raw.strip():
            block.tool_input = {}
            block.status = "resolved"
            return
        try:
            parsed = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            self._warn(f"tool {block.tool_name!r} ({tool_use_id}) sent unparseable input: {e}")
            block.raw_input = raw
            block.status = "malformed"
            return
        if not isinstance(parsed, dict):
            parsed = {"value": parsed}
        block.tool_input = parsed
        block.status = "resolved"

    def _add_result(self, frame: ToolResult) -> Message:
        block = ContentBlock(
            type="tool_result",
            tool_use_id=frame.tool_use_id,
            output=extract_tool_result_text(frame.content),
            is_error=bool(frame.is_error),
        )
        if self._awaiting_result.pop(frame.tool_use_id, None) is None:
            block.orphan = True
            self._warn(f"tool_result for unknown tool use {frame.tool_use_id!r}")

        if self._current is not None:
            self._current.blocks.append(block)
            return self._current
        message = Message(role=Role.USER, blocks=[block])
        self._history.append(message)
        return message

    def _finish(self, *, truncated: bool) -> Message | None:
        message = self._current
        if message is None:
            return None
        if truncated:
            for tool_use_id in list(self._open_tools):
                block = self._open_tools.pop(tool_use_id)
                raw = "".join(self._buffers.pop(tool_use_id, []))
                block.raw_input = raw or None
                block.status = "interrupted"
        else:
            for tool_use_id in list(self._open_tools):
                self._resolve_tool(tool_use_id)
        message.status = MessageStatus.COMPLETE
        message.truncated = truncated
        if message.message_id is not None:
            self._finished_ids[message.message_id] = None
            if len(self._finished_ids) > FINISHED_ID_LIMIT:
                del self._finished_ids[next(iter(self._finished_ids))]
        self._current = None
        return message

    def _warn(self, text: str) -> None:
        logger.warning(text)
        self.warnings.append(text)
        del self.warnings[:-WARNING_LIMIT]
