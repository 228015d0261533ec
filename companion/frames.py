"""Wire frames exchanged with the assistant process.

Every frame is one JSON object on its own line, tagged by ``type``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class Frame:
    """Base class for all protocol frames."""


# ---------------------------------------------------------------------------
# Inbound: assistant process to companion
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class SessionReady(Frame):
    """Handshake complete. Optional fields describe the remote session."""

    session_id: str | None = None
    model: str | None = None
    cwd: str | None = None
    permission_mode: str | None = None
    version: str | None = None
    tools: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class AssistantDelta(Frame):
    """A streaming text fragment."""

    message_id: str
    text: str


@dataclass(frozen=True, slots=True)
class ThinkingDelta(Frame):
    """A streaming thinking fragment."""

    message_id: str
    text: str


@dataclass(frozen=True, slots=True)
class ToolUseStart(Frame):
    message_id: str
    tool_use_id: str
    name: str


@dataclass(frozen=True, slots=True)
class ToolUseDelta(Frame):
    """A fragment of the tool's JSON input (not parseable on its own)."""

    message_id: str
    tool_use_id: str
    partial_input: str


@dataclass(frozen=True, slots=True)
class ToolUseEnd(Frame):
    message_id: str
    tool_use_id: str


@dataclass(frozen=True, slots=True)
class ToolResult(Frame):
    """Result of a tool call. ``content`` is a string or a list of blocks."""

    tool_use_id: str
    content: Any = ""
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class MessageEnd(Frame):
    """The message with this id will receive no more deltas."""

    message_id: str


@dataclass(frozen=True, slots=True)
class PermissionRequestFrame(Frame):
    """The process asks whether a tool call may proceed."""

    request_id: str
    tool_use_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)
    description: str | None = None


@dataclass(frozen=True, slots=True)
class TaskUpdate(Frame):
    """Full snapshot of the task list (replaces the previous one)."""

    tasks: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ErrorFrame(Frame):
    message: str
    fatal: bool = False


@dataclass(frozen=True, slots=True)
class ProcessExit(Frame):
    code: int | None = None


@dataclass(frozen=True, slots=True)
class TurnComplete(Frame):
    """End of one request/response cycle, with accounting."""

    cost: float | None = None
    num_turns: int | None = None
    is_error: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class KeepAlive(Frame):
    pass


# ---------------------------------------------------------------------------
# Outbound: companion to assistant process
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class UserMessage(Frame):
    text: str
    attachments: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Interrupt(Frame):
    pass


@dataclass(frozen=True, slots=True)
class PermissionDecision(Frame):
    """``decision`` is ``"allow"`` or ``"deny"``."""

    request_id: str
    decision: str
    updated_input: dict[str, Any] | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class Control(Frame):
    """Reconfigure the live process. Unset fields are left unchanged."""

    cwd: str | None = None
    model: str | None = None
    mode: str | None = None


# Wire ``type`` tag for every frame class.
FRAME_TYPES: dict[str, type[Frame]] = {
    "session_ready": SessionReady,
    "assistant_delta": AssistantDelta,
    "thinking_delta": ThinkingDelta,
    "tool_use_start": ToolUseStart,
    "tool_use_delta": ToolUseDelta,
    "tool_use_end": ToolUseEnd,
    "tool_result": ToolResult,
    "message_end": MessageEnd,
    "permission_request": PermissionRequestFrame,
    "task_update": TaskUpdate,
    "error": ErrorFrame,
    "process_exit": ProcessExit,
    "turn_complete": TurnComplete,
    "keep_alive": KeepAlive,
    "user_message": UserMessage,
    "interrupt": Interrupt,
    "permission_decision": PermissionDecision,
    "control": Control,
}

FRAME_TAGS: dict[type[Frame], str] = {cls: tag for tag, cls in FRAME_TYPES.items()}
