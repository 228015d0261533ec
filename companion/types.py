"""Shared types for the companion package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

class ConnectionState(str, Enum):
    """Connection state of a Session's channel."""

    DISCONNECTED = "disconnected"
    SPAWNING = "spawning"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    CLOSED = "closed"


class PermissionMode(str, Enum):
    """How tool permission requests are handled for a session."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS = "bypassPermissions"

    @classmethod
    def parse(cls, value: str | PermissionMode) -> PermissionMode:
        """Accept the wire spelling or the short hyphenated aliases."""
        if isinstance(value, PermissionMode):
            return value
        aliases = {
            "accept-edits": cls.ACCEPT_EDITS,
            "bypass": cls.BYPASS,
        }
        normalized = value.strip()
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class PermissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    ALWAYS_ALLOW = "always_allow"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    STREAMING = "streaming"
    COMPLETE = "complete"


@dataclass(slots=True)
class ContentBlock:
    """A content block within a message (text, thinking, tool_use, or tool_result)."""

    type: str  # "text" | "thinking" | "tool_use" | "tool_result"
    text: str | None = None  # for text and thinking blocks
    tool_use_id: str | None = None  # for tool_use and tool_result
    tool_name: str | None = None  # for tool_use
    tool_input: dict[str, Any] | None = None  # for tool_use, once resolved
    raw_input: str | None = None  # for tool_use that could not be parsed
    status: str | None = None  # for tool_use: "open" | "resolved" | "malformed" | "interrupted"
    output: str | None = None  # for tool_result
    is_error: bool = False  # for tool_result
    orphan: bool = False  # for tool_result with no matching tool_use


@dataclass(slots=True)
class Message:
    """One entry of a session's conversation history."""

    role: Role
    blocks: list[ContentBlock] = field(default_factory=list)
    message_id: str | None = None
    status: MessageStatus = MessageStatus.COMPLETE
    truncated: bool = False
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def streaming(self) -> bool:
        return self.status is MessageStatus.STREAMING

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(b.text or "" for b in self.blocks if b.type == "text")

    @classmethod
    def plain(cls, role: Role, text: str) -> Message:
        return cls(role=role, blocks=[ContentBlock(type="text", text=text)])


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class PermissionRequest:
    """A tool call waiting for (or resolved by) a permission decision."""

    request_id: str
    tool_use_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)
    description: str | None = None
    arrived_at: datetime = field(default_factory=utcnow)
    status: PermissionStatus = PermissionStatus.PENDING


# ---------------------------------------------------------------------------
# Configuration carried by a session
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class EnvironmentProfile:
    """Named set of environment variables applied when a process is spawned."""

    name: str
    vars: dict[str, str] = field(default_factory=dict)
    description: str = ""


@dataclass(slots=True)
class SessionConfig:
    """Per-session settings. Changes apply on the next spawn."""

    cwd: str
    model: str | None = None
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    env_profile: str | None = None
    endpoint: str | None = None  # attach to a running process instead of spawning


@dataclass(slots=True)
class TaskItem:
    """Progress item reported by ``task_update`` frames."""

    id: str
    subject: str
    status: str = "pending"  # "pending" | "in_progress" | "completed" | "deleted"
    description: str = ""
    active_form: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskItem:
        return cls(
            id=str(data.get("id", "")),
            subject=str(data.get("subject") or data.get("content") or "Untitled"),
            status=str(data.get("status", "pending")),
            description=str(data.get("description", "")),
            active_form=data.get("activeForm") or data.get("active_form"),
        )
