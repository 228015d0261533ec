"""Companion — run several assistant sessions side by side.

Usage::

    from companion import CompanionConfig, SessionRegistry

    registry = SessionRegistry(CompanionConfig.load())
    await registry.load_all()

    session_id = registry.create()
    session = await registry.activate(session_id)
    session.send_user_message("Hello!")

    # later
    await registry.save_all()
    await registry.close_all()
"""

from .assembler import MessageAssembler
from .channel import Closed, SubprocessChannel
from .codec import FrameDecoder, decode_frame, encode_frame
from .config import CompanionConfig, load_env_profiles
from .errors import (
    ChannelClosed,
    CompanionError,
    ConnectError,
    MalformedFrame,
    NotConnected,
    PersistenceError,
    SpawnError,
)
from .permissions import PermissionArbiter
from .registry import SessionRegistry
from .session import Session
from .store import SessionStore
from .types import (
    ConnectionState,
    ContentBlock,
    EnvironmentProfile,
    Message,
    MessageStatus,
    PermissionMode,
    PermissionRequest,
    PermissionStatus,
    Role,
    SessionConfig,
    TaskItem,
)

__all__ = [
    # Core classes
    "Session",
    "SessionRegistry",
    "SessionStore",
    "SubprocessChannel",
    "MessageAssembler",
    "PermissionArbiter",
    "CompanionConfig",
    "load_env_profiles",
    # Wire
    "Closed",
    "FrameDecoder",
    "decode_frame",
    "encode_frame",
    # Errors
    "CompanionError",
    "MalformedFrame",
    "SpawnError",
    "ConnectError",
    "ChannelClosed",
    "NotConnected",
    "PersistenceError",
    # Data types
    "ConnectionState",
    "ContentBlock",
    "EnvironmentProfile",
    "Message",
    "MessageStatus",
    "PermissionMode",
    "PermissionRequest",
    "PermissionStatus",
    "Role",
    "SessionConfig",
    "TaskItem",
]
