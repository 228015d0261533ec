"""Session — one conversation with one assistant process."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from .assembler import MessageAssembler
from .channel import Closed, SubprocessChannel
from .config import CompanionConfig
from .errors import ChannelClosed, ConnectError, NotConnected, SpawnError
from .frames import (
    AssistantDelta,
    Control,
    ErrorFrame,
    Frame,
    KeepAlive,
    PermissionRequestFrame,
    ProcessExit,
    SessionReady,
    TaskUpdate,
    ThinkingDelta,
    ToolUseDelta,
    ToolUseStart,
    TurnComplete,
    UserMessage,
)
from .launcher import SpawnConfig
from .permissions import PermissionArbiter
from .store import SessionRecord
from .types import (
    ConnectionState,
    EnvironmentProfile,
    Message,
    PermissionMode,
    PermissionRequest,
    PermissionStatus,
    Role,
    SessionConfig,
    TaskItem,
    utcnow,
)

logger = logging.getLogger(__name__)


class Channel(Protocol):
    """What a Session needs from its transport."""

    @property
    def ready(self) -> SessionReady | None: ...

    def send(self, frame: Frame) -> None: ...

    async def recv(self) -> Frame | Closed: ...

    def interrupt(self) -> None: ...

    async def close(self, reason: str = ...) -> None: ...


ChannelFactory = Callable[["Session"], Awaitable[Channel]]
Listener = Callable[["Session", object], None]


@dataclass(slots=True)
class _Queued:
    text: str
    attachments: list[dict[str, Any]] = field(default_factory=list)


class Session:
    """Manage a single conversation and the process behind it.

    Usage::

        session = Session(SessionConfig(cwd="."))
        await session.connect()
        session.send_user_message("Hello!")
        ...
        await session.close()

    Inbound frames are applied by a background pump task in arrival order.
    ``send_user_message``, ``decide_permission`` and ``interrupt`` are plain
    synchronous calls: they update local state at once and enqueue frames,
    never waiting on the process. Transport failures leave the session in
    ``DEGRADED`` with its history intact.
    """

    def __init__(
        self,
        config: SessionConfig,
        *,
        session_id: str | None = None,
        name: str | None = None,
        created_at: datetime | None = None,
        settings: CompanionConfig | None = None,
        channel_factory: ChannelFactory | None = None,
        env_profiles: dict[str, EnvironmentProfile] | None = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.name = name or self.id[:8]
        self.created_at = created_at or utcnow()
        self.config = config
        self.archived = False
        self.pinned = False
        self.history: list[Message] = []

        self.state = ConnectionState.DISCONNECTED
        self.state_reason: str | None = None
        self.last_error: str | None = None

        # Reported by the process
        self.remote_session_id: str | None = None
        self.remote_version: str | None = None
        self.tools: list[str] = []
        self.tasks: list[TaskItem] = []
        self.cost: float = 0.0
        self.turns: int = 0
        self.previous_permission_mode: PermissionMode | None = None

        self.settings = settings or CompanionConfig()
        self._channel_factory = channel_factory or _open_channel
        self._env_profiles = env_profiles or {}
        self._assembler = MessageAssembler(self.history)
        self._arbiter = PermissionArbiter(lambda: self.config.permission_mode, self._send_frame)
        self._channel: Channel | None = None
        self._pump_task: asyncio.Task | None = None
        self._connect_lock = asyncio.Lock()
        self._queue: list[_Queued] = []
        self._background: set[asyncio.Task] = set()
        self._listeners: list[Listener] = []
        self._generating = False
        self._last_interrupt: float | None = None
        self._auto_retry_used = False
        self._closing = False

    def __repr__(self) -> str:
        return f"<Session {self.name} {self.id[:8]} {self.state.value}>"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def is_generating(self) -> bool:
        """True while a response is expected or still streaming."""
        return self._generating or self._assembler.current is not None

    @property
    def pending_permissions(self) -> dict[str, PermissionRequest]:
        return self._arbiter.pending

    @property
    def queued_messages(self) -> list[str]:
        return [q.text for q in self._queue]

    @property
    def warnings(self) -> list[str]:
        return self._assembler.warnings

    @property
    def channel(self) -> Channel | None:
        return self._channel

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Spawn or attach the assistant process. Idempotent.

        Returns True once connected. Spawn and connect failures put the
        session in ``DEGRADED`` and return False.
        """
        async with self._connect_lock:
            if self.state is ConnectionState.CONNECTED:
                return True
            if self.state is ConnectionState.CLOSED:
                logger.warning("connect() on closed session %s ignored", self.id)
                return False

            self._set_state(ConnectionState.SPAWNING)
            channel: Channel | None = None
            try:
                channel = await self._channel_factory(self)
                if channel.ready is not None:
                    self._apply_ready(channel.ready)
            except (SpawnError, ConnectError) as e:
                logger.warning("Session %s failed to connect: %s", self.id, e)
                await self._connect_failed(channel, str(e))
                return False
            except Exception as e:
                logger.exception("Session %s failed to connect", self.id)
                await self._connect_failed(channel, f"{type(e).__name__}: {e}")
                return False

            self._channel = channel
            self.last_error = None
            self._set_state(ConnectionState.CONNECTED)
            self._pump_task = asyncio.create_task(self._pump(channel))
            self._flush_queue()
            return True

    def schedule_connect(self) -> None:
        """Start :meth:`connect` in the background."""
        self._run_background(self.connect())

    async def reconnect(self) -> bool:
        """Tear down the current channel and connect again.

        History and identity are kept; the new process resumes the remote
        session when one is known.
        """
        self._auto_retry_used = False
        return await self._reconnect()

    async def close(self) -> None:
        """Stop the process (if owned) and mark the session closed."""
        self._closing = True
        await self._teardown("session closed")
        self._queue.clear()
        for task in list(self._background):
            task.cancel()
        self._set_state(ConnectionState.CLOSED)

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def send_user_message(self, text: str, attachments: list[dict[str, Any]] | None = None) -> Message:
        """Append a user message and send it.

        Raises ``NotConnected`` when the session has no live channel; the
        message is still in history and is sent once the session connects.
        """
        attachments = list(attachments or [])
        message = Message.plain(Role.USER, text)
        self.history.append(message)
        self._notify(message)

        if self.state is ConnectionState.CONNECTED and self._channel is not None:
            try:
                self._channel.send(UserMessage(text=text, attachments=attachments))
            except ChannelClosed as e:
                logger.info("Send on session %s failed, queueing: %s", self.id, e)
            else:
                self._generating = True
                return message

        self._queue.append(_Queued(text, attachments))
        if self.state is ConnectionState.DISCONNECTED:
            self._run_background(self.connect())
        raise NotConnected(f"Session {self.name} is {self.state.value}; message queued")

    def interrupt(self) -> bool:
        """Stop the current generation. Returns True if the caller should quit.

        With a generation running the interrupt goes to the process. With
        nothing running, two interrupts inside ``interrupt_window`` seconds
        are a quit request. Either way the streaming message is truncated
        and pending permission requests are dropped immediately.
        """
        now = time.monotonic()
        quit_requested = False
        if self.is_generating and self._channel is not None:
            try:
                self._channel.interrupt()
            except ChannelClosed as e:
                logger.warning("Interrupt on session %s not delivered: %s", self.id, e)
            self._last_interrupt = None
        elif self._last_interrupt is not None and now - self._last_interrupt <= self.settings.interrupt_window:
            quit_requested = True
            self._last_interrupt = None
        else:
            self._last_interrupt = now

        self._generating = False
        truncated = self._assembler.truncate()
        self._arbiter.clear()
        if truncated is not None:
            self._notify(truncated)
        return quit_requested

    def decide_permission(self, request_id: str, decision: PermissionStatus | str) -> bool:
        """Answer a pending permission request. Unknown ids are a no-op."""
        resolved = self._arbiter.decide(request_id, decision)
        if resolved:
            self._notify(self._arbiter.resolved[request_id])
        return resolved

    def switch_model(self, name: str | None) -> None:
        """Use ``name`` for the next spawn."""
        self.config.model = name or None

    def switch_mode(self, mode: PermissionMode | str) -> PermissionMode:
        """Change the permission mode; the live process is told best-effort."""
        new_mode = PermissionMode.parse(mode)
        if new_mode is self.config.permission_mode:
            return new_mode
        self.config.permission_mode = new_mode
        logger.info("Session %s permission mode -> %s", self.id, new_mode.value)
        if self._channel is not None:
            try:
                self._channel.send(Control(mode=new_mode.value))
            except ChannelClosed:
                pass
        return new_mode

    def toggle_plan_mode(self) -> PermissionMode:
        """Enter plan mode, or leave it for the mode that was active before."""
        if self.config.permission_mode is PermissionMode.PLAN:
            restored = self.previous_permission_mode or PermissionMode.DEFAULT
            self.previous_permission_mode = None
            return self.switch_mode(restored)
        self.previous_permission_mode = self.config.permission_mode
        return self.switch_mode(PermissionMode.PLAN)

    def switch_cwd(self, path: str | Path) -> str:
        """Use ``path`` as the working directory for the next spawn."""
        resolved = Path(path).expanduser()
        if not resolved.is_absolute():
            resolved = Path(self.config.cwd) / resolved
        resolved = resolved.resolve()
        if not resolved.is_dir():
            raise NotADirectoryError(str(resolved))
        self.config.cwd = str(resolved)
        return self.config.cwd

    def archive(self) -> None:
        self.archived = True

    def unarchive(self) -> None:
        self.archived = False

    def pin(self) -> None:
        self.pinned = True

    def unpin(self) -> None:
        self.pinned = False

    def rename(self, name: str) -> None:
        name = name.strip()
        if not name:
            raise ValueError("session name cannot be empty")
        self.name = name

    def add_system_message(self, text: str) -> Message:
        message = Message.plain(Role.SYSTEM, text)
        self.history.append(message)
        self._notify(message)
        return message

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(session, item)`` on every change. Returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    def handle_frame(self, frame: Frame) -> None:
        """Apply one inbound frame to the session."""
        if isinstance(frame, KeepAlive):
            return
        if isinstance(frame, SessionReady):
            self._apply_ready(frame)
        elif isinstance(frame, PermissionRequestFrame):
            request = PermissionRequest(
                request_id=frame.request_id,
                tool_use_id=frame.tool_use_id,
                tool_name=frame.tool_name,
                input=dict(frame.input or {}),
                description=frame.description,
            )
            self._arbiter.request_received(request)
        elif isinstance(frame, TaskUpdate):
            self.tasks = [TaskItem.from_dict(t) for t in frame.tasks if isinstance(t, dict)]
        elif isinstance(frame, TurnComplete):
            self._assembler.apply(frame)
            self._generating = False
            self._auto_retry_used = False
            if frame.cost is not None:
                self.cost += frame.cost
            if frame.num_turns is not None:
                self.turns += frame.num_turns
            if frame.is_error:
                detail = "; ".join(frame.errors) or "unknown error"
                self.add_system_message(f"Turn ended with an error: {detail}")
        elif isinstance(frame, ErrorFrame):
            self._assembler.apply(frame)
            self._generating = False
            logger.warning("Session %s error from process: %s (fatal=%s)", self.id, frame.message, frame.fatal)
            self.add_system_message(f"Error: {frame.message}")
        elif isinstance(frame, ProcessExit):
            self._assembler.apply(frame)
            self._generating = False
        else:
            touched = self._assembler.apply(frame)
            if touched is not None and isinstance(frame, (AssistantDelta, ThinkingDelta, ToolUseStart, ToolUseDelta)):
                self._generating = True
        self._notify(frame)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> SessionRecord:
        """Copy of the persistent fields, safe to serialize off the loop."""
        return SessionRecord(
            id=self.id,
            name=self.name,
            config=SessionConfig(
                cwd=self.config.cwd,
                model=self.config.model,
                permission_mode=self.config.permission_mode,
                env_profile=self.config.env_profile,
                endpoint=self.config.endpoint,
            ),
            created_at=self.created_at,
            archived=self.archived,
            pinned=self.pinned,
            history=list(self.history),
            remote_session_id=self.remote_session_id,
            previous_permission_mode=self.previous_permission_mode,
            cost=self.cost,
            turns=self.turns,
        )

    @classmethod
    def from_record(cls, record: SessionRecord, **kwargs: Any) -> Session:
        session = cls(
            record.config,
            session_id=record.id,
            name=record.name,
            created_at=record.created_at,
            **kwargs,
        )
        session.archived = record.archived
        session.pinned = record.pinned
        session.history.extend(record.history)
        session.remote_session_id = record.remote_session_id
        session.previous_permission_mode = record.previous_permission_mode
        session.cost = record.cost
        session.turns = record.turns
        return session

    def spawn_config(self) -> SpawnConfig:
        """Launch settings for this session's next process."""
        env: dict[str, str] = {}
        if self.config.env_profile:
            profile = self._env_profiles.get(self.config.env_profile)
            if profile is None:
                logger.warning("Session %s: unknown env profile %r", self.id, self.config.env_profile)
            else:
                env = dict(profile.vars)
        return SpawnConfig(
            cwd=self.config.cwd,
            command=tuple(self.settings.command),
            model=self.config.model,
            permission_mode=self.config.permission_mode.value,
            resume_session_id=self.remote_session_id,
            env=env,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _connect_failed(self, channel: Channel | None, reason: str) -> None:
        if channel is not None:
            try:
                await channel.close(reason)
            except Exception:
                logger.warning("Closing half-open channel for session %s failed", self.id, exc_info=True)
        self.last_error = reason
        self._set_state(ConnectionState.DEGRADED, reason)
        self.add_system_message(f"Could not start assistant: {reason}")

    def _set_state(self, state: ConnectionState, reason: str | None = None) -> None:
        if state is self.state and reason == self.state_reason:
            return
        logger.info("Session %s: %s -> %s%s", self.id, self.state.value, state.value, f" ({reason})" if reason else "")
        self.state = state
        self.state_reason = reason
        self._notify(state)

    def _apply_ready(self, ready: SessionReady) -> None:
        if ready.session_id:
            self.remote_session_id = ready.session_id
        self.remote_version = ready.version
        self.tools = list(ready.tools)

    def _send_frame(self, frame: Frame) -> None:
        if self._channel is None:
            raise ChannelClosed("session is not connected")
        self._channel.send(frame)

    def _flush_queue(self) -> None:
        queued, self._queue = self._queue, []
        for item in queued:
            try:
                self._send_frame(UserMessage(text=item.text, attachments=item.attachments))
            except ChannelClosed as e:
                logger.warning("Queued message on session %s failed again: %s", self.id, e)
                self.add_system_message(f"Message not sent: {e}")
            else:
                self._generating = True

    async def _pump(self, channel: Channel) -> None:
        while True:
            item = await channel.recv()
            if isinstance(item, Closed):
                await self._on_closed(channel, item.reason)
                return
            try:
                self.handle_frame(item)
            except Exception:
                logger.exception("Session %s failed to apply %s", self.id, type(item).__name__)

    async def _on_closed(self, channel: Channel, reason: str) -> None:
        if channel is not self._channel:
            return
        self._channel = None
        self._pump_task = None
        self._generating = False
        truncated = self._assembler.truncate()
        if truncated is not None:
            self._notify(truncated)
        self._arbiter.clear()
        self._set_state(ConnectionState.DEGRADED, reason)
        self.add_system_message(f"Assistant disconnected: {reason}")
        await channel.close(reason)

        if self.settings.auto_reconnect and not self._auto_retry_used and not self._closing:
            self._auto_retry_used = True
            logger.info("Session %s reconnecting automatically", self.id)
            self._run_background(self._reconnect())

    async def _reconnect(self) -> bool:
        await self._teardown("reconnecting")
        if self.state is ConnectionState.CLOSED:
            return False
        self._set_state(ConnectionState.DISCONNECTED)
        return await self.connect()

    async def _teardown(self, reason: str) -> None:
        channel, self._channel = self._channel, None
        pump, self._pump_task = self._pump_task, None
        if pump is not None and pump is not asyncio.current_task() and not pump.done():
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
        self._generating = False
        self._assembler.truncate()
        self._arbiter.clear()
        if channel is not None:
            await channel.close(reason)

    def _run_background(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _notify(self, item: object) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, item)
            except Exception:
                logger.warning("Session listener %r failed", listener, exc_info=True)


async def _open_channel(session: Session) -> SubprocessChannel:
    """Default channel factory: attach to ``config.endpoint`` or spawn."""
    timeout = session.settings.spawn_timeout
    if session.config.endpoint:
        return await SubprocessChannel.connect_existing(session.config.endpoint, timeout=timeout)
    return await SubprocessChannel.spawn(session.spawn_config(), ready_timeout=timeout)
