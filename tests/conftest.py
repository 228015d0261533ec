import asyncio

import pytest

from companion.channel import Closed
from companion.config import CompanionConfig
from companion.errors import ChannelClosed
from companion.frames import Frame, Interrupt, SessionReady
from companion.session import Session
from companion.types import SessionConfig


class FakeChannel:
    """In-memory stand-in for SubprocessChannel."""

    def __init__(self, ready: SessionReady | None = None) -> None:
        self.ready = ready
        self.sent: list[Frame] = []
        self.closed_reason: str | None = None
        self.fail_send = False
        self._inbound: asyncio.Queue = asyncio.Queue()

    def send(self, frame: Frame) -> None:
        if self.closed_reason is not None or self.fail_send:
            raise ChannelClosed("fake channel closed")
        self.sent.append(frame)

    def interrupt(self) -> None:
        self.send(Interrupt())

    async def recv(self):
        return await self._inbound.get()

    async def close(self, reason: str = "closed") -> None:
        if self.closed_reason is None:
            self.closed_reason = reason

    # Test helpers

    def push(self, *frames: Frame) -> None:
        for frame in frames:
            self._inbound.put_nowait(frame)

    def drop(self, reason: str = "process exited with code 1") -> None:
        self._inbound.put_nowait(Closed(reason))

    def sent_of(self, cls: type) -> list:
        return [f for f in self.sent if isinstance(f, cls)]

    @property
    def backlog(self) -> int:
        return self._inbound.qsize()


class FakeFactory:
    """Channel factory that hands out FakeChannels (or fails on demand)."""

    def __init__(self) -> None:
        self.channels: list[FakeChannel] = []
        self.spawn_configs = []
        self.fail_with: Exception | None = None

    async def __call__(self, session: Session) -> FakeChannel:
        self.spawn_configs.append(session.spawn_config())
        if self.fail_with is not None:
            raise self.fail_with
        channel = FakeChannel(ready=SessionReady(session_id=f"remote-{len(self.channels) + 1}", version="1.0"))
        self.channels.append(channel)
        return channel

    @property
    def latest(self) -> FakeChannel:
        return self.channels[-1]


async def settle(channel: FakeChannel | None = None) -> None:
    """Let the session pump consume everything pushed so far."""
    for _ in range(200):
        if channel is None or channel.backlog == 0:
            break
        await asyncio.sleep(0)
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def settings(tmp_path):
    return CompanionConfig(state_dir=str(tmp_path / "state"), command=["claude"])


@pytest.fixture
def factory():
    return FakeFactory()


@pytest.fixture
def session(tmp_path, settings, factory):
    return Session(
        SessionConfig(cwd=str(tmp_path)),
        name="test-session",
        settings=settings,
        channel_factory=factory,
    )
