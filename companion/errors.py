"""Exception types raised by the session core."""

from __future__ import annotations


class CompanionError(Exception):
    """Base class for all companion errors."""


class MalformedFrame(CompanionError, ValueError):
    """A single inbound line could not be decoded into a frame.

    Returned by the decoder in place of the frame for that line; the stream
    itself keeps going.
    """

    def __init__(self, line: bytes, reason: str) -> None:
        super().__init__(reason)
        self.line = line
        self.reason = reason

    def __repr__(self) -> str:
        preview = self.line[:80].decode("utf-8", errors="replace")
        return f"MalformedFrame({self.reason!r}, line={preview!r})"


class SpawnError(CompanionError):
    """The assistant process could not be started or never became ready."""


class ConnectError(CompanionError):
    """Attaching to an already-running assistant process failed."""


class ChannelClosed(CompanionError):
    """The channel's connection has dropped; nothing more can be sent."""


class NotConnected(CompanionError):
    """A user message was queued because the session is not connected."""

    def __init__(self, message: str = "Session is not connected", *, queued: bool = True) -> None:
        super().__init__(message)
        self.queued = queued


class PersistenceError(CompanionError):
    """Saving or loading the session snapshot failed."""
