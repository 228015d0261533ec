"""SessionStore — durable snapshot of the session registry on disk."""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import orjson

from .errors import PersistenceError
from .types import ContentBlock, Message, MessageStatus, PermissionMode, Role, SessionConfig, utcnow

logger = logging.getLogger(__name__)

STORE_VERSION = 1
SESSIONS_FILE = "sessions.json"


@dataclass(slots=True)
class SessionRecord:
    """The persistent part of a session (no connection state, no pending requests)."""

    id: str
    name: str
    config: SessionConfig
    created_at: datetime = field(default_factory=utcnow)
    archived: bool = False
    pinned: bool = False
    history: list[Message] = field(default_factory=list)
    remote_session_id: str | None = None
    previous_permission_mode: PermissionMode | None = None
    cost: float = 0.0
    turns: int = 0


@dataclass(slots=True)
class Snapshot:
    sessions: list[SessionRecord] = field(default_factory=list)
    active_id: str | None = None


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def _parse_timestamp(ts: str) -> datetime:
    return datetime.fromisoformat(ts.replace("Z", "+00:00"))


def _block_to_dict(block: ContentBlock) -> dict[str, Any]:
    data: dict[str, Any] = {"type": block.type}
    for name in ("text", "tool_use_id", "tool_name", "tool_input", "raw_input", "status", "output"):
        value = getattr(block, name)
        if value is not None:
            data[name] = value
    if block.is_error:
        data["is_error"] = True
    if block.orphan:
        data["orphan"] = True
    return data


def _block_from_dict(data: dict[str, Any]) -> ContentBlock:
    return ContentBlock(
        type=str(data["type"]),
        text=data.get("text"),
        tool_use_id=data.get("tool_use_id"),
        tool_name=data.get("tool_name"),
        tool_input=data.get("tool_input"),
        raw_input=data.get("raw_input"),
        status=data.get("status"),
        output=data.get("output"),
        is_error=bool(data.get("is_error", False)),
        orphan=bool(data.get("orphan", False)),
    )


def message_to_dict(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {
        "role": message.role.value,
        "blocks": [_block_to_dict(b) for b in message.blocks],
        "status": message.status.value,
        "timestamp": message.timestamp.isoformat(),
    }
    if message.message_id is not None:
        data["message_id"] = message.message_id
    if message.truncated:
        data["truncated"] = True
    return data


def message_from_dict(data: dict[str, Any]) -> Message:
    status = MessageStatus(data.get("status", "complete"))
    truncated = bool(data.get("truncated", False))
    if status is MessageStatus.STREAMING:
        # Nothing can finish it after a restart.
        status = MessageStatus.COMPLETE
        truncated = True
    return Message(
        role=Role(data["role"]),
        blocks=[_block_from_dict(b) for b in data.get("blocks", [])],
        message_id=data.get("message_id"),
        status=status,
        truncated=truncated,
        timestamp=_parse_timestamp(data["timestamp"]) if data.get("timestamp") else utcnow(),
    )


def record_to_dict(record: SessionRecord) -> dict[str, Any]:
    config = record.config
    return {
        "id": record.id,
        "name": record.name,
        "created_at": record.created_at.isoformat(),
        "archived": record.archived,
        "pinned": record.pinned,
        "config": {
            "cwd": config.cwd,
            "model": config.model,
            "permission_mode": config.permission_mode.value,
            "env_profile": config.env_profile,
            "endpoint": config.endpoint,
        },
        "remote_session_id": record.remote_session_id,
        "previous_permission_mode": (
            record.previous_permission_mode.value if record.previous_permission_mode else None
        ),
        "cost": record.cost,
        "turns": record.turns,
        "history": [message_to_dict(m) for m in record.history],
    }


def record_from_dict(data: dict[str, Any]) -> SessionRecord:
    """Rebuild a record. Raises KeyError/ValueError/TypeError on bad input."""
    cfg = data["config"]
    previous = data.get("previous_permission_mode")
    return SessionRecord(
        id=str(data["id"]),
        name=str(data["name"]),
        config=SessionConfig(
            cwd=str(cfg["cwd"]),
            model=cfg.get("model"),
            permission_mode=PermissionMode.parse(cfg.get("permission_mode") or "default"),
            env_profile=cfg.get("env_profile"),
            endpoint=cfg.get("endpoint"),
        ),
        created_at=_parse_timestamp(data["created_at"]),
        archived=bool(data.get("archived", False)),
        pinned=bool(data.get("pinned", False)),
        history=[message_from_dict(m) for m in data.get("history", [])],
        remote_session_id=data.get("remote_session_id"),
        previous_permission_mode=PermissionMode.parse(previous) if previous else None,
        cost=float(data.get("cost") or 0.0),
        turns=int(data.get("turns") or 0),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

def atomic_write(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` so readers see either the old or new file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


class SessionStore:
    """Reads and writes the registry snapshot as one JSON document::

        <state_dir>/sessions.json

    ``{"version": 1, "active_id": ..., "sessions": [...]}`` with sessions in
    registry order. Writes replace the file atomically.
    """

    def __init__(self, state_dir: str | Path) -> None:
        self._path = Path(state_dir).expanduser() / SESSIONS_FILE

    @property
    def path(self) -> Path:
        return self._path

    def dumps(self, snapshot: Snapshot) -> bytes:
        payload = {
            "version": STORE_VERSION,
            "active_id": snapshot.active_id,
            "sessions": [record_to_dict(r) for r in snapshot.sessions],
        }
        return orjson.dumps(payload, option=orjson.OPT_INDENT_2)

    def write(self, data: bytes) -> None:
        try:
            atomic_write(self._path, data)
        except OSError as e:
            raise PersistenceError(f"could not save sessions to {self._path}: {e}") from e
        logger.debug("Saved %d bytes to %s", len(data), self._path)

    def save(self, snapshot: Snapshot) -> None:
        self.write(self.dumps(snapshot))

    def load(self) -> Snapshot:
        """Read the snapshot. A missing file is an empty snapshot."""
        if not self._path.is_file():
            return Snapshot()
        try:
            raw = self._path.read_bytes()
        except OSError as e:
            raise PersistenceError(f"could not read {self._path}: {e}") from e
        try:
            doc = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise PersistenceError(f"{self._path} is corrupt: {e}") from e
        if not isinstance(doc, dict) or not isinstance(doc.get("sessions", []), list):
            raise PersistenceError(f"{self._path} is not a session snapshot")
        version = doc.get("version", STORE_VERSION)
        if version != STORE_VERSION:
            raise PersistenceError(f"{self._path} has unsupported version {version!r}")

        records: list[SessionRecord] = []
        seen: set[str] = set()
        for index, item in enumerate(doc.get("sessions", [])):
            try:
                record = record_from_dict(item)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning("Skipping session record %d in %s: %s", index, self._path.name, e)
                continue
            if record.id in seen:
                logger.warning("Skipping duplicate session id %s", record.id)
                continue
            seen.add(record.id)
            records.append(record)

        active_id = doc.get("active_id")
        if active_id not in seen:
            active_id = None
        return Snapshot(sessions=records, active_id=active_id)
