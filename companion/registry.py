"""SessionRegistry — the set of sessions, focus, and persistence."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Iterator

from .config import CompanionConfig
from .errors import PersistenceError
from .frames import TurnComplete
from .session import ChannelFactory, Session
from .store import SessionStore, Snapshot
from .types import ConnectionState, EnvironmentProfile, SessionConfig

logger = logging.getLogger(__name__)

ADJECTIVES = (
    "crimson", "azure", "golden", "silver", "emerald", "coral", "violet", "amber",
    "scarlet", "cobalt", "jade", "ivory", "onyx", "ruby", "sapphire", "topaz",
    "bronze", "copper", "indigo", "teal", "slate", "pearl", "rustic", "misty",
)

NOUNS = (
    "falcon", "phoenix", "dragon", "raven", "tiger", "wolf", "hawk", "eagle",
    "panther", "cobra", "viper", "sphinx", "griffin", "lynx", "orca", "puma",
    "condor", "mantis", "jaguar", "osprey", "badger", "otter", "heron", "bison",
)


def generate_name(taken: set[str] | None = None, rng: random.Random | None = None) -> str:
    """Random ``adjective-noun`` name, avoiding names in ``taken`` when possible."""
    taken = taken or set()
    rng = rng or random.Random()
    name = f"{rng.choice(ADJECTIVES)}-{rng.choice(NOUNS)}"
    for _ in range(32):
        if name not in taken:
            return name
        name = f"{rng.choice(ADJECTIVES)}-{rng.choice(NOUNS)}"
    suffix = 2
    while f"{name}-{suffix}" in taken:
        suffix += 1
    return f"{name}-{suffix}"


class SessionRegistry:
    """Owns every Session and which one is active.

    The registry is the only place sessions are created or destroyed. When it
    holds any session, exactly one of them is active. Cycling with
    :meth:`next` / :meth:`previous` visits non-archived sessions, pinned ones
    first. ``save_all`` / ``load_all`` run under one lock so a snapshot never
    interleaves with another save or load. Finished turns, disconnects and
    metadata changes schedule a background save through :meth:`request_save`.
    """

    def __init__(
        self,
        settings: CompanionConfig | None = None,
        *,
        store: SessionStore | None = None,
        channel_factory: ChannelFactory | None = None,
        env_profiles: dict[str, EnvironmentProfile] | None = None,
    ) -> None:
        self.settings = settings or CompanionConfig()
        self.store = store or SessionStore(self.settings.state_dir)
        self.env_profiles = env_profiles or {}
        self._channel_factory = channel_factory
        self._sessions: dict[str, Session] = {}
        self._active_id: str | None = None
        self._lock = asyncio.Lock()
        self._save_task: asyncio.Task | None = None
        self._save_requested = False

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    @property
    def active_id(self) -> str | None:
        return self._active_id

    @property
    def active(self) -> Session | None:
        return self._sessions.get(self._active_id) if self._active_id else None

    def visible(self) -> list[Session]:
        """Non-archived sessions in cycling order (pinned first)."""
        live = [s for s in self._sessions.values() if not s.archived]
        return sorted(live, key=lambda s: not s.pinned)

    def archived(self) -> list[Session]:
        return [s for s in self._sessions.values() if s.archived]

    def find(self, key: str) -> Session | None:
        """Look a session up by id, id prefix, or exact name."""
        if key in self._sessions:
            return self._sessions[key]
        by_name = [s for s in self._sessions.values() if s.name == key]
        if len(by_name) == 1:
            return by_name[0]
        by_prefix = [s for s in self._sessions.values() if s.id.startswith(key)]
        if len(by_prefix) == 1:
            return by_prefix[0]
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        config: SessionConfig | None = None,
        name: str | None = None,
        activate: bool = True,
    ) -> str:
        """Register a new session and return its id.

        The process is not started here unless ``eager_spawn`` is set; it
        starts on the first :meth:`activate`.
        """
        session = self._new_session(
            config or self.settings.session_config(),
            name=name or generate_name({s.name for s in self._sessions.values()}),
        )
        self._sessions[session.id] = session
        logger.info("Created session %s (%s) in %s", session.name, session.id, session.config.cwd)
        if activate or self._active_id is None:
            self._active_id = session.id
        if self.settings.eager_spawn:
            self._spawn_soon(session)
        return session.id

    def switch_active(self, session_id: str) -> Session:
        """Focus ``session_id`` without starting its process."""
        session = self._require(session_id)
        self._active_id = session_id
        return session

    async def activate(self, session_id: str | None = None) -> Session:
        """Focus a session (the active one by default) and make sure it is connected."""
        if session_id is not None:
            self.switch_active(session_id)
        session = self.active
        if session is None:
            raise LookupError("no sessions")
        await session.connect()
        return session

    def next(self) -> str | None:
        """Move focus forward through the visible sessions."""
        return self._step(1)

    def previous(self) -> str | None:
        """Move focus backward through the visible sessions."""
        return self._step(-1)

    async def delete(self, session_id: str) -> None:
        """Close a session and drop it with its history."""
        session = self._require(session_id)
        if self._active_id == session_id:
            self._active_id = self._neighbour(session_id)
        del self._sessions[session_id]
        await session.close()
        logger.info("Deleted session %s (%s)", session.name, session_id)
        self.request_save()

    def archive(self, session_id: str) -> None:
        """Hide a session from cycling. A live process keeps running."""
        session = self._require(session_id)
        if self._active_id == session_id:
            self._active_id = self._neighbour(session_id, keep_self=True)
        session.archive()
        self.request_save()

    def unarchive(self, session_id: str) -> None:
        self._require(session_id).unarchive()
        self.request_save()

    def pin(self, session_id: str) -> None:
        self._require(session_id).pin()
        self.request_save()

    def unpin(self, session_id: str) -> None:
        self._require(session_id).unpin()
        self.request_save()

    def rename(self, session_id: str, name: str) -> None:
        """Rename a session. Raises ``ValueError`` for a blank name."""
        self._require(session_id).rename(name)
        self.request_save()

    async def close_all(self) -> None:
        """Close every session (used at shutdown). Sessions stay registered."""
        await asyncio.gather(*(s.close() for s in self._sessions.values()))
        await self.wait_saved()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save_all(self) -> None:
        """Write every session atomically. Raises ``PersistenceError``."""
        async with self._lock:
            snapshot = Snapshot(
                sessions=[s.snapshot() for s in self._sessions.values()],
                active_id=self._active_id,
            )
            data = self.store.dumps(snapshot)
            await asyncio.to_thread(self.store.write, data)
        logger.info("Saved %d session(s) to %s", len(snapshot.sessions), self.store.path)

    def request_save(self) -> None:
        """Schedule a background :meth:`save_all`. Requests made while one is
        running are folded into a single follow-up write.

        Without a running event loop this is a no-op; the next explicit
        ``save_all`` picks the change up.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._save_requested = True
        if self._save_task is None or self._save_task.done():
            self._save_task = loop.create_task(self._autosave())

    async def wait_saved(self) -> None:
        """Wait for a scheduled background save to finish."""
        task = self._save_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

    async def load_all(self) -> int:
        """Add persisted sessions not already registered. Returns how many.

        Raises ``PersistenceError`` and leaves the registry unchanged if the
        snapshot cannot be read.
        """
        async with self._lock:
            snapshot = await asyncio.to_thread(self.store.load)
            added = 0
            for record in snapshot.sessions:
                if record.id in self._sessions:
                    continue
                session = Session.from_record(
                    record,
                    settings=self.settings,
                    channel_factory=self._channel_factory,
                    env_profiles=self.env_profiles,
                )
                self._sessions[session.id] = session
                session.add_listener(self._on_session_event)
                added += 1
            if self._active_id is None and self._sessions:
                if snapshot.active_id in self._sessions:
                    self._active_id = snapshot.active_id
                else:
                    visible = self.visible()
                    self._active_id = (visible[0] if visible else next(iter(self._sessions.values()))).id
        logger.info("Loaded %d session(s) from %s", added, self.store.path)
        return added

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_session(self, config: SessionConfig, *, name: str) -> Session:
        session = Session(
            config,
            name=name,
            settings=self.settings,
            channel_factory=self._channel_factory,
            env_profiles=self.env_profiles,
        )
        session.add_listener(self._on_session_event)
        return session

    def _on_session_event(self, session: Session, item: object) -> None:
        if isinstance(item, TurnComplete) or item is ConnectionState.DEGRADED:
            self.request_save()

    async def _autosave(self) -> None:
        while self._save_requested:
            self._save_requested = False
            try:
                await self.save_all()
            except PersistenceError as e:
                logger.warning("Background save failed: %s", e)

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"no session with id {session_id!r}")
        return session

    def _step(self, direction: int) -> str | None:
        order = self.visible()
        if not order:
            return self._active_id
        ids = [s.id for s in order]
        if self._active_id in ids:
            index = (ids.index(self._active_id) + direction) % len(ids)
        else:
            index = 0 if direction > 0 else len(ids) - 1
        self._active_id = ids[index]
        return self._active_id

    def _neighbour(self, session_id: str, *, keep_self: bool = False) -> str | None:
        """Where focus goes when ``session_id`` is archived or deleted."""
        order = [s.id for s in self.visible()]
        if session_id in order:
            index = order.index(session_id)
            candidates = order[index + 1:] + order[:index]
        else:
            candidates = order
        if candidates:
            return candidates[0]
        if keep_self:
            return session_id
        others = [sid for sid in self._sessions if sid != session_id]
        return others[0] if others else None

    def _spawn_soon(self, session: Session) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; session %s will spawn on activation", session.id)
            return
        session.schedule_connect()
