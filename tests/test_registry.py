"""Tests for companion/registry.py — focus, cycling, persistence."""

import random

import pytest

from companion.errors import PersistenceError
from companion.frames import AssistantDelta, TurnComplete
from companion.registry import ADJECTIVES, NOUNS, SessionRegistry, generate_name
from companion.types import ConnectionState, Message, PermissionMode, Role, SessionConfig

from conftest import FakeFactory, settle


@pytest.fixture
def registry(settings, factory):
    return SessionRegistry(settings, channel_factory=factory)


def _make(registry, count, tmp_path):
    return [registry.create(SessionConfig(cwd=str(tmp_path)), name=f"s{i}", activate=False) for i in range(count)]


class TestCreate:
    def test_create_does_not_spawn(self, registry, factory, tmp_path):
        session_id = registry.create(SessionConfig(cwd=str(tmp_path)))
        assert session_id in registry
        assert registry.active_id == session_id
        assert registry.get(session_id).state is ConnectionState.DISCONNECTED
        assert factory.channels == []

    def test_first_session_is_active_even_without_activate(self, registry, tmp_path):
        first, second = _make(registry, 2, tmp_path)
        assert registry.active_id == first

    def test_generated_name(self, registry, tmp_path):
        session = registry.get(registry.create(SessionConfig(cwd=str(tmp_path))))
        adjective, noun = session.name.split("-")
        assert adjective in ADJECTIVES
        assert noun in NOUNS

    def test_default_config_from_settings(self, registry, settings, tmp_path):
        settings.default_cwd = str(tmp_path)
        settings.default_model = "haiku"
        settings.permission_mode = "acceptEdits"
        session = registry.get(registry.create())
        assert session.config.cwd == str(tmp_path.resolve())
        assert session.config.model == "haiku"
        assert session.config.permission_mode is PermissionMode.ACCEPT_EDITS

    @pytest.mark.asyncio
    async def test_eager_spawn(self, settings, factory, tmp_path):
        settings.eager_spawn = True
        registry = SessionRegistry(settings, channel_factory=factory)
        registry.create(SessionConfig(cwd=str(tmp_path)))
        await settle()
        assert len(factory.channels) == 1
        await registry.close_all()


class TestActivate:
    @pytest.mark.asyncio
    async def test_activate_spawns_once(self, registry, factory, tmp_path):
        first, second = _make(registry, 2, tmp_path)
        session = await registry.activate(second)
        assert registry.active_id == second
        assert session.state is ConnectionState.CONNECTED
        await registry.activate(second)
        assert len(factory.channels) == 1
        await registry.close_all()

    def test_switch_active_unknown(self, registry):
        with pytest.raises(KeyError):
            registry.switch_active("nope")

    @pytest.mark.asyncio
    async def test_activate_empty(self, registry):
        with pytest.raises(LookupError):
            await registry.activate()


class TestCycling:
    def test_next_and_previous_wrap(self, registry, tmp_path):
        a, b, c = _make(registry, 3, tmp_path)
        assert registry.next() == b
        assert registry.next() == c
        assert registry.next() == a
        assert registry.previous() == c

    def test_pinned_first(self, registry, tmp_path):
        a, b, c = _make(registry, 3, tmp_path)
        registry.pin(c)
        assert [s.id for s in registry.visible()] == [c, a, b]
        registry.switch_active(c)
        assert registry.next() == a
        assert registry.previous() == c
        assert registry.previous() == b

    def test_archived_skipped(self, registry, tmp_path):
        a, b, c = _make(registry, 3, tmp_path)
        registry.archive(b)
        assert registry.next() == c
        assert registry.next() == a
        assert [s.id for s in registry.archived()] == [b]

    def test_archive_active_moves_focus(self, registry, tmp_path):
        a, b = _make(registry, 2, tmp_path)
        registry.archive(a)
        assert registry.active_id == b

    def test_archive_only_session_keeps_focus(self, registry, tmp_path):
        (a,) = _make(registry, 1, tmp_path)
        registry.archive(a)
        assert registry.active_id == a
        assert registry.next() == a

    def test_unarchive(self, registry, tmp_path):
        a, b = _make(registry, 2, tmp_path)
        registry.archive(b)
        registry.unarchive(b)
        assert registry.next() == b

    @pytest.mark.asyncio
    async def test_archive_does_not_disconnect(self, registry, tmp_path):
        a, b = _make(registry, 2, tmp_path)
        session = await registry.activate(a)
        registry.archive(a)
        assert session.state is ConnectionState.CONNECTED
        await registry.close_all()


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_closes_and_refocuses(self, registry, factory, tmp_path):
        a, b, c = _make(registry, 3, tmp_path)
        await registry.activate(a)
        await registry.delete(a)
        assert a not in registry
        assert registry.active_id == b
        assert factory.latest.closed_reason == "session closed"
        await registry.wait_saved()

    @pytest.mark.asyncio
    async def test_delete_last(self, registry, tmp_path):
        (a,) = _make(registry, 1, tmp_path)
        await registry.delete(a)
        assert len(registry) == 0
        assert registry.active_id is None
        await registry.wait_saved()

    @pytest.mark.asyncio
    async def test_delete_leaves_archived_session_active(self, registry, tmp_path):
        a, b = _make(registry, 2, tmp_path)
        registry.archive(b)
        await registry.delete(a)
        assert registry.active_id == b
        await registry.wait_saved()

    def test_find(self, registry, tmp_path):
        a, b = _make(registry, 2, tmp_path)
        assert registry.find("s1").id == b
        assert registry.find(a[:10]).id == a
        assert registry.find("zzz") is None


class TestPersistence:
    @pytest.mark.asyncio
    async def test_save_and_load(self, settings, factory, tmp_path):
        registry = SessionRegistry(settings, channel_factory=factory)
        a, b = _make(registry, 2, tmp_path)
        registry.pin(b)
        registry.archive(a)
        registry.get(b).history.append(Message.plain(Role.USER, "persist me"))
        registry.get(b).switch_mode("plan")
        await registry.save_all()
        await registry.wait_saved()

        restored = SessionRegistry(settings, channel_factory=FakeFactory())
        assert await restored.load_all() == 2
        assert [s.id for s in restored] == [a, b]
        assert restored.active_id == registry.active_id
        rb = restored.get(b)
        assert rb.pinned
        assert rb.history == registry.get(b).history
        assert rb.config == registry.get(b).config
        assert restored.get(a).archived
        assert rb.state is ConnectionState.DISCONNECTED
        assert rb.pending_permissions == {}

    @pytest.mark.asyncio
    async def test_zero_sessions(self, registry):
        await registry.save_all()
        assert await registry.load_all() == 0
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_load_skips_known_ids(self, registry, tmp_path):
        _make(registry, 2, tmp_path)
        await registry.save_all()
        assert await registry.load_all() == 0
        assert len(registry) == 2

    @pytest.mark.asyncio
    async def test_load_failure_leaves_registry_alone(self, registry, tmp_path):
        _make(registry, 1, tmp_path)
        registry.store.path.parent.mkdir(parents=True, exist_ok=True)
        registry.store.path.write_text("garbage")
        with pytest.raises(PersistenceError):
            await registry.load_all()
        assert len(registry) == 1


class TestAutosave:
    @pytest.mark.asyncio
    async def test_saved_after_turn_completes(self, registry, factory, tmp_path):
        (a,) = _make(registry, 1, tmp_path)
        session = await registry.activate(a)
        session.send_user_message("remember this")
        factory.latest.push(AssistantDelta(message_id="m1", text="ok"), TurnComplete(cost=0.1, num_turns=1))
        await settle(factory.latest)
        await registry.wait_saved()

        assert registry.store.path.is_file()
        (record,) = registry.store.load().sessions
        assert [m.text for m in record.history] == ["remember this", "ok"]
        assert record.turns == 1
        await registry.close_all()

    @pytest.mark.asyncio
    async def test_saved_after_disconnect(self, registry, factory, tmp_path):
        (a,) = _make(registry, 1, tmp_path)
        await registry.activate(a)
        factory.latest.drop("process exited with code 1")
        await settle(factory.latest)
        await registry.wait_saved()

        (record,) = registry.store.load().sessions
        assert "Assistant disconnected" in record.history[-1].text
        await registry.close_all()

    @pytest.mark.asyncio
    async def test_metadata_changes_are_saved(self, registry, tmp_path):
        a, b = _make(registry, 2, tmp_path)
        registry.rename(b, "renamed")
        registry.pin(b)
        registry.archive(a)
        await registry.wait_saved()

        records = {r.id: r for r in registry.store.load().sessions}
        assert records[b].name == "renamed"
        assert records[b].pinned
        assert records[a].archived

        await registry.delete(a)
        await registry.wait_saved()
        assert [r.id for r in registry.store.load().sessions] == [b]

    def test_without_event_loop_nothing_is_written(self, registry, tmp_path):
        (a,) = _make(registry, 1, tmp_path)
        registry.pin(a)
        assert not registry.store.path.exists()

    @pytest.mark.asyncio
    async def test_background_failure_is_logged(self, registry, tmp_path, caplog):
        (a,) = _make(registry, 1, tmp_path)
        registry.store.path.parent.parent.mkdir(parents=True, exist_ok=True)
        registry.store.path.parent.write_text("not a directory")
        registry.pin(a)
        await registry.wait_saved()
        assert "Background save failed" in caplog.text

    def test_rename_rejects_blank(self, registry, tmp_path):
        (a,) = _make(registry, 1, tmp_path)
        with pytest.raises(ValueError):
            registry.rename(a, "  ")


class TestGenerateName:
    def test_avoids_taken(self):
        rng = random.Random(1)
        taken = {f"{a}-{n}" for a in ADJECTIVES for n in NOUNS}
        name = generate_name(taken, rng)
        assert name not in taken
        assert name.endswith("-2")

    def test_shape(self):
        assert generate_name(rng=random.Random(0)).count("-") == 1
