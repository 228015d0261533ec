"""Line-mode console for companion sessions.

Usage::

    companion [--cwd DIR] [--model NAME] [--connect ENDPOINT] [--state-dir DIR]

Lines typed at the prompt are sent to the active session. Lines starting
with ``:`` are commands (``:help`` lists them). Ctrl+C interrupts the
running response; pressing it twice while idle quits.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import TextIO

from .config import CompanionConfig, load_env_profiles
from .errors import NotConnected, PersistenceError
from .frames import AssistantDelta, PermissionRequestFrame, ThinkingDelta, ToolUseStart, TurnComplete
from .registry import SessionRegistry
from .session import Session
from .types import ConnectionState, Message, PermissionStatus, Role

logger = logging.getLogger(__name__)

HELP = """\
Commands:
  :new [env]          new session (optionally with an env profile)
  :ls                 list sessions
  :switch <n|name>    focus a session
  :next / :prev       cycle through sessions
  :rename <name>      rename the active session
  :pin / :unpin       pin the active session to the front
  :archive            archive the active session
  :unarchive <n>      restore an archived session
  :kill               close and delete the active session
  :model [name]       model for the next spawn
  :mode [mode]        default | acceptEdits | plan | bypassPermissions
  :plan               toggle plan mode
  :cd <path>          working directory for the next spawn
  :env                list environment profiles
  :allow <id> / :deny <id> / :always <id>
                      answer a permission request
  :interrupt          stop the current response
  :reconnect          restart the assistant process
  :quit               save and exit
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="companion",
        description="Run several assistant sessions from one terminal",
    )
    parser.add_argument("--cwd", default=None, help="Working directory for a new session")
    parser.add_argument("--model", default=None, help="Model for a new session")
    parser.add_argument(
        "--connect",
        metavar="ENDPOINT",
        default=None,
        help="Attach to a running assistant (tcp://host:port or unix:/path) instead of spawning",
    )
    parser.add_argument("--state-dir", default=None, help="Where sessions, logs and env profiles live")
    parser.add_argument("--config", default=None, help="Path to a config.json")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log protocol traffic")
    return parser


def setup_logging(logs_dir: Path, verbose: bool = False) -> Path:
    """Send logs to a file; the terminal belongs to the conversation."""
    logs_dir.mkdir(parents=True, exist_ok=True)
    path = logs_dir / "companion.log"
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    return path


def parse_command(line: str) -> tuple[str, str]:
    """Split ``:name rest of line`` into ``("name", "rest of line")``."""
    body = line.strip()[1:].strip()
    name, _, arg = body.partition(" ")
    return name.lower(), arg.strip()


def settings_from_args(args: argparse.Namespace) -> CompanionConfig:
    settings = CompanionConfig.load(args.config)
    if args.state_dir:
        settings.state_dir = args.state_dir
    return settings


class Console:
    """Prints session activity and executes typed lines."""

    def __init__(self, registry: SessionRegistry, out: TextIO | None = None) -> None:
        self.registry = registry
        self.out = out or sys.stdout
        self._watched: set[str] = set()
        self.quit_requested = asyncio.Event()

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def write(self, text: str) -> None:
        self.out.write(text)
        self.out.flush()

    def watch_all(self) -> None:
        for session in self.registry:
            if session.id not in self._watched:
                session.add_listener(self._on_event)
                self._watched.add(session.id)

    def _on_event(self, session: Session, item: object) -> None:
        if session is not self.registry.active:
            return
        if isinstance(item, AssistantDelta):
            self.write(item.text)
        elif isinstance(item, ThinkingDelta):
            pass
        elif isinstance(item, ToolUseStart):
            self.write(f"\n[tool] {item.name}\n")
        elif isinstance(item, TurnComplete):
            self.write("\n")
        elif isinstance(item, PermissionRequestFrame):
            if item.request_id in session.pending_permissions:
                self.write(
                    f"\n[permission {item.request_id}] {item.tool_name} {item.input}\n"
                    f"  :allow {item.request_id} | :deny {item.request_id} | :always {item.request_id}\n"
                )
        elif isinstance(item, Message) and item.role is Role.SYSTEM:
            self.write(f"\n[{session.name}] {item.text}\n")
        elif isinstance(item, ConnectionState) and item is ConnectionState.CONNECTED:
            self.write(f"[{session.name}] connected\n")

    def describe(self, session: Session) -> str:
        flags = ("*" if session is self.registry.active else "") + ("^" if session.pinned else "")
        model = session.config.model or "default model"
        return (
            f"{flags:2} {session.name:<20} {session.state.value:<12} "
            f"{session.config.permission_mode.value:<17} {model} {session.config.cwd}"
        )

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def on_interrupt(self) -> None:
        """Ctrl+C: interrupt the active session, or quit on a double press."""
        session = self.registry.active
        if session is None or session.interrupt():
            self.quit_requested.set()
        elif not session.is_generating:
            self.write("\n(press Ctrl+C again to quit)\n")

    async def handle_line(self, line: str) -> bool:
        """Run one input line. Returns False when the console should exit."""
        line = line.rstrip("\n")
        if not line.strip():
            return True
        if line.lstrip().startswith(":"):
            return await self.run_command(*parse_command(line))

        session = self.registry.active
        if session is None:
            self.write("No session. Use :new\n")
            return True
        try:
            session.send_user_message(line)
        except NotConnected as e:
            self.write(f"[{session.name}] {e}\n")
        return True

    async def run_command(self, name: str, arg: str) -> bool:
        registry = self.registry
        session = registry.active

        if name in ("q", "quit", "exit"):
            return False
        if name in ("h", "help", "?"):
            self.write(HELP)
        elif name in ("new", "n"):
            config = registry.settings.session_config(
                cwd=session.config.cwd if session else None,
                env_profile=arg or None,
            )
            if arg and arg not in registry.env_profiles:
                self.write(f"Unknown env profile {arg!r}\n")
                return True
            session_id = registry.create(config)
            self.watch_all()
            new = await registry.activate(session_id)
            self.write(f"Started {new.name}\n")
        elif name in ("ls", "sessions"):
            for index, item in enumerate(registry.visible(), start=1):
                self.write(f"{index:>2} {self.describe(item)}\n")
            for index, item in enumerate(registry.archived(), start=1):
                self.write(f"a{index:<2}{self.describe(item)}\n")
        elif name == "switch":
            await self._switch(arg)
        elif name in ("next", "prev"):
            if name == "next":
                registry.next()
            else:
                registry.previous()
            if registry.active is not None:
                await registry.activate()
                self.write(f"-> {registry.active.name}\n")
        elif name in ("env", "envs"):
            if not registry.env_profiles:
                self.write(f"No profiles in {registry.settings.envs_dir}\n")
            for profile in registry.env_profiles.values():
                self.write(f"{profile.name:<16} {profile.description}\n")
        elif name == "unarchive":
            archived = registry.archived()
            try:
                target = archived[int(arg) - 1]
            except (ValueError, IndexError):
                self.write("Usage: :unarchive <n> (see :ls)\n")
                return True
            registry.unarchive(target.id)
        elif session is None:
            self.write("No session. Use :new\n")
        else:
            await self._session_command(session, name, arg)
        return True

    async def _session_command(self, session: Session, name: str, arg: str) -> None:
        registry = self.registry
        if name == "rename":
            try:
                registry.rename(session.id, arg)
            except ValueError as e:
                self.write(f"{e}\n")
        elif name == "pin":
            registry.pin(session.id)
        elif name == "unpin":
            registry.unpin(session.id)
        elif name == "archive":
            registry.archive(session.id)
            self.write(f"Archived {session.name}\n")
        elif name in ("kill", "close"):
            await registry.delete(session.id)
            self.write(f"Closed {session.name}\n")
        elif name == "model":
            session.switch_model(arg or None)
            self.write(f"Model: {session.config.model or 'default'} (applies on :reconnect)\n")
        elif name == "mode":
            if not arg:
                self.write(f"Mode: {session.config.permission_mode.value}\n")
                return
            try:
                mode = session.switch_mode(arg)
            except ValueError:
                self.write(f"Unknown mode {arg!r}\n")
                return
            self.write(f"Mode: {mode.value}\n")
        elif name == "plan":
            self.write(f"Mode: {session.toggle_plan_mode().value}\n")
        elif name == "cd":
            try:
                cwd = session.switch_cwd(arg or "~")
            except (NotADirectoryError, OSError) as e:
                self.write(f"Not a directory: {e}\n")
                return
            self.write(f"cwd: {cwd} (applies on :reconnect)\n")
        elif name in ("allow", "deny", "always"):
            decision = {
                "allow": PermissionStatus.APPROVED,
                "deny": PermissionStatus.DENIED,
                "always": PermissionStatus.ALWAYS_ALLOW,
            }[name]
            if not session.decide_permission(arg, decision):
                self.write(f"No pending request {arg!r}\n")
        elif name == "interrupt":
            session.interrupt()
        elif name == "reconnect":
            await session.reconnect()
        else:
            self.write(f"Unknown command :{name} (try :help)\n")

    async def _switch(self, arg: str) -> None:
        visible = self.registry.visible()
        target = None
        if arg.isdigit() and 0 < int(arg) <= len(visible):
            target = visible[int(arg) - 1]
        elif arg:
            target = self.registry.find(arg)
        if target is None:
            self.write(f"No session {arg!r}\n")
            return
        await self.registry.activate(target.id)
        self.write(f"-> {target.name}\n")

    async def run(self, reader: asyncio.StreamReader) -> None:
        """Read lines until EOF, ``:quit`` or a double Ctrl+C."""
        quit_wait = asyncio.ensure_future(self.quit_requested.wait())
        try:
            while True:
                read = asyncio.ensure_future(reader.readline())
                done, _ = await asyncio.wait({read, quit_wait}, return_when=asyncio.FIRST_COMPLETED)
                if quit_wait in done:
                    read.cancel()
                    return
                raw = read.result()
                if not raw:
                    return
                if not await self.handle_line(raw.decode("utf-8", errors="replace")):
                    return
        finally:
            quit_wait.cancel()


async def _stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def run(args: argparse.Namespace) -> int:
    settings = settings_from_args(args)
    log_path = setup_logging(settings.logs_dir, args.verbose)
    logger.info("companion starting (state dir %s)", settings.state_path)

    registry = SessionRegistry(settings, env_profiles=load_env_profiles(settings.envs_dir))
    console = Console(registry)
    try:
        await registry.load_all()
    except PersistenceError as e:
        console.write(f"Could not load saved sessions: {e}\n")

    if args.connect or args.cwd or args.model or not len(registry):
        config = settings.session_config(cwd=args.cwd, model=args.model)
        config.endpoint = args.connect
        registry.create(config)

    console.watch_all()
    console.write(f"Logging to {log_path}. Type :help for commands.\n")
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, console.on_interrupt)
    try:
        session = await registry.activate()
        console.write(f"[{session.name}] {session.state.value} in {session.config.cwd}\n")
        await console.run(await _stdin_reader())
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        try:
            await registry.save_all()
        except PersistenceError as e:
            console.write(f"Could not save sessions: {e}\n")
        await registry.close_all()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
