"""SubprocessChannel — one assistant process plus its socket connection."""

from __future__ import annotations

import asyncio
import collections
import logging
from dataclasses import dataclass
from urllib.parse import urlsplit

from .codec import FrameDecoder, encode_frame
from .errors import ChannelClosed, ConnectError, MalformedFrame, SpawnError
from .frames import Frame, Interrupt, ProcessExit, SessionReady
from .launcher import SpawnConfig, build_argv, build_env

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024
DEFAULT_READY_TIMEOUT = 30.0
# How long a socket EOF waits for the owned process to report its exit code.
EXIT_GRACE = 1.0
TERMINATE_TIMEOUT = 5.0


@dataclass(frozen=True, slots=True)
class Closed:
    """Terminal result of ``recv()``: the socket or the process ended."""

    reason: str


def parse_endpoint(endpoint: str) -> tuple[str, str, int | None]:
    """Split an endpoint into ``(scheme, host_or_path, port)``.

    Accepts ``tcp://host:port``, ``unix:/path/to.sock`` and bare ``host:port``.
    """
    if endpoint.startswith("unix:"):
        path = endpoint[len("unix:"):]
        if path.startswith("//"):
            path = path[2:]
        if not path:
            raise ValueError(f"missing socket path in {endpoint!r}")
        return "unix", path, None
    if "://" not in endpoint:
        endpoint = f"tcp://{endpoint}"
    parts = urlsplit(endpoint)
    if parts.scheme != "tcp" or not parts.hostname or parts.port is None:
        raise ValueError(f"unsupported endpoint {endpoint!r}")
    return "tcp", parts.hostname, parts.port


async def terminate_process(process: asyncio.subprocess.Process, timeout: float = TERMINATE_TIMEOUT) -> int | None:
    """Terminate a child, escalating to kill if it ignores SIGTERM."""
    if process.returncode is not None:
        return process.returncode
    try:
        process.terminate()
    except ProcessLookupError:
        return await process.wait()
    try:
        return await asyncio.wait_for(process.wait(), timeout)
    except asyncio.TimeoutError:
        logger.warning("Process %s ignored SIGTERM, killing", process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            pass
        return await process.wait()


async def _drain_output(stream: asyncio.StreamReader | None, label: str, pid: int) -> None:
    """Keep the child's stdout/stderr pipes from filling up."""
    if stream is None:
        return
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return
        text = chunk.decode("utf-8", errors="replace").rstrip()
        if text:
            logger.debug("[%s %s] %s", label, pid, text)


class SubprocessChannel:
    """Bidirectional frame stream to one assistant process.

    Usage::

        channel = await SubprocessChannel.spawn(SpawnConfig(cwd="."))
        channel.send(UserMessage(text="Hello"))
        while not isinstance(item := await channel.recv(), Closed):
            handle(item)
        await channel.close()

    Inbound bytes are decoded by a background reader task; outbound frames are
    encoded by ``send()`` and written by a single writer task, so concurrent
    callers never interleave partial lines. Process exit and socket EOF are
    watched separately and both end in one ``Closed`` result.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        process: asyncio.subprocess.Process | None = None,
        endpoint: str = "",
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._process = process
        self.endpoint = endpoint
        self.ready: SessionReady | None = None
        self._decoder = FrameDecoder()
        self._inbound: asyncio.Queue[Frame | Closed] = asyncio.Queue()
        self._outbound: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._backlog: collections.deque[Frame] = collections.deque()
        self._closed: Closed | None = None
        self._terminal: Closed | None = None
        self._tasks: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    async def spawn(
        cls,
        config: SpawnConfig,
        *,
        host: str = "127.0.0.1",
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
    ) -> SubprocessChannel:
        """Launch a process, accept its connection and wait for ``session_ready``.

        Raises ``SpawnError`` on launch failure, early exit or timeout.
        """
        if not config.command:
            raise SpawnError("no assistant command configured")
        loop = asyncio.get_running_loop()
        accepted: asyncio.Future[tuple[asyncio.StreamReader, asyncio.StreamWriter]] = loop.create_future()

        async def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            if accepted.done():
                logger.warning("Rejecting extra connection on %s", endpoint)
                writer.close()
                return
            accepted.set_result((reader, writer))

        try:
            server = await asyncio.start_server(on_connect, host, 0)
        except OSError as e:
            raise SpawnError(f"could not open local listener: {e}") from e
        port = server.sockets[0].getsockname()[1]
        endpoint = f"tcp://{host}:{port}"

        try:
            argv = build_argv(config, endpoint)
        except ValueError as e:
            server.close()
            raise SpawnError(str(e)) from e
        logger.info("Spawning assistant process: %s (cwd=%s)", " ".join(argv), config.cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=config.cwd,
                env=build_env(config),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            server.close()
            raise SpawnError(f"failed to launch {argv[0]!r}: {e}") from e
        logger.info("Assistant process started (pid %s)", process.pid)

        drains = [
            asyncio.create_task(_drain_output(process.stdout, "stdout", process.pid)),
            asyncio.create_task(_drain_output(process.stderr, "stderr", process.pid)),
        ]
        holder: dict[str, SubprocessChannel] = {}

        async def handshake() -> SubprocessChannel:
            reader, writer = await accepted
            channel = cls(reader, writer, process=process, endpoint=endpoint)
            channel._tasks.extend(drains)
            holder["channel"] = channel
            channel._start()
            await channel._wait_ready()
            return channel

        handshake_task = asyncio.ensure_future(handshake())
        exit_task = asyncio.ensure_future(process.wait())
        try:
            done, _ = await asyncio.wait(
                {handshake_task, exit_task},
                timeout=ready_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            server.close()

        if handshake_task in done and handshake_task.exception() is None:
            exit_task.cancel()
            return handshake_task.result()

        if handshake_task in done:
            error: SpawnError = handshake_task.exception()  # type: ignore[assignment]
        elif exit_task in done:
            handshake_task.cancel()
            error = SpawnError(f"assistant process exited with code {exit_task.result()} before it was ready")
        else:
            handshake_task.cancel()
            exit_task.cancel()
            error = SpawnError(f"assistant process was not ready after {ready_timeout:g}s")

        channel = holder.get("channel")
        if channel is not None:
            await channel.close(str(error))
        else:
            await terminate_process(process)
            for task in drains:
                task.cancel()
        raise error

    @classmethod
    async def connect_existing(cls, endpoint: str, *, timeout: float = DEFAULT_READY_TIMEOUT) -> SubprocessChannel:
        """Attach to an already-running process. The process is not owned."""
        try:
            scheme, address, port = parse_endpoint(endpoint)
        except ValueError as e:
            raise ConnectError(str(e)) from e
        try:
            if scheme == "unix":
                opening = asyncio.open_unix_connection(address)
            else:
                opening = asyncio.open_connection(address, port)
            reader, writer = await asyncio.wait_for(opening, timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise ConnectError(f"could not connect to {endpoint}: {e or 'timed out'}") from e
        logger.info("Attached to assistant process at %s", endpoint)
        channel = cls(reader, writer, endpoint=endpoint)
        channel._start()
        return channel

    def _start(self) -> None:
        self._tasks.append(asyncio.create_task(self._read_loop()))
        self._tasks.append(asyncio.create_task(self._write_loop()))
        if self._process is not None:
            self._watcher = asyncio.create_task(self._watch_process())
            self._tasks.append(self._watcher)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_closed(self) -> bool:
        return self._closed is not None

    @property
    def owns_process(self) -> bool:
        return self._process is not None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    # ------------------------------------------------------------------
    # Frame I/O
    # ------------------------------------------------------------------

    def send(self, frame: Frame) -> None:
        """Queue one frame for writing. Never suspends.

        Raises ``ChannelClosed`` if the connection has dropped.
        """
        if self._closed is not None:
            raise ChannelClosed(self._closed.reason)
        data = encode_frame(frame)
        self._outbound.put_nowait(data)
        logger.debug("-> %s", data[:200])

    async def recv(self) -> Frame | Closed:
        """Next inbound frame, or the terminal ``Closed`` once the stream ended."""
        if self._backlog:
            return self._backlog.popleft()
        if self._terminal is not None:
            return self._terminal
        item = await self._inbound.get()
        if isinstance(item, Closed):
            self._terminal = item
        return item

    def interrupt(self) -> None:
        """Ask the process to stop the current generation. Does not wait."""
        self.send(Interrupt())

    async def close(self, reason: str = "closed by companion") -> None:
        """Tear down the connection, and the process if this channel owns it."""
        self._mark_closed(reason)
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        if self._process is not None:
            code = await terminate_process(self._process)
            logger.info("Assistant process %s stopped (code %s)", self._process.pid, code)
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _wait_ready(self) -> SessionReady:
        while True:
            item = await self._inbound.get()
            if isinstance(item, Closed):
                self._terminal = item
                raise SpawnError(f"assistant process closed before it was ready: {item.reason}")
            if isinstance(item, SessionReady):
                self.ready = item
                return item
            self._backlog.append(item)

    def _dispatch(self, item: Frame | MalformedFrame) -> None:
        if isinstance(item, MalformedFrame):
            logger.warning("Skipping malformed frame from %s: %r", self.endpoint, item)
            return
        if self._closed is not None:
            return
        logger.debug("<- %s", type(item).__name__)
        self._inbound.put_nowait(item)

    def _mark_closed(self, reason: str) -> None:
        if self._closed is not None:
            return
        logger.info("Channel %s closed: %s", self.endpoint, reason)
        self._closed = Closed(reason)
        self._inbound.put_nowait(self._closed)
        self._outbound.put_nowait(None)

    async def _read_loop(self) -> None:
        reason = "connection closed by assistant process"
        try:
            while True:
                data = await self._reader.read(READ_CHUNK)
                if not data:
                    break
                for item in self._decoder.feed(data):
                    self._dispatch(item)
            for item in self._decoder.flush():
                self._dispatch(item)
        except (ConnectionError, OSError) as e:
            reason = f"connection lost: {e}"

        if self._watcher is not None and not self._watcher.done():
            # Prefer the process's own exit report when it follows the EOF.
            try:
                await asyncio.wait_for(asyncio.shield(self._watcher), EXIT_GRACE)
            except asyncio.TimeoutError:
                pass
        self._mark_closed(reason)

    async def _write_loop(self) -> None:
        while True:
            data = await self._outbound.get()
            if data is None:
                return
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                self._mark_closed(f"write failed: {e}")
                return

    async def _watch_process(self) -> None:
        assert self._process is not None
        code = await self._process.wait()
        logger.info("Assistant process %s exited with code %s", self._process.pid, code)
        self._dispatch(ProcessExit(code=code))
        self._mark_closed(f"process exited with code {code}")
