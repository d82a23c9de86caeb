"""Receiving side: one session per connection, receive → verify → publish."""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Callable

from .constants import ACK, DEFAULT_CHUNK_SIZE, DEFAULT_PORT, NACK, PART_SUFFIX
from .digest import new_hasher
from .errors import FrameError, IntegrityError, PathSafetyError
from .frame import FrameHeader, read_field, read_header
from .net import close_stream, set_nodelay

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    AWAIT_HEADER = "await_header"
    RECEIVE_PAYLOAD = "receive_payload"
    VERIFY = "verify"
    PUBLISH = "publish"
    CLOSED = "closed"


StateObserver = Callable[[SessionState, SessionState], None]


@dataclass(slots=True)
class SessionStats:
    frames_published: int = 0
    frames_rejected: int = 0
    bytes_received: int = 0
    start_ts: float = field(default_factory=time.monotonic)
    end_ts: float | None = None

    @property
    def duration_s(self) -> float:
        if self.end_ts is None:
            return 0.0
        return max(0.0, self.end_ts - self.start_ts)

    @property
    def throughput_mbps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.bytes_received * 8 / 1_000_000) / self.duration_s


def resolve_destination(root: Path, name: str) -> Path:
    """Map a frame name onto a path under ``root``.

    Names use ``/`` as separator. Absolute names, ``..`` segments and names that
    resolve (through symlinks) outside ``root`` raise PathSafetyError, as do
    names ending in the temporary-file suffix.
    """
    if "\x00" in name:
        raise PathSafetyError(f"name contains NUL byte: {name!r}")
    pure = PurePosixPath(name)
    if pure.is_absolute():
        raise PathSafetyError(f"absolute name not allowed: {name!r}")
    if ".." in pure.parts:
        raise PathSafetyError(f"parent segment not allowed: {name!r}")
    if not pure.parts:
        raise PathSafetyError(f"name does not denote a file: {name!r}")
    if pure.name.endswith(PART_SUFFIX):
        raise PathSafetyError(f"name clashes with in-flight temporary files: {name!r}")

    dest = root.joinpath(*pure.parts)
    try:
        contained = dest.resolve().is_relative_to(root.resolve())
    except (OSError, RuntimeError) as exc:
        # RuntimeError: symlink loop on Python < 3.13
        raise PathSafetyError(f"cannot resolve {name!r}: {exc}") from exc
    if not contained:
        raise PathSafetyError(f"name escapes destination root: {name!r}")
    return dest


class PartFile:
    """Temporary ``<dest>.part`` file holding one in-flight payload.

    Filesystem failures are recorded in ``error`` instead of raised so the
    session can keep consuming the payload and stay in sync with the stream.
    """

    def __init__(self, dest: Path):
        self.dest = dest
        self.path = dest.with_name(dest.name + PART_SUFFIX)
        self.error: OSError | None = None
        self._fh: BinaryIO | None = None

    @property
    def writable(self) -> bool:
        return self._fh is not None

    def open(self) -> None:
        try:
            self.dest.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.path, "wb")
        except OSError as exc:
            self.error = exc

    def write(self, chunk: bytes) -> None:
        if self._fh is None:
            return
        try:
            self._fh.write(chunk)
        except OSError as exc:
            self.error = exc
            self._close()

    def finish(self) -> None:
        if self._fh is None:
            return
        try:
            self._fh.flush()
            os.fsync(self._fh.fileno())
        except OSError as exc:
            self.error = exc
        finally:
            self._close()

    def publish(self) -> None:
        os.replace(self.path, self.dest)

    def discard(self) -> None:
        self._close()
        with contextlib.suppress(FileNotFoundError):
            os.unlink(self.path)

    def _close(self) -> None:
        fh, self._fh = self._fh, None
        if fh is None:
            return
        try:
            fh.close()
        except OSError as exc:
            if self.error is None:
                self.error = exc


class ReceiverSession:
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        dest_root: Path,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        observer: StateObserver | None = None,
    ):
        self.reader = reader
        self.writer = writer
        self.dest_root = dest_root
        self.chunk_size = chunk_size
        self.observer = observer
        self.peer = writer.get_extra_info("peername")
        self.state = SessionState.AWAIT_HEADER
        self.stats = SessionStats()

    def _enter(self, state: SessionState) -> None:
        previous, self.state = self.state, state
        logger.debug("%s: %s -> %s", self.peer, previous.name, state.name)
        if self.observer is not None:
            self.observer(previous, state)

    async def run(self) -> SessionStats:
        logger.info("session opened from %s", self.peer)
        try:
            while True:
                header = await read_header(self.reader)
                if header is None:
                    logger.info("peer %s closed the session", self.peer)
                    break
                accepted = await self._handle_frame(header)
                self.writer.write(bytes([ACK if accepted else NACK]))
                await self.writer.drain()
                self._enter(SessionState.AWAIT_HEADER)
        except FrameError as exc:
            logger.error("protocol error from %s, closing session: %s", self.peer, exc)
        except OSError as exc:
            logger.warning("connection from %s lost: %s", self.peer, exc)
        finally:
            self._enter(SessionState.CLOSED)
            self.stats.end_ts = time.monotonic()
            await close_stream(self.writer)

        logger.info(
            "session from %s done; published=%d rejected=%d bytes=%d",
            self.peer,
            self.stats.frames_published,
            self.stats.frames_rejected,
            self.stats.bytes_received,
        )
        return self.stats

    async def _discard_payload(self, size: int) -> None:
        remaining = size
        while remaining > 0:
            chunk = await read_field(self.reader, min(self.chunk_size, remaining), "payload")
            remaining -= len(chunk)

    async def _handle_frame(self, header: FrameHeader) -> bool:
        self._enter(SessionState.RECEIVE_PAYLOAD)
        loop = asyncio.get_running_loop()
        try:
            dest = await loop.run_in_executor(None, resolve_destination, self.dest_root, header.name)
        except PathSafetyError as exc:
            logger.error("rejecting frame from %s: %s", self.peer, exc)
            await self._discard_payload(header.size)
            self.stats.frames_rejected += 1
            return False

        part = PartFile(dest)
        hasher = new_hasher()
        try:
            await loop.run_in_executor(None, part.open)
            remaining = header.size
            while remaining > 0:
                chunk = await read_field(self.reader, min(self.chunk_size, remaining), "payload")
                hasher.update(chunk)
                if part.writable:
                    await loop.run_in_executor(None, part.write, chunk)
                remaining -= len(chunk)
                self.stats.bytes_received += len(chunk)
            await loop.run_in_executor(None, part.finish)
        except BaseException:
            await loop.run_in_executor(None, part.discard)
            raise

        self._enter(SessionState.VERIFY)
        if part.error is not None:
            logger.error("could not store %s: %s", header.name, part.error)
            return await self._reject(part)

        actual = hasher.digest()
        if actual != header.checksum:
            logger.warning("%s", IntegrityError(header.name, header.checksum, actual))
            return await self._reject(part)

        self._enter(SessionState.PUBLISH)
        try:
            await loop.run_in_executor(None, part.publish)
        except OSError as exc:
            logger.error("could not publish %s: %s", header.name, exc)
            return await self._reject(part)

        self.stats.frames_published += 1
        logger.info("published %s (%d bytes)", header.name, header.size)
        return True

    async def _reject(self, part: PartFile) -> bool:
        await asyncio.get_running_loop().run_in_executor(None, part.discard)
        self.stats.frames_rejected += 1
        return False


class ReceiverServer:
    """Accepts sender connections and runs one ReceiverSession per connection."""

    def __init__(
        self,
        dest_dir: str | Path,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        observer: StateObserver | None = None,
    ):
        self.dest_dir = Path(dest_dir)
        self.host = host
        self.requested_port = port
        self.chunk_size = chunk_size
        self.observer = observer
        self._server: asyncio.Server | None = None
        self._sessions: set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("receiver is not listening")
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self.dest_dir.mkdir(parents=True, exist_ok=True)
        self._server = await asyncio.start_server(
            self._handle,
            self.host,
            self.requested_port,
            reuse_address=True,
        )
        logger.info("listening on %s:%d; publishing to %s", self.host, self.port, self.dest_dir)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        sessions = list(self._sessions)
        for task in sessions:
            task.cancel()
        await asyncio.gather(*sessions, return_exceptions=True)
        await self._server.wait_closed()
        self._server = None

    async def __aenter__(self) -> "ReceiverServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        set_nodelay(writer)
        task = asyncio.current_task()
        if task is not None:
            self._sessions.add(task)
        try:
            session = ReceiverSession(
                reader,
                writer,
                self.dest_dir,
                chunk_size=self.chunk_size,
                observer=self.observer,
            )
            await session.run()
        finally:
            if task is not None:
                self._sessions.discard(task)
