"""Directory watching and the loop that turns file events into deliveries."""
from __future__ import annotations

import asyncio
import enum
import errno
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

from inotify_simple import INotify, flags

from .constants import DEFAULT_SETTLE_MS
from .fanout import FanoutDispatcher
from .sender import DeliveryResult

logger = logging.getLogger(__name__)

# a file is stable once its writer closes it or it is renamed into the tree
WATCH_MASK = flags.CLOSE_WRITE | flags.MOVED_TO | flags.CREATE | flags.ONLYDIR


class EventKind(enum.Enum):
    FILE_STABLE = "file_stable"
    DIRECTORY_CREATED = "directory_created"


@dataclass(frozen=True, slots=True)
class WatchEvent:
    kind: EventKind
    path: Path


class DirectoryWatcher:
    """Watches a directory tree through one inotify instance.

    Every directory gets its own watch descriptor on that instance. New
    directories are only covered once ``add_directory`` is called for them,
    which WatchLoop does when it sees a DIRECTORY_CREATED event. The inotify
    descriptor is read from the event loop, so ``start`` must run inside it.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).absolute()
        self._inotify: INotify | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[WatchEvent] | None = None
        self._watches: dict[Path, int] = {}
        self._dirs: dict[int, Path] = {}

    @property
    def watched(self) -> frozenset[Path]:
        return frozenset(self._watches)

    def start(self) -> None:
        if self._inotify is not None:
            return
        if not self.root.is_dir():
            raise NotADirectoryError(f"watch root is not a directory: {self.root}")
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._inotify = INotify()
        try:
            self._add_watch(self.root)
        except OSError:
            self._inotify.close()
            self._inotify = None
            raise
        for child in self._subdirectories(self.root):
            self.add_directory(child)
        self._loop.add_reader(self._inotify.fileno(), self._read_events)
        logger.info("watching %s (%d directories)", self.root, len(self._watches))

    def stop(self) -> None:
        inotify, self._inotify = self._inotify, None
        if inotify is None:
            return
        if self._loop is not None and not self._loop.is_closed():
            self._loop.remove_reader(inotify.fileno())
        inotify.close()
        self._watches.clear()
        self._dirs.clear()

    def add_directory(self, path: str | Path) -> None:
        """Watch ``path`` and any directories it already contains."""
        if self._inotify is None:
            raise RuntimeError("watcher is not started")
        stack = [Path(path).absolute()]
        while stack:
            directory = stack.pop()
            if directory in self._watches or not directory.is_dir():
                continue
            try:
                self._add_watch(directory)
            except OSError as exc:
                if exc.errno == errno.ENOSPC:
                    logger.error("cannot watch %s: inotify watch limit reached", directory)
                else:
                    logger.warning("cannot watch %s: %s", directory, exc)
                continue
            logger.debug("watching %s", directory)
            stack.extend(self._subdirectories(directory))

    def _add_watch(self, directory: Path) -> None:
        assert self._inotify is not None
        wd = self._inotify.add_watch(directory, WATCH_MASK)
        # a directory renamed inside the tree keeps its descriptor
        previous = self._dirs.get(wd)
        if previous is not None and previous != directory:
            self._watches.pop(previous, None)
        self._dirs[wd] = directory
        self._watches[directory] = wd

    @staticmethod
    def _subdirectories(directory: Path) -> list[Path]:
        try:
            return [p for p in directory.iterdir() if p.is_dir() and not p.is_symlink()]
        except OSError as exc:
            logger.warning("cannot list %s: %s", directory, exc)
            return []

    def _read_events(self) -> None:
        if self._inotify is None:
            return
        for event in self._inotify.read(timeout=0):
            self._translate(event.wd, event.mask, event.name)

    def _translate(self, wd: int, mask: int, name: str) -> None:
        assert self._queue is not None
        if mask & flags.Q_OVERFLOW:
            logger.warning("inotify event queue overflowed under %s; some files were missed", self.root)
            return
        if mask & flags.IGNORED:
            # the directory is gone or was unmounted
            directory = self._dirs.pop(wd, None)
            if directory is not None and self._watches.get(directory) == wd:
                del self._watches[directory]
            return

        directory = self._dirs.get(wd)
        if directory is None or not name:
            return
        path = directory / os.fsdecode(name)
        if mask & flags.ISDIR:
            if mask & (flags.CREATE | flags.MOVED_TO):
                self._queue.put_nowait(WatchEvent(EventKind.DIRECTORY_CREATED, path))
        elif mask & (flags.CLOSE_WRITE | flags.MOVED_TO):
            self._queue.put_nowait(WatchEvent(EventKind.FILE_STABLE, path))

    async def events(self) -> AsyncIterator[WatchEvent]:
        self.start()
        assert self._queue is not None
        while True:
            yield await self._queue.get()


def relative_name(root: Path, path: Path) -> str:
    """Wire name of ``path``: its path below ``root`` with ``/`` separators."""
    rel = path.relative_to(root)
    if not rel.parts:
        raise ValueError(f"{path} is the watch root itself")
    return rel.as_posix()


@dataclass(slots=True)
class WatchStats:
    dispatched: int = 0
    delivered: int = 0
    failed: int = 0


class WatchLoop:
    """Feeds stable files from an event source into a FanoutDispatcher.

    ``source`` provides ``events()`` (async iterator of WatchEvent) and
    ``add_directory(path)``; DirectoryWatcher is the production source.
    """

    def __init__(
        self,
        root: str | Path,
        source,
        dispatcher: FanoutDispatcher,
        settle_s: float = DEFAULT_SETTLE_MS / 1000.0,
    ):
        self.root = Path(root).absolute()
        self.source = source
        self.dispatcher = dispatcher
        self.settle_s = settle_s
        self.stats = WatchStats()
        self._tracked: set[asyncio.Future] = set()

    async def run(self) -> None:
        async for event in self.source.events():
            await self.handle(event)

    async def handle(self, event: WatchEvent) -> list["asyncio.Future[DeliveryResult]"]:
        if event.kind is EventKind.DIRECTORY_CREATED:
            self.source.add_directory(event.path)
            return []

        path = Path(event.path).absolute()
        if not path.is_file():
            logger.debug("ignoring %s: not a regular file", path)
            return []
        try:
            name = relative_name(self.root, path)
        except ValueError:
            logger.warning("ignoring %s: outside %s", path, self.root)
            return []

        if self.settle_s > 0:
            await asyncio.sleep(self.settle_s)
        futures = self.dispatcher.submit(path, name)
        self.stats.dispatched += 1
        for future in futures:
            if future not in self._tracked:
                self._tracked.add(future)
                future.add_done_callback(self._record)
        return futures

    def _record(self, future: "asyncio.Future[DeliveryResult]") -> None:
        self._tracked.discard(future)
        if future.cancelled():
            return
        if future.result().ok:
            self.stats.delivered += 1
        else:
            self.stats.failed += 1
