"""Deliver each file to every destination, one independent worker per destination."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from .config import Destination
from .errors import ReplicationError
from .sender import DeliveryResult, SenderLink

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Job:
    path: Path
    name: str
    future: "asyncio.Future[DeliveryResult]"


class FanoutDispatcher:
    """Owns one SenderLink per destination.

    Every destination has its own queue and worker task, so a slow or
    unreachable destination only delays its own deliveries. Within a
    destination, files are sent in submission order.
    """

    def __init__(self, destinations: Iterable[Destination], **link_options: Any):
        self.links: dict[Destination, SenderLink] = {}
        for dest in destinations:
            if dest in self.links:
                raise ValueError(f"duplicate destination: {dest}")
            self.links[dest] = SenderLink(dest, **link_options)
        if not self.links:
            raise ValueError("at least one destination is required")
        self._queues: dict[Destination, asyncio.Queue[_Job]] = {}
        # queued (not yet started) jobs per destination, by name
        self._pending: dict[Destination, dict[str, _Job]] = {}
        self._workers: list[asyncio.Task] = []

    async def start(self) -> None:
        if self._workers:
            return
        for dest, link in self.links.items():
            queue: asyncio.Queue[_Job] = asyncio.Queue()
            self._queues[dest] = queue
            self._pending[dest] = {}
            self._workers.append(
                asyncio.create_task(self._worker(link, queue, self._pending[dest]), name=f"fanout-{dest}")
            )
        logger.info("fan-out to %s", ", ".join(str(d) for d in self.links))

    def submit(self, path: str | Path, name: str) -> list["asyncio.Future[DeliveryResult]"]:
        """Queue ``path`` for every destination; one future per destination.

        A name that is still waiting in a destination's queue is not queued
        twice: the queued job reads the file when it runs, so the caller gets
        that job's future back instead.
        """
        if not self._workers:
            raise RuntimeError("dispatcher is not started")
        loop = asyncio.get_running_loop()
        futures = []
        for dest, queue in self._queues.items():
            pending = self._pending[dest]
            job = pending.get(name)
            if job is None:
                job = _Job(Path(path), name, loop.create_future())
                pending[name] = job
                queue.put_nowait(job)
            else:
                logger.debug("%s is already queued for %s", name, dest)
            futures.append(job.future)
        return futures

    def backlog(self, destination: Destination) -> int:
        """Number of jobs waiting (not yet started) for ``destination``."""
        return self._queues[destination].qsize()

    async def dispatch(self, path: str | Path, name: str) -> list[DeliveryResult]:
        return list(await asyncio.gather(*self.submit(path, name)))

    async def join(self) -> None:
        """Wait until every queued delivery has finished."""
        await asyncio.gather(*(queue.join() for queue in self._queues.values()))

    async def close(self) -> None:
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        for queue in self._queues.values():
            while not queue.empty():
                queue.get_nowait().future.cancel()
                queue.task_done()
        self._queues.clear()
        self._pending.clear()

        await asyncio.gather(*(link.close() for link in self.links.values()))

    async def __aenter__(self) -> "FanoutDispatcher":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _worker(self, link: SenderLink, queue: "asyncio.Queue[_Job]", pending: dict[str, _Job]) -> None:
        while True:
            job = await queue.get()
            if pending.get(job.name) is job:
                del pending[job.name]
            try:
                result = await self._deliver(link, job)
            except asyncio.CancelledError:
                job.future.cancel()
                raise
            finally:
                queue.task_done()
            if not job.future.done():
                job.future.set_result(result)

    async def _deliver(self, link: SenderLink, job: _Job) -> DeliveryResult:
        start = time.monotonic()
        try:
            return await link.send(job.path, job.name)
        except ReplicationError as exc:
            logger.error("delivery of %s to %s failed: %s", job.name, link.destination, exc)
            error: BaseException = exc
        except Exception as exc:
            logger.exception("unexpected error delivering %s to %s", job.name, link.destination)
            error = exc
        return DeliveryResult(
            destination=link.destination,
            name=job.name,
            ok=False,
            duration_s=time.monotonic() - start,
            error=error,
        )
