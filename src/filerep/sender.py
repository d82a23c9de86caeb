"""Sending side: one persistent, self-reconnecting connection per destination."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from .config import Destination
from .constants import ACK, DEFAULT_BACKOFF_MS, DEFAULT_CONNECT_TIMEOUT_MS, DEFAULT_IO_TIMEOUT_MS
from .errors import (
    DeliveryRejectedError,
    DestinationUnreachableError,
    LinkError,
    SourceFileError,
)
from .frame import encode
from .net import Impairment, close_stream, open_stream

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    destination: Destination
    name: str
    ok: bool
    size: int = 0
    attempts: int = 0
    duration_s: float = 0.0
    error: BaseException | None = None

    @property
    def throughput_mbps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.size * 8 / 1_000_000) / self.duration_s


class SenderLink:
    """Owns the connection to one destination.

    ``send`` is not reentrant: callers run at most one send per link at a time
    (the fan-out dispatcher gives every link its own worker).
    """

    def __init__(
        self,
        destination: Destination,
        backoff_s: float = DEFAULT_BACKOFF_MS / 1000.0,
        connect_timeout_s: float | None = DEFAULT_CONNECT_TIMEOUT_MS / 1000.0,
        max_connect_attempts: int | None = None,
        io_timeout_s: float | None = DEFAULT_IO_TIMEOUT_MS / 1000.0,
        impairment: Impairment | None = None,
    ):
        self.destination = destination
        self.backoff_s = backoff_s
        self.connect_timeout_s = connect_timeout_s
        self.max_connect_attempts = max_connect_attempts
        self.io_timeout_s = io_timeout_s
        self.impairment = impairment or Impairment()
        self.connections = 0
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        """Connect, retrying every ``backoff_s`` until it works.

        Retries forever unless ``max_connect_attempts`` is set.
        """
        dest = self.destination
        attempt = 0
        while True:
            attempt += 1
            try:
                self._reader, self._writer = await open_stream(dest.host, dest.port, self.connect_timeout_s)
            except (OSError, asyncio.TimeoutError) as exc:
                if self.max_connect_attempts is not None and attempt >= self.max_connect_attempts:
                    raise DestinationUnreachableError(
                        f"gave up after {attempt} connection attempts: {exc!r}",
                        dest.host,
                        dest.port,
                    ) from exc
                level = logging.WARNING if attempt == 1 else logging.DEBUG
                logger.log(level, "connect to %s failed (attempt %d): %r; retrying in %.3fs", dest, attempt, exc, self.backoff_s)
                await asyncio.sleep(self.backoff_s)
                continue

            self.connections += 1
            logger.info("connected to %s", dest)
            return

    async def close(self) -> None:
        writer, self._writer, self._reader = self._writer, None, None
        if writer is not None:
            await close_stream(writer)

    async def send(self, path: str | Path, name: str) -> DeliveryResult:
        """Deliver one file, retrying once on a broken link or a NACK."""
        start = time.monotonic()
        try:
            size = await self._attempt(path, name)
        except DestinationUnreachableError:
            raise
        except (LinkError, DeliveryRejectedError) as exc:
            logger.warning("send of %s to %s failed: %s; retrying once", name, self.destination, exc)
        else:
            return self._delivered(name, size, 1, start)

        size = await self._attempt(path, name)
        return self._delivered(name, size, 2, start)

    def _delivered(self, name: str, size: int, attempts: int, start: float) -> DeliveryResult:
        return DeliveryResult(
            destination=self.destination,
            name=name,
            ok=True,
            size=size,
            attempts=attempts,
            duration_s=time.monotonic() - start,
        )

    async def _read_source(self, path: str | Path) -> bytes:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, Path(path).read_bytes)
        except OSError as exc:
            raise SourceFileError(f"cannot read {path}: {exc}") from exc

    async def _attempt(self, path: str | Path, name: str) -> int:
        # re-read and re-hash on every attempt; the file may have changed
        payload = await self._read_source(path)
        header, payload = encode(name, payload)

        if not self.connected:
            await self.connect()
        assert self._reader is not None and self._writer is not None

        try:
            await self.impairment.sleep_if_needed()
            self._writer.write(header)
            self._writer.write(self.impairment.apply(payload))
            await self._writer.drain()
            reply = await asyncio.wait_for(self._reader.readexactly(1), timeout=self.io_timeout_s)
        except (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError) as exc:
            await self.close()
            raise LinkError(
                f"connection broke while sending {name}: {exc!r}",
                self.destination.host,
                self.destination.port,
            ) from exc

        if reply[0] != ACK:
            raise DeliveryRejectedError(name, reply[0])

        logger.info("delivered %s to %s (%d bytes)", name, self.destination, len(payload))
        return len(payload)

