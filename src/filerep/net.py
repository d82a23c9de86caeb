from __future__ import annotations

import asyncio
import contextlib
import random
import socket
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Impairment:
    """Simulated link faults: payload corruption and per-frame send delay."""

    corrupt_rate: float = 0.0
    delay_ms: int = 0

    def should_corrupt(self) -> bool:
        return self.corrupt_rate > 0 and random.random() < self.corrupt_rate

    def apply(self, payload: bytes) -> bytes:
        if not payload or not self.should_corrupt():
            return payload
        damaged = bytearray(payload)
        damaged[random.randrange(len(damaged))] ^= 0xFF
        return bytes(damaged)

    async def sleep_if_needed(self) -> None:
        if self.delay_ms > 0:
            await asyncio.sleep(self.delay_ms / 1000.0)


def set_nodelay(writer: asyncio.StreamWriter) -> None:
    sock = writer.get_extra_info("socket")
    if sock is not None and sock.family in (socket.AF_INET, socket.AF_INET6):
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)


async def open_stream(
    host: str,
    port: int,
    timeout_s: float | None = None,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout_s)
    set_nodelay(writer)
    return reader, writer


async def close_stream(writer: asyncio.StreamWriter) -> None:
    writer.close()
    # the peer may already have reset the connection
    with contextlib.suppress(OSError):
        await writer.wait_closed()
