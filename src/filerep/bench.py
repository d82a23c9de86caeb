from __future__ import annotations

import asyncio
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .config import Destination
from .constants import DEFAULT_CHUNK_SIZE
from .errors import ReplicationError
from .net import Impairment
from .receiver import ReceiverServer
from .sender import SenderLink

BENCH_NAME = "bench/payload.bin"


@dataclass(frozen=True, slots=True)
class BenchmarkResult:
    bytes_transferred: int
    duration_s: float
    throughput_mbps: float
    attempts: int
    published: bool
    error: str | None = None


def run_benchmark(
    *,
    size_bytes: int,
    corrupt_rate: float = 0.0,
    delay_ms: int = 0,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> BenchmarkResult:
    """Send one random file of ``size_bytes`` over loopback and check what got published."""
    return asyncio.run(
        _run(
            size_bytes=size_bytes,
            impairment=Impairment(corrupt_rate=corrupt_rate, delay_ms=delay_ms),
            chunk_size=chunk_size,
        )
    )


async def _run(*, size_bytes: int, impairment: Impairment, chunk_size: int) -> BenchmarkResult:
    payload = os.urandom(size_bytes)
    with tempfile.TemporaryDirectory(prefix="filerep-bench-") as tmp:
        src = Path(tmp) / "payload.bin"
        src.write_bytes(payload)
        dest_dir = Path(tmp) / "dest"

        error: ReplicationError | None = None
        attempts = 0
        duration_s = 0.0
        async with ReceiverServer(dest_dir, host="127.0.0.1", port=0, chunk_size=chunk_size) as server:
            link = SenderLink(
                Destination("127.0.0.1", server.port),
                max_connect_attempts=3,
                impairment=impairment,
            )
            try:
                result = await link.send(src, BENCH_NAME)
                attempts = result.attempts
                duration_s = result.duration_s
            except ReplicationError as exc:
                error = exc
            finally:
                await link.close()

        published_path = dest_dir / BENCH_NAME
        published = published_path.is_file() and published_path.read_bytes() == payload

    duration_s = max(0.001, duration_s)
    return BenchmarkResult(
        bytes_transferred=size_bytes if error is None else 0,
        duration_s=duration_s,
        throughput_mbps=(size_bytes * 8 / 1_000_000) / duration_s if error is None else 0.0,
        attempts=attempts,
        published=published,
        error=str(error) if error is not None else None,
    )
