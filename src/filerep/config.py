from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .constants import (
    DEFAULT_BACKOFF_MS,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_IO_TIMEOUT_MS,
    DEFAULT_PORT,
    DEFAULT_SETTLE_MS,
)


@dataclass(frozen=True, slots=True)
class Destination:
    host: str
    port: int

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("destination host must not be empty")
        if not 0 < self.port <= 0xFFFF:
            raise ValueError(f"destination port out of range: {self.port}")

    @staticmethod
    def parse(text: str, default_port: int = DEFAULT_PORT) -> "Destination":
        """Parse ``host:port``, ``[v6addr]:port`` or a bare host."""
        text = text.strip()
        if text.startswith("["):
            host, sep, rest = text[1:].partition("]")
            if not sep:
                raise ValueError(f"unterminated IPv6 address: {text!r}")
            if not rest:
                return Destination(host, default_port)
            if not rest.startswith(":"):
                raise ValueError(f"bad destination: {text!r}")
            port_text = rest[1:]
        elif text.count(":") == 1:
            host, _, port_text = text.partition(":")
        elif ":" in text:
            raise ValueError(f"IPv6 destinations need brackets: {text!r}")
        else:
            return Destination(text, default_port)

        try:
            port = int(port_text)
        except ValueError:
            raise ValueError(f"bad port in destination {text!r}") from None
        return Destination(host, port)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class ReceiverSettings:
    dest_dir: Path
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    chunk_size: int = DEFAULT_CHUNK_SIZE


@dataclass(frozen=True, slots=True)
class SenderSettings:
    watch_dir: Path
    destinations: tuple[Destination, ...] = field(default_factory=tuple)
    backoff_s: float = DEFAULT_BACKOFF_MS / 1000.0
    connect_timeout_s: float | None = DEFAULT_CONNECT_TIMEOUT_MS / 1000.0
    max_connect_attempts: int | None = None
    io_timeout_s: float | None = DEFAULT_IO_TIMEOUT_MS / 1000.0
    settle_s: float = DEFAULT_SETTLE_MS / 1000.0

    def __post_init__(self) -> None:
        if not self.destinations:
            raise ValueError("at least one destination is required")
        if len(set(self.destinations)) != len(self.destinations):
            raise ValueError("duplicate destinations")
