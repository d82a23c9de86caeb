"""Wire framing for file transfers.

A frame is ``name_len (u16) | name (UTF-8) | size (u64) | checksum (32B) | payload``,
all integers big-endian, no padding and no end marker. The receiver answers
each frame with a single ACK or NACK byte.
"""
from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass

from .constants import CHECKSUM_LEN, MAX_NAME_LEN, MAX_PAYLOAD_SIZE, NAME_LEN_FORMAT, SIZE_FORMAT
from .digest import digest_bytes
from .errors import FrameError, IncompleteFrameError

_NAME_LEN = struct.Struct(NAME_LEN_FORMAT)
_SIZE = struct.Struct(SIZE_FORMAT)


def _encode_name(name: str) -> bytes:
    if not name:
        raise FrameError("frame name must not be empty")
    raw = name.encode("utf-8")
    if len(raw) > MAX_NAME_LEN:
        raise FrameError(f"name too long: {len(raw)} bytes (max {MAX_NAME_LEN})")
    return raw


def _decode_name(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FrameError(f"frame name is not valid UTF-8: {exc}") from None


@dataclass(frozen=True, slots=True)
class FrameHeader:
    name: str
    size: int
    checksum: bytes

    def to_bytes(self) -> bytes:
        name_bytes = _encode_name(self.name)
        if not 0 <= self.size <= MAX_PAYLOAD_SIZE:
            raise FrameError(f"payload size out of range: {self.size}")
        if len(self.checksum) != CHECKSUM_LEN:
            raise FrameError(f"checksum must be {CHECKSUM_LEN} bytes, got {len(self.checksum)}")
        return _NAME_LEN.pack(len(name_bytes)) + name_bytes + _SIZE.pack(self.size) + self.checksum

    @staticmethod
    def for_payload(name: str, payload: bytes) -> "FrameHeader":
        return FrameHeader(name=name, size=len(payload), checksum=digest_bytes(payload))


def encode(name: str, payload: bytes) -> tuple[bytes, bytes]:
    """Return ``(header_bytes, payload_bytes)``; the header includes the checksum."""
    return FrameHeader.for_payload(name, payload).to_bytes(), payload


def decode_header(raw: bytes) -> tuple[int, str, int]:
    """Decode ``name_len | name | size`` (without the checksum) into its fields."""
    if len(raw) < _NAME_LEN.size:
        raise IncompleteFrameError("name_len", _NAME_LEN.size, len(raw))
    (name_len,) = _NAME_LEN.unpack_from(raw)
    name_end = _NAME_LEN.size + name_len
    end = name_end + _SIZE.size
    if len(raw) < end:
        raise IncompleteFrameError("header", end, len(raw))
    if len(raw) > end:
        raise FrameError(f"{len(raw) - end} unexpected bytes after header")
    name = _decode_name(raw[_NAME_LEN.size:name_end])
    (size,) = _SIZE.unpack_from(raw, name_end)
    return name_len, name, size


async def read_field(reader: asyncio.StreamReader, n: int, field: str) -> bytes:
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as exc:
        raise IncompleteFrameError(field, n, len(exc.partial)) from None


async def read_header(reader: asyncio.StreamReader) -> FrameHeader | None:
    """Read one header and checksum off the stream.

    Returns None when the peer closed the stream cleanly between frames.
    """
    try:
        prefix = await reader.readexactly(_NAME_LEN.size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise IncompleteFrameError("name_len", _NAME_LEN.size, len(exc.partial)) from None

    (name_len,) = _NAME_LEN.unpack(prefix)
    rest = await read_field(reader, name_len + _SIZE.size, "header")
    _, name, size = decode_header(prefix + rest)
    checksum = await read_field(reader, CHECKSUM_LEN, "checksum")
    return FrameHeader(name=name, size=size, checksum=checksum)
