from __future__ import annotations

NAME_LEN_FORMAT = "!H"
SIZE_FORMAT = "!Q"
CHECKSUM_LEN = 32
MAX_NAME_LEN = 0xFFFF
MAX_PAYLOAD_SIZE = 0xFFFF_FFFF_FFFF_FFFF

ACK = 0x01
NACK = 0x00

PART_SUFFIX = ".part"

DEFAULT_PORT = 5001
DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_BACKOFF_MS = 500
DEFAULT_CONNECT_TIMEOUT_MS = 5000
DEFAULT_IO_TIMEOUT_MS = 60_000
DEFAULT_SETTLE_MS = 1
