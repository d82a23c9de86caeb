from __future__ import annotations


class ReplicationError(Exception):
    """Base class for every error raised by filerep."""


class FrameError(ReplicationError, ValueError):
    """The byte stream does not hold a valid frame; the connection is unusable."""


class IncompleteFrameError(FrameError):
    def __init__(self, field: str, expected: int, received: int):
        self.field = field
        self.expected = expected
        self.received = received
        super().__init__(f"stream closed while reading {field}: expected {expected} bytes, got {received}")


class IntegrityError(ReplicationError):
    def __init__(self, name: str, expected: bytes, actual: bytes):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(f"checksum mismatch for {name}: expected {expected.hex()}, got {actual.hex()}")


class PathSafetyError(ReplicationError, ValueError):
    """A frame name would resolve outside the destination root."""


class LinkError(ReplicationError):
    """The connection to a destination failed or broke mid-transfer."""

    def __init__(self, message: str, host: str | None = None, port: int | None = None):
        self.host = host
        self.port = port
        super().__init__(message)

    def __str__(self) -> str:
        if self.host is not None and self.port is not None:
            return f"{self.args[0]} (host={self.host}, port={self.port})"
        return str(self.args[0])


class DestinationUnreachableError(LinkError):
    pass


class DeliveryRejectedError(ReplicationError):
    """The receiver answered NACK for a frame."""

    def __init__(self, name: str, reply: int):
        self.name = name
        self.reply = reply
        super().__init__(f"destination rejected {name} (reply=0x{reply:02x})")


class SourceFileError(ReplicationError):
    pass
