"""filerep: at-least-once file replication over TCP.

A sender watches a directory and pushes every newly written file to one or
more receivers; each receiver verifies the SHA-256 checksum of the payload
and publishes the file with an atomic rename.

- framing (frame.py) is kept apart from the two state machines
  (sender.py, receiver.py)
- fan-out (fanout.py) keeps destinations independent of each other
- directory watching (watch.py) reads one inotify instance from the event loop
"""

__all__ = [
    "Destination",
    "DirectoryWatcher",
    "FanoutDispatcher",
    "ReceiverServer",
    "SenderLink",
    "WatchLoop",
]

__version__ = "0.1.0"

from .config import Destination
from .fanout import FanoutDispatcher
from .receiver import ReceiverServer
from .sender import SenderLink
from .watch import DirectoryWatcher, WatchLoop
