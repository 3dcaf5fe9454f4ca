"""Buffered, timeout-aware tubes over sockets, processes and in-memory streams.

    >>> from tubekit import from_bytes
    >>> io = from_bytes(b"Wow, such data")
    >>> io.recvuntil(b",", drop=True)
    b'Wow'
    >>> io.recvn(5)
    b' such'
"""

from .buffer import PushbackBuffer
from .context import args, context
from .engine import ReceiveEngine, ReceiveMode
from .errors import TransportError, TubeCancelled, TubeEOF, TubeError, TubeTimeout
from .transport import Direction, MemoryTransport, ProcessTransport, SocketTransport, TLSSocketTransport, Transport
from .tube import Tube, from_bytes, from_popen, from_socket, from_transport, spawn

__all__ = [
    "args",
    "context",
    "Direction",
    "from_bytes",
    "from_popen",
    "from_socket",
    "from_transport",
    "MemoryTransport",
    "ProcessTransport",
    "PushbackBuffer",
    "ReceiveEngine",
    "ReceiveMode",
    "SocketTransport",
    "spawn",
    "TLSSocketTransport",
    "Transport",
    "TransportError",
    "Tube",
    "TubeCancelled",
    "TubeEOF",
    "TubeError",
    "TubeTimeout",
]

__version__ = "0.1.0"
