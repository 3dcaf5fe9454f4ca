"""Receive error taxonomy.

Every receive error carries the bytes gathered before the failure in
``data`` so callers can inspect what arrived.
"""

from __future__ import annotations

from typing import List, Optional


class TubeError(Exception):
    """Base class for receive and transport failures of a tube."""

    def __init__(self, message: str = "", data: bytes = b"") -> None:
        super().__init__(message)
        self.data = data
        self.lines: Optional[List[bytes]] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, data={self.data!r})"


class TubeTimeout(TubeError, TimeoutError):
    """The deadline elapsed before the receive could be satisfied."""


class TubeEOF(TubeError, EOFError):
    """The transport reported end-of-stream and nothing is buffered."""


class TransportError(TubeError, OSError):
    """The underlying read, write or close failed, or the tube is closed."""


class TubeCancelled(TubeError):
    """The receive was aborted by :meth:`tubekit.tube.Tube.cancel`."""
