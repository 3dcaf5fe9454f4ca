"""Pushback buffer sitting between a tube and its transport."""

from __future__ import annotations

from typing import Optional


class PushbackBuffer:
    """Bytes that can be handed out without touching the transport.

    The buffer only ever holds bytes that were pushed back with
    :meth:`unread`, left behind by a peek, or salvaged from a read that
    completed after its caller gave up. It is owned by a single
    :class:`~tubekit.engine.ReceiveEngine` and mutated only while the
    engine's receive permit is held, so it does no locking of its own.
    """

    def __init__(self, data: bytes = b"") -> None:
        self._data = bytearray(data)

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return bool(self._data)

    def __repr__(self) -> str:
        return f"PushbackBuffer({bytes(self._data)!r})"

    def size(self) -> int:
        return len(self._data)

    def unread(self, data: bytes) -> None:
        """Place ``data`` in front of everything already buffered.

        Successive calls stack: after ``unread(a); unread(b)`` the buffer
        starts with ``b + a``.
        """
        self._data[:0] = data

    def peek(self, numb: Optional[int] = None) -> bytes:
        if numb is None:
            return bytes(self._data)
        return bytes(self._data[: max(0, numb)])

    def consume(self, numb: int) -> None:
        if numb < 0 or numb > len(self._data):
            raise ValueError(f"cannot consume {numb} bytes from a buffer of {len(self._data)}")
        del self._data[:numb]

    def take(self, numb: int) -> bytes:
        data = self.peek(numb)
        del self._data[: len(data)]
        return data

    def clear(self) -> None:
        self._data.clear()
