"""The user-facing tube and its factories."""

from __future__ import annotations

import os
import re
import socket
import ssl as _ssl
import subprocess
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .context import context
from .engine import ReceiveEngine, ReceiveMode
from .errors import TransportError, TubeEOF, TubeError, TubeTimeout
from .log import _log, _stage, log_recv, log_send, preview, tap_write
from .transport import Direction, MemoryTransport, ProcessTransport, SocketTransport, TLSSocketTransport, Transport


_ByteLike = Union[bytes, bytearray, memoryview]
_Data = Union[str, _ByteLike]
_Items = Union[_Data, Iterable[_Data]]
_Regex = Union[str, bytes, "re.Pattern[bytes]"]


def _ensure_bytes(data: _Data) -> bytes:
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    if isinstance(data, str):
        return data.encode(context.encoding)
    raise TypeError(f"Unsupported type {type(data)!r}")


def _ensure_items(items: _Items) -> List[bytes]:
    if isinstance(items, (str, bytes, bytearray, memoryview)):
        return [_ensure_bytes(items)]
    return [_ensure_bytes(i) for i in items]


def _compile(regex: _Regex) -> "re.Pattern[bytes]":
    if isinstance(regex, (str, bytes)):
        return re.compile(_ensure_bytes(regex))
    if isinstance(regex.pattern, str):
        raise TypeError("regex must be a bytes pattern")
    return regex


def _earliest_match(data: bytearray, delims: Sequence[bytes], start: int) -> Optional[Tuple[int, bytes]]:
    # shortest prefix ending in a delimiter; ties go to the first listed
    best: Optional[Tuple[int, bytes]] = None
    for delim in delims:
        idx = data.find(delim, start)
        if idx == -1:
            continue
        end = idx + len(delim)
        if best is None or end < best[0]:
            best = (end, delim)
    return best


class Tube:
    """Buffered, timeout-aware bidirectional byte stream.

    Timeouts are seconds: negative waits forever, zero makes a single
    non-blocking attempt, ``None`` means "use :attr:`timeout`". Failed
    receives raise a :class:`~tubekit.errors.TubeError` whose ``data``
    holds whatever was gathered before the failure.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        timeout: Optional[float] = None,
        newline: Optional[_Data] = None,
        keep_line_ending: Optional[bool] = None,
    ) -> None:
        self.transport = transport
        self.timeout = context.timeout if timeout is None else timeout
        self.newline = _ensure_bytes(context.newline if newline is None else newline)
        self.keep_line_ending = context.keep_line_ending if keep_line_ending is None else keep_line_ending
        self.buffer_size = int(context.buffer_size)
        self._engine = ReceiveEngine(transport, on_data=self._on_recv)
        self._closed = False
        # metrics
        now = time.monotonic()
        self._created_at = now
        self._last_send_at: Optional[float] = None
        self._last_recv_at: Optional[float] = None
        self._bytes_sent = 0
        self._bytes_recv = 0
        # optional per-tube wiretap sink (binary file-like with write())
        self._tap: Any = None
        self._tap_owned = False
        if context.wiretap:
            self.wiretap(context.wiretap)

    # -- context helpers ----------------------------------------------
    def __enter__(self) -> "Tube":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<{type(self).__name__} {self.transport.describe()} {state}>"

    # -- state ---------------------------------------------------------
    @property
    def closed(self) -> bool:
        return self._closed

    def settimeout(self, timeout: Optional[float]) -> None:
        self.timeout = context.timeout if timeout is None else timeout

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._engine.close()
        try:
            self.transport.close()
        except OSError as exc:
            _log("warning", f"Error while closing {self.transport.describe()}: {exc}")
        if self._tap is not None and self._tap_owned:
            try:
                self._tap.close()
            except OSError as exc:
                _log("warning", f"Error while closing wiretap: {exc}")
        self._tap = None
        _log("info", f"Closed {self.transport.describe()}")

    def shutdown(self, direction: Union[Direction, int, str] = Direction.BOTH) -> None:
        """Close one or both directions of the tube.

        direction: Direction.RECV | Direction.SEND | Direction.BOTH (or 'recv' | 'send' | 'both').
        Transports that cannot half-close ignore the request.
        """
        d = Direction.coerce(direction)
        if self._closed:
            raise TransportError("Tube is closed")
        if not self.transport.half_close:
            _log("debug", f"{self.transport.describe()} cannot half-close; shutdown({d.name.lower()}) ignored")
            return
        try:
            self.transport.shutdown(d)
        except OSError as exc:
            raise TransportError(f"shutdown failed: {exc}") from exc
        _log("info", f"Shut down {d.name.lower()} side of {self.transport.describe()}")

    def cancel(self) -> int:
        """Abort every receive currently in flight on this tube."""
        return self._engine.cancel()

    # -- helpers -------------------------------------------------------
    def _effective_timeout(self, timeout: Optional[float]) -> float:
        if timeout is None:
            return self.timeout
        return timeout

    def _deadline(self, timeout: Optional[float]) -> Optional[float]:
        eff_timeout = self._effective_timeout(timeout)
        return None if eff_timeout < 0 else time.monotonic() + eff_timeout

    @staticmethod
    def _remaining(end_at: Optional[float], first: bool) -> float:
        # one attempt is always allowed, even with a zero timeout
        if end_at is None:
            return -1.0
        remaining = end_at - time.monotonic()
        if remaining > 0:
            return remaining
        if first:
            return 0.0
        raise TubeTimeout("timed out")

    def _on_recv(self, chunk: bytes) -> None:
        self._bytes_recv += len(chunk)
        self._last_recv_at = time.monotonic()
        log_recv(chunk)
        if self._tap is not None:
            tap_write(self._tap, b"< ", chunk)

    # -- receive -------------------------------------------------------
    def recv(self, numb: int = 4096, timeout: Optional[float] = None) -> bytes:
        """Receive up to ``numb`` bytes, returning as soon as any are available."""
        if numb < 0:
            raise ValueError("numb must not be negative")
        return self._engine.recv(numb, self._effective_timeout(timeout), ReceiveMode.CONSUME)

    def peek(self, numb: int = 4096, timeout: Optional[float] = None) -> bytes:
        """Like :meth:`recv` but leaves the bytes for the next receive."""
        if numb < 0:
            raise ValueError("numb must not be negative")
        return self._engine.recv(numb, self._effective_timeout(timeout), ReceiveMode.PEEK)

    def can_recv(self, timeout: Optional[float] = None) -> bool:
        try:
            self._engine.recv(1, self._effective_timeout(timeout), ReceiveMode.PEEK)
        except TubeError:
            return False
        return True

    def unrecv(self, data: _Data) -> None:
        """Put ``data`` back so that the next receive returns it first."""
        chunk = _ensure_bytes(data)
        self._engine.unread(chunk)
        _log("debug", f"Unreceived {len(chunk)} bytes")

    def recvn(self, numb: int, timeout: Optional[float] = None) -> bytes:
        """Receive exactly ``numb`` bytes."""
        if numb < 0:
            raise ValueError("numb must not be negative")
        data = bytearray()
        end_at = self._deadline(timeout)
        first = True
        try:
            while len(data) < numb:
                data += self._engine.recv(numb - len(data), self._remaining(end_at, first))
                first = False
        except TubeError as exc:
            exc.data = bytes(data)
            raise
        return bytes(data)

    def recvall(self) -> bytes:
        """Receive until the stream ends, ignoring the timeout."""
        data = bytearray()
        try:
            while True:
                data += self._engine.recv(self.buffer_size, -1.0)
        except TubeEOF:
            return bytes(data)
        except TubeError as exc:
            exc.data = bytes(data)
            raise

    def recvrepeat(self, timeout: Optional[float] = None) -> bytes:
        """Receive everything that arrives until the timeout elapses or the stream ends."""
        eff_timeout = self._effective_timeout(timeout)
        if eff_timeout < 0:
            return self.recvall()
        data = bytearray()
        end_at = time.monotonic() + eff_timeout
        first = True
        try:
            while True:
                data += self._engine.recv(self.buffer_size, self._remaining(end_at, first))
                first = False
        except (TubeTimeout, TubeEOF):
            return bytes(data)
        except TubeError as exc:
            exc.data = bytes(data)
            raise

    def clean(self, timeout: Optional[float] = None) -> bytes:
        """Flush pending output (banners, prompts) and return what was dropped."""
        try:
            data = self.recvrepeat(timeout)
        except TubeError as exc:
            data = exc.data
        if data:
            _log("debug", f"Cleaned {len(data)} bytes: {preview(data)}")
        return data

    def recvuntil(
        self,
        delims: _Items,
        drop: bool = False,
        timeout: Optional[float] = None,
    ) -> bytes:
        """Receive up to and including the first delimiter.

        ``delims`` is one delimiter or a list of them. Bytes after the match
        stay buffered; with ``drop`` the delimiter is removed from the result.

        With several delimiters the shortest prefix ending in any of them is
        returned, ties going to the one listed first. For multi-byte
        delimiters this can differ from the leftmost occurrence:
        ``recvuntil([b"abc", b"b"])`` over ``abc`` yields ``ab``.
        """
        targets = _ensure_items(delims)
        if not targets or any(len(t) == 0 for t in targets):
            raise ValueError("Delimiter must not be empty")
        longest = max(len(t) for t in targets)

        data = bytearray()
        end_at = self._deadline(timeout)
        first = True
        try:
            while True:
                chunk = self._engine.recv(self.buffer_size, self._remaining(end_at, first), ReceiveMode.PEEK)
                first = False
                base = len(data)
                data += chunk
                match = _earliest_match(data, targets, max(0, base - longest + 1))
                if match is None:
                    self._engine.consume(len(chunk))
                    continue
                end, delim = match
                self._engine.consume(end - base)
                del data[end:]
                if drop:
                    del data[-len(delim):]
                return bytes(data)
        except TubeError as exc:
            exc.data = bytes(data)
            raise

    def recvline(self, keepends: Optional[bool] = None, timeout: Optional[float] = None) -> bytes:
        """Receive one ``\\n``-terminated line.

        Without ``keepends`` (default: :attr:`keep_line_ending`) the ``\\n``
        and a preceding ``\\r`` are stripped.
        """
        keep = self.keep_line_ending if keepends is None else keepends
        line = self.recvuntil(b"\n", drop=not keep, timeout=timeout)
        if not keep and line.endswith(b"\r"):
            line = line[:-1]
        return line

    def recvpred(self, pred: Callable[[bytes], bool], timeout: Optional[float] = None) -> bytes:
        """Receive one byte at a time until ``pred(received)`` holds."""
        data = bytearray()
        end_at = self._deadline(timeout)
        first = True
        try:
            while True:
                data += self._engine.recv(1, self._remaining(end_at, first))
                first = False
                if pred(bytes(data)):
                    return bytes(data)
        except TubeError as exc:
            exc.data = bytes(data)
            raise

    def recvregex(self, regex: _Regex, exact: bool = False, timeout: Optional[float] = None) -> bytes:
        """Receive until ``regex`` matches the received bytes.

        ``exact`` requires the whole input to match; otherwise any match
        counts. Once matched, bytes that are already available and extend
        the match are taken as well, so ``rb"DATA-\\d+"`` yields the full
        number.
        """
        pattern = _compile(regex)
        matcher = pattern.fullmatch if exact else pattern.search
        data = self.recvpred(lambda acc: matcher(acc) is not None, timeout=timeout)

        def extends(longer: bytes) -> bool:
            m = matcher(longer)
            return m is not None and m.end() == len(longer)

        while True:
            try:
                nxt = self._engine.recv(1, 0.0, ReceiveMode.PEEK)
            except TubeError:
                break
            if not extends(data + nxt):
                break
            self._engine.consume(1)
            data += nxt
        return data

    # -- line helpers --------------------------------------------------
    def recvline_pred(
        self,
        pred: Callable[[bytes], bool],
        keepends: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> bytes:
        """Receive lines until one satisfies ``pred`` and return that line."""
        end_at = self._deadline(timeout)
        first = True
        while True:
            try:
                line = self.recvline(keepends=keepends, timeout=self._remaining(end_at, first))
            except TubeEOF as exc:
                # an unterminated last line still counts
                if exc.data and pred(exc.data):
                    return exc.data
                raise
            first = False
            if pred(line):
                return line

    def recvline_contains(self, items: _Items, keepends: Optional[bool] = None, timeout: Optional[float] = None) -> bytes:
        needles = _ensure_items(items)
        return self.recvline_pred(lambda line: any(n in line for n in needles), keepends, timeout)

    def recvline_startswith(self, items: _Items, keepends: Optional[bool] = None, timeout: Optional[float] = None) -> bytes:
        prefixes = tuple(_ensure_items(items))
        return self.recvline_pred(lambda line: line.startswith(prefixes), keepends, timeout)

    def recvline_endswith(self, items: _Items, keepends: Optional[bool] = None, timeout: Optional[float] = None) -> bytes:
        suffixes = tuple(_ensure_items(items))
        return self.recvline_pred(lambda line: line.endswith(suffixes), keepends, timeout)

    def recvline_regex(
        self,
        regex: _Regex,
        exact: bool = False,
        keepends: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> bytes:
        pattern = _compile(regex)
        matcher = pattern.fullmatch if exact else pattern.search
        return self.recvline_pred(lambda line: matcher(line) is not None, keepends, timeout)

    def recvlines(self, numlines: int, keepends: Optional[bool] = None, timeout: Optional[float] = None) -> List[bytes]:
        """Receive ``numlines`` lines.

        On failure the raised error carries the complete lines (plus a
        non-empty partial one) in ``lines``.
        """
        if numlines < 0:
            raise ValueError("numlines must not be negative")
        lines: List[bytes] = []
        end_at = self._deadline(timeout)
        try:
            for i in range(numlines):
                lines.append(self.recvline(keepends=keepends, timeout=self._remaining(end_at, i == 0)))
        except TubeError as exc:
            if exc.data:
                lines.append(exc.data)
            exc.lines = lines
            raise
        return lines

    # -- send ----------------------------------------------------------
    def send(self, data: _Data) -> int:
        payload = _ensure_bytes(data)
        if self._closed:
            raise TransportError("Tube is closed")
        try:
            written = self.transport.write(payload)
        except TubeError:
            raise
        except OSError as exc:
            raise TransportError(f"write failed: {exc}") from exc
        self._bytes_sent += written
        self._last_send_at = time.monotonic()
        log_send(payload)
        if self._tap is not None:
            tap_write(self._tap, b"> ", payload)
        return written

    def sendline(self, data: _Data) -> int:
        return self.send(_ensure_bytes(data) + self.newline)

    def sendafter(self, delims: _Items, data: _Data, timeout: Optional[float] = None) -> int:
        """Wait for a delimiter, then send. The received bytes are dropped."""
        self.recvuntil(delims, timeout=timeout)
        return self.send(data)

    def sendlineafter(self, delims: _Items, data: _Data, timeout: Optional[float] = None) -> int:
        self.recvuntil(delims, timeout=timeout)
        return self.sendline(data)

    def sendthen(self, delims: _Items, data: _Data, timeout: Optional[float] = None) -> int:
        """Send, then wait for a delimiter. The received bytes are dropped."""
        written = self.send(data)
        self.recvuntil(delims, timeout=timeout)
        return written

    def sendlinethen(self, delims: _Items, data: _Data, timeout: Optional[float] = None) -> int:
        written = self.sendline(data)
        self.recvuntil(delims, timeout=timeout)
        return written

    # -- observability helpers ---------------------------------------
    def stats(self) -> Dict[str, Any]:
        return {
            "bytes_sent": self._bytes_sent,
            "bytes_recv": self._bytes_recv,
            "buffered": self._engine.buffered(),
            "created_at": self._created_at,
            "last_send_at": self._last_send_at,
            "last_recv_at": self._last_recv_at,
            "closed": self._closed,
        }

    def wiretap(self, sink: Union[str, os.PathLike, Any]) -> None:
        """Mirror raw IO to a sink (file path or binary file-like)."""
        if self._tap is not None and self._tap_owned:
            self._tap.close()
        if isinstance(sink, (str, bytes, os.PathLike)):
            self._tap = open(sink, "ab")
            self._tap_owned = True
        else:
            self._tap = sink
            self._tap_owned = False


# -- factories ---------------------------------------------------------
def from_transport(transport: Transport, timeout: Optional[float] = None, **kwargs: Any) -> Tube:
    return Tube(transport, timeout=timeout, **kwargs)


def from_socket(sock: socket.socket, timeout: Optional[float] = None, **kwargs: Any) -> Tube:
    """Wrap a connected stream socket (plain or TLS)."""
    if isinstance(sock, _ssl.SSLSocket):
        transport: SocketTransport = TLSSocketTransport(sock)
    else:
        transport = SocketTransport(sock)
    tube = Tube(transport, timeout=timeout, **kwargs)
    _stage("[+]", f"Opened {'TLS ' if isinstance(transport, TLSSocketTransport) else ''}connection to {transport.describe()}")
    return tube


def from_popen(proc: subprocess.Popen, timeout: Optional[float] = None, **kwargs: Any) -> Tube:
    """Wrap a running child started with ``stdin=PIPE, stdout=PIPE``."""
    return Tube(ProcessTransport(proc), timeout=timeout, **kwargs)


def spawn(
    argv: Union[str, Sequence[str]],
    *,
    timeout: Optional[float] = None,
    newline: Optional[_Data] = None,
    keep_line_ending: Optional[bool] = None,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    shell: Optional[bool] = None,
    **popen_kwargs: Any,
) -> Tube:
    """Start ``argv`` with stdout and stderr merged and wrap it."""
    argv_display = argv if isinstance(argv, str) else " ".join(map(str, argv))
    _stage("[x]", f"Starting local process '{argv_display}'")
    transport = ProcessTransport.spawn(argv, cwd=cwd, env=env, shell=shell, **popen_kwargs)
    _stage("[+]", f"Starting local process '{argv_display}' : pid {transport.pid}")
    return Tube(transport, timeout=timeout, newline=newline, keep_line_ending=keep_line_ending)


def from_bytes(data: _Data = b"", timeout: Optional[float] = None, **kwargs: Any) -> Tube:
    """In-memory tube: receives return ``data`` then report end of stream."""
    return Tube(MemoryTransport(_ensure_bytes(data)), timeout=timeout, **kwargs)
