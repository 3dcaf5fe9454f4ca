"""Byte-stream endpoints a tube can drive.

Every variant exposes the same small capability set::

    read(numb) -> bytes        # b"" means end of stream
    write(data) -> int
    shutdown(direction)
    set_read_deadline(deadline)
    close()

and declares three fixed class-level capabilities: ``half_close`` (can one
direction be closed independently), ``native_deadline`` (does
``set_read_deadline`` bound a pending ``read``) and ``blocking`` (can
``read`` wait for data at all). The receive engine picks its strategy
from these flags, never from feature probing at call time.
"""

from __future__ import annotations

import enum
import os
import select
import socket
import ssl as _ssl
import subprocess
import threading
import time
from typing import Any, Dict, Optional, Sequence, Union

from .errors import TubeTimeout
from .log import _log


class Direction(enum.IntEnum):
    RECV = 0
    SEND = 1
    BOTH = 2

    @classmethod
    def coerce(cls, value: Union["Direction", int, str]) -> "Direction":
        if isinstance(value, str):
            name = value.lower()
            aliases = {"recv": cls.RECV, "read": cls.RECV, "send": cls.SEND, "write": cls.SEND, "both": cls.BOTH}
            if name not in aliases:
                raise ValueError("direction must be 'recv', 'send', or 'both'")
            return aliases[name]
        return cls(value)


class Transport:
    """Base class of all transports.

    Deadlines are absolute :func:`time.monotonic` values; ``None`` disables
    the deadline.
    """

    half_close = False
    native_deadline = False
    blocking = True

    def read(self, numb: int) -> bytes:
        raise NotImplementedError

    def write(self, data: bytes) -> int:
        raise NotImplementedError

    def shutdown(self, direction: Direction) -> None:
        """Close one half of the stream; a no-op without ``half_close``."""

    def set_read_deadline(self, deadline: Optional[float]) -> None:
        """Bound the next read; a no-op without ``native_deadline``."""

    def close(self) -> None:
        pass

    def describe(self) -> str:
        return type(self).__name__


class _SelectTransport(Transport):
    """Deadline-aware reads on a pollable file descriptor.

    A self-pipe is part of every ``select`` so that moving the deadline from
    another thread (which is how cancellation works) wakes a pending read.
    """

    native_deadline = True

    def __init__(self) -> None:
        self._deadline: Optional[float] = None
        self._wake_r, self._wake_w = os.pipe()
        os.set_blocking(self._wake_r, False)
        os.set_blocking(self._wake_w, False)
        self._closed = False
        self._read_closed = False
        self._reading = False

    # -- hooks ---------------------------------------------------------
    def _fileno(self) -> int:
        raise NotImplementedError

    def _recv_raw(self, numb: int) -> bytes:
        raise NotImplementedError

    def _pending(self) -> bool:
        # bytes already decoded in user space (TLS) are invisible to select
        return False

    # -- deadline ------------------------------------------------------
    def set_read_deadline(self, deadline: Optional[float]) -> None:
        self._deadline = deadline
        if not self._reading:
            return
        try:
            os.write(self._wake_w, b"\0")
        except OSError:
            # full pipe means a wakeup is already queued; closed pipe means nobody waits
            pass

    def _drain_wakeups(self) -> None:
        try:
            while os.read(self._wake_r, 512):
                pass
        except OSError:
            pass

    def read(self, numb: int) -> bytes:
        self._reading = True
        try:
            return self._read(numb)
        finally:
            self._reading = False

    def _read(self, numb: int) -> bytes:
        while True:
            if self._read_closed or self._closed:
                return b""
            if self._pending():
                return self._recv_raw(numb)
            deadline = self._deadline
            wait = None if deadline is None else max(0.0, deadline - time.monotonic())
            fd = self._fileno()
            try:
                ready, _, _ = select.select([fd, self._wake_r], [], [], wait)
            except (OSError, ValueError):
                # the read half was closed underneath us
                if self._read_closed or self._closed:
                    return b""
                raise
            if self._wake_r in ready:
                self._drain_wakeups()
            if fd in ready:
                try:
                    return self._recv_raw(numb)
                except (BlockingIOError, _ssl.SSLWantReadError, _ssl.SSLWantWriteError):
                    continue
            if not ready:
                raise TubeTimeout("read deadline exceeded")

    def _close_wake_pipe(self) -> None:
        for fd in (self._wake_r, self._wake_w):
            try:
                os.close(fd)
            except OSError:
                pass


class SocketTransport(_SelectTransport):
    """Connected stream socket with native half-close."""

    half_close = True

    def __init__(self, sock: socket.socket) -> None:
        super().__init__()
        self.sock = sock
        self.sock.setblocking(False)
        try:
            self.peer = sock.getpeername()
        except OSError:
            self.peer = None

    def describe(self) -> str:
        if isinstance(self.peer, tuple) and len(self.peer) >= 2:
            return f"{self.peer[0]}:{self.peer[1]}"
        return str(self.peer or "socket")

    def _fileno(self) -> int:
        return self.sock.fileno()

    def _recv_raw(self, numb: int) -> bytes:
        return self.sock.recv(numb)

    def write(self, data: bytes) -> int:
        view = memoryview(data)
        total = 0
        while total < len(data):
            try:
                sent = self.sock.send(view[total:])
            except (BlockingIOError, _ssl.SSLWantReadError, _ssl.SSLWantWriteError):
                select.select([], [self.sock], [], None)
                continue
            if sent == 0:
                raise ConnectionError("Remote closed the connection")
            total += sent
        return total

    def shutdown(self, direction: Direction) -> None:
        how = {
            Direction.RECV: socket.SHUT_RD,
            Direction.SEND: socket.SHUT_WR,
            Direction.BOTH: socket.SHUT_RDWR,
        }[direction]
        try:
            self.sock.shutdown(how)
        except OSError as exc:
            # peer already gone: nothing left to half-close
            _log("debug", f"shutdown({direction.name.lower()}) on {self.describe()}: {exc}")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()
        self._close_wake_pipe()


class TLSSocketTransport(SocketTransport):
    """TLS socket; a TLS record stream cannot be half-closed, so shutdown is a no-op."""

    half_close = False

    def _pending(self) -> bool:
        return self.sock.pending() > 0

    def shutdown(self, direction: Direction) -> None:
        pass


class ProcessTransport(_SelectTransport):
    """Child process with stdin as the send half and merged stdout+stderr as the read half."""

    half_close = True

    def __init__(self, proc: subprocess.Popen) -> None:
        if proc.stdin is None or proc.stdout is None:
            raise ValueError("process needs stdin=PIPE and stdout=PIPE")
        super().__init__()
        self.proc = proc
        self._stdin = proc.stdin
        self._stdout = proc.stdout
        self._stdout_fd = proc.stdout.fileno()
        os.set_blocking(self._stdout_fd, False)

    @classmethod
    def spawn(
        cls,
        argv: Union[str, Sequence[str]],
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        shell: Optional[bool] = None,
        executable: Optional[str] = None,
        **popen_kwargs: Any,
    ) -> "ProcessTransport":
        use_shell = isinstance(argv, str) if shell is None else bool(shell)
        proc = subprocess.Popen(
            argv,
            shell=use_shell,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            cwd=cwd,
            env=env,
            bufsize=0,
            executable=executable,
            close_fds=True,
            **popen_kwargs,
        )
        return cls(proc)

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode

    def describe(self) -> str:
        args = self.proc.args
        shown = args if isinstance(args, (str, bytes)) else " ".join(map(str, args))
        return f"{shown!s} (pid {self.proc.pid})"

    def poll(self) -> Optional[int]:
        return self.proc.poll()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            return self.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def kill(self) -> None:
        self.proc.kill()

    def _fileno(self) -> int:
        return self._stdout_fd

    def _recv_raw(self, numb: int) -> bytes:
        return os.read(self._stdout_fd, numb)

    def write(self, data: bytes) -> int:
        if self._stdin.closed:
            raise BrokenPipeError("stdin closed")
        view = memoryview(data)
        total = 0
        while total < len(data):
            n = self._stdin.write(view[total:])
            if n is None:
                select.select([], [self._stdin], [], None)
                continue
            total += n
        self._stdin.flush()
        return total

    def _close_stdin(self) -> None:
        try:
            self._stdin.close()
        except OSError as exc:
            # unflushed bytes towards a child that already exited
            _log("debug", f"closing stdin of pid {self.proc.pid}: {exc}")

    def _close_stdout(self) -> None:
        self._read_closed = True
        self.set_read_deadline(self._deadline)
        self._stdout.close()

    def shutdown(self, direction: Direction) -> None:
        if direction in (Direction.SEND, Direction.BOTH):
            self._close_stdin()
        if direction in (Direction.RECV, Direction.BOTH):
            self._close_stdout()

    def close(self) -> None:
        if self._closed:
            return
        self._close_stdin()
        try:
            self.proc.kill()
        except OSError:
            pass
        self.proc.wait()
        self._closed = True
        self._close_stdout()
        self._close_wake_pipe()


class MemoryTransport(Transport):
    """In-memory test double.

    Reads hand out the preloaded bytes and report end of stream once they
    are drained; nothing ever blocks. Written bytes are collected in
    :attr:`sent`.
    """

    blocking = False

    def __init__(self, data: bytes = b"") -> None:
        self._data = bytearray(data)
        self._lock = threading.Lock()
        self.sent = bytearray()
        self.closed = False

    def feed(self, data: bytes) -> None:
        with self._lock:
            self._data += data

    def read(self, numb: int) -> bytes:
        with self._lock:
            if self.closed:
                raise OSError("transport closed")
            chunk = bytes(self._data[:numb])
            del self._data[:numb]
            return chunk

    def write(self, data: bytes) -> int:
        with self._lock:
            if self.closed:
                raise BrokenPipeError("transport closed")
            self.sent += data
            return len(data)

    def close(self) -> None:
        self.closed = True
