"""Timeout-aware receive primitive shared by every tube operation.

All receives funnel through :meth:`ReceiveEngine.recv`, which

1. takes the single-slot receive permit (bounded by the timeout),
2. serves from the pushback buffer when it holds anything,
3. otherwise performs exactly one transport read under the deadline.

Only one transport read is ever outstanding per engine. When a read on a
transport without native deadlines outlives its caller, the worker thread
running it keeps the permit and stashes whatever arrives into the
pushback buffer, so no byte is lost. A zero timeout on such a transport
does not wait for the worker at all; the read still happens and its bytes
are salvaged the same way.
"""

from __future__ import annotations

import enum
import threading
import time
from typing import Callable, Optional, Set, Tuple, Type

from .buffer import PushbackBuffer
from .errors import TransportError, TubeCancelled, TubeEOF, TubeError, TubeTimeout
from .log import _log
from .transport import Transport


class ReceiveMode(enum.Enum):
    CONSUME = "consume"
    PEEK = "peek"


class _Call:
    """Book-keeping for one in-flight receive."""

    __slots__ = ("cancelled", "done", "finished", "abandoned", "chunk", "error")

    def __init__(self) -> None:
        self.cancelled = False
        # set when a worker read finishes or the call is cancelled
        self.done = threading.Event()
        self.finished = False
        self.abandoned = False
        self.chunk = b""
        self.error: Optional[BaseException] = None


class _Permit:
    """Binary semaphore whose waiters can be bounded and cancelled."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._held = False

    def acquire(self, timeout: float, call: Optional[_Call] = None) -> bool:
        end_at = None if timeout < 0 else time.monotonic() + timeout
        with self._cond:
            while self._held:
                if call is not None and call.cancelled:
                    raise TubeCancelled("receive cancelled")
                if end_at is None:
                    self._cond.wait()
                    continue
                remaining = end_at - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            self._held = True
            return True

    def release(self) -> None:
        with self._cond:
            self._held = False
            self._cond.notify_all()

    def interrupt(self) -> None:
        with self._cond:
            self._cond.notify_all()


class ReceiveEngine:
    """Coordinates a :class:`PushbackBuffer` and a :class:`Transport`.

    ``on_data`` is called with every chunk the transport delivers, including
    salvaged ones; tubes use it for statistics, debug dumps and wiretaps.

    End of stream and transport failures are sticky: once seen, buffered
    bytes are still handed out, then the same kind of error is raised again
    without reading the transport.
    """

    def __init__(self, transport: Transport, on_data: Optional[Callable[[bytes], None]] = None) -> None:
        self.transport = transport
        self.buffer = PushbackBuffer()
        self._on_data = on_data
        self._permit = _Permit()
        self._state_lock = threading.Lock()
        self._calls: Set[_Call] = set()
        self._failure: Optional[Tuple[Type[TubeError], str]] = None
        self.closed = False

    # -- permit-guarded buffer access ----------------------------------
    def _locked(self) -> None:
        if self.closed:
            raise TransportError("Tube is closed")
        self._permit.acquire(-1)

    def unread(self, data: bytes) -> None:
        self._locked()
        try:
            self.buffer.unread(data)
        finally:
            self._permit.release()

    def consume(self, numb: int) -> None:
        self._locked()
        try:
            self.buffer.consume(numb)
        finally:
            self._permit.release()

    def buffered(self) -> int:
        return len(self.buffer)

    # -- receive -------------------------------------------------------
    def recv(self, numb: int, timeout: float, mode: ReceiveMode = ReceiveMode.CONSUME) -> bytes:
        """Return up to ``numb`` bytes.

        ``timeout`` is in seconds: negative waits forever, zero makes a single
        attempt, positive bounds both the permit wait and the transport read.
        """
        if numb < 0:
            raise ValueError("numb must not be negative")
        if self.closed:
            raise TransportError("Tube is closed")

        call = _Call()
        with self._state_lock:
            self._calls.add(call)
        try:
            if not self._permit.acquire(timeout, call):
                raise TubeTimeout("timed out waiting for the receive permit")
            try:
                return self._recv_locked(numb, timeout, mode, call)
            finally:
                if not call.abandoned:
                    self._permit.release()
        finally:
            with self._state_lock:
                self._calls.discard(call)

    def _recv_locked(self, numb: int, timeout: float, mode: ReceiveMode, call: _Call) -> bytes:
        if self.closed:
            raise TransportError("Tube is closed")
        if self.buffer:
            if mode is ReceiveMode.CONSUME:
                return self.buffer.take(numb)
            return self.buffer.peek(numb)
        if self._failure is not None:
            kind, message = self._failure
            raise kind(message)
        if numb == 0:
            return b""

        if self.transport.native_deadline:
            chunk = self._read_with_deadline(numb, timeout, call)
        elif not self.transport.blocking:
            chunk = self._read_plain(numb)
        else:
            chunk = self._read_in_worker(numb, timeout, call)

        if not chunk:
            self._failure = (TubeEOF, "end of stream")
            raise TubeEOF("end of stream")
        if self._on_data is not None:
            self._on_data(chunk)
        if mode is ReceiveMode.PEEK:
            self.buffer.unread(chunk)
        return chunk

    def _transport_failed(self, exc: OSError) -> TransportError:
        message = f"read failed: {exc}"
        self._failure = (TransportError, message)
        return TransportError(message)

    def _read_plain(self, numb: int) -> bytes:
        try:
            return self.transport.read(numb)
        except TubeError:
            raise
        except OSError as exc:
            raise self._transport_failed(exc) from exc

    def _read_with_deadline(self, numb: int, timeout: float, call: _Call) -> bytes:
        self.transport.set_read_deadline(None if timeout < 0 else time.monotonic() + timeout)
        # cancel() marks the call before moving the deadline, so checking
        # after our own deadline update cannot miss it
        if call.cancelled:
            raise TubeCancelled("receive cancelled")
        try:
            return self._read_plain(numb)
        except TubeTimeout:
            if call.cancelled:
                raise TubeCancelled("receive cancelled") from None
            raise

    def _read_in_worker(self, numb: int, timeout: float, call: _Call) -> bytes:
        worker = threading.Thread(
            target=self._worker_read,
            args=(numb, call),
            name=f"tubekit-read-{self.transport.describe()}",
            daemon=True,
        )
        worker.start()
        call.done.wait(None if timeout < 0 else timeout)
        with self._state_lock:
            if not call.finished:
                # the worker now owns the permit and will salvage its result
                call.abandoned = True
                if call.cancelled:
                    raise TubeCancelled("receive cancelled")
                raise TubeTimeout("read timed out")
        error = call.error
        if isinstance(error, OSError):
            raise self._transport_failed(error) from error
        if error is not None:
            raise error
        return call.chunk

    def _worker_read(self, numb: int, call: _Call) -> None:
        chunk, error = b"", None
        try:
            chunk = self.transport.read(numb)
        except Exception as exc:
            # handed to the waiting caller, or recorded as sticky if it gave up
            error = exc
        with self._state_lock:
            call.chunk, call.error, call.finished = chunk, error, True
            abandoned = call.abandoned
            call.done.set()
        if not abandoned:
            return
        try:
            self._salvage(chunk, error)
        finally:
            self._permit.release()

    def _salvage(self, chunk: bytes, error: Optional[BaseException]) -> None:
        if self.closed:
            return
        if chunk:
            _log("debug", f"Salvaged {len(chunk)} bytes from a timed-out read")
            if self._on_data is not None:
                self._on_data(chunk)
            self.buffer.unread(chunk)
        elif error is not None:
            self._failure = (TransportError, f"read failed: {error}")
        else:
            self._failure = (TubeEOF, "end of stream")

    # -- lifecycle -----------------------------------------------------
    def cancel(self) -> int:
        """Abort every in-flight receive with :class:`TubeCancelled`.

        Returns the number of receives that were signalled.
        """
        with self._state_lock:
            calls = list(self._calls)
            for call in calls:
                call.cancelled = True
                call.done.set()
        self._permit.interrupt()
        if calls and self.transport.native_deadline:
            self.transport.set_read_deadline(time.monotonic())
        return len(calls)

    def close(self) -> None:
        self.closed = True
        self.cancel()
        self.buffer.clear()
