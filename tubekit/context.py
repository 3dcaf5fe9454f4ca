"""Process-wide defaults shared by every tube."""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator


class _Context:
    """Mutable bag of defaults read by tubes at construction time."""

    _defaults: Dict[str, Any] = {
        "log_level": "info",
        # negative -> wait forever, 0 -> single non-blocking attempt
        "timeout": 10.0,
        "newline": b"\n",
        "keep_line_ending": False,
        "buffer_size": 4096,
        "encoding": "utf-8",
        # observability controls
        "log_timestamps": False,
        "log_preview": 160,
        "log_hex": False,
        "log_color": False,
        # 'auto' -> text if mostly printable, else hex; 'text' -> always text lines; 'hex' -> always hexdump
        "log_dump": "auto",
        # where to write logs: 'stderr' or 'stdout'
        "log_stream": "stderr",
        # optional log file path (append)
        "log_file": None,
        # optional global wiretap sink for all tubes (file path or binary file-like)
        "wiretap": None,
    }

    def __init__(self) -> None:
        self._state = dict(self._defaults)
        self._stack: list[Dict[str, Any]] = []

    def __call__(self, **kwargs: Any) -> "_Context":
        self._state.update(kwargs)
        if "log_level" in kwargs:
            self._apply_debug_defaults()
        return self

    def __getattr__(self, name: str) -> Any:
        if name in self._state:
            return self._state[name]
        raise AttributeError(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_"):
            super().__setattr__(name, value)
        else:
            self._state[name] = value
            if name == "log_level":
                self._apply_debug_defaults()

    def __repr__(self) -> str:
        return f"_Context({self._state!r})"

    def clear(self) -> None:
        self._state = dict(self._defaults)

    # When user switches to debug, default to hex dump + colored tags unless overridden
    def _apply_debug_defaults(self) -> None:
        level = str(self._state.get("log_level", "")).lower()
        if level == "debug":
            if self._state.get("log_dump", "auto") == "auto":
                self._state["log_dump"] = "hex"
            if self._state.get("log_color", False) is False:
                self._state["log_color"] = True

    @contextmanager
    def local(self, **kwargs: Any) -> Iterator["_Context"]:
        previous = dict(self._state)
        self._stack.append(previous)
        self(**kwargs)
        try:
            yield self
        finally:
            self._state = self._stack.pop()


context = _Context()


class _Args:
    """Environment switches for scripts built on tubekit.

    - Collects env vars with prefix TUBEKIT_ (``TUBEKIT_DEBUG=1`` -> ``args.DEBUG == "1"``)
    - Exposes mapping-like and attribute-like access; missing keys -> '' (empty string)
    - Applies magic keys to context (DEBUG/SILENT/LOG_LEVEL/LOG_FILE/TIMEOUT)
    """

    prefix = "TUBEKIT_"

    def __init__(self, environ: Dict[str, str] | None = None) -> None:
        self._store: Dict[str, str] = {}
        self._parse(os.environ if environ is None else environ)

    def _parse(self, environ: Dict[str, str]) -> None:
        for k, v in environ.items():
            if k.startswith(self.prefix):
                self._store[k[len(self.prefix):]] = v
        self._apply_magic()

    def _apply_magic(self) -> None:
        s = self._store
        if s.get("DEBUG"):
            context.log_level = "debug"  # triggers debug defaults
        if s.get("SILENT"):
            context.log_level = "error"
        if "LOG_LEVEL" in s:
            context.log_level = s["LOG_LEVEL"].lower()
        if "LOG_FILE" in s:
            context.log_file = s["LOG_FILE"]
        if "TIMEOUT" in s:
            try:
                context.timeout = float(s["TIMEOUT"])
            except ValueError:
                from .log import _log

                _log("warning", f"Ignoring malformed {self.prefix}TIMEOUT={s['TIMEOUT']!r}")

    # mapping-like
    def __getitem__(self, k: str) -> str:
        return self._store.get(k, "")

    def __contains__(self, k: str) -> bool:
        return k in self._store

    def get(self, k: str, default: str = "") -> str:
        return self._store.get(k, default)

    # attribute-like
    def __getattr__(self, k: str) -> str:
        if k.startswith("_"):
            raise AttributeError(k)
        return self._store.get(k, "")

    def __repr__(self) -> str:
        return f"_Args({self._store!r})"


args = _Args()
