"""Tag-style log lines and traffic dumps."""

from __future__ import annotations

import sys
import time
from typing import Any, Optional, Sequence

from .context import context


_LEVELS = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "error": 40,
}


_COLOR = {
    "info": "\033[94m",
    "debug": "\033[92m",
    "warning": "\033[93m",
    "error": "\033[91m",
    "input": "\033[95m",
    "output": "\033[96m",
    "reset": "\033[0m",
}


_TAG_ROLE = {
    "IN": "input",
    "OUT": "output",
}


def _should_log(level: str) -> bool:
    return _LEVELS.get(level, 20) >= _LEVELS.get(str(context.log_level).lower(), 20)


def _maybe_color(s: str, role: str) -> str:
    if not context.log_color:
        return s
    color = _COLOR.get(role, "")
    return f"{color}{s}{_COLOR['reset']}" if color else s


def _format_tag(tag: str, role: str) -> str:
    # Only color the [TAG] token, not the entire line
    return _maybe_color(f"[{tag}]", role)


def _emit(line: str) -> None:
    stream = sys.stderr if context.log_stream == "stderr" else sys.stdout
    print(line, file=stream)
    lf = context.log_file
    if lf:
        try:
            with open(lf, "a", encoding="utf-8", errors="replace") as fp:
                fp.write(line + "\n")
        except OSError as exc:
            print(f"[WARNING] cannot write log file {lf}: {exc}", file=sys.stderr)


def _log_tags(level: str, extra_tags: Optional[Sequence[str]], message: str) -> None:
    if not _should_log(level):
        return
    parts = []
    if context.log_timestamps:
        parts.append(f"[{time.strftime('%H:%M:%S')}]")
    parts.append(_format_tag(level.upper(), level.lower()))
    for t in extra_tags or ():
        parts.append(_format_tag(t, _TAG_ROLE.get(t, "info")))
    line = " ".join(parts) + (f" {message}" if message else "")
    _emit(line)


def _log(level: str, message: str) -> None:
    _log_tags(level, None, message)


def preview(data: bytes) -> str:
    """Short single-line rendering of ``data`` for log messages."""
    limit = int(context.log_preview or 160)
    if len(data) > limit:
        data = data[: limit - 3] + b"..."
    if context.log_hex:
        return data.hex()
    escaped = data.replace(b"\r", b"\\r").replace(b"\n", b"\\n")
    return escaped.decode(context.encoding, errors="replace")


def hexdump(data: bytes, start: int = 0, width: int = 16, group: int = 4) -> str:
    out_lines = []
    total_groups = (width + group - 1) // group
    for offset in range(0, len(data), width):
        chunk = data[offset : offset + width]
        hex_cols = []
        for gi in range(total_groups):
            sub = chunk[gi * group : (gi + 1) * group]
            hx = " ".join(f"{b:02x}" for b in sub)
            hex_cols.append(hx.ljust(group * 3 - 1))  # 'xx ' * (group-1) + 'xx'
        hex_part = "  ".join(hex_cols)
        ascii_part = bytes((c if 32 <= c <= 126 else 0x2E) for c in chunk).decode("ascii")
        out_lines.append(f"{start + offset:08x}  {hex_part}  |{ascii_part}|")
    return "\n".join(out_lines)


def _mostly_printable(b: bytes) -> bool:
    if not b:
        return True
    printable = sum(1 for x in b if 32 <= x <= 126 or x in (9, 10, 13))
    return printable / len(b) >= 0.8


def _debug_dump(tag: str, label: str, data: bytes) -> None:
    if not _should_log("debug"):
        return
    _log_tags("debug", [tag], f"{label} {len(data)} bytes:")
    mode = str(context.log_dump)
    if mode == "text" or (mode == "auto" and _mostly_printable(data) and len(data) <= 4096):
        # escaped Python literal lines
        for line in data.splitlines(keepends=True):
            _emit("    " + repr(line))
    else:
        _emit("    " + hexdump(data).replace("\n", "\n    "))


def log_send(data: bytes) -> None:
    _debug_dump("IN", "Sent", data)


def log_recv(data: bytes) -> None:
    _debug_dump("OUT", "Received", data)


def tap_write(tap: Any, marker: bytes, data: bytes) -> None:
    """Mirror ``data`` into a wiretap sink, prefixed with ``marker``."""
    try:
        tap.write(marker + data)
        if hasattr(tap, "flush"):
            tap.flush()
    except (OSError, ValueError) as exc:
        _log("warning", f"wiretap write failed: {exc}")


def _stage(prefix: str, message: str, level: Optional[str] = None) -> None:
    # stage markers: [x] in progress, [+] done, [*] note, [-] failure
    if level is None:
        level = "warning" if prefix.startswith("[-]") else "info"
    _log(level, f"{prefix} {message}")
