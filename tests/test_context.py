import os
import sys

import pytest

# Ensure the local tubekit package is imported
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from tubekit import context, from_bytes  # type: ignore
from tubekit.context import _Args  # type: ignore
from tubekit.log import hexdump  # type: ignore


@pytest.fixture(autouse=True)
def fresh_context():
    context.clear()
    yield
    context.clear()


def test_defaults():
    assert context.timeout == 10.0
    assert context.newline == b"\n"
    assert context.buffer_size == 4096
    io = from_bytes(b"")
    assert io.timeout == 10.0
    assert io.keep_line_ending is False


def test_local_restores_previous_values():
    context(timeout=3.0)
    with context.local(timeout=0.5, newline=b"\r\n"):
        assert context.timeout == 0.5
        assert from_bytes(b"").newline == b"\r\n"
    assert context.timeout == 3.0
    assert context.newline == b"\n"


def test_debug_switches_dump_defaults():
    context(log_level="debug")
    assert context.log_dump == "hex"
    assert context.log_color is True


def test_args_magic_keys():
    a = _Args(environ={"TUBEKIT_DEBUG": "1", "TUBEKIT_TIMEOUT": "2.5", "TUBEKIT_HOST": "example", "PATH": "/bin"})
    assert a.DEBUG == "1"
    assert a["HOST"] == "example"
    assert a.PORT == ""
    assert "PATH" not in a
    assert context.log_level == "debug"
    assert context.timeout == 2.5


def test_args_malformed_timeout_is_ignored(capsys):
    _Args(environ={"TUBEKIT_TIMEOUT": "soon"})
    assert context.timeout == 10.0
    assert "TUBEKIT_TIMEOUT" in capsys.readouterr().err


def test_args_silent():
    _Args(environ={"TUBEKIT_SILENT": "1"})
    assert context.log_level == "error"


def test_traffic_dump(capsys):
    print("[CTX] debug dump")
    context(log_level="debug", log_dump="text")
    context.log_color = False
    io = from_bytes(b"pong\n")
    io.send(b"abc")
    io.recvline()
    err = capsys.readouterr().err
    assert "[IN] Sent 3 bytes:" in err
    assert "[OUT] Received 5 bytes:" in err
    assert "b'pong\\n'" in err


def test_info_level_hides_traffic(capsys):
    io = from_bytes(b"pong")
    io.send(b"abc")
    io.recv()
    assert "Sent" not in capsys.readouterr().err


def test_log_file(tmp_path, capsys):
    path = tmp_path / "tube.log"
    context(log_file=str(path))
    io = from_bytes(b"")
    io.close()
    assert "Closed MemoryTransport" in path.read_text()


def test_hexdump_format():
    out = hexdump(b"ABC\x00")
    assert out.startswith("00000000  41 42 43 00")
    assert out.endswith("|ABC.|")
    lines = hexdump(bytes(range(20))).splitlines()
    assert len(lines) == 2
    assert lines[1].startswith("00000010  10 11 12 13")
