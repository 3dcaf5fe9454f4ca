import os
import sys

import pytest

# Ensure the local tubekit package is imported
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from tubekit import (  # type: ignore
    Direction,
    TransportError,
    TubeEOF,
    context,
    from_bytes,
)


def setup_module(module):
    # keep tests fast and verbose
    context(timeout=1.0, log_level="info", log_timestamps=True)


def teardown_module(module):
    context.clear()


def test_buffered_serve():
    print("[MEM] buffered serve")
    io = from_bytes(b"Hello, world")
    assert io.recv(4096) == b"Hello, world"


def test_unrecv_then_recv():
    print("[MEM] unrecv then recv")
    io = from_bytes(b"Hello, world")
    assert io.recv(4096) == b"Hello, world"
    io.unrecv(b"Woohoo")
    assert io.recv(4096) == b"Woohoo"


def test_unrecv_chunks_come_back_last_first():
    io = from_bytes(b"")
    io.unrecv(b"aaa")
    io.unrecv("bb")
    assert io.recvn(5) == b"bbaaa"


def test_unrecv_goes_ahead_of_unread_transport_bytes():
    io = from_bytes(b"tail")
    io.unrecv(b"head-")
    assert io.recvn(9) == b"head-tail"


def test_recvline_strips_crlf_then_eof():
    print("[MEM] recvline CRLF + EOF")
    io = from_bytes(b"A\r\nB\n", keep_line_ending=False)
    assert io.recvline() == b"A"
    assert io.recvline() == b"B"
    with pytest.raises(TubeEOF) as excinfo:
        io.recvline()
    assert excinfo.value.data == b""


def test_recvline_keepends():
    io = from_bytes(b"A\r\nB\n", keep_line_ending=True)
    assert io.recvline() == b"A\r\n"
    assert io.recvline(keepends=False) == b"B"


def test_line_split_preserves_stream():
    stream = b"a\nbb\r\nccc\n\nlast"
    io = from_bytes(stream)
    lines = []
    with pytest.raises(TubeEOF) as excinfo:
        while True:
            lines.append(io.recvline(keepends=True))
    assert b"".join(lines) == b"a\nbb\r\nccc\n\n"
    assert excinfo.value.data == b"last"


def test_recvuntil_drop_then_recvn():
    print("[MEM] recvuntil drop")
    io = from_bytes(b"Wow, such data")
    assert io.recvuntil(b",", drop=True) == b"Wow"
    assert io.recvn(5) == b" such"
    assert io.recvall() == b" data"


def test_recvuntil_keeps_delimiter_by_default():
    io = from_bytes(b"key=value")
    data = io.recvuntil(b"=")
    assert data == b"key="
    assert data[-1:] == b"="


def test_recvuntil_stops_at_leftmost_delimiter():
    io = from_bytes(b"a,b;c")
    assert io.recvuntil([b";", b","]) == b"a,"
    assert io.recvuntil([b";", b","]) == b"b;"


def test_recvuntil_tie_goes_to_first_listed():
    io = from_bytes(b"xab")
    assert io.recvuntil([b"ab", b"b"], drop=True) == b"x"
    io = from_bytes(b"xab")
    assert io.recvuntil([b"b", b"ab"], drop=True) == b"xa"


def test_recvuntil_delimiter_split_across_chunks():
    print("[MEM] multi-byte delimiter over small chunks")
    with context.local(buffer_size=4):
        io = from_bytes(b"hello END world")
        assert io.recvuntil(b"END") == b"hello END"
        assert io.recvall() == b" world"


def test_recvuntil_eof_reports_partial():
    io = from_bytes(b"no delimiter here")
    with pytest.raises(TubeEOF) as excinfo:
        io.recvuntil(b"\n")
    assert excinfo.value.data == b"no delimiter here"


def test_recvuntil_rejects_empty_delimiter():
    io = from_bytes(b"abc")
    with pytest.raises(ValueError):
        io.recvuntil(b"")
    assert io.recv() == b"abc"


def test_recvregex_takes_whole_match():
    print("[MEM] recvregex")
    io = from_bytes(b"prefix DATA-123 suffix")
    assert io.recvregex(rb"DATA-\d+") == b"prefix DATA-123"
    assert io.recvall() == b" suffix"


def test_recvregex_exact():
    io = from_bytes(b"abc123def")
    assert io.recvregex(rb"[a-z]+\d+", exact=True) == b"abc123"
    assert io.recvall() == b"def"


def test_recvregex_rejects_text_pattern_objects():
    import re

    io = from_bytes(b"abc")
    with pytest.raises(TypeError):
        io.recvregex(re.compile(r"abc"))


def test_recvpred_byte_by_byte():
    io = from_bytes(b"12345")
    assert io.recvpred(lambda acc: len(acc) == 3) == b"123"
    assert io.recv() == b"45"


def test_recvn_partial_on_eof():
    io = from_bytes(b"abc")
    with pytest.raises(TubeEOF) as excinfo:
        io.recvn(5)
    assert excinfo.value.data == b"abc"


def test_line_predicates():
    io = from_bytes(b"one\ntwo words\nthree\nfour!\nfive\n")
    assert io.recvline_contains(b"words") == b"two words"
    assert io.recvline_startswith([b"x", b"th"]) == b"three"
    assert io.recvline_endswith("!") == b"four!"
    assert io.recvline_regex(rb"f\w+", exact=True) == b"five"


def test_line_predicate_accepts_unterminated_last_line():
    io = from_bytes(b"a\nlast")
    assert io.recvline_contains(b"last") == b"last"


def test_line_predicate_eof_without_match():
    io = from_bytes(b"a\nb\n")
    with pytest.raises(TubeEOF):
        io.recvline_contains(b"zzz")


def test_recvlines():
    io = from_bytes(b"1\n2\n3")
    assert io.recvlines(2) == [b"1", b"2"]
    with pytest.raises(TubeEOF) as excinfo:
        io.recvlines(2)
    assert excinfo.value.lines == [b"3"]


def test_recvlines_keepends():
    io = from_bytes(b"1\r\n2\n")
    assert io.recvlines(2, keepends=True) == [b"1\r\n", b"2\n"]


def test_peek_is_idempotent():
    io = from_bytes(b"abcdef")
    assert io.peek(3) == b"abc"
    assert io.peek(3) == b"abc"
    assert io.recv(3) == b"abc"
    assert io.recv() == b"def"


def test_can_recv():
    io = from_bytes(b"x")
    assert io.can_recv()
    assert io.recv() == b"x"
    assert not io.can_recv()


def test_eof_is_sticky_but_buffer_drains_first():
    print("[MEM] sticky EOF")
    io = from_bytes(b"abc")
    assert io.recv() == b"abc"
    with pytest.raises(TubeEOF):
        io.recv()
    io.transport.feed(b"late")
    io.unrecv(b"x")
    assert io.recv() == b"x"
    with pytest.raises(TubeEOF):
        io.recv()


def test_recvall_and_recvrepeat():
    assert from_bytes(b"a" * 10000).recvall() == b"a" * 10000
    assert from_bytes(b"banner\n$ ").recvrepeat(0.2) == b"banner\n$ "


def test_clean_returns_flushed_bytes():
    io = from_bytes(b"banner\n")
    assert io.clean(0.1) == b"banner\n"
    assert io.clean(0.1) == b""


def test_recv_zero_and_negative():
    io = from_bytes(b"abc")
    assert io.recv(0) == b""
    with pytest.raises(ValueError):
        io.recv(-1)
    with pytest.raises(ValueError):
        io.recvn(-1)
    assert io.recv() == b"abc"


def test_send_family():
    print("[MEM] send family")
    io = from_bytes(b"Name: ok\n")
    assert io.send("hi") == 2
    assert io.sendline(b"there") == 6
    assert io.sendafter(b": ", b"bob") == 3
    assert io.sendlinethen(b"\n", b"cmd") == 4
    assert bytes(io.transport.sent) == b"hithere\nbobcmd\n"


def test_sendline_custom_newline():
    io = from_bytes(b"", newline=b"\r\n")
    io.sendline(b"GET / HTTP/1.0")
    assert bytes(io.transport.sent) == b"GET / HTTP/1.0\r\n"


def test_sendthen_and_sendlineafter():
    io = from_bytes(b"> ready\n> ")
    assert io.sendthen(b"\n", b"go") == 2
    assert io.sendlineafter(b"> ", b"next") == 5
    assert bytes(io.transport.sent) == b"gonext\n"


def test_sendafter_eof_skips_send():
    io = from_bytes(b"no prompt")
    with pytest.raises(TubeEOF):
        io.sendafter(b"$ ", b"id")
    assert bytes(io.transport.sent) == b""


def test_close_is_idempotent_and_final():
    print("[MEM] close")
    io = from_bytes(b"abc")
    with io:
        assert io.recv(1) == b"a"
    assert io.closed
    io.close()
    with pytest.raises(TransportError):
        io.recv()
    with pytest.raises(TransportError):
        io.send(b"x")
    with pytest.raises(TransportError):
        io.unrecv(b"x")
    assert io.stats()["buffered"] == 0


def test_shutdown_without_half_close_is_noop():
    io = from_bytes(b"abc")
    io.shutdown("send")
    io.shutdown(Direction.RECV)
    assert io.recv() == b"abc"
    with pytest.raises(ValueError):
        io.shutdown("sideways")


def test_stats_and_wiretap(tmp_path):
    tap = tmp_path / "io.tap"
    io = from_bytes(b"pong")
    io.wiretap(str(tap))
    io.send(b"ping")
    assert io.recv() == b"pong"
    st = io.stats()
    assert st["bytes_sent"] == 4
    assert st["bytes_recv"] == 4
    assert st["closed"] is False
    io.close()
    assert tap.read_bytes() == b"> ping< pong"


def test_global_wiretap(tmp_path):
    tap = tmp_path / "global.tap"
    with context.local(wiretap=str(tap)):
        io = from_bytes(b"x")
    io.recv()
    io.close()
    assert tap.read_bytes() == b"< x"


def test_recvuntil_multibyte_prefers_shortest_prefix():
    io = from_bytes(b"abc")
    assert io.recvuntil([b"abc", b"b"]) == b"ab"
    assert io.recv() == b"c"
