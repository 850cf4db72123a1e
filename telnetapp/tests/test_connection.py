"""Test TelnetConnection without a network, using a recording writer."""
# std imports
import asyncio
import struct
import os

# 3rd party
import pytest
from prompt_toolkit.application import get_app_session
from prompt_toolkit.data_structures import Size
from prompt_toolkit.input import create_pipe_input

# local
from telnetapp.connection import (
    TelnetConnection, ConnectionState, ConnectionStdout, INITIATION_SEQUENCE,
    DEFAULT_SIZE, DEFAULT_TTYPE, escape_iac)
from telnetapp.protocol import TelnetProtocolParser
from telnetapp.telopt import IAC, SB, SE, IS, IP, WONT, NAWS, TTYPE
from telnetapp.tests.accessories import FakeWriter


@pytest.fixture
def vt100_input():
    with create_pipe_input() as pipe_input:
        yield pipe_input


def make_connection(vt100_input, interact=None, encoding="utf-8"):
    return TelnetConnection(
        asyncio.StreamReader(), FakeWriter(), interact=interact, server=None,
        encoding=encoding, vt100_input=vt100_input, enable_cpr=False,
        connection_id=7)


class _RawConnection:
    def __init__(self):
        self.data = b""

    def write_raw(self, data):
        self.data += data


def test_stdout_newlines():
    raw = _RawConnection()
    stdout = ConnectionStdout(raw, "utf-8")
    stdout.write("one\ntwo\r\nthree\n")
    assert raw.data == b""
    stdout.flush()
    assert raw.data == b"one\r\ntwo\r\nthree\r\n"


def test_stdout_escapes_iac():
    raw = _RawConnection()
    stdout = ConnectionStdout(raw, "latin-1")
    stdout.write("a\xffb\xff\xff")
    stdout.flush()
    assert raw.data == b"a\xff\xffb\xff\xff\xff\xff"


def test_stdout_closed_discards():
    raw = _RawConnection()
    stdout = ConnectionStdout(raw, "utf-8")
    stdout.close()
    stdout.write("lost")
    stdout.flush()
    assert raw.data == b""


@pytest.mark.parametrize("payload", [
    "\xff", "x\xffy", "\xff\xff\xff", "line\xff\nnext\n",
])
def test_escape_roundtrip(payload):
    raw = _RawConnection()
    stdout = ConnectionStdout(raw, "latin-1")
    stdout.write(payload)
    stdout.flush()
    assert raw.data.count(IAC) == 2 * payload.count("\xff")

    received = []
    parser = TelnetProtocolParser(received.append, lambda c, r: None,
                                  lambda t: None)
    parser.feed(raw.data)
    assert b"".join(received).decode("latin-1") == payload


def test_escape_iac():
    assert escape_iac(b"\xff") == b"\xff\xff"
    assert escape_iac(b"plain") == b"plain"


@pytest.mark.asyncio
async def test_negotiate_defaults(vt100_input):
    conn = make_connection(vt100_input)
    assert conn.state is ConnectionState.CREATED
    assert await conn.negotiate(maxwait=0.01)
    assert conn.state is ConnectionState.READY
    assert conn.terminal_type == DEFAULT_TTYPE == "VT100"
    assert conn.size == DEFAULT_SIZE == Size(rows=24, columns=80)
    assert bytes(conn.writer.data) == b"".join(INITIATION_SEQUENCE)
    assert conn.vt100_output is not None


def test_initiation_sequence():
    assert len(INITIATION_SEQUENCE) == 7
    assert INITIATION_SEQUENCE[-1] == IAC + SB + TTYPE + b"\x01" + IAC + SE
    assert b"".join(INITIATION_SEQUENCE).startswith(b"\xff\xfd\x22")


@pytest.mark.asyncio
async def test_negotiate_replies(vt100_input):
    conn = make_connection(vt100_input)
    conn.parser.feed(IAC + SB + NAWS + struct.pack("!HH", 132, 43) + IAC + SE
                     + IAC + SB + TTYPE + IS + b"XTERM" + IAC + SE)
    loop = asyncio.get_running_loop()
    stime = loop.time()
    assert await conn.negotiate(maxwait=5)
    assert loop.time() - stime < 1
    assert conn.size == Size(rows=43, columns=132)
    assert conn.terminal_type == "XTERM"


@pytest.mark.asyncio
async def test_negotiate_refused_is_not_waited(vt100_input):
    conn = make_connection(vt100_input)
    conn.parser.feed(IAC + WONT + NAWS + IAC + WONT + TTYPE)
    loop = asyncio.get_running_loop()
    stime = loop.time()
    assert await conn.negotiate(maxwait=5)
    assert loop.time() - stime < 1
    assert conn.terminal_type == "VT100"
    assert conn.size == Size(rows=24, columns=80)


@pytest.mark.asyncio
async def test_negotiate_partial_reply(vt100_input):
    conn = make_connection(vt100_input)
    conn.parser.feed(IAC + SB + TTYPE + IS + b"ANSI" + IAC + SE)
    assert await conn.negotiate(maxwait=0.01)
    assert conn.terminal_type == "ANSI"
    assert conn.size == Size(rows=24, columns=80)


@pytest.mark.asyncio
async def test_negotiate_after_close(vt100_input):
    conn = make_connection(vt100_input)
    conn.close()
    assert not await conn.negotiate(maxwait=0.01)
    assert conn.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_close_idempotent(vt100_input):
    conn = make_connection(vt100_input)
    conn.close()
    conn.close()
    assert conn.closed
    assert conn.writer.close_count == 1
    await asyncio.wait_for(conn.wait_closed(), 0.5)


@pytest.mark.asyncio
async def test_send_before_negotiation(vt100_input):
    conn = make_connection(vt100_input)
    conn.send("hello\nworld\n")
    assert bytes(conn.writer.data) == b"hello\r\nworld\r\n"


@pytest.mark.asyncio
async def test_send_after_close(vt100_input):
    conn = make_connection(vt100_input)
    conn.close()
    conn.send("hello\n")
    conn.erase_screen()
    assert bytes(conn.writer.data) == b""


@pytest.mark.asyncio
async def test_send_escapes_iac(vt100_input):
    conn = make_connection(vt100_input, encoding="latin-1")
    await conn.negotiate(maxwait=0.01)
    del conn.writer.data[:]
    conn.send("y\xff\n")
    assert b"y\xff\xff\r\n" in conn.writer.data


@pytest.mark.asyncio
async def test_erase_screen(vt100_input):
    conn = make_connection(vt100_input)
    await conn.negotiate(maxwait=0.01)
    del conn.writer.data[:]
    conn.erase_screen()
    assert b"\x1b[2J" in conn.writer.data


@pytest.mark.asyncio
async def test_send_above_prompt_outside_application(vt100_input):
    conn = make_connection(vt100_input)
    await conn.negotiate(maxwait=0.01)
    with pytest.raises(RuntimeError):
        conn.send_above_prompt("nobody is listening")


@pytest.mark.asyncio
async def test_send_from_thread(vt100_input):
    conn = make_connection(vt100_input)
    await conn.negotiate(maxwait=0.01)
    del conn.writer.data[:]
    await asyncio.get_running_loop().run_in_executor(
        None, conn.send, "from thread\n")
    # the send is scheduled onto the event loop
    await asyncio.sleep(0.01)
    assert b"from thread\r\n" in conn.writer.data


@pytest.mark.asyncio
async def test_interrupt_is_ctrl_c(vt100_input):
    conn = make_connection(vt100_input)
    conn.parser.feed(IAC + IP)
    assert [key.data for key in vt100_input.read_keys()] == ["\x03"]


@pytest.mark.asyncio
async def test_data_received_into_input(vt100_input):
    conn = make_connection(vt100_input)
    conn.parser.feed(b"ab\r\n")
    assert [key.data for key in vt100_input.read_keys()] == ["a", "b", "\n"]


@pytest.mark.asyncio
async def test_run_application_session(vt100_input):
    seen = {}

    async def interact(connection):
        session = get_app_session()
        seen["input"] = session.input
        seen["output"] = session.output
        seen["state"] = connection.state
        await connection.send_above_prompt("above\n")

    conn = make_connection(vt100_input, interact=interact)
    await conn.negotiate(maxwait=0.01)
    await conn.run_application()
    assert seen["input"] is vt100_input
    assert seen["output"] is conn.vt100_output
    assert seen["state"] is ConnectionState.RUNNING
    assert b"above\r\n" in conn.writer.data
    assert conn.closed
    assert conn.context is None


@pytest.mark.asyncio
async def test_run_application_error_is_contained(vt100_input):
    async def interact(connection):
        raise ZeroDivisionError("interact fault")

    conn = make_connection(vt100_input, interact=interact)
    await conn.negotiate(maxwait=0.01)
    await conn.run_application()
    assert conn.closed


@pytest.mark.asyncio
async def test_run_application_requires_ready(vt100_input):
    called = []

    async def interact(connection):
        called.append(connection)

    conn = make_connection(vt100_input, interact=interact)
    await conn.run_application()
    assert called == []
    assert conn.state is ConnectionState.CREATED


@pytest.mark.asyncio
async def test_read_loop_feeds_parser_and_closes_on_eof(vt100_input):
    conn = make_connection(vt100_input)
    conn.reader.feed_data(IAC + SB + NAWS + struct.pack("!HH", 100, 30)
                          + IAC + SE)
    conn.reader.feed_eof()
    await asyncio.wait_for(conn.read_loop(), 0.5)
    assert conn.size == Size(rows=30, columns=100)
    assert conn.closed


@pytest.mark.asyncio
async def test_repr(vt100_input):
    conn = make_connection(vt100_input)
    assert repr(conn) == "<TelnetConnection #7 127.0.0.1:6023 created>"


@pytest.mark.asyncio
async def test_read_loop_pauses_while_input_unread(vt100_input):
    """Reading pauses, without blocking the event loop, until input is read."""
    conn = make_connection(vt100_input)
    conn.reader.feed_data(b"x" * 1024 * 1024)
    conn.reader.feed_eof()
    task = asyncio.ensure_future(conn.read_loop())
    await asyncio.sleep(0.1)
    assert not task.done()
    assert not conn.closed
    conn.close()
    await asyncio.wait_for(task, 0.5)


@pytest.mark.asyncio
async def test_read_loop_resumes_as_input_is_read(vt100_input):
    conn = make_connection(vt100_input)
    conn.reader.feed_data(b"x" * 256 * 1024)
    conn.reader.feed_eof()
    loop = asyncio.get_running_loop()
    read_fd = vt100_input.pipe.read_fd
    received = bytearray()
    loop.add_reader(read_fd, lambda: received.extend(os.read(read_fd, 65536)))
    try:
        await asyncio.wait_for(conn.read_loop(), 2)
    finally:
        loop.remove_reader(read_fd)
    while True:
        data = os.read(read_fd, 65536)
        if not data:
            break
        received.extend(data)
    assert conn.closed
    assert received == b"x" * 256 * 1024
