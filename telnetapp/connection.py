"""
Module provides class TelnetConnection, one telnet client of TelnetServer.

A connection owns its stream reader and writer, a
:class:`~.TelnetProtocolParser` fed only by the connection's reading task,
and the prompt_toolkit input pipe and output that an interact callback
drives through :func:`prompt_toolkit.application.create_app_session`.
"""
# std imports
import contextvars
import threading
import datetime
import inspect
import asyncio
import logging
import enum
import sys
import os
import re

# 3rd party
from prompt_toolkit.application import create_app_session, run_in_terminal
from prompt_toolkit.data_structures import Size
from prompt_toolkit.formatted_text import fragment_list_to_text, to_formatted_text
from prompt_toolkit.output.vt100 import Vt100_Output
from prompt_toolkit.renderer import print_formatted_text
from prompt_toolkit.styles import DummyStyle

# local
from .accessories import log_exception
from .protocol import TelnetProtocolParser
from .telopt import (
    IAC, DO, WILL, WONT, SB, SE, IP, ECHO, SGA, NAWS, TTYPE, LINEMODE,
    MODE, SEND, name_command, name_commands,
)

__all__ = ("TelnetConnection", "ConnectionState", "ConnectionStdout",
           "INITIATION_SEQUENCE", "DEFAULT_TTYPE", "DEFAULT_SIZE")

logger = logging.getLogger("telnetapp.connection")

#: Terminal type assumed when the client does not answer TTYPE.
DEFAULT_TTYPE = "VT100"

#: Window size assumed when the client does not answer NAWS.
DEFAULT_SIZE = Size(rows=24, columns=80)

#: Commands sent on connect, in order.
INITIATION_SEQUENCE = (
    IAC + DO + LINEMODE,
    IAC + WILL + SGA,
    IAC + SB + LINEMODE + MODE + b"\x00" + IAC + SE,
    IAC + WILL + ECHO,
    IAC + DO + NAWS,
    IAC + DO + TTYPE,
    IAC + SB + TTYPE + SEND + IAC + SE,
)

#: Bytes requested of each socket read.
READ_SIZE = 1024

# a newline not already preceded by carriage return.
_RE_BARE_LF = re.compile(r"(?<!\r)\n")


class ConnectionState(enum.Enum):
    """Lifecycle of a :class:`TelnetConnection`."""

    CREATED = "created"
    NEGOTIATING = "negotiating"
    READY = "ready"
    RUNNING = "running"
    CLOSED = "closed"


class ConnectionStdout:
    """
    File-like ``stdout`` of a connection, as given to ``Vt100_Output``.

    Text is converted to NVT line endings and encoded, ``IAC`` bytes are
    doubled, and the result is written to the connection's transport on
    :meth:`flush`.
    """

    def __init__(self, connection, encoding):
        self._connection = connection
        self._encoding = encoding
        self._errors = "replace"
        self._buffer = []
        self._closed = False

    def write(self, data):
        data = _RE_BARE_LF.sub("\r\n", data)
        self._buffer.append(data.encode(self._encoding, self._errors))

    def isatty(self):
        return True

    def flush(self):
        if not self._buffer:
            return
        data, self._buffer = b"".join(self._buffer), []
        if not self._closed:
            self._connection.write_raw(escape_iac(data))

    def close(self):
        self._closed = True
        self._buffer = []

    @property
    def encoding(self):
        return self._encoding

    @property
    def errors(self):
        return self._errors


def escape_iac(data):
    """Return ``data`` with each ``IAC`` byte doubled."""
    return data.replace(IAC, IAC + IAC)


class TelnetConnection:
    """
    A telnet client connected to :class:`~.TelnetServer`.

    :meth:`send`, :meth:`send_above_prompt`, :meth:`erase_screen` and
    :meth:`close` may be called from any thread or task.  Calls made outside
    of the event loop's thread are handed to the loop, and all writes of one
    connection are serialized by its lock.
    """

    def __init__(self, reader, writer, interact, server, encoding="utf-8",
                 style=None, vt100_input=None, enable_cpr=True,
                 connection_id=0):
        self.reader = reader
        self.writer = writer
        self.interact = interact
        self.server = server
        self.encoding = encoding
        self.style = style
        self.vt100_input = vt100_input
        self.enable_cpr = enable_cpr
        self.connection_id = connection_id

        self.stdout = ConnectionStdout(self, encoding)
        self.vt100_output = None
        #: context of the running application, for :meth:`send_above_prompt`
        self.context = None
        self._app_session = None

        self._loop = asyncio.get_running_loop()
        self._lock = threading.Lock()
        self._state = ConnectionState.CREATED
        self._size = DEFAULT_SIZE
        self._terminal_type = None
        self._naws_done = asyncio.Event()
        self._ttype_done = asyncio.Event()
        self._closed_event = asyncio.Event()
        self._when_connected = datetime.datetime.now()
        self._last_received = datetime.datetime.now()

        #: parsed input not yet accepted by the input pipe
        self._input_backlog = bytearray()
        self._input_drained = asyncio.Event()
        self._input_drained.set()
        self._input_fd = None
        if vt100_input is not None:
            self._input_fd = vt100_input.pipe.write_fd
            os.set_blocking(self._input_fd, False)

        self.parser = TelnetProtocolParser(
            data_received=self._data_received,
            size_received=self._size_received,
            ttype_received=self._ttype_received,
            command_received=self._command_received,
            negotiation_received=self._negotiation_received,
        )

    def __repr__(self):
        host, port = (self.peername or ("-", "closing"))[:2]
        return "<TelnetConnection #{0} {1}:{2} {3}>".format(
            self.connection_id, host, port, self._state.value)

    # public properties

    @property
    def size(self):
        """Terminal size, as :class:`prompt_toolkit.data_structures.Size`."""
        return self._size

    @property
    def terminal_type(self):
        """Terminal type reported by the client, ``None`` until negotiated."""
        return self._terminal_type

    @property
    def state(self):
        return self._state

    @property
    def closed(self):
        return self._state is ConnectionState.CLOSED

    @property
    def peername(self):
        return self.writer.get_extra_info("peername")

    @property
    def duration(self):
        """Time elapsed since client connected, in seconds as float."""
        return (datetime.datetime.now() - self._when_connected).total_seconds()

    @property
    def idle(self):
        """Time elapsed since data last received, in seconds as float."""
        return (datetime.datetime.now() - self._last_received).total_seconds()

    # public methods

    def send(self, formatted_text):
        """
        Send text, or prompt_toolkit formatted text, to the client.

        Newlines are sent as ``CR LF``.  Nothing is sent once closed, and a
        failing write is logged and dropped: the reading task notices the
        dead peer and closes the connection.
        """
        if self.closed:
            return
        if not self._in_loop_thread():
            self._call_soon_threadsafe(self.send, formatted_text)
            return
        with self._lock:
            if self.closed:
                return
            if self.vt100_output is None:
                # not yet negotiated, no terminal attributes to render.
                text = fragment_list_to_text(to_formatted_text(formatted_text))
                self.stdout.write(text)
                self.stdout.flush()
            else:
                print_formatted_text(self.vt100_output, formatted_text,
                                     self.style or DummyStyle())

    def send_above_prompt(self, formatted_text):
        """
        Send text above the prompt of the running application.

        The application's output is erased, the text printed, and the
        application redrawn below it.

        :raises RuntimeError: when called while no application is running
            for this connection.
        :returns: awaitable of the completed output, when called from the
            event loop's thread.
        """
        if self.context is None:
            raise RuntimeError(
                "send_above_prompt() called outside of run_application()")
        formatted_text = to_formatted_text(formatted_text)
        if not self._in_loop_thread():
            self._call_soon_threadsafe(self.send_above_prompt, formatted_text)
            return None
        return self.context.run(run_in_terminal,
                                lambda: self.send(formatted_text))

    def erase_screen(self):
        """Erase the screen and move the cursor to the top-left corner."""
        if self.closed:
            return
        if not self._in_loop_thread():
            self._call_soon_threadsafe(self.erase_screen)
            return
        with self._lock:
            if self.closed:
                return
            if self.vt100_output is None:
                self.stdout.write("\x1b[2J\x1b[H")
                self.stdout.flush()
            else:
                self.vt100_output.erase_screen()
                self.vt100_output.cursor_goto(0, 0)
                self.vt100_output.flush()

    def close(self):
        """
        Close the connection.

        The first call removes the connection from its server, closes the
        input pipe and the transport, which ends the reading task.  Any
        further calls have no effect.
        """
        with self._lock:
            if self._state is ConnectionState.CLOSED:
                return
            self._state = ConnectionState.CLOSED
        logger.info("Connection closed for %s", self)
        if self.server is not None:
            self.server._remove_connection(self)
        self.stdout.close()
        if self._in_loop_thread():
            self._close_transport()
        else:
            self._call_soon_threadsafe(self._close_transport)

    async def wait_closed(self):
        """Wait until the connection is closed."""
        await self._closed_event.wait()

    def write_raw(self, data):
        """Write ``data`` to the transport, bytes sent as-is."""
        try:
            self.writer.write(data)
        except (OSError, RuntimeError) as err:
            logger.debug("write to %s failed: %s", self, err)

    # lifecycle, called by the server

    async def negotiate(self, maxwait=0.5):
        """
        Demand session options and await the client's replies.

        Waits at most ``maxwait`` seconds in total for both window size and
        terminal type; whichever remains unanswered takes its default.

        :returns: ``True`` when the connection is ready for the application,
            ``False`` when it was closed meanwhile.
        """
        with self._lock:
            if self._state is not ConnectionState.CREATED:
                return False
            self._state = ConnectionState.NEGOTIATING
        self.write_raw(b"".join(INITIATION_SEQUENCE))
        logger.debug("send %s", name_commands(b"".join(INITIATION_SEQUENCE)))

        try:
            await asyncio.wait_for(
                asyncio.gather(self._naws_done.wait(), self._ttype_done.wait()),
                maxwait)
        except asyncio.TimeoutError:
            logger.debug("negotiation incomplete after %1.2fs for %s: "
                         "naws=%s, ttype=%s", self.duration, self,
                         self._naws_done.is_set(), self._ttype_done.is_set())
        else:
            logger.debug("negotiation complete after %1.2fs for %s.",
                         self.duration, self)

        with self._lock:
            if self._state is not ConnectionState.NEGOTIATING:
                return False
            if self._terminal_type is None:
                self._terminal_type = DEFAULT_TTYPE
            self.vt100_output = Vt100_Output(
                self.stdout, lambda: self._size,
                term=self._terminal_type, enable_cpr=self.enable_cpr)
            self._state = ConnectionState.READY
        logger.info("Negotiated %s: term=%s, cols=%d, rows=%d", self,
                    self._terminal_type, self._size.columns, self._size.rows)
        return True

    async def read_loop(self):
        """
        Read from the client and feed the protocol parser until closed.

        This coroutine is the connection's dedicated reading task, the only
        caller of :meth:`TelnetProtocolParser.feed`.  Reading pauses while
        the application leaves input unread, until the input pipe drains.
        """
        try:
            while True:
                data = await self.reader.read(READ_SIZE)
                if not data:
                    logger.debug("EOF from client %s.", self)
                    break
                self._last_received = datetime.datetime.now()
                self.parser.feed(data)
                await self._input_drained.wait()
                if self.closed:
                    break
        except (ConnectionError, OSError) as err:
            logger.info("Connection lost for %s: %s", self, err)
        finally:
            self.close()

    async def run_application(self):
        """Run the interact callback within this connection's app session."""
        with self._lock:
            if self._state is not ConnectionState.READY:
                return
            self._state = ConnectionState.RUNNING
        try:
            with create_app_session(input=self.vt100_input,
                                    output=self.vt100_output) as app_session:
                self._app_session = app_session
                self.context = contextvars.copy_context()
                result = self.interact(self)
                if inspect.isawaitable(result):
                    await result
        except EOFError:
            logger.debug("Input closed during interact for %s.", self)
        except KeyboardInterrupt:
            # ^C left unhandled by the application ends only this client.
            logger.debug("Interrupt during interact for %s.", self)
        except Exception:
            logger.warning("Error in interact callback for %s:", self)
            log_exception(logger.warning, *sys.exc_info())
        finally:
            self.context = None
            self._app_session = None
            self.close()

    # parser callbacks

    def _data_received(self, data):
        if not self.closed:
            self._input_backlog += data
            self._write_input()

    def _size_received(self, columns, rows):
        self._size = Size(rows=rows, columns=columns)
        self._naws_done.set()
        app = self._app_session.app if self._app_session else None
        if app is not None:
            # redraw at the new size
            app.invalidate()

    def _ttype_received(self, ttype):
        self._terminal_type = ttype
        self._ttype_done.set()

    def _command_received(self, cmd):
        if cmd == IP:
            # interrupt process is received by the application as ^C.
            self._data_received(b"\x03")

    def _negotiation_received(self, verb, opt):
        if verb == WONT and opt == NAWS:
            self._naws_done.set()
        elif verb == WONT and opt == TTYPE:
            self._ttype_done.set()
        else:
            logger.debug("%s: %s %s", self, name_command(verb),
                         name_command(opt))

    # private methods

    def _write_input(self):
        # write as much of the backlog as the input pipe accepts, and
        # continue when it is writable again.
        while self._input_backlog:
            try:
                written = os.write(self._input_fd, self._input_backlog)
            except BlockingIOError:
                break
            except OSError as err:
                logger.debug("%s: input discarded, %s", self, err)
                self._input_backlog.clear()
                break
            del self._input_backlog[:written]
        if self._input_backlog:
            if self._input_drained.is_set():
                self._input_drained.clear()
                self._loop.add_writer(self._input_fd, self._write_input)
        elif not self._input_drained.is_set():
            self._loop.remove_writer(self._input_fd)
            self._input_drained.set()

    def _close_transport(self):
        if not self._input_drained.is_set():
            self._loop.remove_writer(self._input_fd)
        self._input_backlog.clear()
        # resume a read_loop waiting for input to drain
        self._input_drained.set()
        if self.vt100_input is not None:
            self.vt100_input.close()
        self.writer.close()
        # unblock a pending negotiate()
        self._naws_done.set()
        self._ttype_done.set()
        self._closed_event.set()

    def _in_loop_thread(self):
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _call_soon_threadsafe(self, func, *args):
        try:
            self._loop.call_soon_threadsafe(func, *args)
        except RuntimeError:
            # event loop is closed
            logger.debug("%s: %s dropped, event loop closed.", self,
                         func.__name__)
