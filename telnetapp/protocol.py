"""
Module provides class TelnetProtocolParser, a byte-level telnet interpreter.

The parser is a plain state machine without any I/O.  Raw bytes received
from a socket are given to :meth:`TelnetProtocolParser.feed` in chunks of
any size; in-band data, window size (NAWS, :rfc:`1073`) and terminal type
(TTYPE, :rfc:`1091`) are reported through callbacks, synchronously and in
wire order.

Instances are not safe for concurrent use: exactly one task should ever
call :meth:`~TelnetProtocolParser.feed` for a given connection.
"""
# std imports
import logging
import struct
import enum
import sys

# local
from .accessories import log_exception
from .telopt import (
    IAC, SB, SE, IS, SEND, NAWS, TTYPE, WONT, DONT, CR, LF, NUL,
    NEGOTIATION_VERBS, SIMPLE_COMMANDS, name_command,
)

__all__ = ("TelnetProtocolParser", "ParserState", "clamp_size",
           "MAX_SUBNEG_BUFSIZE", "MIN_SIZE", "MAX_SIZE")

logger = logging.getLogger("telnetapp.protocol")

#: Maximum number of bytes buffered for a single subnegotiation.
MAX_SUBNEG_BUFSIZE = 1024

#: Bounds of any window dimension reported by NAWS.
MIN_SIZE, MAX_SIZE = 1, 500


class ParserState(enum.Enum):
    """State of :class:`TelnetProtocolParser` between two bytes."""

    DATA = "data"
    IAC_SEEN = "iac"
    COMMAND_SEEN = "command"
    SUBNEG = "subneg"
    SUBNEG_IAC_SEEN = "subneg-iac"


def clamp_size(value):
    """Return window dimension ``value`` bound to ``[1, 500]``."""
    return max(MIN_SIZE, min(MAX_SIZE, value))


class TelnetProtocolParser:
    """
    Telnet protocol parser.

    :param Callable data_received: called with ``bytes`` of in-band data,
        telnet commands removed, ``IAC IAC`` collapsed to a single ``0xff``,
        and NVT ``CR LF`` or ``CR NUL`` received as ``\\n``.
    :param Callable size_received: called with ``(columns, rows)`` of a
        NAWS subnegotiation, each clamped to the range 1 through 500.
    :param Callable ttype_received: called with the ``str`` terminal type
        of a ``TTYPE IS`` subnegotiation.
    :param Callable command_received: optional, called with the command
        byte of any 2-byte command, such as ``IP`` (interrupt process).
    :param Callable negotiation_received: optional, called with
        ``(verb, option)`` of any ``WILL``, ``WONT``, ``DO`` or ``DONT``
        received.
    """

    def __init__(self, data_received, size_received, ttype_received,
                 command_received=None, negotiation_received=None):
        for name, func in (("data_received", data_received),
                           ("size_received", size_received),
                           ("ttype_received", ttype_received)):
            if not callable(func):
                raise TypeError("{0} must be callable, got {1!r}"
                                .format(name, func))
        self.data_received = data_received
        self.size_received = size_received
        self.ttype_received = ttype_received
        self.command_received = command_received
        self.negotiation_received = negotiation_received

        self.state = ParserState.DATA
        self._verb = None
        self._cr_seen = False
        self._sb_overflow = False
        self._sb_buffer = bytearray()
        self._data_buffer = bytearray()

    def __repr__(self):
        return "<TelnetProtocolParser state={0} sb_buffer={1}>".format(
            self.state.value, len(self._sb_buffer))

    def feed(self, data):
        """
        Feed raw bytes received from the transport into the state machine.

        Never raises: a malformed sequence is discarded and parsing resumes
        at the next recognizable boundary.  A sequence cut short at the end
        of ``data`` is resumed by the next call.
        """
        for idx in range(len(data)):
            byte = data[idx:idx + 1]
            try:
                self._handlers[self.state](self, byte)
            except Exception:
                # discard the pending unit, resume in DATA
                logger.warning("error processing byte %r in state %s",
                               byte, self.state.value)
                log_exception(logger.warning, *sys.exc_info())
                self._reset()
        try:
            self._flush_data()
        except Exception:
            log_exception(logger.warning, *sys.exc_info())

    # state handlers

    def _state_data(self, byte):
        if byte == IAC:
            self._cr_seen = False
            self.state = ParserState.IAC_SEEN
        elif self._cr_seen and byte in (LF, NUL):
            # second byte of an NVT newline, already delivered.
            self._cr_seen = False
        elif byte == CR:
            self._cr_seen = True
            self._data_buffer += LF
        else:
            self._cr_seen = False
            self._data_buffer += byte

    def _state_iac_seen(self, byte):
        self.state = ParserState.DATA
        if byte == IAC:
            # escaped 0xff, "byte stuffing"
            self._data_buffer += IAC
        elif byte in NEGOTIATION_VERBS:
            self._verb = byte
            self.state = ParserState.COMMAND_SEEN
        elif byte == SB:
            self._sb_buffer.clear()
            self._sb_overflow = False
            self.state = ParserState.SUBNEG
        elif byte in SIMPLE_COMMANDS:
            self._flush_data()
            logger.debug("recv IAC %s", name_command(byte))
            if self.command_received is not None:
                self.command_received(byte)
        else:
            logger.warning("IAC %s: not a legal 2-byte cmd, discarded",
                           name_command(byte))

    def _state_command_seen(self, byte):
        verb, self._verb = self._verb, None
        self.state = ParserState.DATA
        self._flush_data()
        if verb in (WONT, DONT):
            # refusals are final, the feature keeps its default.
            logger.debug("recv IAC %s %s, not retried",
                         name_command(verb), name_command(byte))
        else:
            logger.debug("recv IAC %s %s",
                         name_command(verb), name_command(byte))
        if self.negotiation_received is not None:
            self.negotiation_received(verb, byte)

    def _state_subneg(self, byte):
        if byte == IAC:
            self.state = ParserState.SUBNEG_IAC_SEEN
        else:
            self._sb_append(byte)

    def _state_subneg_iac_seen(self, byte):
        if byte == SE:
            self.state = ParserState.DATA
            self._flush_data()
            try:
                self._handle_subnegotiation()
            finally:
                self._sb_buffer.clear()
        elif byte == IAC:
            # escaped 0xff within subnegotiation payload
            self._sb_append(IAC)
            self.state = ParserState.SUBNEG
        else:
            logger.warning("sub-negotiation buffer interrupted by IAC %s, "
                           "%d bytes discarded", name_command(byte),
                           len(self._sb_buffer))
            self._sb_buffer.clear()
            self.state = ParserState.DATA

    _handlers = {
        ParserState.DATA: _state_data,
        ParserState.IAC_SEEN: _state_iac_seen,
        ParserState.COMMAND_SEEN: _state_command_seen,
        ParserState.SUBNEG: _state_subneg,
        ParserState.SUBNEG_IAC_SEEN: _state_subneg_iac_seen,
    }

    # subnegotiation

    def _sb_append(self, byte):
        if len(self._sb_buffer) < MAX_SUBNEG_BUFSIZE:
            self._sb_buffer += byte
        elif not self._sb_overflow:
            self._sb_overflow = True
            logger.warning("sub-negotiation buffer exceeds %d bytes",
                           MAX_SUBNEG_BUFSIZE)

    def _handle_subnegotiation(self):
        if self._sb_overflow:
            logger.warning("sub-negotiation %s discarded, too large",
                           name_command(bytes(self._sb_buffer[:1])))
            return
        if not self._sb_buffer:
            logger.warning("empty sub-negotiation discarded")
            return
        cmd, buf = bytes(self._sb_buffer[:1]), bytes(self._sb_buffer[1:])
        if cmd == NAWS:
            self._handle_sb_naws(buf)
        elif cmd == TTYPE:
            self._handle_sb_ttype(buf)
        else:
            logger.debug("sub-negotiation %s ignored (%d bytes)",
                         name_command(cmd), len(buf))

    def _handle_sb_naws(self, buf):
        if len(buf) != 4:
            logger.warning("NAWS: expected 4 bytes, got %d", len(buf))
            return
        columns, rows = struct.unpack("!HH", buf)
        logger.debug("recv NAWS columns=%d rows=%d", columns, rows)
        self.size_received(clamp_size(columns), clamp_size(rows))

    def _handle_sb_ttype(self, buf):
        if not buf:
            logger.warning("TTYPE: empty sub-negotiation")
            return
        opt, name = buf[:1], buf[1:]
        if opt == IS:
            ttype = name.decode("ascii", "replace")
            logger.debug("recv TTYPE IS %r", ttype)
            self.ttype_received(ttype)
        elif opt == SEND:
            logger.debug("recv TTYPE SEND, ignored by server")
        else:
            logger.warning("TTYPE: illegal sub-command %r", opt)

    # private methods

    def _flush_data(self):
        if self._data_buffer:
            data = bytes(self._data_buffer)
            self._data_buffer.clear()
            self.data_received(data)

    def _reset(self):
        self.state = ParserState.DATA
        self._verb = None
        self._cr_seen = False
        self._sb_overflow = False
        self._sb_buffer.clear()
        self._data_buffer.clear()
