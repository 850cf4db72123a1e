"""
The ``main`` function here is wired to the command line tool by name
telnetapp-server.  If this server's PID receives the SIGTERM signal, it
attempts to shutdown gracefully.

The :class:`TelnetServer` class accepts telnet clients, negotiates window
size and terminal type with each, and runs an ``interact`` coroutine per
client within a prompt_toolkit application session, so that any
prompt_toolkit application may be served to many clients at once.
"""

# std imports
import collections
import itertools
import threading
import argparse
import asyncio
import logging
import signal
import enum
import sys

# 3rd party
from prompt_toolkit.input import create_pipe_input

# local
from . import accessories
from .connection import TelnetConnection

__all__ = ("TelnetServer", "ServerState", "run_server", "parse_server_args")

CONFIG = collections.namedtuple(
    "CONFIG",
    [
        "host",
        "port",
        "loglevel",
        "logfile",
        "logfmt",
        "interact",
        "encoding",
        "connect_maxwait",
        "enable_cpr",
    ],
)(
    host="localhost",
    port=6023,
    loglevel="info",
    logfile=None,
    logfmt=accessories._DEFAULT_LOGFMT,
    interact=accessories.function_lookup("telnetapp.shell.telnet_prompt_shell"),
    encoding="utf-8",
    connect_maxwait=0.5,
    enable_cpr=True,
)
logger = logging.getLogger("telnetapp.server")


class ServerState(enum.Enum):
    """Lifecycle of a :class:`TelnetServer`."""

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


async def _dummy_interact(connection):
    pass


class TelnetServer:
    """
    Telnet server running an interact coroutine for each client.

    :param str host: bind address.
    :param int port: listen port, ``0`` to bind any free port; the bound
        port is then available as :attr:`port` once ``ready_cb`` is called.
    :param Callable interact: An async function that is called after
        negotiation completes, receiving argument ``(connection)``, a
        :class:`~.TelnetConnection`.  prompt_toolkit applications created
        within it read from and write to that client.
    :param str encoding: character encoding of the session.
    :param style: prompt_toolkit style used by :meth:`~.TelnetConnection.send`,
        passed through unmodified.
    :param bool enable_cpr: whether the prompt_toolkit output may request
        cursor position reports of the client.
    :param float connect_maxwait: maximum duration awaiting the replies of
        window size and terminal type before defaults are assumed.
    :param float cleanup_timeout: maximum duration awaiting completion of
        connections on shutdown.
    """

    #: limit of negotiated connections held for :meth:`wait_for_client`.
    READY_QUEUE_SIZE = 64

    def __init__(self, host="127.0.0.1", port=23, interact=None,
                 encoding="utf-8", style=None, enable_cpr=True,
                 connect_maxwait=0.5, cleanup_timeout=5.0):
        if not 0 <= port <= 65535:
            raise ValueError("port must be within 0 and 65535, got {0!r}"
                             .format(port))
        self.host = host
        self.port = port
        self.interact = interact or _dummy_interact
        self.encoding = encoding
        self.style = style
        self.enable_cpr = enable_cpr
        self.connect_maxwait = connect_maxwait
        self.cleanup_timeout = cleanup_timeout

        self._state = ServerState.CREATED
        self._server = None
        self._run_task = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        #: negotiated connections, by connection_id
        self._connections = {}
        # all connections not yet closed, negotiating or not; loop thread only
        self._live = set()
        self._tasks = set()
        # created on first use, within the running event loop
        self._ready_queue = None

    def __repr__(self):
        return "<TelnetServer {0}:{1} {2} clients={3}>".format(
            self.host, self.port, self._state.value, len(self._connections))

    @property
    def state(self):
        return self._state

    @property
    def connections(self):
        """
        List of connected clients.

        The list is a copy, safe to iterate while clients connect and
        disconnect from any thread.
        """
        with self._lock:
            return list(self._connections.values())

    async def run(self, ready_cb=None, stop_event=None):
        """
        Run the telnet server until ``stop_event`` is set, or cancelled.

        :param Callable ready_cb: called once the listening socket is bound.
        :param asyncio.Event stop_event: stops the server when set.
        :raises OSError: when the listening socket cannot be bound, before
            ``ready_cb`` is called.
        :raises RuntimeError: when the server already ran.

        On stop, the server no longer accepts clients, closes all
        connections, waits for them up to :attr:`cleanup_timeout` seconds,
        and closes the listening socket.
        """
        if self._state is not ServerState.CREATED:
            raise RuntimeError("{0!r} may only run once".format(self))
        try:
            self._server = await asyncio.start_server(
                self._handle_client, self.host, self.port, reuse_address=True)
        except Exception:
            self._state = ServerState.STOPPED
            raise
        self._state = ServerState.RUNNING
        if self.port == 0:
            self.port = self._server.sockets[0].getsockname()[1]
        logger.info("Server ready on %s:%s", self.host, self.port)

        try:
            if ready_cb is not None:
                ready_cb()
            if stop_event is None:
                # serve until cancelled
                await asyncio.get_running_loop().create_future()
            else:
                await stop_event.wait()
        finally:
            await self._shutdown()

    def start(self):
        """
        Run the server as a background task of the running event loop.

        :returns: the :class:`asyncio.Task` of :meth:`run`.
        """
        if self._run_task is None:
            self._run_task = asyncio.ensure_future(self.run())
        return self._run_task

    async def stop(self):
        """Stop a server started by :meth:`start`, awaiting its shutdown."""
        if self._run_task is None:
            return
        task, self._run_task = self._run_task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def wait_for_client(self):
        """
        Wait for the next client to complete negotiation.

        :returns: the :class:`~.TelnetConnection` of that client.
        """
        while True:
            connection = await self._get_ready_queue().get()
            if not connection.closed:
                return connection

    # private methods

    async def _handle_client(self, reader, writer):
        task = asyncio.current_task()
        self._tasks.add(task)
        try:
            if self._server is not None and not self._server.is_serving():
                # accepted while shutting down
                writer.close()
                return
            with create_pipe_input() as vt100_input:
                connection = TelnetConnection(
                    reader, writer,
                    interact=self.interact,
                    server=self,
                    encoding=self.encoding,
                    style=self.style,
                    vt100_input=vt100_input,
                    enable_cpr=self.enable_cpr,
                    connection_id=next(self._ids),
                )
                logger.info("Connection from %s", connection)
                self._live.add(connection)
                try:
                    await self._run_connection(connection)
                finally:
                    self._live.discard(connection)
        except Exception:
            logger.warning("Error handling client:")
            accessories.log_exception(logger.warning, *sys.exc_info())
            writer.close()
        finally:
            self._tasks.discard(task)

    async def _run_connection(self, connection):
        read_task = asyncio.ensure_future(connection.read_loop())
        tasks = [read_task]
        try:
            if await connection.negotiate(self.connect_maxwait):
                if self._add_connection(connection):
                    self._announce(connection)
                    tasks.append(asyncio.ensure_future(
                        connection.run_application()))
                    await asyncio.wait(
                        tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            connection.close()
            done, pending = await asyncio.wait(
                tasks, timeout=self.cleanup_timeout)
            for pending_task in pending:
                logger.debug("cancel %r of %s", pending_task, connection)
                pending_task.cancel()
            if pending:
                await asyncio.wait(pending)

    def _add_connection(self, connection):
        with self._lock:
            if connection.closed:
                return False
            self._connections[connection.connection_id] = connection
        return True

    def _remove_connection(self, connection):
        with self._lock:
            self._connections.pop(connection.connection_id, None)

    def _announce(self, connection):
        ready_queue = self._get_ready_queue()
        if ready_queue.full():
            # nobody is waiting for clients, drop the oldest.
            ready_queue.get_nowait()
        ready_queue.put_nowait(connection)

    def _get_ready_queue(self):
        if self._ready_queue is None:
            self._ready_queue = asyncio.Queue(self.READY_QUEUE_SIZE)
        return self._ready_queue

    async def _shutdown(self):
        logger.info("Server stopping, %d clients.", len(self._live))
        # stop accepting new clients
        self._server.close()
        # closed sockets end each reading task, the usual cleanup path.
        for connection in list(self._live):
            connection.close()
        tasks = list(self._tasks)
        if tasks:
            done, pending = await asyncio.wait(
                tasks, timeout=self.cleanup_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("%d clients did not close within %1.2fs.",
                               len(pending), self.cleanup_timeout)
        try:
            await asyncio.wait_for(self._server.wait_closed(),
                                   self.cleanup_timeout)
        except asyncio.TimeoutError:
            logger.warning("listening socket did not close within %1.2fs.",
                           self.cleanup_timeout)
        self._state = ServerState.STOPPED
        logger.info("Server stop.")


def parse_server_args():
    parser = argparse.ArgumentParser(
        description="Telnet server of prompt_toolkit applications",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("host", nargs="?", default=CONFIG.host, help="bind address")
    parser.add_argument(
        "port", nargs="?", type=int, default=CONFIG.port, help="bind port"
    )
    parser.add_argument("--loglevel", default=CONFIG.loglevel, help="level name")
    parser.add_argument("--logfile", default=CONFIG.logfile, help="filepath")
    parser.add_argument("--logfmt", default=CONFIG.logfmt, help="log format")
    parser.add_argument(
        "--interact",
        default=CONFIG.interact,
        type=accessories.function_lookup,
        help="module.function_name",
    )
    parser.add_argument("--encoding", default=CONFIG.encoding, help="encoding name")
    parser.add_argument(
        "--connect-maxwait",
        type=float,
        default=CONFIG.connect_maxwait,
        help="timeout for pending negotiation",
    )
    parser.add_argument(
        "--disable-cpr",
        dest="enable_cpr",
        action="store_false",
        default=CONFIG.enable_cpr,
        help="do not request cursor position reports",
    )
    return vars(parser.parse_args())


async def run_server(
    host=CONFIG.host,
    port=CONFIG.port,
    loglevel=CONFIG.loglevel,
    logfile=CONFIG.logfile,
    logfmt=CONFIG.logfmt,
    interact=CONFIG.interact,
    encoding=CONFIG.encoding,
    connect_maxwait=CONFIG.connect_maxwait,
    enable_cpr=CONFIG.enable_cpr,
):
    """
    Program entry point for server daemon.

    This function configures a logger and runs a telnet server for the
    given keyword arguments, serving forever, completing only upon receipt of
    SIGTERM.
    """
    accessories.make_logger(
        name="telnetapp.server", loglevel=loglevel, logfile=logfile, logfmt=logfmt
    )

    # log all function arguments.
    _locals = locals()
    _cfg_mapping = ", ".join(
        ("{0}={{{0}}}".format(field) for field in CONFIG._fields)
    ).format(**_locals)
    logger.debug("Server configuration: {}".format(_cfg_mapping))

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    server = TelnetServer(
        host,
        port,
        interact=interact,
        encoding=encoding,
        enable_cpr=enable_cpr,
        connect_maxwait=connect_maxwait,
    )

    # SIGTERM causes server to gracefully stop
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    try:
        await server.run(stop_event=stop_event)
    finally:
        # remove signal handler on stop
        loop.remove_signal_handler(signal.SIGTERM)


def main():
    try:
        asyncio.run(run_server(**parse_server_args()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
