"""A default interact coroutine, appropriate for use with TelnetServer."""
# std imports
import logging

# 3rd party
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.shortcuts import PromptSession

# local
from . import accessories

__all__ = ("telnet_prompt_shell",)

logger = logging.getLogger("telnetapp.shell")

HELP = "help, quit, size, term, who, say <message>, clear, version"


async def telnet_prompt_shell(connection):
    """
    A default interact coroutine of :class:`~.TelnetServer`.

    This shell provides a very simple REPL over a prompt_toolkit
    ``PromptSession``, allowing introspection of the connected session, and
    a ``say`` command that is displayed above the prompt of every other
    connected client.
    """
    session = PromptSession()
    connection.erase_screen()
    connection.send(HTML("<b>Ready.</b> Type 'help' for commands.\n"))

    while True:
        try:
            command = await session.prompt_async("tel:sh> ")
        except KeyboardInterrupt:
            continue
        except EOFError:
            # ^D or close by client at prompt
            break

        command = command.strip()
        if command == "quit":
            # server hangs up on client
            connection.send("Goodbye.\n")
            break
        elif command == "help":
            connection.send(HELP + "\n")
        elif command == "size":
            connection.send("{0.columns}x{0.rows}\n".format(connection.size))
        elif command == "term":
            connection.send("{0}\n".format(connection.terminal_type))
        elif command == "who":
            for other in connection.server.connections:
                marker = "*" if other is connection else " "
                connection.send("{0} {1!r}\n".format(marker, other))
        elif command.startswith("say "):
            message = "[#{0}] {1}\n".format(connection.connection_id,
                                            command[len("say "):])
            broadcast(connection, message)
        elif command == "clear":
            connection.erase_screen()
        elif command == "version":
            connection.send(accessories.get_version() + "\n")
        elif command:
            connection.send("{0}: command not found\n".format(command))


def broadcast(sender, message):
    """Display ``message`` above the prompt of all clients but ``sender``."""
    for other in sender.server.connections:
        if other is sender:
            continue
        try:
            future = other.send_above_prompt(message)
        except RuntimeError:
            # not (or no longer) running an application
            other.send(message)
        else:
            if future is not None:
                future.add_done_callback(_log_broadcast_error)


def _log_broadcast_error(future):
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Error displaying broadcast message:")
        accessories.log_exception(logger.warning, type(exc), exc,
                                  exc.__traceback__)
