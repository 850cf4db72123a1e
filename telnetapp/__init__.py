"""telnetapp: serve prompt_toolkit applications over Telnet with asyncio."""
# pylint: disable=wildcard-import,undefined-variable
from .protocol import *         # noqa
from .connection import *       # noqa
from .server import *           # noqa
from .shell import *            # noqa
from .telopt import *           # noqa

__all__ = (
    protocol.__all__ +
    connection.__all__ +
    server.__all__ +
    shell.__all__ +
    telopt.__all__
)  # noqa

__license__ = 'ISC'
