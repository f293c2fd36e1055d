"""hx-nrepl: evaluate editor code in an nREPL server.

Connect to a running server or jack in (detect the project, pick a port,
start the server, wait until it accepts connections), then evaluate code
and render prompt, output, errors and values into a REPL buffer.

Can run standalone as an MCP daemon:
    python -m hx_nrepl
"""

from hx_nrepl.commands import ReplCommands
from hx_nrepl.config import Config
from hx_nrepl.context import ReplContext
from hx_nrepl.errors import ErrorKind, ReplError

__all__ = ["Config", "ErrorKind", "ReplCommands", "ReplContext", "ReplError"]
