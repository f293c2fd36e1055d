"""Run the nREPL command server as a persistent MCP daemon over HTTP.

Usage:
    python -m hx_nrepl [--port PORT] [--env-file FILE] [--workspace DIR]

The daemon owns one REPL context: a jack-in server it starts lives until
the context is disconnected or the daemon receives SIGINT/SIGTERM.
"""

import argparse
import asyncio
import logging
import signal
from pathlib import Path

import uvicorn

from hx_nrepl.config import Config
from hx_nrepl.context import ReplContext
from hx_nrepl.host import BufferHost
from hx_nrepl.nrepl_client import NReplClient
from hx_nrepl.server import DEFAULT_PORT, create_server

log = logging.getLogger(__name__)


async def _run(port: int, config: Config, workspace: str, language: str | None) -> None:
    host = BufferHost(workspace, language=language)
    context = ReplContext.create(config, host, NReplClient(connect_timeout=config.connect_timeout))
    server = create_server(context, port=port)

    # uvicorn shares this loop so the supervisor's stream readers and
    # the evaluation pollers keep running between requests.
    app = server.streamable_http_app()
    uvi_config = uvicorn.Config(
        app, host=config.host, port=port, log_level="info",
    )
    uvi = uvicorn.Server(uvi_config)

    # _serve() skips uvicorn's capture_signals(), which would replace
    # the handlers installed below.
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    serve_task = asyncio.create_task(uvi._serve())

    await shutdown.wait()
    log.info("Signal received, shutting down")

    uvi.should_exit = True
    await serve_task
    log.info("Closing REPL context")
    await context.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="nREPL command server daemon")
    parser.add_argument(
        "--port", type=int, default=DEFAULT_PORT,
        help=f"Port to listen on (default: {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--env-file", type=Path, default=None,
        help="Environment file with HX_NREPL_* settings (default: .env lookup)",
    )
    parser.add_argument(
        "--workspace", default=None,
        help="Workspace directory used by jack-in (default: current directory)",
    )
    parser.add_argument(
        "--language", default="clojure",
        help="Language of the evaluated buffers (default: clojure)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [hx-nrepl] %(levelname)s %(message)s",
    )

    # The MCP SDK logs a full traceback when the HTTP client disconnects
    # before the response is sent (ClosedResourceError); keep it at DEBUG.
    class _SuppressDisconnect(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if record.exc_info and record.exc_info[1] is not None:
                if "ClosedResourceError" in str(record.exc_info[1]):
                    record.levelno = logging.DEBUG
                    record.levelname = "DEBUG"
                    record.msg = "Client disconnected before response completed"
                    record.exc_info = None
                    record.exc_text = None
            return True

    logging.getLogger("mcp.server.streamable_http_manager").addFilter(
        _SuppressDisconnect()
    )

    config = Config.from_env(args.env_file)
    workspace = config.resolve_workspace(args.workspace)

    log.info("Starting hx-nrepl on http://%s:%d/mcp", config.host, args.port)
    asyncio.run(_run(args.port, config, workspace, args.language or None))


if __name__ == "__main__":
    main()
