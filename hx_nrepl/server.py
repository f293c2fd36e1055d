"""MCP server exposing the REPL commands over stdio or HTTP."""

from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from hx_nrepl.commands import ReplCommands
from hx_nrepl.context import ReplContext
from hx_nrepl.host import BufferHost

# Default port for the persistent HTTP daemon
DEFAULT_PORT = 8902


def create_server(
    context: ReplContext,
    port: int = DEFAULT_PORT,
) -> FastMCP:
    """Create and configure the nREPL command server."""

    commands = ReplCommands(context)

    mcp = FastMCP(
        name="hx-nrepl",
        instructions=(
            "Evaluates code in an nREPL server for an editor. "
            "Use nrepl_jack_in to start a server for a project or nrepl_connect "
            "to attach to a running one, nrepl_eval to evaluate code, and "
            "nrepl_output to read the REPL buffer."
        ),
        host=context.config.host,
        port=port,
        stateless_http=True,
    )

    # ------------------------------------------------------------------
    # Tool: nrepl_connect
    # ------------------------------------------------------------------
    @mcp.tool()
    async def nrepl_connect(address: str) -> dict:
        """Connect to a running nREPL server.

        Args:
            address: "host:port", a bare port (localhost) or "nrepl://host:port".
        """
        return await commands.connect(address)

    # ------------------------------------------------------------------
    # Tool: nrepl_disconnect
    # ------------------------------------------------------------------
    @mcp.tool()
    async def nrepl_disconnect(kill_server: bool | None = None) -> dict:
        """Close the connection.

        If the server was started by nrepl_jack_in it is stopped when
        kill_server is true, left running when false, and the host is asked
        when omitted.
        """
        return await commands.disconnect(kill_server)

    # ------------------------------------------------------------------
    # Tool: nrepl_eval
    # ------------------------------------------------------------------
    @mcp.tool()
    async def nrepl_eval(code: str) -> dict:
        """Evaluate code in the current session and namespace.

        The prompt, output, errors and value are appended to the REPL buffer.
        """
        return await commands.eval(code)

    @mcp.tool()
    async def nrepl_eval_all(fragments: list[str]) -> dict:
        """Evaluate several fragments in order, each after the previous finished."""
        return await commands.eval_all(fragments)

    @mcp.tool()
    async def nrepl_load_file(path: str) -> dict:
        """Load a whole source file into the session."""
        return await commands.load_file(path)

    @mcp.tool()
    async def nrepl_stdin(text: str) -> dict:
        """Send input to an evaluation that is reading standard input."""
        return await commands.send_stdin(text)

    # ------------------------------------------------------------------
    # Tool: nrepl_completions / nrepl_lookup
    # ------------------------------------------------------------------
    @mcp.tool()
    async def nrepl_completions(prefix: str) -> dict:
        """Complete a symbol prefix in the current namespace.

        Returns candidates with their type and namespace when the server
        reports them.
        """
        return await commands.completions(prefix)

    @mcp.tool()
    async def nrepl_lookup(symbol: str) -> dict:
        """Look up documentation, arglists and source location for a symbol."""
        return await commands.lookup(symbol)

    # ------------------------------------------------------------------
    # Tool: nrepl_jack_in
    # ------------------------------------------------------------------
    @mcp.tool()
    async def nrepl_jack_in(
        workspace: str | None = None,
        aliases: list[str] | None = None,
    ) -> dict:
        """Start an nREPL server for a project and connect to it.

        Detects deps.edn, bb.edn or project.clj from the workspace upward,
        picks a free port in the configured range, launches the server and
        connects once it accepts connections.

        Args:
            workspace: Directory to start the project search from.
                       Defaults to the host's workspace.
            aliases: deps.edn aliases to activate (e.g. ["dev", "test"]).
                     When omitted the last saved selection is used.
        """
        return await commands.jack_in(workspace, aliases)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    @mcp.tool()
    async def nrepl_set_timeout(ms: int) -> dict:
        """Set the per-evaluation timeout in milliseconds."""
        return await commands.set_timeout(ms)

    @mcp.tool()
    async def nrepl_set_orientation(orientation: str) -> dict:
        """Choose how the REPL buffer split opens: "vertical" or "horizontal"."""
        return await commands.set_orientation(orientation)

    @mcp.tool()
    async def nrepl_set_language(language: str) -> dict:
        """Set the language of the buffer code is evaluated from (e.g. "clojure")."""
        host = context.host
        if not isinstance(host, BufferHost):
            return {"ok": False, "error": "unsupported", "message": "Host language is fixed"}
        host.language = language or None
        adapter = context.registry.for_language(host.language)
        return {"ok": True, "language": host.language, "adapter": adapter.language_name}

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    @mcp.tool()
    async def nrepl_status() -> dict:
        """Report the connection, namespace, settings and any owned server."""
        return commands.status()

    @mcp.tool()
    async def nrepl_output(tail: int = 4000) -> dict:
        """Get the most recent text of the REPL buffer.

        Args:
            tail: Number of characters to return from the end of the buffer.
        """
        host = context.host
        name = context.manager.state.buffer_name
        if not isinstance(host, BufferHost):
            return {"ok": False, "error": "unsupported", "message": "Host buffers are not readable"}
        text = host.text(name)
        return {"ok": True, "buffer": name, "text": text[-tail:] if tail > 0 else ""}

    return mcp
