"""MCP server exposing confirmation-gated remote command execution."""
import atexit
from typing import Optional

from fastmcp import FastMCP

from .classifier import CommandClassifier
from .config import JsonServerStore, ServerRegistry, Settings
from .datastructures import ConnectionConfig, RegisteredServer
from .errors import OrchestratorError, describe_error
from .logging_manager import setup_logging
from .orchestrator import CommandOrchestrator
from .presentation import EventQueuePresenter, format_event
from .session_pool import RemoteSessionPool
from .suggestions import OpenAISuggestionEngine


settings = Settings.from_env()
logger = setup_logging(settings.log_dir)

# Initialize the MCP server
mcp = FastMCP("ssh-orchestrator")
presenter = EventQueuePresenter()
registry = ServerRegistry(JsonServerStore(settings.servers_file))
pool = RemoteSessionPool(connect_timeout=settings.connect_timeout,
                         command_timeout=settings.command_timeout)
orchestrator = CommandOrchestrator(
    pool,
    registry,
    presenter,
    classifier=CommandClassifier(OpenAISuggestionEngine(settings.openai_api_key, settings.openai_model)),
    max_streams_per_requester=settings.max_streams_per_requester,
    progress_interval=settings.progress_interval,
    output_window=settings.output_window,
)
atexit.register(orchestrator.shutdown)


def _drain(requester_id: str) -> str:
    events = presenter.drain(requester_id)
    if not events:
        return "No new events"
    return "\n\n---\n\n".join(format_event(event) for event in events)


@mcp.tool()
def send_message(requester_id: str, text: str) -> str:
    """Send a message as a requester: a /directive, a command, or a request in plain words.

    Commands are never run directly. They are held for confirmation; call
    confirm_command to run the pending one.

    Args:
        requester_id: Identifier of the conversation or user
        text: Message text, e.g. "ls -la", "run uptime", "show me the files", "/status"
    """
    orchestrator.handle_message(requester_id, text)
    return _drain(requester_id)


@mcp.tool()
def confirm_command(requester_id: str) -> str:
    """Run the requester's pending command.

    Streaming commands (tail -f, top, watch, ...) report progress through
    poll_events until they finish or are stopped.
    """
    dispatch = orchestrator.handle_confirm(requester_id)
    if dispatch is not None and dispatch.future is not None and not dispatch.streaming:
        # Wait for one-shot commands so their result is returned with this call
        dispatch.future.result()
    result = _drain(requester_id)
    if dispatch is not None and dispatch.handle_id:
        result = f"Streaming command started: {dispatch.handle_id}\n\n{result}"
    return result


@mcp.tool()
def cancel_command(requester_id: str) -> str:
    """Discard the requester's pending command."""
    orchestrator.cancel(requester_id)
    return _drain(requester_id)


@mcp.tool()
def modify_command(requester_id: str) -> str:
    """Discard the pending command; the next message sent becomes the new pending command."""
    orchestrator.modify(requester_id)
    return _drain(requester_id)


@mcp.tool()
def stop_streaming(requester_id: str, handle_id: Optional[str] = None) -> str:
    """Stop one streaming command, or all of the requester's streaming commands.

    Args:
        requester_id: Identifier of the conversation or user
        handle_id: Handle returned by confirm_command (optional, all when omitted)
    """
    target = f"/stop {handle_id}" if handle_id else "/stop all"
    orchestrator.handle_message(requester_id, target)
    return _drain(requester_id)


@mcp.tool()
def poll_events(requester_id: str) -> str:
    """Return progress, results and notices queued for the requester since the last call."""
    return _drain(requester_id)


@mcp.tool()
def list_servers() -> str:
    """List registered servers and their connection state."""
    return orchestrator.servers_text()


@mcp.tool()
def connect_server(requester_id: str, server: str) -> str:
    """Connect to a registered server and make it the requester's active server.

    Args:
        requester_id: Identifier of the conversation or user
        server: Server id or name
    """
    orchestrator.handle_message(requester_id, f"/connect {server}")
    return _drain(requester_id)


@mcp.tool()
def disconnect_server(requester_id: str, server: Optional[str] = None) -> str:
    """Disconnect a server, the requester's active one when omitted."""
    orchestrator.handle_message(requester_id, f"/disconnect {server}" if server else "/disconnect")
    return _drain(requester_id)


@mcp.tool()
def add_server(
    server_id: str,
    name: str,
    host: str,
    username: str = "",
    port: int = 22,
    password: Optional[str] = None,
    private_key_path: Optional[str] = None,
) -> str:
    """Register an SSH server and persist it to the server file.

    An existing server with the same id is replaced.
    """
    try:
        orchestrator.add_server(RegisteredServer(
            id=server_id,
            name=name,
            connection=ConnectionConfig(host=host, username=username, port=port,
                                        password=password, private_key_path=private_key_path),
        ))
    except (OrchestratorError, OSError) as e:
        logger.error(f"[ADD_SERVER_FAIL] {server_id}: {e}")
        return describe_error(e)
    return f"Server Added: {name} ({host}:{port})"


@mcp.tool()
def remove_server(server_id: str) -> str:
    """Unregister a server, closing its session if one is open."""
    try:
        server = orchestrator.remove_server(server_id)
    except (OrchestratorError, OSError) as e:
        return describe_error(e)
    return f"Removed server {server.name}"


@mcp.tool()
def status(requester_id: str) -> str:
    """Show connections, the pending command and streaming commands for a requester."""
    return orchestrator.status_text(requester_id)


@mcp.tool()
def show_history(requester_id: str) -> str:
    """Show the requester's recent commands, oldest first."""
    orchestrator.handle_message(requester_id, "/history")
    return _drain(requester_id)


@mcp.tool()
def rerun_command(requester_id: str, index: int) -> str:
    """Put a command from show_history back up for confirmation.

    Args:
        requester_id: Identifier of the conversation or user
        index: Position in the history listing, starting at 0
    """
    try:
        orchestrator.rerun_history(requester_id, index)
    except OrchestratorError as e:
        return describe_error(e)
    return _drain(requester_id)


def main():
    if settings.autoconnect:
        orchestrator.autoconnect_default()
    mcp.run()


if __name__ == "__main__":
    main()
