"""Confirmation-gated command orchestration for remote sessions."""
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional

from .classifier import CommandClassifier
from .config import DEFAULT_SERVER_ID, ServerRegistry
from .datastructures import (
    Classification,
    ClassificationKind,
    CommandConfirmation,
    RegisteredServer,
    Suggestion,
)
from .errors import (
    NoActiveStreamingCommands,
    NoPendingConfirmation,
    NoServerAvailable,
    NotConnected,
    OrchestratorError,
    SessionConnectionError,
    StreamLimitReached,
    UnknownServer,
    describe_error,
)
from .logging_manager import get_logger
from .presentation import Presenter
from .session_pool import RemoteSessionPool
from .sessions import StreamingCommandState, UserSession, UserSessionStore
from .streaming import DEFAULT_PROGRESS_INTERVAL, DEFAULT_WINDOW_CHARS, StreamMultiplexer, clip_output


# Textual markers of commands that run continuously or for a long time
STREAMING_PATTERNS = tuple(re.compile(p) for p in (
    r'\btail\b.*\s(-[a-zA-Z]*[fF][a-zA-Z]*|--follow)\b',
    r'\bjournalctl\b.*\s(-f|--follow)\b',
    r'\blogs\b.*\s(-f|--follow)\b',
    r'\bdmesg\b.*\s(-w|--follow)\b',
    r'(^|[;&|]\s*)(sudo\s+)?top\b(?!.*\s-n\s*\d)',
    r'\b(htop|iotop|atop|btop|iftop|nload|glances)\b',
    r'\bwatch\s',
    r'\b(tcpdump|tshark|ngrep)\b',
    r'\binotifywait\b.*\s(-m|--monitor)\b',
    r'\bfswatch\b',
    r'\bping\b(?!.*\s-c\s*\d)',
    r'\b(vmstat|iostat|mpstat)\s+\d+\s*$',
    r'\bnohup\b',
    r'(?<!&)&\s*$',
))

HELP_TEXT = (
    "Available Commands:\n"
    "/servers - List available SSH servers\n"
    "/connect [server] - Connect to a server\n"
    "/disconnect - Disconnect from current server\n"
    "/status - Show connection status\n"
    "/cancel - Cancel pending command\n"
    "/history - Show recent commands\n"
    "/stop [id|all] - Stop streaming commands\n\n"
    "Executing Commands:\n"
    "- Send commands directly: ls -la\n"
    "- Use plain words: show me the files\n"
    "- Commands in quotes: \"df -h\"\n\n"
    "All commands require confirmation before execution."
)


def is_streaming_command(command: str) -> bool:
    """True when the command is expected to keep producing output."""
    return any(pattern.search(command) for pattern in STREAMING_PATTERNS)


@dataclass
class Dispatch:
    confirmation: CommandConfirmation
    streaming: bool
    handle_id: Optional[str] = None
    future: Optional[Future] = None
    error: Optional[Exception] = None


class CommandOrchestrator:
    """Turns resolved command requests into confirmed executions.

    Each requester's confirmation state is changed under that requester's
    lock; requesters never wait on each other. One-shot commands run on a
    worker pool. Every streaming command gets its own reader thread from the
    session pool and its own multiplexer thread here, so no stream waits for
    a free worker.
    """

    MAX_WORKERS = 10

    def __init__(self, pool: RemoteSessionPool, registry: ServerRegistry, presenter: Presenter,
                 sessions: Optional[UserSessionStore] = None,
                 classifier: Optional[CommandClassifier] = None,
                 max_streams_per_requester: int = 5,
                 progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
                 output_window: int = DEFAULT_WINDOW_CHARS,
                 clock: Callable[[], float] = time.monotonic):
        self._pool = pool
        self._registry = registry
        self._presenter = presenter
        self._sessions = sessions if sessions is not None else UserSessionStore()
        self._classifier = classifier if classifier is not None else CommandClassifier()
        self._clock = clock
        self.max_streams_per_requester = max_streams_per_requester
        self.output_window = output_window
        self._multiplexer = StreamMultiplexer(presenter, progress_interval, output_window, clock)
        self._executor = ThreadPoolExecutor(max_workers=self.MAX_WORKERS, thread_name_prefix="ssh_cmd")
        self.logger = get_logger('orchestrator')

    @property
    def sessions(self) -> UserSessionStore:
        return self._sessions

    # Confirmation lifecycle

    def request_execution(self, requester_id: str, command: str, server_id: Optional[str] = None,
                          suggestion: Optional[Suggestion] = None) -> CommandConfirmation:
        """Hold a command for approval, replacing any pending one."""
        logger = self.logger.getChild('request')
        with self._sessions.locked(requester_id) as session:
            target = self._resolve_server(session, server_id)
            session.record_command(command)
            confirmation = CommandConfirmation(requester_id, command, target)
            previous = session.set_pending(confirmation)
            if previous is not None:
                logger.info(f"[PENDING_REPLACED] requester={requester_id}, old={previous.command[:100]}")
            logger.info(f"[PENDING] requester={requester_id}, server={target}, cmd={command[:100]}")
            self._presenter.present_confirmation_request(
                requester_id, command, self._registry.display_name(target), suggestion
            )
            return confirmation

    def _resolve_server(self, session: UserSession, server_id: Optional[str]) -> str:
        if server_id:
            server = self._registry.find(server_id)
            if not self._pool.is_connected(server.id):
                raise NotConnected(server.id)
            return server.id

        active = session.active_server_id
        if active and self._pool.is_connected(active):
            return active

        connected = self._pool.list_connected()
        ordered = [s.id for s in self._registry.servers() if s.id in connected]
        ordered += sorted(connected.difference(ordered))
        if len(ordered) == 1:
            session.active_server_id = ordered[0]
            return ordered[0]
        raise NoServerAvailable(ordered)

    def confirm(self, requester_id: str) -> Dispatch:
        """Dispatch the pending command.

        The pending confirmation is cleared before the command runs, so the
        requester can queue up the next command while this one is in flight.
        """
        logger = self.logger.getChild('confirm')
        with self._sessions.locked(requester_id) as session:
            confirmation = session.take_pending()
            if confirmation is None:
                raise NoPendingConfirmation()

            if is_streaming_command(confirmation.command):
                logger.info(f"[DISPATCH_STREAM] requester={requester_id}, cmd={confirmation.command[:100]}")
                return self._dispatch_streaming(session, confirmation)

            logger.info(f"[DISPATCH_ONESHOT] requester={requester_id}, cmd={confirmation.command[:100]}")
            session.executing += 1
            future = self._executor.submit(self._run_one_shot, confirmation)
            return Dispatch(confirmation, streaming=False, future=future)

    def cancel(self, requester_id: str) -> bool:
        """Drop the pending confirmation. Returns False when there was none."""
        with self._sessions.locked(requester_id) as session:
            had_pending = session.clear_pending()
        if had_pending:
            self._presenter.present_notice(requester_id, "Pending command cancelled")
        else:
            self._presenter.present_notice(requester_id, "No pending operations to cancel")
        return had_pending

    def modify(self, requester_id: str) -> Optional[str]:
        """Discard the pending command; the next resolved command replaces it."""
        with self._sessions.locked(requester_id) as session:
            confirmation = session.begin_modify()
        if confirmation is None:
            self._presenter.present_notice(requester_id, "No pending command to modify")
            return None
        self._presenter.present_notice(
            requester_id, f"Send me the modified command:\n\nCurrent: {confirmation.command}"
        )
        return confirmation.command

    # Dispatch

    def _run_one_shot(self, confirmation: CommandConfirmation):
        logger = self.logger.getChild('one_shot')
        requester_id = confirmation.requester_id
        server_name = self._registry.display_name(confirmation.server_id)
        start = self._clock()
        try:
            output = self._pool.execute(confirmation.server_id, confirmation.command)
        except OrchestratorError as e:
            logger.warning(f"[EXEC_FAIL] requester={requester_id}, {type(e).__name__}: {e}")
            self._presenter.present_error(requester_id, describe_error(e), options=("retry", "reconnect"))
        except Exception as e:
            logger.error(f"[EXEC_ERROR] requester={requester_id}: {e}", exc_info=True)
            self._presenter.present_error(requester_id, describe_error(e), options=("retry", "reconnect"))
        else:
            self._presenter.present_result(
                requester_id, clip_output(output.render(), self.output_window), self._clock() - start,
                exit_code=output.exit_code, server_name=server_name, command=confirmation.command,
            )
        finally:
            with self._sessions.locked(requester_id, touch=False) as session:
                session.executing -= 1

    def _dispatch_streaming(self, session: UserSession, confirmation: CommandConfirmation) -> Dispatch:
        requester_id = confirmation.requester_id
        if len(session.active_streaming_commands) >= self.max_streams_per_requester:
            error = StreamLimitReached(self.max_streams_per_requester)
            self._presenter.present_error(requester_id, describe_error(error), options=("stop",))
            return Dispatch(confirmation, streaming=True, error=error)

        try:
            handle = self._pool.execute_streaming(confirmation.server_id, confirmation.command)
        except OrchestratorError as e:
            self.logger.warning(f"[STREAM_FAIL] requester={requester_id}, {type(e).__name__}: {e}")
            self._presenter.present_error(requester_id, describe_error(e), options=("retry", "reconnect"))
            return Dispatch(confirmation, streaming=True, error=e)

        stream = StreamingCommandState(
            handle_id=handle.handle_id,
            command=confirmation.command,
            server_id=confirmation.server_id,
            started_at=self._clock(),
            handle=handle,
        )
        session.add_stream(stream)
        future: Future = Future()
        threading.Thread(
            target=self._run_multiplexer,
            args=(future, requester_id, stream, self._registry.display_name(confirmation.server_id)),
            name=f"ssh_mux-{handle.handle_id}",
            daemon=True,
        ).start()
        return Dispatch(confirmation, streaming=True, handle_id=handle.handle_id, future=future)

    def _run_multiplexer(self, future: Future, requester_id: str, stream: StreamingCommandState,
                         server_name: str):
        """Thread body for one stream; lives exactly as long as the stream."""
        future.set_running_or_notify_cancel()
        try:
            phase = self._multiplexer.run(requester_id, stream, server_name, self._stream_finished(requester_id))
        except Exception as e:
            self.logger.error(f"[MUX_ERROR] requester={requester_id}, handle={stream.handle_id}: {e}",
                              exc_info=True)
            future.set_exception(e)
        else:
            future.set_result(phase)

    def _stream_finished(self, requester_id: str) -> Callable[[StreamingCommandState], None]:
        def remove(stream: StreamingCommandState):
            with self._sessions.locked(requester_id, touch=False) as session:
                session.remove_stream(stream.handle_id)
        return remove

    def cancel_streaming(self, requester_id: str, handle_id: Optional[str] = None) -> List[str]:
        """Cancel one streaming command, or all of them when handle_id is None.

        Unknown or already finished handles are ignored.
        """
        logger = self.logger.getChild('cancel_streaming')
        with self._sessions.locked(requester_id) as session:
            if handle_id is None:
                targets = list(session.active_streaming_commands.values())
                if not targets:
                    raise NoActiveStreamingCommands()
            else:
                stream = session.active_streaming_commands.get(handle_id)
                targets = [stream] if stream is not None else []

            cancelled = []
            for stream in targets:
                session.remove_stream(stream.handle_id)
                if stream.cancel():
                    self._presenter.present_cancelled(
                        requester_id, stream.handle_id, self._clock() - stream.started_at
                    )
                    cancelled.append(stream.handle_id)
        logger.info(f"[CANCELLED] requester={requester_id}, handles={cancelled}")
        return cancelled

    def active_streams(self, requester_id: str) -> List[StreamingCommandState]:
        with self._sessions.locked(requester_id, touch=False) as session:
            return list(session.active_streaming_commands.values())

    # Connections and registry

    def connect(self, requester_id: str, id_or_name: str) -> RegisteredServer:
        server = self._registry.find(id_or_name)
        if not server.enabled:
            raise OrchestratorError(f"Server {server.name} is disabled")
        self._pool.connect(server.id, server.connection)
        with self._sessions.locked(requester_id) as session:
            session.active_server_id = server.id
        self._presenter.present_notice(
            requester_id, f"Successfully Connected!\nYou're now connected to {server.name}"
        )
        return server

    def disconnect(self, requester_id: str, id_or_name: Optional[str] = None) -> str:
        with self._sessions.locked(requester_id) as session:
            if id_or_name:
                server_id = self._registry.find(id_or_name).id
            elif session.active_server_id:
                server_id = session.active_server_id
            else:
                raise NoServerAvailable()
            for stream in list(session.active_streaming_commands.values()):
                if stream.server_id == server_id:
                    session.remove_stream(stream.handle_id)
                    if stream.cancel():
                        self._presenter.present_cancelled(
                            requester_id, stream.handle_id, self._clock() - stream.started_at
                        )
            if session.active_server_id == server_id:
                session.active_server_id = None

        self._pool.disconnect(server_id)
        self._presenter.present_notice(requester_id, f"Disconnected from {self._registry.display_name(server_id)}")
        return server_id

    def add_server(self, server: RegisteredServer):
        """Register a finished server record produced by a setup flow."""
        self._registry.add(server)

    def remove_server(self, server_id: str) -> RegisteredServer:
        server = self._registry.remove(server_id)
        self._pool.disconnect(server.id)
        for session in self._sessions.all():
            with self._sessions.locked(session.requester_id, touch=False):
                if session.active_server_id == server.id:
                    session.active_server_id = None
        return server

    def autoconnect_default(self) -> bool:
        """Connect the default server at startup when it is configured."""
        logger = self.logger.getChild('autoconnect')
        server = self._registry.get(DEFAULT_SERVER_ID)
        if server is None or not server.enabled or not server.connection.host:
            return False
        try:
            self._pool.connect(server.id, server.connection)
        except SessionConnectionError as e:
            logger.error(f"Failed to connect to default server: {describe_error(e)} ({e})")
            return False
        logger.info("Connected to default SSH server")
        return True

    # History and status

    def history(self, requester_id: str) -> List[str]:
        with self._sessions.locked(requester_id) as session:
            return list(session.command_history)

    def rerun_history(self, requester_id: str, index: int) -> CommandConfirmation:
        history = self.history(requester_id)
        if not 0 <= index < len(history):
            raise OrchestratorError("Could not restore command from history")
        return self.request_execution(requester_id, history[index])

    def status_text(self, requester_id: str) -> str:
        connected = self._pool.list_connected()
        with self._sessions.locked(requester_id) as session:
            lines = ["Connection Status:"]
            if not connected:
                lines.append("No active connections")
            else:
                lines.append("Connected Servers:")
                for server_id in sorted(connected):
                    marker = " (Active)" if session.active_server_id == server_id else ""
                    lines.append(f"- {self._registry.display_name(server_id)}{marker}")
            if session.pending_confirmation is not None:
                lines.append(f"\nPending Command:\n{session.pending_confirmation.command}")
            if session.active_streaming_commands:
                lines.append("\nStreaming Commands:")
                for stream in session.active_streaming_commands.values():
                    elapsed = self._clock() - stream.started_at
                    lines.append(f"- [{stream.handle_id}] {stream.command} ({elapsed:.0f}s)")
            lines.append(f"\nState: {session.state.value}")
        return "\n".join(lines)

    def servers_text(self) -> str:
        servers = self._registry.servers()
        if not servers:
            return "No Servers Configured\n\nAdd a server first."
        connected = self._pool.list_connected()
        lines = [f"You have {len(servers)} server{'s' if len(servers) > 1 else ''} configured:"]
        for server in servers:
            state = "connected" if server.id in connected else "disconnected"
            if not server.enabled:
                state = "disabled"
            lines.append(f"- {server.name} [{server.id}] {server.connection.host}:{server.connection.port} ({state})")
        return "\n".join(lines)

    # Inbound events

    def handle_message(self, requester_id: str, text: str) -> Classification:
        """Route one inbound message. Failures become presentation events."""
        classification = self._classifier.classify(text)
        self.logger.getChild('message').debug(
            f"requester={requester_id}, kind={classification.kind.value}, cmd={classification.command!r}"
        )
        self._guarded(requester_id, self._route, requester_id, classification)
        return classification

    def handle_confirm(self, requester_id: str) -> Optional[Dispatch]:
        return self._guarded(requester_id, self.confirm, requester_id)

    def _route(self, requester_id: str, classification: Classification):
        if classification.kind is ClassificationKind.SYSTEM:
            self._handle_directive(requester_id, classification.directive, classification.arguments)
        elif classification.command:
            self.request_execution(requester_id, classification.command, suggestion=classification.suggestion)
        else:
            self._presenter.present_notice(
                requester_id,
                "I'm not sure what you mean. Type a command like `ls` or `pwd`, "
                "put it in quotes, or ask something like 'show me the files'.",
                options=("help",),
            )

    def _handle_directive(self, requester_id: str, directive: str, arguments: str):
        notice = self._presenter.present_notice
        if directive in ('start', 'help'):
            notice(requester_id, HELP_TEXT)
        elif directive == 'servers' or (directive == 'connect' and not arguments):
            notice(requester_id, self.servers_text(),
                   options=tuple(f"connect {s.id}" for s in self._registry.servers()))
        elif directive == 'connect':
            self.connect(requester_id, arguments)
        elif directive == 'disconnect':
            self.disconnect(requester_id, arguments or None)
        elif directive == 'status':
            notice(requester_id, self.status_text(requester_id))
        elif directive == 'cancel':
            self.cancel(requester_id)
        elif directive == 'history':
            history = self.history(requester_id)
            if history:
                listing = "\n".join(f"{i}. {cmd}" for i, cmd in enumerate(history))
                notice(requester_id, f"Recent Commands:\n{listing}")
            else:
                notice(requester_id, "You haven't run any commands yet. Try `ls -la`, `pwd` or `df -h`.")
        elif directive == 'stop':
            target = None if arguments in ('', 'all') else arguments
            if not self.cancel_streaming(requester_id, target):
                notice(requester_id, f"Streaming command {target} has already finished" if target
                       else "Streaming commands have already finished")
        elif directive == 'addserver':
            notice(requester_id, "Send the new server's name, host, port, username and "
                                 "password or key path to register it.")
        elif directive == 'removeserver':
            if not arguments:
                raise UnknownServer("")
            server = self.remove_server(self._registry.find(arguments).id)
            notice(requester_id, f"Removed server {server.name}")

    def _guarded(self, requester_id: str, operation: Callable, *args):
        """Run an inbound operation, converting failures into one message each."""
        try:
            return operation(*args)
        except NoServerAvailable as e:
            options = tuple(f"connect {c}" for c in e.choices) or ("view servers", "quick connect", "add server")
            message = str(e) if e.choices else (
                "No Server Connected\n\nI need to connect to a server first."
            )
            self._presenter.present_notice(requester_id, message, options=options)
        except (NoPendingConfirmation, NoActiveStreamingCommands) as e:
            self._presenter.present_notice(requester_id, str(e))
        except SessionConnectionError as e:
            server = self._registry.get(e.server_id) if e.server_id else None
            message = f"Connection Failed\n\n{describe_error(e)}"
            if server is not None:
                message += f"\n\nServer: {server.name}\nHost: {server.connection.host}"
            self._presenter.present_error(requester_id, message, options=("retry", "other servers"))
        except OrchestratorError as e:
            self._presenter.present_error(requester_id, describe_error(e))
        except Exception as e:
            self.logger.error(f"[HANDLER_ERROR] requester={requester_id}: {e}", exc_info=True)
            self._presenter.present_error(requester_id, "An error occurred. Please try again.")
        return None

    def shutdown(self):
        """Stop all streams, close all sessions and the worker pool."""
        logger = self.logger.getChild('shutdown')
        logger.info("Shutting down orchestrator")
        for session in self._sessions.all():
            with self._sessions.locked(session.requester_id, touch=False):
                streams = list(session.active_streaming_commands.values())
            for stream in streams:
                stream.handle.cancel()
        self._pool.close_all()
        self._executor.shutdown(wait=False, cancel_futures=True)
