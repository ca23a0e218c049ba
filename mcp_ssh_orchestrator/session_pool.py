"""Remote session pool using Paramiko."""
import codecs
import io
import os
import queue
import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterator, Optional, Set

import paramiko

from .datastructures import (
    CANCELLED_EXIT_CODE,
    CommandOutput,
    ConnectionConfig,
    StreamEvent,
    StreamEventKind,
)
from .errors import ExecutionError, NotConnected, TransportError, classify_connect_error
from .logging_manager import get_logger


class StreamHandle:
    """Output of one remote process as a finite, non-restartable event sequence.

    Events arrive in the order the remote process produced them and the
    sequence always ends with exactly one CLOSE event, including after
    cancellation.
    """

    def __init__(self, handle_id: str, server_id: str, command: str, channel: Any = None):
        self.handle_id = handle_id
        self.server_id = server_id
        self.command = command
        self.exit_code: Optional[int] = None
        self._channel = channel
        self._events: "queue.Queue[StreamEvent]" = queue.Queue()
        self._cancel_requested = threading.Event()
        self._closed = threading.Event()
        self._drained = False
        self._lock = threading.Lock()
        self.logger = get_logger('stream')

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def publish(self, kind: StreamEventKind, data: str):
        """Queue an output fragment. Ignored once the stream has closed."""
        with self._lock:
            if self._closed.is_set():
                return
            self._events.put(StreamEvent(kind, data))

    def close(self, exit_code: Optional[int], error: str = "") -> bool:
        """Queue the terminal event. Returns False when already closed."""
        with self._lock:
            if self._closed.is_set():
                return False
            self.exit_code = exit_code
            self._closed.set()
            self._events.put(StreamEvent(StreamEventKind.CLOSE, error, exit_code))
        self.logger.debug(f"[STREAM_CLOSE] handle={self.handle_id}, exit_code={exit_code}")
        return True

    def cancel(self) -> bool:
        """Request termination of the remote process.

        Safe to call repeatedly and after natural completion; only the first
        call on a running stream has an effect. The CLOSE event follows once
        the reader notices the request.
        """
        with self._lock:
            if self._closed.is_set() or self._cancel_requested.is_set():
                return False
            self._cancel_requested.set()

        self.logger.info(f"[STREAM_CANCEL] handle={self.handle_id}, cmd={self.command[:100]}")
        channel = self._channel
        if channel is not None:
            try:
                channel.send('\x03')  # Ctrl+C to the pty
            except Exception as e:
                self.logger.debug(f"Could not send interrupt to {self.handle_id}: {e}")
            try:
                channel.close()
            except Exception as e:
                self.logger.warning(f"Error closing channel for {self.handle_id}: {e}")
        return True

    def next_event(self, timeout: Optional[float] = None) -> Optional[StreamEvent]:
        """Return the next event, or None on timeout or after the stream was drained."""
        if self._drained:
            return None
        try:
            event = self._events.get(timeout=timeout)
        except queue.Empty:
            return None
        if event.kind is StreamEventKind.CLOSE:
            self._drained = True
        return event

    def __iter__(self) -> Iterator[StreamEvent]:
        while not self._drained:
            event = self.next_event()
            if event is not None:
                yield event


class RemoteSessionPool:
    """Owns at most one live SSH session per registered server id."""

    BUFFER_SIZE = 4096
    POLL_INTERVAL = 0.1
    DEFAULT_CONNECT_TIMEOUT = 30
    DEFAULT_COMMAND_TIMEOUT = 300
    TIMEOUT_EXIT_CODE = 124
    # paramiko keeps this when the channel closes without an exit-status message
    NO_EXIT_STATUS = -1

    def __init__(self, client_factory: Optional[Callable[[], paramiko.SSHClient]] = None,
                 connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
                 command_timeout: int = DEFAULT_COMMAND_TIMEOUT):
        self._client_factory = client_factory or paramiko.SSHClient
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._sessions: Dict[str, paramiko.SSHClient] = {}
        self._server_locks: Dict[str, threading.Lock] = {}
        self._streams: Dict[str, StreamHandle] = {}
        self._lock = threading.Lock()
        self.logger = get_logger('session_pool')

    def _server_lock(self, server_id: str) -> threading.Lock:
        with self._lock:
            lock = self._server_locks.get(server_id)
            if lock is None:
                lock = self._server_locks[server_id] = threading.Lock()
            return lock

    def connect(self, server_id: str, config: ConnectionConfig):
        """Open a new session for server_id, closing any existing one first."""
        logger = self.logger.getChild('connect')
        with self._server_lock(server_id):
            with self._lock:
                old_client = self._sessions.pop(server_id, None)
            if old_client is not None:
                logger.info(f"[RECONNECT] Closing existing session for {server_id}")
                self._close_client(server_id, old_client)

            client = self._client_factory()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

            connect_kwargs = {
                'hostname': config.host,
                'port': config.port or 22,
                'username': config.username or os.getenv('USER', 'root'),
            }
            logger.debug(f"Connection parameters: {connect_kwargs}")

            try:
                if config.password:
                    connect_kwargs['password'] = config.password
                    logger.debug("Connecting with password")
                elif config.private_key:
                    connect_kwargs['pkey'] = self._load_private_key(config.private_key)
                    logger.debug("Connecting with inline private key")
                elif config.private_key_path:
                    connect_kwargs['key_filename'] = os.path.expanduser(config.private_key_path)
                    logger.debug(f"Connecting with key: {connect_kwargs['key_filename']}")
                else:
                    logger.debug("Connecting without password or key (agent or no auth)")

                connect_kwargs['timeout'] = self.connect_timeout
                connect_kwargs['banner_timeout'] = self.connect_timeout
                connect_kwargs['auth_timeout'] = self.connect_timeout

                logger.info(f"[CONNECT] {server_id} -> {config.host}:{connect_kwargs['port']}")
                client.connect(**connect_kwargs)
            except Exception as e:
                logger.error(f"[CONNECT_FAIL] {server_id}: {type(e).__name__}: {e}")
                self._close_client(server_id, client)
                raise classify_connect_error(e, server_id) from e

            with self._lock:
                self._sessions[server_id] = client
            logger.info(f"[CONNECTED] {server_id}")

    @staticmethod
    def _load_private_key(pem: str) -> paramiko.PKey:
        last_error: Optional[Exception] = None
        for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
            try:
                return key_class.from_private_key(io.StringIO(pem))
            except paramiko.SSHException as e:
                last_error = e
        raise TransportError(f"Unsupported private key: {last_error}", cause=last_error)

    def _close_client(self, server_id: str, client: paramiko.SSHClient):
        try:
            client.close()
        except Exception as e:
            self.logger.warning(f"Error closing client for {server_id}: {e}")

    def disconnect(self, server_id: str) -> bool:
        """Close and forget the session. Returns False if there was none."""
        logger = self.logger.getChild('disconnect')
        with self._server_lock(server_id):
            with self._lock:
                client = self._sessions.pop(server_id, None)
            if client is None:
                logger.debug(f"No session to close for {server_id}")
                return False
            self._close_client(server_id, client)
        logger.info(f"[DISCONNECTED] {server_id}")
        return True

    def close_all(self):
        """Cancel every stream and close every session."""
        logger = self.logger.getChild('close_all')
        with self._lock:
            streams = list(self._streams.values())
            sessions = list(self._sessions.items())
            self._sessions.clear()
        logger.info(f"Closing {len(streams)} streams and {len(sessions)} sessions.")
        for handle in streams:
            handle.cancel()
        for server_id, client in sessions:
            self._close_client(server_id, client)

    def list_connected(self) -> Set[str]:
        with self._lock:
            sessions = list(self._sessions.items())
        return {server_id for server_id, client in sessions if self._is_alive(client)}

    def is_connected(self, server_id: str) -> bool:
        with self._lock:
            client = self._sessions.get(server_id)
        return client is not None and self._is_alive(client)

    @staticmethod
    def _is_alive(client: paramiko.SSHClient) -> bool:
        try:
            transport = client.get_transport()
            return bool(transport and transport.is_active())
        except Exception:
            return False

    def _get_client(self, server_id: str) -> paramiko.SSHClient:
        with self._lock:
            client = self._sessions.get(server_id)
        if client is None:
            raise NotConnected(server_id)
        return client

    def _open_channel(self, server_id: str, client: paramiko.SSHClient, command: str,
                      pty: bool = False) -> Any:
        try:
            transport = client.get_transport()
            if transport is None or not transport.is_active():
                raise ExecutionError("SSH session is no longer active", server_id)
            channel = transport.open_session(timeout=self.connect_timeout)
            if pty:
                channel.get_pty(width=200, height=50)
            channel.exec_command(command)
            return channel
        except ExecutionError:
            raise
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ExecutionError(f"Could not start remote process: {e}", server_id, e) from e

    def execute(self, server_id: str, command: str, timeout: Optional[float] = None) -> CommandOutput:
        """Run a command to completion.

        A nonzero exit status is returned in the output, not raised.
        """
        logger = self.logger.getChild('execute')
        client = self._get_client(server_id)
        timeout = timeout or self.command_timeout
        logger.info(f"[EXEC_REQ] server={server_id}, cmd={command[:100]}, timeout={timeout}")

        channel = self._open_channel(server_id, client, command)
        stdout_decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        stderr_decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        stdout, stderr = [], []
        start_time = time.time()

        try:
            while True:
                # Exit state sampled before reading; trailing output is drained first
                done = channel.exit_status_ready() or channel.closed
                received = False
                if channel.recv_ready():
                    stdout.append(stdout_decoder.decode(channel.recv(self.BUFFER_SIZE)))
                    received = True
                if channel.recv_stderr_ready():
                    stderr.append(stderr_decoder.decode(channel.recv_stderr(self.BUFFER_SIZE)))
                    received = True
                if received:
                    continue
                if done:
                    break
                if time.time() - start_time > timeout:
                    logger.warning(f"[EXEC_TIMEOUT] server={server_id}, after {timeout}s")
                    stderr.append(f"Command timed out after {timeout} seconds")
                    return CommandOutput(''.join(stdout), ''.join(stderr), self.TIMEOUT_EXIT_CODE)
                time.sleep(self.POLL_INTERVAL)

            exit_code = channel.recv_exit_status()
            if exit_code == self.NO_EXIT_STATUS:
                logger.warning(f"[EXEC_DROPPED] server={server_id}, channel closed without exit status")
                raise ExecutionError("Connection lost while running command: session closed "
                                     "before the command exited", server_id)
        except (paramiko.SSHException, OSError, EOFError) as e:
            logger.error(f"[EXEC_ERROR] server={server_id}: {e}", exc_info=True)
            raise ExecutionError(f"Connection lost while running command: {e}", server_id, e) from e
        finally:
            try:
                channel.close()
            except Exception:
                logger.debug("Channel already closed")

        stdout.append(stdout_decoder.decode(b'', final=True))
        stderr.append(stderr_decoder.decode(b'', final=True))
        logger.info(f"[EXEC_DONE] server={server_id}, exit_code={exit_code}, "
                    f"duration={time.time() - start_time:.2f}s")
        return CommandOutput(''.join(stdout), ''.join(stderr), exit_code)

    def execute_streaming(self, server_id: str, command: str, pty: bool = True) -> StreamHandle:
        """Start a command and return immediately with a handle on its output."""
        logger = self.logger.getChild('execute_streaming')
        client = self._get_client(server_id)
        channel = self._open_channel(server_id, client, command, pty=pty)

        handle = StreamHandle(uuid.uuid4().hex[:8], server_id, command, channel)
        with self._lock:
            self._streams[handle.handle_id] = handle

        reader = threading.Thread(
            target=self._pump_stream, args=(handle, channel),
            name=f"ssh_stream-{handle.handle_id}", daemon=True,
        )
        reader.start()
        logger.info(f"[STREAM_START] server={server_id}, handle={handle.handle_id}, cmd={command[:100]}")
        return handle

    def _pump_stream(self, handle: StreamHandle, channel: Any):
        """Reader thread: move channel output into the handle until the process ends."""
        logger = self.logger.getChild('stream_reader')
        stdout_decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        stderr_decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        exit_code: Optional[int] = None
        error = ""

        try:
            while not handle.cancel_requested:
                done = channel.exit_status_ready() or channel.closed
                received = False
                if channel.recv_ready():
                    data = stdout_decoder.decode(channel.recv(self.BUFFER_SIZE))
                    if data:
                        handle.publish(StreamEventKind.STDOUT, data)
                    received = True
                if channel.recv_stderr_ready():
                    data = stderr_decoder.decode(channel.recv_stderr(self.BUFFER_SIZE))
                    if data:
                        handle.publish(StreamEventKind.STDERR, data)
                    received = True
                if received:
                    continue
                if done:
                    break
                time.sleep(self.POLL_INTERVAL)

            if handle.cancel_requested:
                exit_code = CANCELLED_EXIT_CODE
            else:
                status = channel.recv_exit_status()
                if status == self.NO_EXIT_STATUS:
                    raise ExecutionError("session closed before the command exited", handle.server_id)
                exit_code = status
        except Exception as e:
            if handle.cancel_requested:
                exit_code = CANCELLED_EXIT_CODE
            else:
                logger.error(f"[STREAM_ERROR] handle={handle.handle_id}: {e}", exc_info=True)
                error = f"Connection lost while streaming: {e}"
        finally:
            handle.close(exit_code, error)
            try:
                channel.close()
            except Exception:
                logger.debug(f"Channel for {handle.handle_id} already closed")
            with self._lock:
                self._streams.pop(handle.handle_id, None)
