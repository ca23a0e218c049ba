"""Per-requester session state."""
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from .datastructures import CommandConfirmation, SessionState, StreamPhase
from .session_pool import StreamHandle


HISTORY_CAPACITY = 20


@dataclass
class StreamingCommandState:
    handle_id: str
    command: str
    server_id: str
    started_at: float
    handle: StreamHandle
    phase: StreamPhase = StreamPhase.STARTED
    updates: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def terminal(self) -> bool:
        return self.phase in (StreamPhase.CLOSED, StreamPhase.CANCELLED)

    def finish(self, phase: StreamPhase) -> bool:
        """Move to a terminal phase. Only the first caller wins."""
        with self.lock:
            if self.terminal:
                return False
            self.phase = phase
            return True

    def cancel(self) -> bool:
        """Cancel the remote process and mark the stream cancelled, once."""
        if not self.finish(StreamPhase.CANCELLED):
            return False
        self.handle.cancel()
        return True


@dataclass
class UserSession:
    requester_id: str
    active_server_id: Optional[str] = None
    pending_confirmation: Optional[CommandConfirmation] = None
    awaiting_replacement: bool = False
    command_history: List[str] = field(default_factory=list)
    last_activity: datetime = field(default_factory=datetime.now)
    active_streaming_commands: Dict[str, StreamingCommandState] = field(default_factory=dict)
    executing: int = 0

    @property
    def state(self) -> SessionState:
        if self.pending_confirmation is not None or self.awaiting_replacement:
            return SessionState.AWAITING_CONFIRMATION
        if self.active_streaming_commands:
            return SessionState.STREAMING
        if self.executing:
            return SessionState.EXECUTING
        return SessionState.IDLE

    def touch(self):
        self.last_activity = datetime.now()

    def record_command(self, command: str):
        """Append to history; exact duplicates are ignored, oldest entries evicted."""
        if command in self.command_history:
            return
        self.command_history.append(command)
        while len(self.command_history) > HISTORY_CAPACITY:
            self.command_history.pop(0)

    def set_pending(self, confirmation: CommandConfirmation) -> Optional[CommandConfirmation]:
        """Replace the pending confirmation, returning the one it displaced."""
        previous = self.pending_confirmation
        self.pending_confirmation = confirmation
        self.awaiting_replacement = False
        return previous

    def take_pending(self) -> Optional[CommandConfirmation]:
        confirmation = self.pending_confirmation
        self.pending_confirmation = None
        return confirmation

    def begin_modify(self) -> Optional[CommandConfirmation]:
        """Discard the pending confirmation and wait for replacement text."""
        confirmation = self.take_pending()
        if confirmation is not None:
            self.awaiting_replacement = True
        return confirmation

    def clear_pending(self) -> bool:
        had_pending = self.pending_confirmation is not None or self.awaiting_replacement
        self.pending_confirmation = None
        self.awaiting_replacement = False
        return had_pending

    def add_stream(self, stream: StreamingCommandState):
        self.active_streaming_commands[stream.handle_id] = stream

    def remove_stream(self, handle_id: str) -> Optional[StreamingCommandState]:
        return self.active_streaming_commands.pop(handle_id, None)


class UserSessionStore:
    """Process-lifetime cache of requester sessions with one lock per requester."""

    def __init__(self):
        self._sessions: Dict[str, UserSession] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._lock = threading.Lock()

    def get(self, requester_id: str) -> UserSession:
        """Return the requester's session, creating an idle one on first contact."""
        with self._lock:
            session = self._sessions.get(requester_id)
            if session is None:
                session = self._sessions[requester_id] = UserSession(requester_id)
                self._locks[requester_id] = threading.RLock()
            return session

    def _requester_lock(self, requester_id: str) -> threading.RLock:
        self.get(requester_id)
        with self._lock:
            return self._locks[requester_id]

    @contextmanager
    def locked(self, requester_id: str, touch: bool = True) -> Iterator[UserSession]:
        """Serialize state changes for one requester; other requesters are not blocked."""
        with self._requester_lock(requester_id):
            session = self.get(requester_id)
            if touch:
                session.touch()
            yield session

    def __contains__(self, requester_id: str) -> bool:
        with self._lock:
            return requester_id in self._sessions

    def all(self) -> List[UserSession]:
        with self._lock:
            return list(self._sessions.values())
