"""Presentation interface between the orchestrator and a front end."""
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Sequence

from .datastructures import Suggestion


class EventKind(Enum):
    CONFIRMATION = "confirmation"
    PROGRESS = "progress"
    RESULT = "result"
    ERROR = "error"
    CANCELLED = "cancelled"
    NOTICE = "notice"


@dataclass
class PresentationEvent:
    kind: EventKind
    requester_id: str
    text: str = ""
    command: Optional[str] = None
    server_name: Optional[str] = None
    handle_id: Optional[str] = None
    elapsed_seconds: Optional[float] = None
    exit_code: Optional[int] = None
    update_count: int = 0
    options: Sequence[str] = ()
    suggestion: Optional[Suggestion] = None
    timestamp: float = field(default_factory=time.time)


class Presenter:
    """What the orchestrator needs from a front end.

    Methods may be called from worker and reader threads, so implementations
    must be thread-safe.
    """

    def present_confirmation_request(self, requester_id: str, command: str, server_name: str,
                                     suggestion: Optional[Suggestion] = None):
        raise NotImplementedError

    def present_progress(self, requester_id: str, handle_id: str, windowed_output: str,
                         elapsed_seconds: float, update_count: int):
        raise NotImplementedError

    def present_result(self, requester_id: str, output: str, elapsed_seconds: float,
                       exit_code: Optional[int] = None, server_name: Optional[str] = None,
                       handle_id: Optional[str] = None, command: Optional[str] = None):
        raise NotImplementedError

    def present_error(self, requester_id: str, message: str, options: Sequence[str] = ()):
        raise NotImplementedError

    def present_cancelled(self, requester_id: str, handle_id: str, elapsed_seconds: float):
        raise NotImplementedError

    def present_notice(self, requester_id: str, message: str, options: Sequence[str] = ()):
        raise NotImplementedError


class EventQueuePresenter(Presenter):
    """Buffers events per requester until the front end drains them."""

    def __init__(self, max_events_per_requester: int = 500):
        self._events: Dict[str, Deque[PresentationEvent]] = defaultdict(
            lambda: deque(maxlen=max_events_per_requester)
        )
        self._condition = threading.Condition()

    def _push(self, event: PresentationEvent):
        with self._condition:
            self._events[event.requester_id].append(event)
            self._condition.notify_all()

    def present_confirmation_request(self, requester_id, command, server_name, suggestion=None):
        self._push(PresentationEvent(EventKind.CONFIRMATION, requester_id, command=command,
                                     server_name=server_name, suggestion=suggestion,
                                     options=("confirm", "cancel", "modify", "history")))

    def present_progress(self, requester_id, handle_id, windowed_output, elapsed_seconds, update_count):
        self._push(PresentationEvent(EventKind.PROGRESS, requester_id, text=windowed_output,
                                     handle_id=handle_id, elapsed_seconds=elapsed_seconds,
                                     update_count=update_count, options=("stop",)))

    def present_result(self, requester_id, output, elapsed_seconds, exit_code=None,
                       server_name=None, handle_id=None, command=None):
        self._push(PresentationEvent(EventKind.RESULT, requester_id, text=output,
                                     elapsed_seconds=elapsed_seconds, exit_code=exit_code,
                                     server_name=server_name, handle_id=handle_id, command=command))

    def present_error(self, requester_id, message, options=()):
        self._push(PresentationEvent(EventKind.ERROR, requester_id, text=message, options=tuple(options)))

    def present_cancelled(self, requester_id, handle_id, elapsed_seconds):
        self._push(PresentationEvent(EventKind.CANCELLED, requester_id, handle_id=handle_id,
                                     elapsed_seconds=elapsed_seconds))

    def present_notice(self, requester_id, message, options=()):
        self._push(PresentationEvent(EventKind.NOTICE, requester_id, text=message, options=tuple(options)))

    def events(self, requester_id: str) -> List[PresentationEvent]:
        with self._condition:
            return list(self._events.get(requester_id, ()))

    def drain(self, requester_id: str) -> List[PresentationEvent]:
        with self._condition:
            queued = self._events.pop(requester_id, None)
            return list(queued) if queued else []

    def wait_for(self, requester_id: str, predicate: Callable[[PresentationEvent], bool],
                 timeout: float = 5.0) -> Optional[PresentationEvent]:
        """Block until a queued event for requester_id satisfies predicate."""
        deadline = time.monotonic() + timeout
        with self._condition:
            while True:
                for event in self._events.get(requester_id, ()):
                    if predicate(event):
                        return event
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._condition.wait(remaining)


def format_event(event: PresentationEvent) -> str:
    """Plain text rendering of an event for text-only front ends."""
    if event.kind is EventKind.CONFIRMATION:
        text = (f"Command Confirmation\nServer: {event.server_name}\n"
                f"Command: {event.command}\n")
        if event.suggestion is not None:
            text += f"Why: {event.suggestion.explanation} (confidence {event.suggestion.confidence:.1f})\n"
            if len(event.suggestion.commands) > 1:
                text += "Alternatives: " + "; ".join(event.suggestion.commands[1:]) + "\n"
        return text + "Ready to execute this command? (confirm / cancel / modify)"
    if event.kind is EventKind.PROGRESS:
        return (f"[{event.handle_id}] running {event.elapsed_seconds:.0f}s, "
                f"update {event.update_count}\n{event.text}")
    if event.kind is EventKind.RESULT:
        header = "Command Executed" if event.handle_id is None else f"[{event.handle_id}] Command Finished"
        lines = [header]
        if event.server_name:
            lines.append(f"Server: {event.server_name}")
        if event.exit_code is not None:
            lines.append(f"Exit Status: {event.exit_code}")
        lines.append(f"Execution time: {event.elapsed_seconds:.2f}s")
        return "\n".join(lines) + f"\n\nOutput:\n{event.text}"
    if event.kind is EventKind.CANCELLED:
        return f"[{event.handle_id}] Stopped after {event.elapsed_seconds:.0f}s"

    text = ("Command Failed\n" if event.kind is EventKind.ERROR else "") + event.text
    if event.options:
        text += "\nOptions: " + ", ".join(event.options)
    return text
