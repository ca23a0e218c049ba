"""Throttled delivery of streaming command output."""
import time
from typing import Callable, Optional

from .datastructures import StreamEventKind, StreamPhase
from .logging_manager import get_logger
from .presentation import Presenter
from .sessions import StreamingCommandState


DEFAULT_PROGRESS_INTERVAL = 2.0
DEFAULT_WINDOW_CHARS = 1900
MAX_RETAINED_CHARS = 64 * 1024
TRUNCATION_MARKER = "... (output truncated) ...\n"


def clip_output(text: str, limit: int) -> str:
    """Keep the last limit characters, marking the cut."""
    if len(text) <= limit:
        return text
    return TRUNCATION_MARKER + text[-limit:]


class OutputBuffer:
    """Accumulated command output, keeping only the most recent characters."""

    def __init__(self, max_chars: int = MAX_RETAINED_CHARS):
        self.max_chars = max_chars
        self.total_chars = 0
        self._text = ""

    def append(self, chunk: str):
        self.total_chars += len(chunk)
        self._text += chunk
        if len(self._text) > self.max_chars:
            self._text = self._text[-self.max_chars:]

    def text(self) -> str:
        return self._text

    def window(self, limit: int) -> str:
        if self.total_chars <= limit:
            return self._text
        return TRUNCATION_MARKER + self._text[-limit:]


class StreamMultiplexer:
    """Consumes one stream handle and turns its events into presentation calls.

    Progress is emitted at most once per progress_interval however fast
    output arrives, and only when new output arrived since the last emission.
    Exactly one terminal event is presented per stream: a result, an error,
    or nothing here when the stream was cancelled (the canceller presents it).
    """

    def __init__(self, presenter: Presenter,
                 progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
                 window_chars: int = DEFAULT_WINDOW_CHARS,
                 clock: Callable[[], float] = time.monotonic):
        self._presenter = presenter
        self.progress_interval = progress_interval
        self.window_chars = window_chars
        self._clock = clock
        self.logger = get_logger('multiplexer')

    def run(self, requester_id: str, stream: StreamingCommandState,
            server_name: Optional[str] = None,
            on_finished: Optional[Callable[[StreamingCommandState], None]] = None) -> StreamPhase:
        logger = self.logger.getChild('run')
        logger.debug(f"[MUX_START] requester={requester_id}, handle={stream.handle_id}")
        handle = stream.handle
        output = OutputBuffer()
        last_emit = stream.started_at
        pending_output = False

        try:
            while True:
                if pending_output:
                    wait = max(0.0, last_emit + self.progress_interval - self._clock())
                else:
                    wait = self.progress_interval
                event = handle.next_event(timeout=wait)

                if event is not None and event.kind is StreamEventKind.CLOSE:
                    self._finish(requester_id, stream, output, event.exit_code, event.data, server_name)
                    break

                if event is not None:
                    output.append(event.data)
                    pending_output = True
                    with stream.lock:
                        if stream.phase is StreamPhase.STARTED:
                            stream.phase = StreamPhase.RUNNING

                now = self._clock()
                if pending_output and now - last_emit >= self.progress_interval:
                    self._emit_progress(requester_id, stream, output, now)
                    last_emit = now
                    pending_output = False
        finally:
            if on_finished is not None:
                on_finished(stream)
        logger.info(f"[MUX_DONE] handle={stream.handle_id}, phase={stream.phase.value}, "
                    f"chars={output.total_chars}, updates={stream.updates}")
        return stream.phase

    def _emit_progress(self, requester_id: str, stream: StreamingCommandState,
                       output: OutputBuffer, now: float):
        with stream.lock:
            if stream.terminal:
                return
            stream.updates += 1
            self._presenter.present_progress(
                requester_id, stream.handle_id, output.window(self.window_chars),
                now - stream.started_at, stream.updates,
            )

    def _finish(self, requester_id: str, stream: StreamingCommandState, output: OutputBuffer,
                exit_code: Optional[int], error: str, server_name: Optional[str]):
        elapsed = self._clock() - stream.started_at

        if stream.handle.cancel_requested:
            # Cancelled outside the orchestrator (shutdown); report it once
            if stream.finish(StreamPhase.CANCELLED):
                self._presenter.present_cancelled(requester_id, stream.handle_id, elapsed)
            return

        if not stream.finish(StreamPhase.CLOSED):
            return

        if error:
            message = f"{error}\nCommand: {stream.command}"
            if output.total_chars:
                message += f"\n\nPartial output:\n{output.window(self.window_chars)}"
            self._presenter.present_error(requester_id, message, options=("retry", "reconnect"))
            return

        self._presenter.present_result(
            requester_id, output.window(self.window_chars) or "(No output)", elapsed,
            exit_code=exit_code, server_name=server_name,
            handle_id=stream.handle_id, command=stream.command,
        )
