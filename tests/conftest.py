import threading
from collections import deque

import paramiko
import pytest

from mcp_ssh_orchestrator.datastructures import StreamEvent, StreamEventKind


class FakeChannel:
    """Scripted stand-in for a paramiko exec channel.

    With hold_open the process keeps running until finish() is called, and
    output can be fed from the test thread.
    """

    def __init__(self, stdout=(), stderr=(), exit_status=0, hold_open=False):
        self._stdout = deque(stdout)
        self._stderr = deque(stderr)
        self._lock = threading.Lock()
        self._finished = not hold_open
        self.exit_status = exit_status
        self.closed = False
        self.command = None
        self.pty = False
        self.sent = []

    def get_pty(self, width=80, height=24):
        self.pty = True

    def exec_command(self, command):
        self.command = command

    def feed(self, data: bytes):
        with self._lock:
            self._stdout.append(data)

    def finish(self, exit_status=0):
        with self._lock:
            self.exit_status = exit_status
            self._finished = True

    def recv_ready(self):
        with self._lock:
            return bool(self._stdout)

    def recv(self, n):
        with self._lock:
            return self._stdout.popleft() if self._stdout else b""

    def recv_stderr_ready(self):
        with self._lock:
            return bool(self._stderr)

    def recv_stderr(self, n):
        with self._lock:
            return self._stderr.popleft() if self._stderr else b""

    def exit_status_ready(self):
        with self._lock:
            return self._finished

    def recv_exit_status(self):
        return self.exit_status

    def send(self, data):
        self.sent.append(data)
        return len(data)

    def close(self):
        self.closed = True

    def drop(self):
        """Session torn down under the process: closed, no exit status."""
        with self._lock:
            if not self._finished:
                self.exit_status = -1
                self._finished = True
        self.closed = True


class FakeTransport:
    def __init__(self):
        self.active = True
        self.channels = deque()
        self.opened = []
        self.open_error = None

    def is_active(self):
        return self.active

    def open_session(self, timeout=None):
        if self.open_error is not None:
            raise self.open_error
        channel = self.channels.popleft() if self.channels else FakeChannel()
        self.opened.append(channel)
        return channel


class FakeClient:
    def __init__(self, connect_error=None):
        self.transport = FakeTransport()
        self.connect_error = connect_error
        self.connect_kwargs = None
        self.closed = False

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def connect(self, **kwargs):
        self.connect_kwargs = kwargs
        if self.connect_error is not None:
            raise self.connect_error

    def get_transport(self):
        return self.transport

    def close(self):
        self.closed = True
        self.transport.active = False
        for channel in self.transport.opened:
            if not channel.closed:
                channel.drop()


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class ScriptedStreamHandle:
    """Stream handle whose events arrive at fixed times on a FakeClock.

    Waiting for an event advances the clock instead of sleeping.
    """

    def __init__(self, clock, script, handle_id="h1"):
        self.clock = clock
        self.handle_id = handle_id
        self.cancel_requested = False
        self.cancel_calls = 0
        self._script = deque(script)

    def cancel(self):
        self.cancel_calls += 1
        if self.cancel_requested:
            return False
        self.cancel_requested = True
        return True

    def next_event(self, timeout=None):
        assert self._script, "stream read past its CLOSE event"
        at, event = self._script[0]
        if timeout is None or at <= self.clock.now + timeout:
            self.clock.now = max(self.clock.now, at)
            self._script.popleft()
            return event
        self.clock.now += timeout
        return None


def stdout_event(data):
    return StreamEvent(StreamEventKind.STDOUT, data)


def close_event(exit_code=0, error=""):
    return StreamEvent(StreamEventKind.CLOSE, error, exit_code)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def client_factory():
    """Factory handing out a fresh FakeClient per connect, kept in .clients."""
    clients = []

    def factory():
        client = FakeClient()
        clients.append(client)
        return client

    factory.clients = clients
    return factory


@pytest.fixture
def auth_failure():
    return paramiko.AuthenticationException("Authentication failed.")
