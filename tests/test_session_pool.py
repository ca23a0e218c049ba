import threading
import time
from unittest.mock import MagicMock

import paramiko
import pytest

from conftest import FakeChannel, FakeClient
from mcp_ssh_orchestrator.datastructures import CANCELLED_EXIT_CODE, ConnectionConfig, StreamEventKind
from mcp_ssh_orchestrator.errors import AuthenticationFailed, ExecutionError, NotConnected
from mcp_ssh_orchestrator.session_pool import RemoteSessionPool, StreamHandle


CONFIG = ConnectionConfig(host="10.0.0.5", username="deploy", password="secret")


class TestConnect:
    def test_connect_twice_closes_previous_session(self, client_factory):
        pool = RemoteSessionPool(client_factory=client_factory)
        pool.connect("web", CONFIG)
        pool.connect("web", CONFIG)

        first, second = client_factory.clients
        assert first.closed
        assert not second.closed
        assert pool.list_connected() == {"web"}

    def test_connect_passes_credentials_and_timeouts(self, client_factory):
        pool = RemoteSessionPool(client_factory=client_factory, connect_timeout=7)
        pool.connect("web", CONFIG)

        kwargs = client_factory.clients[0].connect_kwargs
        assert kwargs["hostname"] == "10.0.0.5"
        assert kwargs["username"] == "deploy"
        assert kwargs["password"] == "secret"
        assert kwargs["port"] == 22
        assert kwargs["timeout"] == 7
        assert kwargs["auth_timeout"] == 7

    def test_key_path_is_expanded(self, client_factory):
        pool = RemoteSessionPool(client_factory=client_factory)
        pool.connect("web", ConnectionConfig(host="h", username="u", private_key_path="~/.ssh/id_ed25519"))

        kwargs = client_factory.clients[0].connect_kwargs
        assert "password" not in kwargs
        assert not kwargs["key_filename"].startswith("~")

    def test_auth_failure_is_classified(self, auth_failure):
        client = FakeClient(connect_error=auth_failure)
        pool = RemoteSessionPool(client_factory=lambda: client)

        with pytest.raises(AuthenticationFailed) as excinfo:
            pool.connect("web", CONFIG)

        assert excinfo.value.server_id == "web"
        assert isinstance(excinfo.value.__cause__, paramiko.AuthenticationException)
        assert client.closed
        assert not pool.is_connected("web")

    def test_dead_transport_is_not_listed(self, client_factory):
        pool = RemoteSessionPool(client_factory=client_factory)
        pool.connect("web", CONFIG)
        pool.connect("db", CONFIG)
        client_factory.clients[1].transport.active = False

        assert pool.list_connected() == {"web"}
        assert not pool.is_connected("db")


class TestDisconnect:
    def test_disconnect_closes_session(self, client_factory):
        pool = RemoteSessionPool(client_factory=client_factory)
        pool.connect("web", CONFIG)

        assert pool.disconnect("web") is True
        assert client_factory.clients[0].closed
        assert pool.list_connected() == set()

    def test_disconnect_without_session_is_noop(self):
        pool = RemoteSessionPool(client_factory=MagicMock())
        assert pool.disconnect("web") is False

    def test_close_all(self, client_factory):
        pool = RemoteSessionPool(client_factory=client_factory)
        pool.connect("web", CONFIG)
        pool.connect("db", CONFIG)

        pool.close_all()

        assert all(client.closed for client in client_factory.clients)
        assert pool.list_connected() == set()


class TestExecute:
    def setup_method(self):
        self.client = FakeClient()
        self.pool = RemoteSessionPool(client_factory=lambda: self.client)
        self.pool.connect("web", CONFIG)

    def test_execute_collects_output(self):
        channel = FakeChannel(stdout=[b"total 0\n", b"drwxr-xr-x 2 root\n"])
        self.client.transport.channels.append(channel)

        output = self.pool.execute("web", "ls -la")

        assert channel.command == "ls -la"
        assert not channel.pty
        assert channel.closed
        assert output.stdout == "total 0\ndrwxr-xr-x 2 root\n"
        assert output.exit_code == 0

    def test_nonzero_exit_is_a_result(self):
        self.client.transport.channels.append(
            FakeChannel(stderr=[b"ls: cannot access 'nope': No such file or directory\n"], exit_status=2)
        )

        output = self.pool.execute("web", "ls nope")

        assert output.exit_code == 2
        assert "No such file" in output.stderr
        assert output.render().startswith("Command exited with code 2")

    def test_split_utf8_sequence_is_decoded(self):
        data = "café\n".encode("utf-8")
        self.client.transport.channels.append(FakeChannel(stdout=[data[:4], data[4:]]))

        assert self.pool.execute("web", "echo cafe").stdout == "café\n"

    def test_timeout_returns_exit_code_124(self):
        self.client.transport.channels.append(FakeChannel(stdout=[b"partial\n"], hold_open=True))

        output = self.pool.execute("web", "sleep 100", timeout=0.2)

        assert output.exit_code == RemoteSessionPool.TIMEOUT_EXIT_CODE
        assert output.stdout == "partial\n"
        assert "timed out" in output.stderr

    def test_unknown_server_raises_without_remote_call(self):
        factory = MagicMock()
        pool = RemoteSessionPool(client_factory=factory)

        with pytest.raises(NotConnected) as excinfo:
            pool.execute("nowhere", "ls")

        assert excinfo.value.server_id == "nowhere"
        factory.assert_not_called()

    def test_channel_open_failure_raises_execution_error(self):
        self.client.transport.open_error = paramiko.SSHException("Channel closed.")

        with pytest.raises(ExecutionError):
            self.pool.execute("web", "ls")

    def test_inactive_transport_raises_execution_error(self):
        self.client.transport.active = False

        with pytest.raises(ExecutionError):
            self.pool.execute("web", "ls")

    def test_dropped_session_raises_execution_error(self):
        channel = FakeChannel(stdout=[b"partial\n"], hold_open=True)
        channel.drop()
        self.client.transport.channels.append(channel)

        with pytest.raises(ExecutionError) as excinfo:
            self.pool.execute("web", "make build")

        assert "Connection lost" in str(excinfo.value)
        assert excinfo.value.server_id == "web"


class TestStreaming:
    def setup_method(self):
        self.client = FakeClient()
        self.pool = RemoteSessionPool(client_factory=lambda: self.client)
        self.pool.connect("web", CONFIG)

    def test_chunks_arrive_in_order_then_close(self):
        channel = FakeChannel(stdout=[b"line 1\n", b"line 2\n"], hold_open=True)
        self.client.transport.channels.append(channel)

        handle = self.pool.execute_streaming("web", "tail -f /var/log/syslog")
        channel.feed(b"line 3\n")
        channel.finish(0)
        events = list(handle)

        assert channel.pty
        assert "".join(e.data for e in events if e.kind is StreamEventKind.STDOUT) == "line 1\nline 2\nline 3\n"
        assert [e.kind for e in events].count(StreamEventKind.CLOSE) == 1
        assert events[-1].kind is StreamEventKind.CLOSE
        assert events[-1].exit_code == 0
        assert handle.closed

    def test_cancel_interrupts_once(self):
        channel = FakeChannel(hold_open=True)
        self.client.transport.channels.append(channel)
        handle = self.pool.execute_streaming("web", "ping example.com")

        assert handle.cancel() is True
        assert handle.cancel() is False
        events = list(handle)

        assert channel.sent == ['\x03']
        assert channel.closed
        assert events[-1].kind is StreamEventKind.CLOSE
        assert events[-1].exit_code == CANCELLED_EXIT_CODE

    def test_cancel_after_close_is_noop(self):
        channel = FakeChannel(stdout=[b"done\n"])
        self.client.transport.channels.append(channel)
        handle = self.pool.execute_streaming("web", "tail -f /tmp/x")

        list(handle)

        assert handle.cancel() is False
        assert channel.sent == []

    def test_broken_channel_closes_with_error(self):
        channel = FakeChannel(stdout=[b"before\n"], hold_open=True)
        channel.recv_exit_status = MagicMock(side_effect=EOFError("socket closed"))
        self.client.transport.channels.append(channel)
        handle = self.pool.execute_streaming("web", "journalctl -f")

        channel.finish()
        events = list(handle)

        assert events[-1].kind is StreamEventKind.CLOSE
        assert events[-1].exit_code is None
        assert "Connection lost while streaming" in events[-1].data

    def test_dropped_session_closes_stream_with_error(self):
        channel = FakeChannel(stdout=[b"line 1\n"], hold_open=True)
        self.client.transport.channels.append(channel)
        handle = self.pool.execute_streaming("web", "tail -f /var/log/syslog")

        self.client.close()
        events = list(handle)

        assert [e.kind for e in events].count(StreamEventKind.CLOSE) == 1
        assert events[-1].exit_code is None
        assert "Connection lost while streaming" in events[-1].data
        assert "session closed" in events[-1].data

    def test_streaming_requires_connection(self):
        with pytest.raises(NotConnected):
            self.pool.execute_streaming("db", "tail -f x")


class TestStreamHandle:
    def test_publish_after_close_is_ignored(self):
        handle = StreamHandle("abc", "web", "watch date")
        handle.publish(StreamEventKind.STDOUT, "a")
        assert handle.close(0) is True
        handle.publish(StreamEventKind.STDOUT, "b")
        assert handle.close(1) is False

        events = list(handle)

        assert [e.data for e in events] == ["a", ""]
        assert handle.exit_code == 0
        assert handle.next_event(timeout=0) is None

    def test_next_event_times_out(self):
        handle = StreamHandle("abc", "web", "watch date")
        assert handle.next_event(timeout=0.01) is None

    def test_concurrent_close_emits_one_terminal_event(self):
        handle = StreamHandle("abc", "web", "watch date")
        results = []
        threads = [threading.Thread(target=lambda: results.append(handle.close(0))) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert len(list(handle)) == 1


def wait_until(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while not predicate():
        assert time.time() < deadline, "condition not reached"
        time.sleep(0.01)


class TestReconnectWhileRunning:
    """Calls in flight keep the session they started on."""

    def test_running_command_ends_with_error_and_is_not_rerouted(self, client_factory):
        pool = RemoteSessionPool(client_factory=client_factory)
        pool.connect("web", CONFIG)
        old = client_factory.clients[0]
        old.transport.channels.append(FakeChannel(hold_open=True))
        errors = []

        def run():
            try:
                pool.execute("web", "sleep 30", timeout=10)
            except ExecutionError as e:
                errors.append(e)

        worker = threading.Thread(target=run)
        worker.start()
        wait_until(lambda: old.transport.opened)

        pool.connect("web", CONFIG)
        worker.join(timeout=5)

        new = client_factory.clients[1]
        assert not worker.is_alive()
        assert len(errors) == 1
        assert "Connection lost" in str(errors[0])
        assert new.transport.opened == []
        assert pool.is_connected("web")

    def test_command_finished_before_reconnect_keeps_its_result(self, client_factory):
        pool = RemoteSessionPool(client_factory=client_factory)
        pool.connect("web", CONFIG)
        client_factory.clients[0].transport.channels.append(FakeChannel(stdout=[b"ok\n"]))

        output = pool.execute("web", "uptime")
        pool.connect("web", CONFIG)

        assert output.exit_code == 0
        assert output.stdout == "ok\n"

    def test_stream_ends_with_error_and_new_streams_use_new_session(self, client_factory):
        pool = RemoteSessionPool(client_factory=client_factory)
        pool.connect("web", CONFIG)
        old = client_factory.clients[0]
        old_channel = FakeChannel(stdout=[b"first\n"], hold_open=True)
        old.transport.channels.append(old_channel)
        handle = pool.execute_streaming("web", "journalctl -f")

        pool.connect("web", CONFIG)
        events = list(handle)

        assert events[-1].kind is StreamEventKind.CLOSE
        assert events[-1].exit_code is None
        assert "Connection lost while streaming" in events[-1].data

        new = client_factory.clients[1]
        new.transport.channels.append(FakeChannel(stdout=[b"second\n"]))
        second = list(pool.execute_streaming("web", "journalctl -f"))

        assert new.transport.opened[0].command == "journalctl -f"
        assert second[-1].exit_code == 0
        assert old.transport.opened == [old_channel]
