"""Runtime settings and the registered server list."""
import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .datastructures import ConnectionConfig, RegisteredServer
from .errors import UnknownServer
from .logging_manager import get_logger


DEFAULT_SERVER_ID = 'default-ssh'
DEFAULT_SERVERS_FILE = '~/.config/mcp-ssh-orchestrator/servers.json'

MIN_WINDOW_CHARS = 1800
MAX_WINDOW_CHARS = 2000
MIN_PROGRESS_INTERVAL = 2.0


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def default_server_from_env() -> RegisteredServer:
    """The server described by SSH_* variables."""
    return RegisteredServer(
        id=DEFAULT_SERVER_ID,
        name='Default SSH Server',
        connection=ConnectionConfig(
            host=os.getenv('SSH_HOST', ''),
            username=os.getenv('SSH_USERNAME', ''),
            password=os.getenv('SSH_PASSWORD') or None,
            private_key_path=os.getenv('SSH_PRIVATE_KEY_PATH') or None,
            port=_env_int('SSH_PORT', 22),
        ),
        enabled=True,
    )


@dataclass
class Settings:
    servers_file: str = DEFAULT_SERVERS_FILE
    log_dir: Optional[str] = None
    connect_timeout: int = 30
    command_timeout: int = 300
    progress_interval: float = MIN_PROGRESS_INTERVAL
    output_window: int = 1900
    max_streams_per_requester: int = 5
    autoconnect: bool = True
    openai_api_key: Optional[str] = None
    openai_model: str = 'gpt-3.5-turbo'

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            servers_file=os.getenv('MCP_SSH_SERVERS_FILE', DEFAULT_SERVERS_FILE),
            log_dir=os.getenv('MCP_SSH_LOG_DIR') or None,
            connect_timeout=_env_int('MCP_SSH_CONNECT_TIMEOUT', 30),
            command_timeout=_env_int('MCP_SSH_COMMAND_TIMEOUT', 300),
            progress_interval=max(MIN_PROGRESS_INTERVAL,
                                  _env_float('MCP_SSH_PROGRESS_INTERVAL', MIN_PROGRESS_INTERVAL)),
            output_window=min(MAX_WINDOW_CHARS,
                              max(MIN_WINDOW_CHARS, _env_int('MCP_SSH_OUTPUT_WINDOW', 1900))),
            max_streams_per_requester=max(1, _env_int('MCP_SSH_MAX_STREAMS', 5)),
            autoconnect=_env_flag('MCP_SSH_AUTOCONNECT', True),
            openai_api_key=os.getenv('OPENAI_API_KEY') or None,
            openai_model=os.getenv('OPENAI_MODEL', 'gpt-3.5-turbo'),
        )


class JsonServerStore:
    """Whole-collection persistence of registered servers in a JSON file."""

    def __init__(self, path: str, default_factory: Callable[[], RegisteredServer] = default_server_from_env):
        self.path = Path(os.path.expanduser(path))
        self._default_factory = default_factory
        self.logger = get_logger('server_store')

    def load_servers(self) -> List[RegisteredServer]:
        if not self.path.exists():
            self.logger.info(f"No server file at {self.path}, using default server")
            return [self._default_factory()]
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
            return [RegisteredServer.from_dict(item) for item in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            self.logger.error(f"Error loading servers from {self.path}: {e}")
            return [self._default_factory()]

    def save_servers(self, servers: Sequence[RegisteredServer]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps([server.to_dict() for server in servers], indent=2)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix='.servers-', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        self.logger.info(f"Saved {len(servers)} servers to {self.path}")


class ServerRegistry:
    """Read-shared list of registered servers.

    Writers build a new tuple, swap it in, then persist, so readers always
    see a complete list.
    """

    def __init__(self, store: Optional[JsonServerStore] = None,
                 servers: Optional[Sequence[RegisteredServer]] = None):
        self._store = store
        if servers is None:
            servers = store.load_servers() if store is not None else []
        self._servers: Tuple[RegisteredServer, ...] = tuple(servers)
        self._write_lock = threading.Lock()
        self.logger = get_logger('registry')

    def servers(self) -> Tuple[RegisteredServer, ...]:
        return self._servers

    def get(self, server_id: str) -> Optional[RegisteredServer]:
        for server in self._servers:
            if server.id == server_id:
                return server
        return None

    def find(self, id_or_name: str) -> RegisteredServer:
        """Look up by id, then by case-insensitive name."""
        server = self.get(id_or_name)
        if server is not None:
            return server
        wanted = id_or_name.strip().lower()
        for server in self._servers:
            if server.name.lower() == wanted:
                return server
        raise UnknownServer(id_or_name)

    def display_name(self, server_id: str) -> str:
        server = self.get(server_id)
        return server.name if server is not None else server_id

    def add(self, server: RegisteredServer):
        """Register a server, replacing any existing entry with the same id."""
        with self._write_lock:
            servers = [s for s in self._servers if s.id != server.id]
            servers.append(server)
            self._replace(servers)
        self.logger.info(f"[REGISTRY_ADD] {server.id} ({server.name})")

    def remove(self, server_id: str) -> RegisteredServer:
        with self._write_lock:
            server = self.get(server_id)
            if server is None:
                raise UnknownServer(server_id)
            self._replace([s for s in self._servers if s.id != server_id])
        self.logger.info(f"[REGISTRY_REMOVE] {server_id}")
        return server

    def _replace(self, servers: List[RegisteredServer]):
        self._servers = tuple(servers)
        if self._store is not None:
            self._store.save_servers(self._servers)
