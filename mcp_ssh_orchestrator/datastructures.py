"""Data structures for remote command orchestration."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from datetime import datetime


# Exit code reported for a streaming command that was cancelled before it exited
CANCELLED_EXIT_CODE = -1


class SessionState(Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"
    STREAMING = "streaming"


class StreamPhase(Enum):
    STARTED = "started"
    RUNNING = "running"  # At least one chunk has arrived
    CLOSED = "closed"
    CANCELLED = "cancelled"


class StreamEventKind(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    CLOSE = "close"


class ClassificationKind(Enum):
    SYSTEM = "system"
    EXPLICIT = "explicit"
    INTENT = "intent"
    UNKNOWN = "unknown"


@dataclass
class ConnectionConfig:
    host: str
    username: str = ""
    port: int = 22
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key: Optional[str] = None  # PEM content, takes precedence over the path

    def to_dict(self) -> Dict[str, Any]:
        data = {"host": self.host, "username": self.username, "port": self.port}
        for key in ("password", "private_key_path", "private_key"):
            value = getattr(self, key)
            if value:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionConfig":
        return cls(
            host=data.get("host", ""),
            username=data.get("username", ""),
            port=int(data.get("port") or 22),
            password=data.get("password"),
            private_key_path=data.get("private_key_path") or data.get("privateKeyPath"),
            private_key=data.get("private_key") or data.get("privateKey"),
        )


@dataclass
class RegisteredServer:
    id: str
    name: str
    connection: ConnectionConfig
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": "ssh",
            "config": self.connection.to_dict(),
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegisteredServer":
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            connection=ConnectionConfig.from_dict(data.get("config") or {}),
            enabled=bool(data.get("enabled", True)),
        )


@dataclass
class CommandOutput:
    stdout: str
    stderr: str
    exit_code: int

    def render(self) -> str:
        """Combine the captured streams into the text shown to the requester."""
        if self.exit_code != 0 and self.stderr:
            return (
                f"Command exited with code {self.exit_code}\n\n"
                f"Error output:\n{self.stderr}\n\n"
                f"Standard output:\n{self.stdout}"
            )
        return self.stdout or "(No output)"


@dataclass
class CommandConfirmation:
    requester_id: str
    command: str
    server_id: str
    created_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class StreamEvent:
    kind: StreamEventKind
    data: str = ""
    exit_code: Optional[int] = None


@dataclass
class Suggestion:
    commands: Tuple[str, ...]
    confidence: float
    explanation: str = ""
    category: str = ""


@dataclass
class Classification:
    kind: ClassificationKind
    raw_text: str
    command: Optional[str] = None
    directive: Optional[str] = None
    arguments: str = ""
    suggestion: Optional[Suggestion] = None
