"""
Command Models
==============

Pydantic models describing what to run (Command) and where to run it
(adapter options). The target is a tagged union on ``type``:

    local | ssh | docker | remote-docker
"""

import asyncio
import shlex
from typing import Optional, List, Dict, Any, Union, Literal, Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .retry import RetryPolicy


class _Options(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ============================================================
# SSH
# ============================================================

class ConnectionPoolOptions(_Options):
    """Per-target pool overrides"""
    enabled: bool = True
    max_connections: Optional[int] = Field(default=None, ge=1)
    idle_timeout: Optional[float] = Field(default=None, ge=0)
    keep_alive: Optional[bool] = None


class SudoOptions(_Options):
    enabled: bool = False
    password: Optional[str] = None
    user: Optional[str] = None


class SSHOptions(_Options):
    """Remote host reached over SSH"""
    type: Literal["ssh"] = "ssh"
    host: Optional[str] = None
    port: int = 22
    username: Optional[str] = None
    password: Optional[str] = None
    private_key: Optional[Union[str, bytes]] = None
    private_key_path: Optional[str] = None
    passphrase: Optional[str] = None
    connect_timeout: float = 30.0
    strict_host_key_checking: bool = False
    connection_pool: Optional[ConnectionPoolOptions] = None
    sudo: Optional[SudoOptions] = None

    @property
    def pool_key(self) -> str:
        """Identity of the connection in the pool"""
        return f"{self.username}@{self.host}:{self.port}"

    @property
    def pooling_enabled(self) -> bool:
        return self.connection_pool is None or self.connection_pool.enabled


# ============================================================
# DOCKER
# ============================================================

class AutoCreateOptions(_Options):
    """Create a throwaway container when the target one is missing"""
    enabled: bool = False
    image: str = "alpine:latest"
    auto_remove: bool = True
    volumes: List[str] = Field(default_factory=list)


class DockerTarget(_Options):
    container: Optional[str] = None
    user: Optional[str] = None
    workdir: Optional[str] = None
    tty: bool = False
    auto_create: Optional[AutoCreateOptions] = None


class DockerOptions(DockerTarget):
    """Container on the local Docker daemon; ``image`` switches to run mode"""
    type: Literal["docker"] = "docker"
    image: Optional[str] = None
    volumes: List[str] = Field(default_factory=list)
    auto_remove: bool = True

    @model_validator(mode="after")
    def _require_target(self):
        if not self.container and not self.image:
            raise ValueError("docker options need a container or an image")
        return self


class RemoteDockerOptions(_Options):
    """Container on a Docker daemon reached through an SSH hop"""
    type: Literal["remote-docker"] = "remote-docker"
    ssh: SSHOptions
    docker: DockerTarget

    @model_validator(mode="after")
    def _require_container(self):
        auto = self.docker.auto_create
        if not self.docker.container and not (auto is not None and auto.enabled):
            raise ValueError("remote docker options need a container or auto_create enabled")
        return self


class LocalOptions(_Options):
    type: Literal["local"] = "local"


AdapterOptions = Annotated[
    Union[LocalOptions, SSHOptions, DockerOptions, RemoteDockerOptions],
    Field(discriminator="type"),
]


# ============================================================
# COMMAND
# ============================================================

class Command(BaseModel):
    """
    A command to execute. Immutable once built; use with_changes() to derive.

    Timeouts are in seconds. ``shell`` may be a bool or a shell path; None
    means the engine default. ``cancel_event`` aborts the command when set.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    command: str
    args: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    stdin: Optional[Any] = None
    shell: Optional[Union[bool, str]] = None
    timeout: Optional[float] = None
    cancel_event: Optional[asyncio.Event] = None
    retry: Optional[RetryPolicy] = None
    nothrow: Optional[bool] = None
    adapter: Optional[str] = None
    adapter_options: AdapterOptions = Field(default_factory=LocalOptions)

    @field_validator("stdin")
    @classmethod
    def _check_stdin(cls, value):
        if value is None or isinstance(value, (str, bytes)) or hasattr(value, "read"):
            return value
        raise ValueError("stdin must be str, bytes or a readable file object")

    @field_validator("timeout")
    @classmethod
    def _check_timeout(cls, value):
        if value is not None and value < 0:
            raise ValueError("timeout must not be negative")
        return value

    @property
    def target_type(self) -> str:
        return self.adapter_options.type

    def with_changes(self, **changes: Any) -> "Command":
        return self.model_copy(update=changes)

    def to_shell_string(self) -> str:
        """Command plus quoted arguments, as a single shell line"""
        if not self.args:
            return self.command
        return " ".join([self.command] + [shlex.quote(a) for a in self.args])

    def stdin_bytes(self, encoding: str = "utf-8") -> Optional[bytes]:
        data = self.stdin
        if data is None:
            return None
        if hasattr(data, "read"):
            data = data.read()
        if isinstance(data, str):
            return data.encode(encoding)
        return bytes(data)

    def with_buffered_stdin(self, encoding: str = "utf-8") -> "Command":
        """Copy with a file-like stdin read into bytes, so every attempt sees the same input"""
        if self.stdin is None or isinstance(self.stdin, (str, bytes)):
            return self
        return self.with_changes(stdin=self.stdin_bytes(encoding))
