"""
Docker Adapter - Container Execution via the Docker CLI
========================================================

Features:
- docker exec into a running container (user, workdir, env, stdin, tty)
- docker run --rm for one-shot commands against an image
- Auto-create mode: a long-lived ephemeral container (xec-temp-*) is
  started when the target container is missing, and stopped on dispose
- Daemon availability probe through the Docker SDK

The argv builders and EphemeralContainers are shared with the
remote-docker adapter, which runs the same docker command lines over SSH.
"""

import asyncio
import logging
import re
import secrets
import threading
import time
from typing import Optional, List, Dict, Union, Callable, Awaitable

import docker
from docker import DockerClient

from ..command import Command, DockerOptions, DockerTarget, AutoCreateOptions
from ..errors import DockerError, ConfigurationError
from ..events import EventEmitter, EventType
from ..result import ExecutionResult, CONTAINER_NOT_FOUND_EXIT_CODE
from .base_adapter import BaseAdapter, ProcessOutput, Stopwatch
from .local_adapter import run_process, split_returncode, DEFAULT_SHELL, ProcessRunner

logger = logging.getLogger(__name__)

CONTAINER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
EPHEMERAL_PREFIX = "xec-temp"

MISSING_CONTAINER_MARKERS = ("No such container", "is not running")
DAEMON_UNREACHABLE_MARKERS = (
    "Cannot connect to the Docker daemon",
    "Is the docker daemon running",
    "error during connect",
)


def validate_container_name(name: str, adapter: str = "docker") -> str:
    """Reject names the Docker daemon would refuse (or that could smuggle flags)"""
    if not name or not CONTAINER_NAME_PATTERN.match(name):
        raise DockerError(name or "", "validate", f"Invalid container name: {name!r}", adapter=adapter)
    return name


def is_missing_container(stderr: str) -> bool:
    return any(marker in stderr for marker in MISSING_CONTAINER_MARKERS)


def is_daemon_unreachable(stderr: str) -> bool:
    return any(marker in stderr for marker in DAEMON_UNREACHABLE_MARKERS)


def _user_command(command: Command, shell: Union[bool, str]) -> List[str]:
    if shell:
        shell_path = shell if isinstance(shell, str) else DEFAULT_SHELL
        return [shell_path, "-c", command.to_shell_string()]
    return [command.command] + list(command.args)


# ============================================================
# COMMAND LINE CONSTRUCTION
# ============================================================

def build_exec_args(
    container: str,
    target: DockerTarget,
    command: Command,
    env: Dict[str, str],
    cwd: Optional[str],
    shell: Union[bool, str],
    has_stdin: bool,
) -> List[str]:
    """
    Arguments for ``docker exec`` (without the docker binary itself).

    The container's workdir takes precedence over the command cwd.
    """
    args = ["exec"]
    if has_stdin or target.tty:
        args.append("-i")
    if target.tty:
        args.append("-t")
    if target.user:
        args.extend(["-u", target.user])

    workdir = target.workdir or cwd
    if workdir:
        args.extend(["-w", workdir])

    for key, value in env.items():
        args.extend(["-e", f"{key}={value}"])

    args.append(container)
    args.extend(_user_command(command, shell))
    return args


def build_run_args(
    options: DockerOptions,
    command: Command,
    env: Dict[str, str],
    cwd: Optional[str],
    shell: Union[bool, str],
    has_stdin: bool,
) -> List[str]:
    """Arguments for a one-shot ``docker run`` against options.image"""
    args = ["run"]
    if options.auto_remove:
        args.append("--rm")
    if has_stdin or options.tty:
        args.append("-i")
    if options.tty:
        args.append("-t")
    if options.user:
        args.extend(["-u", options.user])

    workdir = options.workdir or cwd
    if workdir:
        args.extend(["-w", workdir])

    for key, value in env.items():
        args.extend(["-e", f"{key}={value}"])
    for volume in options.volumes:
        args.extend(["-v", volume])

    if shell:
        shell_path = shell if isinstance(shell, str) else DEFAULT_SHELL
        args.extend(["--entrypoint", shell_path, options.image, "-c", command.to_shell_string()])
    else:
        args.append(options.image)
        args.append(command.command)
        args.extend(command.args)
    return args


# ============================================================
# EPHEMERAL CONTAINERS
# ============================================================

DockerRun = Callable[[List[str]], Awaitable[ProcessOutput]]


class EphemeralContainers:
    """
    Creates and tracks throwaway containers for auto-create mode.

    ``run`` executes docker arguments (without the binary) wherever the
    daemon lives: locally or through an SSH hop.
    """

    def __init__(self, run: DockerRun, events: Optional[EventEmitter] = None, adapter: str = "docker"):
        self._run = run
        self.events = events
        self.adapter = adapter
        self.created: List[str] = []
        self._substitutes: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def exists(self, name: str) -> bool:
        output = await self._run(["inspect", "-f", "{{.State.Running}}", name])
        return output.returncode == 0 and output.stdout.strip() == b"true"

    async def create(self, auto: AutoCreateOptions) -> str:
        name = f"{EPHEMERAL_PREFIX}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"
        args = ["run", "-d", "--name", name]
        if auto.auto_remove:
            args.append("--rm")
        for volume in auto.volumes:
            args.extend(["-v", volume])
        args.extend([auto.image, "tail", "-f", "/dev/null"])

        output = await self._run(args)
        if output.returncode != 0:
            stderr = output.stderr.decode("utf-8", errors="replace").strip()
            raise DockerError(name, "create", f"Failed to create container from {auto.image}: {stderr}", adapter=self.adapter)

        self.created.append(name)
        logger.info(f"[{self.adapter}] Created ephemeral container {name} from {auto.image}")
        if self.events is not None:
            self.events.emit(EventType.CONTAINER_CREATED, {"container": name, "image": auto.image}, source=self.adapter)
        return name

    async def ensure(self, container: Optional[str], auto: Optional[AutoCreateOptions]) -> Optional[str]:
        """
        Name of a running container to exec into.

        Returns the requested container when it is running. Otherwise, with
        auto-create enabled, returns a (cached) ephemeral substitute; without
        it returns None.
        """
        async with self._lock:
            if container and await self.exists(container):
                return container
            if auto is None or not auto.enabled:
                return None

            key = container or auto.image
            cached = self._substitutes.get(key)
            if cached and await self.exists(cached):
                return cached

            name = await self.create(auto)
            self._substitutes[key] = name
            return name

    async def cleanup(self) -> None:
        """docker stop every container created here; failures are logged and skipped"""
        for name in list(self.created):
            try:
                output = await self._run(["stop", name])
            except Exception as e:
                logger.warning(f"[{self.adapter}] Failed to stop ephemeral container {name}: {e}")
                continue
            if output.returncode != 0:
                stderr = output.stderr.decode("utf-8", errors="replace").strip()
                logger.warning(f"[{self.adapter}] Failed to stop ephemeral container {name}: {stderr}")
                continue
            logger.info(f"[{self.adapter}] Stopped ephemeral container {name}")
            if self.events is not None:
                self.events.emit(EventType.CONTAINER_STOPPED, {"container": name}, source=self.adapter)

        self.created.clear()
        self._substitutes.clear()


# ============================================================
# DAEMON CONNECTION
# ============================================================

class DockerConnectionManager:
    """
    Lazily connects to the Docker daemon through the SDK.

    Only used to probe availability; commands go through the CLI so that
    the same argv works over SSH.
    """

    def __init__(self, base_url: Optional[str] = None):
        self._base_url = base_url
        self._client: Optional[DockerClient] = None
        self._lock = threading.Lock()

    @property
    def client(self) -> DockerClient:
        if self._client is None:
            with self._lock:
                if self._client is None:
                    self._client = self._create_client()
        return self._client

    def _create_client(self) -> DockerClient:
        if self._base_url:
            client = docker.DockerClient(base_url=self._base_url)
        else:
            client = docker.from_env()
        client.ping()
        logger.info(f"Connected to Docker daemon: {client.version().get('Version', 'unknown')}")
        return client

    def is_connected(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception as e:
            logger.debug(f"Docker daemon not reachable: {e}")
            return False

    def close(self):
        if self._client:
            try:
                self._client.close()
            except Exception as e:
                logger.debug(f"Error closing Docker client: {e}")
            self._client = None


# ============================================================
# ADAPTER
# ============================================================

class DockerAdapter(BaseAdapter):
    """
    Runs commands in containers on the local Docker daemon.

    Usage:
        adapter = DockerAdapter()
        result = await adapter.execute(Command(
            command="nginx -t",
            adapter_options=DockerOptions(container="web"),
        ))
    """

    name = "docker"

    def __init__(
        self,
        config=None,
        events=None,
        runner: ProcessRunner = run_process,
        connection_manager: Optional[DockerConnectionManager] = None,
    ):
        super().__init__(config, events)
        self._runner = runner
        self.connection_manager = connection_manager or DockerConnectionManager()
        self.ephemeral = EphemeralContainers(self._docker, self.events, self.name)

    async def is_available(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self.connection_manager.is_connected)
        except Exception as e:
            logger.debug(f"Docker availability check failed: {e}")
            return False

    async def _docker(self, args: List[str]) -> ProcessOutput:
        return await self._runner([self.config.docker_path] + args, timeout=self.config.default_timeout)

    async def execute(self, command: Command) -> ExecutionResult:
        options = command.adapter_options
        if not isinstance(options, DockerOptions):
            raise ConfigurationError("The docker adapter requires docker options", [f"got type {command.target_type!r}"])

        watch = Stopwatch()
        timeout = self._timeout(command)
        stdin = command.stdin_bytes(self.config.encoding)
        env = self._env(command)
        shell = self._shell(command)
        container = options.container

        try:
            if container:
                validate_container_name(container)
            if options.auto_create is not None and options.auto_create.enabled:
                container = await self.ephemeral.ensure(container, options.auto_create)

            if container:
                args = build_exec_args(container, options, command, env, self._cwd(command), shell, stdin is not None)
            else:
                args = build_run_args(options, command, env, self._cwd(command), shell, stdin is not None)
        except DockerError as e:
            return self._failure_outcome(command, watch, e, container=container)

        logger.debug(f"[docker] {' '.join(args)}")
        try:
            output = await self._runner(
                [self.config.docker_path] + args,
                stdin=stdin,
                timeout=timeout,
                cancel_event=command.cancel_event,
            )
        except asyncio.TimeoutError:
            return self._timeout_outcome(command, watch, timeout, container=container)
        except OSError as e:
            error = DockerError(container or "", "execute", f"Docker CLI not available: {e}")
            return self._failure_outcome(command, watch, error, container=container)

        if output.returncode != 0:
            stderr = self._decode(output.stderr)
            if is_daemon_unreachable(stderr):
                error = DockerError(container or "", "execute", f"Docker daemon is not reachable: {stderr.strip()}")
                return self._failure_outcome(command, watch, error, container=container)
            if container and is_missing_container(stderr):
                error = DockerError(container, "execute", f"Container {container} not found")
                return self._failure_outcome(
                    command, watch, error, exit_code=CONTAINER_NOT_FOUND_EXIT_CODE, container=container
                )

        exit_code, signal = split_returncode(output.returncode)
        result = self._build_result(
            command, watch, output.stdout, output.stderr, exit_code, signal=signal, container=container
        )
        return self._finalize(command, result)

    async def dispose(self) -> None:
        try:
            await self.ephemeral.cleanup()
        except Exception as e:
            logger.warning(f"[docker] Ephemeral container cleanup failed: {e}")
        self.connection_manager.close()
