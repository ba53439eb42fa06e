"""
Remote Docker Adapter - Containers behind an SSH Hop
=====================================================

Builds the same ``docker exec`` command line as the local Docker adapter
and runs it on the Docker host over a pooled SSH connection. Auto-created
containers are tracked per SSH host and stopped on dispose.
"""

import asyncio
import logging
import shlex
from typing import Dict, List

from ..command import Command, RemoteDockerOptions, SSHOptions
from ..errors import DockerError, SSHConnectionError, ConfigurationError
from ..result import ExecutionResult, CONTAINER_NOT_FOUND_EXIT_CODE
from .base_adapter import ProcessOutput, Stopwatch
from .docker_adapter import (
    EphemeralContainers,
    build_exec_args,
    validate_container_name,
    is_missing_container,
    is_daemon_unreachable,
)
from .ssh_adapter import SSHAdapter, wrap_sudo

logger = logging.getLogger(__name__)


class RemoteDockerAdapter(SSHAdapter):
    """
    Usage:
        adapter = RemoteDockerAdapter()
        result = await adapter.execute(Command(
            command="ps aux",
            adapter_options=RemoteDockerOptions(
                ssh=SSHOptions(host="docker-01", username="ops", password="..."),
                docker=DockerTarget(container="api"),
            ),
        ))
    """

    name = "remote-docker"

    def __init__(self, config=None, events=None, pool=None, connector=None):
        super().__init__(config, events, pool=pool, connector=connector)
        self._ephemeral: Dict[str, EphemeralContainers] = {}

    def _ssh_options(self, command: Command) -> SSHOptions:
        options = command.adapter_options
        if not isinstance(options, RemoteDockerOptions):
            raise ConfigurationError(
                "The remote-docker adapter requires remote-docker options", [f"got type {command.target_type!r}"]
            )
        return options.ssh

    def containers_for(self, ssh_options: SSHOptions) -> EphemeralContainers:
        """Ephemeral container tracker for one Docker host"""
        key = ssh_options.pool_key
        if key not in self._ephemeral:
            async def run(args: List[str]) -> ProcessOutput:
                return await self._docker_over_ssh(ssh_options, args)

            self._ephemeral[key] = EphemeralContainers(run, self.events, self.name)
        return self._ephemeral[key]

    async def _docker_over_ssh(self, ssh_options: SSHOptions, args: List[str], stdin=None, timeout=None, cancel_event=None) -> ProcessOutput:
        line, stdin = wrap_sudo(shlex.join([self.config.docker_path] + args), ssh_options, stdin)
        output = await self._run_on_host(
            ssh_options,
            line,
            stdin,
            timeout if timeout is not None else self.config.default_timeout,
            cancel_event,
        )
        return ProcessOutput(output.stdout, output.stderr, output.exit_code)

    async def execute(self, command: Command) -> ExecutionResult:
        options = command.adapter_options
        ssh_options = self._ssh_options(command)
        target = options.docker
        auto = target.auto_create
        auto_enabled = auto is not None and auto.enabled

        watch = Stopwatch()
        timeout = self._timeout(command)
        stdin = command.stdin_bytes(self.config.encoding)
        container = target.container
        host = ssh_options.host

        try:
            if container:
                validate_container_name(container, adapter=self.name)
            if auto_enabled:
                container = await self.containers_for(ssh_options).ensure(container, auto)

            args = build_exec_args(
                container, target, command, self._env(command), self._cwd(command), self._shell(command), stdin is not None
            )
            logger.debug(f"[remote-docker] {ssh_options.pool_key}: docker {' '.join(args)}")
            output = await self._docker_over_ssh(ssh_options, args, stdin, timeout or 0, command.cancel_event)
        except asyncio.TimeoutError:
            return self._timeout_outcome(command, watch, timeout, host=host, container=container)
        except (DockerError, SSHConnectionError) as e:
            return self._failure_outcome(command, watch, e, host=host, container=container)

        if output.returncode != 0:
            stderr = self._decode(output.stderr)
            if is_daemon_unreachable(stderr):
                error = DockerError(container, "execute", f"Docker daemon on {host} is not reachable: {stderr.strip()}", adapter=self.name)
                return self._failure_outcome(command, watch, error, host=host, container=container)
            if is_missing_container(stderr):
                error = DockerError(container, "execute", f"Container {container} not found on {host}", adapter=self.name)
                return self._failure_outcome(
                    command, watch, error, exit_code=CONTAINER_NOT_FOUND_EXIT_CODE, host=host, container=container
                )

        result = self._build_result(
            command, watch, output.stdout, output.stderr, output.returncode, host=host, container=container
        )
        return self._finalize(command, result)

    async def dispose(self) -> None:
        for key, containers in list(self._ephemeral.items()):
            try:
                await containers.cleanup()
            except Exception as e:
                logger.warning(f"[remote-docker] Ephemeral container cleanup on {key} failed: {e}")
        self._ephemeral.clear()
        await super().dispose()
