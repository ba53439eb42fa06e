"""
Execution Adapters
==================

One adapter per kind of target:
- LocalAdapter: child processes on this machine
- SSHAdapter: remote hosts over pooled SSH connections
- DockerAdapter: containers on the local Docker daemon
- RemoteDockerAdapter: containers on a Docker host reached over SSH
"""

from .base_adapter import BaseAdapter, ProcessOutput, Stopwatch, wait_with_deadline
from .local_adapter import LocalAdapter, run_process
from .ssh_adapter import SSHAdapter, run_remote
from .docker_adapter import (
    DockerAdapter,
    DockerConnectionManager,
    EphemeralContainers,
    build_exec_args,
    build_run_args,
    validate_container_name,
)
from .remote_docker_adapter import RemoteDockerAdapter

__all__ = [
    "BaseAdapter",
    "ProcessOutput",
    "Stopwatch",
    "wait_with_deadline",
    "LocalAdapter",
    "run_process",
    "SSHAdapter",
    "run_remote",
    "DockerAdapter",
    "DockerConnectionManager",
    "EphemeralContainers",
    "build_exec_args",
    "build_run_args",
    "validate_container_name",
    "RemoteDockerAdapter",
]
