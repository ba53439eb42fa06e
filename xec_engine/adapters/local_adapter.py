"""
Local Adapter - Subprocess Execution
=====================================

Runs commands as child processes of the current interpreter using asyncio
subprocesses. Shell commands go through ``/bin/sh -c`` (or the configured
shell path); otherwise the command and its arguments are exec'd directly.
"""

import asyncio
import logging
import os
import signal as signal_module
from typing import Optional, List, Dict, Tuple, Callable, Awaitable

from ..command import Command
from ..errors import AdapterError, CommandAbortedError
from ..result import ExecutionResult
from .base_adapter import BaseAdapter, ProcessOutput, Stopwatch, wait_with_deadline

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/sh"


async def run_process(
    argv: List[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    stdin: Optional[bytes] = None,
    timeout: Optional[float] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> ProcessOutput:
    """
    Spawn argv and collect its output.

    The child leads its own process group so that timeouts and cancellation
    kill everything it started, not just the shell.
    """
    if cancel_event is not None and cancel_event.is_set():
        raise CommandAbortedError(" ".join(argv))

    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
        start_new_session=True,
    )

    def kill():
        try:
            os.killpg(process.pid, signal_module.SIGKILL)
        except ProcessLookupError:
            pass

    stdout, stderr = await wait_with_deadline(
        process.communicate(stdin),
        timeout=timeout,
        cancel_event=cancel_event,
        on_abort=kill,
        command=" ".join(argv),
    )
    return ProcessOutput(stdout or b"", stderr or b"", process.returncode)


ProcessRunner = Callable[..., Awaitable[ProcessOutput]]


def split_returncode(returncode: int) -> Tuple[Optional[int], Optional[str]]:
    """Map a subprocess returncode to (exit_code, signal name)"""
    if returncode is not None and returncode < 0:
        try:
            return None, signal_module.Signals(-returncode).name
        except ValueError:
            return None, f"SIG{-returncode}"
    return returncode, None


class LocalAdapter(BaseAdapter):
    """
    Executes commands on the local machine.

    Usage:
        adapter = LocalAdapter()
        result = await adapter.execute(Command(command="uname -a"))
    """

    name = "local"

    def __init__(self, config=None, events=None, runner: ProcessRunner = run_process):
        super().__init__(config, events)
        self._runner = runner

    async def is_available(self) -> bool:
        return True

    def build_argv(self, command: Command) -> List[str]:
        shell = self._shell(command)
        if shell:
            shell_path = shell if isinstance(shell, str) else DEFAULT_SHELL
            return [shell_path, "-c", command.to_shell_string()]
        return [command.command] + list(command.args)

    async def execute(self, command: Command) -> ExecutionResult:
        watch = Stopwatch()
        timeout = self._timeout(command)
        argv = self.build_argv(command)

        env = dict(os.environ)
        env.update(self._env(command))

        logger.debug(f"[local] Executing: {command.to_shell_string()}")
        try:
            output = await self._runner(
                argv,
                cwd=self._cwd(command),
                env=env,
                stdin=command.stdin_bytes(self.config.encoding),
                timeout=timeout,
                cancel_event=command.cancel_event,
            )
        except asyncio.TimeoutError:
            return self._timeout_outcome(command, watch, timeout)
        except OSError as e:
            error = AdapterError(self.name, "execute", f"Failed to start process: {e}")
            return self._failure_outcome(command, watch, error)

        exit_code, signal = split_returncode(output.returncode)
        result = self._build_result(command, watch, output.stdout, output.stderr, exit_code, signal=signal)
        logger.debug(f"[local] exit_code={exit_code} duration={result.duration_ms:.0f}ms")
        return self._finalize(command, result)
