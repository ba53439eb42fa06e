"""
Base Adapter - Shared Execution Contract
=========================================

Every backend implements:
- is_available(): cheap capability probe, never raises
- execute(command): run one attempt and return an ExecutionResult
- dispose(): release owned resources, never raises

The helpers here turn raw process output into results and decide between
returning a failed result (nothrow) and raising a typed error.
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any, Awaitable, Callable, Union

from ..command import Command
from ..config import EngineConfig
from ..errors import ExecutionError, CommandError, CommandTimeoutError, CommandAbortedError
from ..events import EventEmitter
from ..masking import SensitiveDataMasker
from ..result import ExecutionResult, TIMEOUT_EXIT_CODE, FAILURE_EXIT_CODE, utcnow

logger = logging.getLogger(__name__)

ABORT_GRACE_PERIOD = 5.0


@dataclass
class ProcessOutput:
    """Raw output of a finished process"""
    stdout: bytes
    stderr: bytes
    returncode: int


class Stopwatch:
    """Wall-clock start plus monotonic duration for one attempt"""

    def __init__(self):
        self.started_at = utcnow()
        self._start = time.monotonic()

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self._start) * 1000


async def wait_with_deadline(
    awaitable: Awaitable,
    timeout: Optional[float] = None,
    cancel_event: Optional[asyncio.Event] = None,
    on_abort: Optional[Callable[[], Any]] = None,
    command: str = "",
):
    """
    Await a process/channel while honouring a timeout and a cancellation event.

    On expiry or cancellation ``on_abort`` is called to kill the underlying
    process, the awaitable is given a short grace period to drain, and
    asyncio.TimeoutError or CommandAbortedError is raised.
    """
    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    cancel_waiter = None

    if cancel_event is not None:
        if cancel_event.is_set():
            await _abort(task, on_abort)
            raise CommandAbortedError(command)
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout or None, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    await _abort(task, on_abort)
    if cancel_event is not None and cancel_event.is_set():
        raise CommandAbortedError(command)
    raise asyncio.TimeoutError()


async def _abort(task: asyncio.Future, on_abort: Optional[Callable[[], Any]]) -> None:
    if on_abort is not None:
        outcome = on_abort()
        if inspect.isawaitable(outcome):
            await outcome
    try:
        await asyncio.wait_for(task, ABORT_GRACE_PERIOD)
    except asyncio.TimeoutError:
        logger.warning("Aborted process did not exit within the grace period")
    except Exception as e:
        logger.debug(f"Aborted process finished with error: {e}")


class BaseAdapter(ABC):
    """Common defaults and result handling for all adapters"""

    name = "base"

    def __init__(self, config: Optional[EngineConfig] = None, events: Optional[EventEmitter] = None):
        self.config = config or EngineConfig()
        self.events = events or EventEmitter()
        self._masker = SensitiveDataMasker() if self.config.mask_sensitive_data else None

    @abstractmethod
    async def is_available(self) -> bool:
        ...

    @abstractmethod
    async def execute(self, command: Command) -> ExecutionResult:
        ...

    async def dispose(self) -> None:
        return None

    # =========================================================
    # COMMAND DEFAULTS
    # =========================================================

    def _timeout(self, command: Command) -> Optional[float]:
        timeout = command.timeout if command.timeout is not None else self.config.default_timeout
        return timeout or None

    def _nothrow(self, command: Command) -> bool:
        if command.nothrow is not None:
            return command.nothrow
        return not self.config.throw_on_non_zero_exit

    def _shell(self, command: Command) -> Union[bool, str]:
        return command.shell if command.shell is not None else self.config.default_shell

    def _env(self, command: Command) -> Dict[str, str]:
        env = dict(self.config.default_env)
        env.update(command.env)
        return env

    def _cwd(self, command: Command) -> Optional[str]:
        return command.cwd or self.config.default_cwd

    def _decode(self, data: Optional[bytes]) -> str:
        if not data:
            return ""
        return data.decode(self.config.encoding, errors="replace")

    def _mask(self, text: str) -> str:
        return self._masker.mask(text) if self._masker else text

    # =========================================================
    # RESULTS
    # =========================================================

    def _build_result(
        self,
        command: Command,
        watch: Stopwatch,
        stdout: Union[str, bytes],
        stderr: Union[str, bytes],
        exit_code: Optional[int],
        signal: Optional[str] = None,
        host: Optional[str] = None,
        container: Optional[str] = None,
    ) -> ExecutionResult:
        if isinstance(stdout, bytes):
            stdout = self._decode(stdout)
        if isinstance(stderr, bytes):
            stderr = self._decode(stderr)

        return ExecutionResult(
            stdout=self._mask(stdout),
            stderr=self._mask(stderr),
            exit_code=exit_code,
            signal=signal,
            command=self._mask(command.to_shell_string()),
            adapter=self.name,
            duration_ms=watch.elapsed_ms,
            started_at=watch.started_at,
            finished_at=utcnow(),
            host=host,
            container=container,
        )

    def _finalize(self, command: Command, result: ExecutionResult) -> ExecutionResult:
        """Raise CommandError for a failed result unless nothrow is set"""
        if not result.ok and not self._nothrow(command):
            raise CommandError(result)
        return result

    def _timeout_outcome(
        self,
        command: Command,
        watch: Stopwatch,
        timeout: Optional[float],
        host: Optional[str] = None,
        container: Optional[str] = None,
    ) -> ExecutionResult:
        logger.warning(f"[{self.name}] Command timed out after {timeout}s: {command.to_shell_string()}")
        result = self._build_result(
            command,
            watch,
            "",
            f"Command timed out after {timeout}s",
            TIMEOUT_EXIT_CODE,
            host=host,
            container=container,
        )
        if self._nothrow(command):
            return result
        raise CommandTimeoutError(result, timeout or 0)

    def _failure_outcome(
        self,
        command: Command,
        watch: Stopwatch,
        error: ExecutionError,
        exit_code: int = FAILURE_EXIT_CODE,
        host: Optional[str] = None,
        container: Optional[str] = None,
    ) -> ExecutionResult:
        """Infrastructure failure: a result under nothrow, otherwise raise"""
        logger.error(f"[{self.name}] {error}")
        if not self._nothrow(command):
            raise error
        return self._build_result(command, watch, "", str(error), exit_code, host=host, container=container)
