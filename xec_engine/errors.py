"""
Execution Errors - Typed Failure Taxonomy
==========================================

Every failure raised by the engine derives from ExecutionError.

Two families:
- Target failures: the command ran but exited non-zero (CommandError and
  subclasses). These always carry the full ExecutionResult.
- Infrastructure failures: the command could not run at all (cannot
  connect, container missing, bad configuration).
"""

from typing import Optional, Dict, Any, List, TYPE_CHECKING

if TYPE_CHECKING:
    from .result import ExecutionResult


class ExecutionError(Exception):
    """Base class for all engine errors"""

    code = "EXECUTION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# ============================================================
# TARGET COMMAND FAILURES
# ============================================================

class CommandError(ExecutionError):
    """The target command exited with a non-zero code"""

    code = "COMMAND_FAILED"

    def __init__(self, result: "ExecutionResult", message: Optional[str] = None):
        self.result = result
        self.command = result.command
        self.exit_code = result.exit_code
        self.stdout = result.stdout
        self.stderr = result.stderr
        if message is None:
            message = f"Command failed with exit code {result.exit_code}: {result.command}"
            if result.signal:
                message = f"Command terminated by {result.signal}: {result.command}"
        super().__init__(message, {"adapter": result.adapter, "exit_code": result.exit_code})

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["result"] = self.result.to_dict()
        return data


class CommandTimeoutError(CommandError):
    """The command did not finish within its timeout"""

    code = "COMMAND_TIMEOUT"

    def __init__(self, result: "ExecutionResult", timeout: float):
        self.timeout = timeout
        super().__init__(result, f"Command timed out after {timeout:g}s: {result.command}")


class CommandAbortedError(ExecutionError):
    """The command's cancellation event fired before it finished"""

    code = "COMMAND_ABORTED"

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"Command aborted: {command}")


# ============================================================
# INFRASTRUCTURE FAILURES
# ============================================================

class AdapterError(ExecutionError):
    """A backend could not carry out an operation"""

    code = "ADAPTER_ERROR"

    def __init__(
        self,
        adapter: str,
        operation: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.adapter = adapter
        self.operation = operation
        merged = {"adapter": adapter, "operation": operation}
        merged.update(details or {})
        super().__init__(message, merged)


class SSHConnectionError(AdapterError):
    """SSH connect or transport failure"""

    code = "SSH_CONNECTION_ERROR"

    def __init__(self, host: str, message: str, operation: str = "connect"):
        self.host = host
        super().__init__("ssh", operation, f"SSH connection to {host} failed: {message}", {"host": host})


class PoolExhaustedError(SSHConnectionError):
    """No pool slot became available, or the pool was disposed"""

    code = "POOL_EXHAUSTED"

    def __init__(self, host: str, message: str):
        super().__init__(host, message, operation="acquire")


class TunnelError(SSHConnectionError):
    """A port forward could not be created"""

    code = "TUNNEL_ERROR"

    def __init__(self, host: str, message: str):
        super().__init__(host, message, operation="tunnel")


class DockerError(AdapterError):
    """Container or daemon level failure"""

    code = "DOCKER_ERROR"

    def __init__(self, container: str, operation: str, message: str, adapter: str = "docker"):
        self.container = container
        super().__init__(adapter, operation, message, {"container": container})


class ConfigurationError(ExecutionError):
    """Options failed validation before any connection was attempted"""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, issues: Optional[List[str]] = None):
        self.issues = list(issues or [])
        if self.issues:
            message = f"{message}: {', '.join(self.issues)}"
        super().__init__(message, {"issues": self.issues})


# ============================================================
# RETRY EXHAUSTION
# ============================================================

class RetryError(ExecutionError):
    """All retry attempts failed"""

    code = "RETRY_EXHAUSTED"

    def __init__(self, attempts: int, results: List["ExecutionResult"]):
        self.attempts = attempts
        self.results = list(results)
        self.last_result = self.results[-1] if self.results else None
        super().__init__(
            f"Failed after {attempts} attempts",
            {"attempts": attempts, "last_exit_code": self.last_result.exit_code if self.last_result else None},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["results"] = [r.to_dict() for r in self.results]
        return data
