"""
Execution Result - Immutable Command Outcome
=============================================

One ExecutionResult is built per attempt, by whichever adapter ran the
command. Results are frozen; retry loops collect them, never mutate them.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from .errors import CommandError

# Exit codes used for results the engine synthesizes itself
TIMEOUT_EXIT_CODE = 124
CONTAINER_NOT_FOUND_EXIT_CODE = 125
FAILURE_EXIT_CODE = -1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExecutionResult:
    """Result of one command attempt on one backend"""
    stdout: str
    stderr: str
    exit_code: Optional[int]
    command: str
    adapter: str
    duration_ms: float = 0.0
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime = field(default_factory=utcnow)
    signal: Optional[str] = None
    host: Optional[str] = None
    container: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.signal is None

    def text(self) -> str:
        """stdout with surrounding whitespace removed"""
        return self.stdout.strip()

    def lines(self) -> List[str]:
        return [line for line in self.stdout.splitlines() if line.strip()]

    def json(self) -> Any:
        try:
            return json.loads(self.stdout)
        except json.JSONDecodeError as e:
            raise ValueError(f"Failed to parse stdout of '{self.command}' as JSON: {e}") from e

    def raise_for_status(self) -> "ExecutionResult":
        """Raise CommandError unless the command succeeded"""
        if not self.ok:
            raise CommandError(self)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "adapter": self.adapter,
            "exit_code": self.exit_code,
            "signal": self.signal,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "host": self.host,
            "container": self.container,
        }
