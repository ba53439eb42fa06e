"""
Retry Policy - Backoff/Jitter Re-execution
===========================================

Re-invokes a command under an exponential backoff schedule while a
predicate says the latest result is worth retrying.

Features:
- Exponential backoff: initial_delay * backoff_multiplier ** (attempt - 1)
- Optional +/-25% jitter, capped by max_delay
- Caller-supplied is_retryable predicate and on_retry hook
- Injectable sleep and random source for deterministic tests
- Full history of attempts attached to RetryError
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Optional, Callable, Awaitable, List

from .errors import CommandError, RetryError, ConfigurationError, CommandAbortedError
from .result import ExecutionResult, FAILURE_EXIT_CODE, utcnow

logger = logging.getLogger(__name__)

JITTER_RATIO = 0.25

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryPolicy:
    """Retry configuration (delays in seconds)"""
    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: bool = True
    is_retryable: Optional[Callable[[ExecutionResult], bool]] = None
    on_retry: Optional[Callable[[int, ExecutionResult, float], None]] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def compute_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay to wait after the given (1-based) failed attempt"""
        delay = self.initial_delay * (self.backoff_multiplier ** (attempt - 1))
        delay = min(delay, self.max_delay)
        if self.jitter and delay > 0:
            spread = delay * JITTER_RATIO
            delay += (rng or random).uniform(-spread, spread)
        return max(0.0, delay)

    def should_retry(self, result: ExecutionResult) -> bool:
        if self.is_retryable is not None:
            return bool(self.is_retryable(result))
        return result.exit_code != 0


def _synthesize_result(error: BaseException, adapter: str, command: str) -> ExecutionResult:
    now = utcnow()
    return ExecutionResult(
        stdout="",
        stderr=str(error),
        exit_code=FAILURE_EXIT_CODE,
        command=command,
        adapter=adapter,
        started_at=now,
        finished_at=now,
    )


async def execute_with_retry(
    attempt_fn: Callable[[], Awaitable[ExecutionResult]],
    policy: RetryPolicy,
    nothrow: bool = False,
    adapter: str = "unknown",
    command: str = "",
    sleep: Sleep = asyncio.sleep,
    rng: Optional[random.Random] = None,
    on_attempt_failed: Optional[Callable[[int, ExecutionResult, float], None]] = None,
) -> ExecutionResult:
    """
    Run attempt_fn until it succeeds or the policy gives up.

    A CommandError raised by attempt_fn counts as a failed result. Any other
    error is an infrastructure failure: it propagates immediately unless the
    policy has its own is_retryable, which then sees a synthesized result.
    Configuration errors and cancellation always propagate.

    Returns the successful result, or the last result when nothrow is set.
    Raises RetryError otherwise.
    """
    results: List[ExecutionResult] = []
    last_error: Optional[BaseException] = None
    total_attempts = policy.max_retries + 1

    for attempt in range(1, total_attempts + 1):
        error: Optional[BaseException] = None
        try:
            result = await attempt_fn()
        except CommandError as e:
            result, error = e.result, e
        except (ConfigurationError, CommandAbortedError):
            raise
        except Exception as e:
            if policy.is_retryable is None:
                raise
            result, error = _synthesize_result(e, adapter, command), e

        results.append(result)
        last_error = error

        if error is None and result.exit_code == 0:
            if attempt > 1:
                logger.info(f"Command succeeded on attempt {attempt}/{total_attempts}: {command}")
            return result

        if not policy.should_retry(result) or attempt >= total_attempts:
            break

        delay = policy.compute_delay(attempt, rng)
        logger.warning(
            f"Attempt {attempt}/{total_attempts} failed (exit_code={result.exit_code}), "
            f"retrying in {delay:.2f}s: {command}"
        )
        if policy.on_retry is not None:
            policy.on_retry(attempt, result, delay)
        if on_attempt_failed is not None:
            on_attempt_failed(attempt, result, delay)
        await sleep(delay)

    if nothrow:
        return results[-1]

    raise RetryError(len(results), results) from last_error
