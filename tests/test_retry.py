import random

import pytest

from xec_engine.errors import CommandError, RetryError, ConfigurationError, SSHConnectionError, CommandAbortedError
from xec_engine.retry import RetryPolicy, execute_with_retry

from fakes import make_result


def attempts_returning(*results):
    calls = []

    async def attempt():
        calls.append(len(calls) + 1)
        outcome = results[min(len(calls), len(results)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    return attempt, calls


class TestRetryPolicy:
    def test_backoff_without_jitter(self):
        policy = RetryPolicy(initial_delay=0.1, backoff_multiplier=2, jitter=False)
        assert [policy.compute_delay(n) for n in (1, 2, 3, 4)] == pytest.approx([0.1, 0.2, 0.4, 0.8])

    def test_delay_capped_by_max_delay(self):
        policy = RetryPolicy(initial_delay=10, backoff_multiplier=3, max_delay=25, jitter=False)
        assert policy.compute_delay(3) == 25

    def test_jitter_stays_within_a_quarter(self):
        policy = RetryPolicy(initial_delay=1.0, jitter=True)
        rng = random.Random(7)
        delays = [policy.compute_delay(1, rng) for _ in range(200)]
        assert all(0.75 <= d <= 1.25 for d in delays)
        assert len(set(delays)) > 1

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)
        with pytest.raises(ValueError):
            RetryPolicy(backoff_multiplier=0.5)

    def test_default_predicate_is_non_zero_exit(self):
        policy = RetryPolicy()
        assert policy.should_retry(make_result(1))
        assert not policy.should_retry(make_result(0))


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_always_failing_command_attempted_n_plus_one_times(self, sleep):
        attempt, calls = attempts_returning(make_result(1))
        policy = RetryPolicy(max_retries=3, initial_delay=0.01, jitter=False)

        with pytest.raises(RetryError) as exc_info:
            await execute_with_retry(attempt, policy, sleep=sleep)

        assert len(calls) == 4
        assert exc_info.value.attempts == 4
        assert len(exc_info.value.results) == 4
        assert exc_info.value.last_result.exit_code == 1
        assert str(exc_info.value) == "Failed after 4 attempts"
        assert len(sleep.delays) == 3

    @pytest.mark.asyncio
    async def test_on_retry_sees_backoff_schedule(self, sleep):
        seen = []
        policy = RetryPolicy(
            max_retries=3,
            initial_delay=0.1,
            backoff_multiplier=2,
            jitter=False,
            on_retry=lambda attempt, result, delay: seen.append((attempt, delay)),
        )
        attempt, _ = attempts_returning(make_result(2))

        with pytest.raises(RetryError):
            await execute_with_retry(attempt, policy, sleep=sleep)

        assert [a for a, _ in seen] == [1, 2, 3]
        assert [d for _, d in seen] == pytest.approx([0.1, 0.2, 0.4])
        assert sleep.delays == pytest.approx([0.1, 0.2, 0.4])

    @pytest.mark.asyncio
    async def test_succeeds_after_two_failures(self, sleep):
        attempt, calls = attempts_returning(make_result(1), make_result(1), make_result(0, "Success!"))
        policy = RetryPolicy(max_retries=2, initial_delay=0.01)

        result = await execute_with_retry(attempt, policy, sleep=sleep)

        assert result.exit_code == 0
        assert result.stdout == "Success!"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_zero_retries_runs_once(self, sleep):
        attempt, calls = attempts_returning(make_result(1))

        with pytest.raises(RetryError) as exc_info:
            await execute_with_retry(attempt, RetryPolicy(max_retries=0), sleep=sleep)

        assert len(calls) == 1
        assert exc_info.value.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_first_attempt_success_never_calls_on_retry(self, sleep):
        seen = []
        policy = RetryPolicy(max_retries=5, on_retry=lambda *args: seen.append(args))
        attempt, calls = attempts_returning(make_result(0, "ok"))

        result = await execute_with_retry(attempt, policy, sleep=sleep)

        assert result.stdout == "ok"
        assert len(calls) == 1
        assert seen == []

    @pytest.mark.asyncio
    async def test_nothrow_still_retries_and_returns_last_result(self, sleep):
        attempt, calls = attempts_returning(make_result(1), make_result(3))
        policy = RetryPolicy(max_retries=1, initial_delay=0.01)

        result = await execute_with_retry(attempt, policy, nothrow=True, sleep=sleep)

        assert len(calls) == 2
        assert result.exit_code == 3

    @pytest.mark.asyncio
    async def test_command_error_counts_as_failed_result(self, sleep):
        attempt, calls = attempts_returning(CommandError(make_result(1)), make_result(0, "done"))

        result = await execute_with_retry(attempt, RetryPolicy(max_retries=1), sleep=sleep)

        assert result.stdout == "done"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_predicate_can_stop_early(self, sleep):
        attempt, calls = attempts_returning(make_result(2))
        policy = RetryPolicy(max_retries=5, is_retryable=lambda r: r.exit_code == 1)

        with pytest.raises(RetryError) as exc_info:
            await execute_with_retry(attempt, policy, sleep=sleep)

        assert len(calls) == 1
        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_infrastructure_error_propagates_with_default_predicate(self, sleep):
        attempt, calls = attempts_returning(SSHConnectionError("web-1", "refused"))

        with pytest.raises(SSHConnectionError):
            await execute_with_retry(attempt, RetryPolicy(max_retries=3), sleep=sleep)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_custom_predicate_sees_synthesized_result(self, sleep):
        seen = []

        def retryable(result):
            seen.append(result)
            return True

        attempt, calls = attempts_returning(SSHConnectionError("web-1", "refused"), make_result(0, "up"))
        result = await execute_with_retry(
            attempt, RetryPolicy(max_retries=2, is_retryable=retryable), adapter="ssh", command="uptime", sleep=sleep
        )

        assert result.stdout == "up"
        assert len(calls) == 2
        assert seen[0].exit_code == -1
        assert seen[0].adapter == "ssh"
        assert "refused" in seen[0].stderr

    @pytest.mark.asyncio
    async def test_configuration_error_is_never_retried(self, sleep):
        attempt, calls = attempts_returning(ConfigurationError("bad options", ["SSH host is required"]))
        policy = RetryPolicy(max_retries=3, is_retryable=lambda r: True)

        with pytest.raises(ConfigurationError):
            await execute_with_retry(attempt, policy, nothrow=True, sleep=sleep)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cancellation_is_never_retried(self, sleep):
        attempt, calls = attempts_returning(CommandAbortedError("sleep 60"))
        policy = RetryPolicy(max_retries=3, is_retryable=lambda r: True)

        with pytest.raises(CommandAbortedError):
            await execute_with_retry(attempt, policy, nothrow=True, sleep=sleep)

        assert len(calls) == 1
        assert sleep.delays == []
