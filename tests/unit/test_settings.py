"""Tests for run settings and the retry loop."""

import pytest

from stratum.exceptions import PermanentProviderError, TransientProviderError, ValidationError
from stratum.retries import AttemptCounter, call_with_retries
from stratum.settings import RunOptions


class TestRunOptions:
    """Tests for RunOptions."""

    def test_defaults(self):
        options = RunOptions()
        assert options.parallelism == 10
        assert options.max_attempts == 5
        assert options.refresh is True
        assert options.destroy_check_scope == "state"

    @pytest.mark.parametrize(
        "kwargs,field",
        [
            ({"parallelism": 0}, "parallelism"),
            ({"max_attempts": 0}, "max_attempts"),
            ({"backoff_base": -1.0}, "backoff_base"),
            ({"backoff_base": 10.0, "backoff_max": 5.0}, "backoff_max"),
            ({"destroy_check_scope": "everywhere"}, "destroy_check_scope"),
            ({"lock_timeout": -1.0}, "lock_timeout"),
        ],
    )
    def test_validation(self, kwargs, field):
        with pytest.raises(ValidationError) as exc_info:
            RunOptions(**kwargs)
        assert exc_info.value.field == field

    def test_backoff_delay(self):
        options = RunOptions(backoff_base=1.0, backoff_max=5.0)
        assert [options.backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_with_overrides_ignores_none(self):
        options = RunOptions(parallelism=3).with_overrides(parallelism=None, refresh=False)
        assert options.parallelism == 3
        assert options.refresh is False

    def test_from_env(self):
        options = RunOptions.from_env(
            {
                "STRATUM_PARALLELISM": "4",
                "STRATUM_BACKOFF_MAX": "2.5",
                "STRATUM_REFRESH": "off",
                "STRATUM_DESTROY_CHECK_SCOPE": "graph",
                "UNRELATED": "x",
            }
        )
        assert options.parallelism == 4
        assert options.backoff_max == 2.5
        assert options.refresh is False
        assert options.destroy_check_scope == "graph"

    def test_overrides_win_over_env(self):
        options = RunOptions.from_env({"STRATUM_PARALLELISM": "4"}, parallelism=2)
        assert options.parallelism == 2

    @pytest.mark.parametrize(
        "name,value",
        [("STRATUM_PARALLELISM", "many"), ("STRATUM_REFRESH", "maybe")],
    )
    def test_from_env_invalid(self, name, value):
        with pytest.raises(ValidationError, match="expected a"):
            RunOptions.from_env({name: value})


class TestCallWithRetries:
    """Tests for call_with_retries."""

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def sleep(self, sleeps):
        async def sleep(seconds):
            sleeps.append(seconds)

        return sleep

    async def test_retries_transient_errors(self, sleep, sleeps):
        attempts = []

        async def call():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientProviderError("throttled", "Throttling")
            return "done"

        counter = AttemptCounter()
        options = RunOptions(backoff_base=1.0, backoff_max=10.0)
        result = await call_with_retries(call, options, "create x", counter, sleep)

        assert result == "done"
        assert counter.attempts == 3
        assert sleeps == [1.0, 2.0]

    async def test_gives_up_after_max_attempts(self, sleep, sleeps):
        async def call():
            raise TransientProviderError("throttled")

        options = RunOptions(max_attempts=2, backoff_base=0.5, backoff_max=0.5)
        with pytest.raises(TransientProviderError):
            await call_with_retries(call, options, "create x", sleep=sleep)
        assert sleeps == [0.5]

    async def test_permanent_errors_are_not_retried(self, sleep, sleeps):
        counter = AttemptCounter()

        async def call():
            raise PermanentProviderError("denied")

        with pytest.raises(PermanentProviderError):
            await call_with_retries(call, RunOptions(), "create x", counter, sleep)
        assert counter.attempts == 1
        assert sleeps == []
