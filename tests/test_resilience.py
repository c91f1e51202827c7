import pytest

from qppf_trader.errors import CircuitOpenError, UpstreamUnavailableError
from qppf_trader.resilience import CircuitBreaker, CircuitState, ResilientCaller, RetryPolicy


class FakeClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


class Flaky:
    """Fails the first n calls"""

    def __init__(self, failures, exc=ConnectionError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self, value="ok"):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


def _caller(sleeps, clock, attempts=3, threshold=5, reset=60):
    return ResilientCaller(
        "test",
        RetryPolicy(max_attempts=attempts, base_delay=1.0, max_delay=4.0, backoff=2.0),
        CircuitBreaker(failure_threshold=threshold, reset_timeout=reset, clock=clock),
        sleep=sleeps.append
    )


class TestRetryPolicy:
    def test_backoff_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=4.0, backoff=2.0)
        assert [policy.delay(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 4.0]


class TestCircuitBreaker:
    def test_opens_at_threshold(self, clock):
        breaker = CircuitBreaker(failure_threshold=3, reset_timeout=10, clock=clock)
        for _ in range(2):
            breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    def test_half_open_after_timeout(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=10, clock=clock)
        breaker.record_failure()
        clock.t = 10.0
        assert breaker.allow_request()
        assert breaker.state == CircuitState.HALF_OPEN

    def test_half_open_success_closes(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=10, clock=clock)
        breaker.record_failure()
        clock.t = 11.0
        breaker.allow_request()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_half_open_failure_reopens(self, clock):
        breaker = CircuitBreaker(failure_threshold=3, reset_timeout=10, clock=clock)
        for _ in range(3):
            breaker.record_failure()
        clock.t = 10.0
        breaker.allow_request()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    def test_success_resets_count(self, clock):
        breaker = CircuitBreaker(failure_threshold=3, clock=clock)
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    def test_manual_reset(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, clock=clock)
        breaker.record_failure()
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request()


class TestResilientCaller:
    def test_success_passthrough(self, sleeps, clock):
        caller = _caller(sleeps, clock)
        assert caller.call(lambda x: x * 2, 21) == 42
        assert sleeps == []

    def test_retries_then_succeeds(self, sleeps, clock):
        fn = Flaky(2)
        caller = _caller(sleeps, clock)
        assert caller.call(fn, value="done") == "done"
        assert fn.calls == 3
        assert sleeps == [1.0, 2.0]
        assert caller.breaker.state == CircuitState.CLOSED
        assert caller.breaker.failure_count == 0

    def test_exhausted_raises_upstream_error(self, sleeps, clock):
        fn = Flaky(10)
        caller = _caller(sleeps, clock)
        with pytest.raises(UpstreamUnavailableError) as info:
            caller.call(fn)
        assert info.value.source == "test"
        assert isinstance(info.value.__cause__, ConnectionError)
        assert fn.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_open_circuit_short_circuits(self, sleeps, clock):
        fn = Flaky(100)
        caller = _caller(sleeps, clock, attempts=3, threshold=3)
        with pytest.raises(UpstreamUnavailableError):
            caller.call(fn)
        assert caller.breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            caller.call(fn)
        assert fn.calls == 3

    def test_breaker_stops_retries_early(self, sleeps, clock):
        fn = Flaky(100)
        caller = _caller(sleeps, clock, attempts=5, threshold=2)
        with pytest.raises(UpstreamUnavailableError):
            caller.call(fn)
        assert fn.calls == 2

    def test_recovers_after_reset_timeout(self, sleeps, clock):
        caller = _caller(sleeps, clock, attempts=1, threshold=1, reset=30)
        with pytest.raises(UpstreamUnavailableError):
            caller.call(Flaky(1))
        clock.t = 31.0
        assert caller.call(lambda: "back") == "back"
        assert caller.breaker.state == CircuitState.CLOSED

    def test_upstream_errors_not_retried(self, sleeps, clock):
        def fail():
            raise UpstreamUnavailableError("inner", "bad payload")

        caller = _caller(sleeps, clock)
        with pytest.raises(UpstreamUnavailableError) as info:
            caller.call(fail)
        assert info.value.source == "inner"
        assert sleeps == []
