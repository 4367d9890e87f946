from structlog.testing import capture_logs

from ragcore.shared.resilience import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_opens_after_threshold_and_fails_fast():
    breaker = CircuitBreaker(name="test", failure_threshold=3, recovery_timeout=10.0)

    for _ in range(2):
        breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.allow_request()

    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    assert not breaker.allow_request()


def test_half_open_after_recovery_timeout():
    clock = FakeClock()
    breaker = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=5.0, clock=clock)
    breaker.record_failure()
    assert not breaker.allow_request()

    clock.now += 5.0
    assert breaker.allow_request()
    assert breaker.state == CircuitState.HALF_OPEN

    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


def test_failure_in_half_open_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=5.0, clock=clock)
    breaker.record_failure()
    clock.now += 6.0
    assert breaker.allow_request()

    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    assert not breaker.allow_request()


def test_reset_closes_circuit():
    breaker = CircuitBreaker(name="test", failure_threshold=1)
    breaker.record_failure()
    breaker.reset()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.allow_request()


def test_transitions_are_logged():
    clock = FakeClock()
    breaker = CircuitBreaker(name="embed", failure_threshold=1, recovery_timeout=1.0, clock=clock)
    with capture_logs() as logs:
        breaker.record_failure()
        clock.now += 1.0
        breaker.allow_request()
        breaker.record_success()

    transitions = [
        (e["from_state"], e["to_state"])
        for e in logs
        if e["event"] == "circuit_breaker_transition"
    ]
    assert transitions == [("closed", "open"), ("open", "half_open"), ("half_open", "closed")]
    assert logs[0]["log_level"] == "warning"
