import pytest

from circuit_breaker import CircuitBreaker, CircuitBreakerOpen, CircuitState


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _boom():
    raise RuntimeError("down")


def test_opens_after_consecutive_failures():
    cb = CircuitBreaker("t", consecutive_failures_threshold=2, recovery_timeout=30, clock=FakeClock())
    for _ in range(2):
        with pytest.raises(RuntimeError):
            cb.call(_boom)
    assert cb.state is CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpen):
        cb.call(lambda: "ok")


def test_half_open_probe_closes_on_success():
    clock = FakeClock()
    cb = CircuitBreaker("t", consecutive_failures_threshold=1, recovery_timeout=30, clock=clock)
    with pytest.raises(RuntimeError):
        cb.call(_boom)
    clock.now += 31
    assert cb.call(lambda: 42) == 42
    assert cb.state is CircuitState.CLOSED


def test_half_open_probe_reopens_on_failure():
    clock = FakeClock()
    cb = CircuitBreaker("t", consecutive_failures_threshold=1, recovery_timeout=30, clock=clock)
    with pytest.raises(RuntimeError):
        cb.call(_boom)
    clock.now += 31
    with pytest.raises(RuntimeError):
        cb.call(_boom)
    assert cb.state is CircuitState.OPEN


def test_success_resets_failure_streak():
    cb = CircuitBreaker("t", consecutive_failures_threshold=2, clock=FakeClock())
    with pytest.raises(RuntimeError):
        cb.call(_boom)
    cb.call(lambda: None)
    with pytest.raises(RuntimeError):
        cb.call(_boom)
    assert cb.state is CircuitState.CLOSED
    assert cb.get_metrics()["consecutive_failures"] == 1
