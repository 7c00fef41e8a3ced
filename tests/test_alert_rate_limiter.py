import pytest

from alert_rate_limiter import AlertThrottle
from fakes import at


def test_first_alert_always_allowed():
    throttle = AlertThrottle(15)
    assert throttle.should_fire("U1", at(0))
    assert throttle.last_fired("U1") is None


def test_cooldown_blocks_until_elapsed():
    throttle = AlertThrottle(15)
    throttle.record_fired("U1", at(0))
    assert not throttle.should_fire("U1", at(10))
    assert not throttle.should_fire("U1", at(14.999))
    assert throttle.should_fire("U1", at(15))
    assert throttle.should_fire("U1", at(20))


def test_should_fire_does_not_consume_cooldown():
    throttle = AlertThrottle(15)
    assert throttle.should_fire("U1", at(0))
    # nothing recorded -> still allowed
    assert throttle.should_fire("U1", at(1))


def test_users_are_independent():
    throttle = AlertThrottle(60)
    throttle.record_fired("U1", at(0))
    assert throttle.should_fire("U2", at(1))


def test_forget_resets_user():
    throttle = AlertThrottle(60)
    throttle.record_fired("U1", at(0))
    throttle.forget("U1")
    assert throttle.should_fire("U1", at(1))


def test_stats():
    throttle = AlertThrottle(30)
    throttle.record_fired("U1", at(0))
    stats = throttle.get_stats("U1", at(10))
    assert stats["allowed"] is False
    assert stats["reset_in_seconds"] == pytest.approx(20)
    assert stats["last_alert_at"] == at(0).isoformat()


def test_negative_cooldown_rejected():
    with pytest.raises(ValueError):
        AlertThrottle(-1)
