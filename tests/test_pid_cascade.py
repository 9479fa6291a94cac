"""
Tests for the PID + PWM cascade strategy.
"""

import pytest

from peltier.strategies.pid_cascade import PIDCascadeStrategy, PWMChannel


@pytest.fixture
def strategy():
    s = PIDCascadeStrategy()
    s.configure(5.0)
    return s


class TestPWMChannel:

    def test_on_for_duty_fraction_of_period(self):
        pwm = PWMChannel(period=10.0)
        pwm.set_duty_cycle(30.0)
        assert pwm.state(0.0) is True
        assert pwm.state(2.9) is True
        assert pwm.state(3.0) is False
        assert pwm.state(9.9) is False
        assert pwm.state(10.0) is True

    def test_zero_duty_never_on(self):
        pwm = PWMChannel(period=10.0)
        assert not any(pwm.state(t) for t in range(0, 30))

    def test_duty_is_clamped(self):
        pwm = PWMChannel()
        pwm.set_duty_cycle(150.0)
        assert pwm.duty_cycle == 100.0
        pwm.set_duty_cycle(-5.0)
        assert pwm.duty_cycle == 0.0

    def test_period_must_be_positive(self):
        with pytest.raises(ValueError):
            PWMChannel(period=0)


class TestPIDCascade:

    def test_first_sample_terms(self, strategy):
        output = strategy.update(8.0, now=0.0)
        d = output.diagnostics
        assert d["error"] == pytest.approx(-3.0)
        assert d["P"] == pytest.approx(-9.0)
        assert d["I"] == pytest.approx(0.8 * 3.0)
        assert d["D"] == 0.0
        assert d["total_output"] == pytest.approx(11.4)

    def test_split_below_threshold(self, strategy):
        assert strategy.split(30.0) == (60.0, 0.0)

    def test_split_above_threshold(self, strategy):
        duty1, duty2 = strategy.split(80.0)
        assert duty1 == pytest.approx(68.0)
        assert duty2 == pytest.approx(24.0)

    def test_actuator_2_duty_never_exceeds_actuator_1(self, strategy):
        for output in range(0, 101, 5):
            duty1, duty2 = strategy.split(float(output))
            assert duty2 <= duty1

    def test_intents_carry_duty_cycles(self, strategy):
        output = strategy.update(8.0, now=0.0)
        first, second = output.intents
        assert first.duty_cycle == pytest.approx(22.8)
        assert first.desired_on is True
        assert second.duty_cycle == 0.0
        assert second.desired_on is False

    def test_anti_windup(self, strategy):
        now = 0.0
        for _ in range(500):
            output = strategy.update(30.0, now=now)
            now += 1.0
        assert strategy.integral == pytest.approx(strategy.tuning.integral_max)
        assert output.diagnostics["total_output"] == pytest.approx(100.0)

        # Recovery starts as soon as the container is below setpoint
        strategy.update(4.0, now=now)
        assert strategy.integral < strategy.tuning.integral_max

    def test_integral_never_negative(self, strategy):
        now = 0.0
        for _ in range(100):
            output = strategy.update(-10.0, now=now)
            now += 1.0
            assert strategy.integral >= 0.0
        assert output.diagnostics["total_output"] >= 0.0

    def test_output_grows_while_warm(self, strategy):
        outputs = []
        now = 0.0
        for _ in range(20):
            outputs.append(strategy.update(8.0, now=now).diagnostics["total_output"])
            now += 1.0
        assert outputs == sorted(outputs)
        assert outputs[-1] > strategy.tuning.cascade_threshold

    def test_metrics(self, strategy):
        strategy.update(8.0, now=0.0)
        strategy.update(7.0, now=1.0)
        m = strategy.metrics()
        assert m["kind"] == "pid-cascade"
        assert m["updates"] == 2
        assert m["mae"] == pytest.approx(2.5)
        assert m["max_error"] == pytest.approx(3.0)
        assert m["min_error"] == pytest.approx(2.0)
