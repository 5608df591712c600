import pytest

from autodj.core.retry import BackoffStrategy, RetryCalculator, RetryConfig


def test_fixed_policy_is_constant_and_unbounded() -> None:
    calculator = RetryCalculator(RetryConfig.fixed("relay-restart", 3.0))

    assert calculator.name == "relay-restart"
    assert [calculator.calculate_delay(attempt) for attempt in (1, 2, 50, 10_000)] == [3.0] * 4
    assert calculator.allows(10_000)


def test_bounded_policy_rejects_extra_attempts() -> None:
    calculator = RetryCalculator(RetryConfig.fixed("pipe-write", 2.0, max_attempts=3))

    assert calculator.allows(3)
    assert not calculator.allows(4)
    with pytest.raises(ValueError):
        calculator.calculate_delay(4)


def test_exponential_policy_is_capped() -> None:
    config = RetryConfig(base_delay=1.0, max_delay=10.0, strategy=BackoffStrategy.EXPONENTIAL, jitter=False)
    calculator = RetryCalculator(config)

    assert [calculator.calculate_delay(attempt) for attempt in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_fibonacci_and_linear_policies() -> None:
    fib = RetryCalculator(RetryConfig(base_delay=1.0, strategy=BackoffStrategy.FIBONACCI, jitter=False))
    linear = RetryCalculator(RetryConfig(base_delay=2.0, strategy=BackoffStrategy.LINEAR, jitter=False))

    assert [fib.calculate_delay(attempt) for attempt in range(1, 7)] == [1, 1, 2, 3, 5, 8]
    assert linear.calculate_delay(3) == 6.0


def test_jitter_stays_within_range() -> None:
    calculator = RetryCalculator(RetryConfig(base_delay=10.0, strategy=BackoffStrategy.FIXED, jitter_factor=0.1))

    for _ in range(50):
        assert 9.0 <= calculator.calculate_delay(1) <= 11.0


def test_zero_attempt_is_invalid() -> None:
    with pytest.raises(ValueError):
        RetryCalculator().calculate_delay(0)
