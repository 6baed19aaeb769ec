import pytest

from kubeboot.utils.retry import (
    ErrorClass,
    ExponentialRetryPolicy,
    LinearRetryPolicy,
    NoRetryPolicy,
    RetryError,
    retry,
)


class Flaky:
    def __init__(self, failures, exc=ConnectionError("reset")):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


def test_linear_policy_retries_with_fixed_delay():
    sleeps = []
    fn = Flaky(2)
    policy = LinearRetryPolicy(3, 1.5, sleep=sleeps.append)

    assert policy.invoke(fn) == "ok"
    assert fn.calls == 3
    assert sleeps == [1.5, 1.5]


def test_exponential_intervals_are_capped():
    policy = ExponentialRetryPolicy(6, initial_interval=1.0, max_interval=5.0)
    assert [policy.interval(a) for a in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_exhaustion_raises_retry_error_with_cause():
    sleeps = []
    fn = Flaky(10)
    policy = LinearRetryPolicy(3, 0, sleep=sleeps.append)

    with pytest.raises(RetryError) as ei:
        policy.invoke(fn)

    assert fn.calls == 3
    assert len(sleeps) == 2
    assert isinstance(ei.value.__cause__, ConnectionError)


def test_fatal_errors_are_not_retried():
    fn = Flaky(1, exc=ValueError("bad input"))
    policy = LinearRetryPolicy(
        5, 0,
        classifier=lambda e: ErrorClass.FATAL if isinstance(e, ValueError) else ErrorClass.TRANSIENT,
        sleep=lambda s: None,
    )

    with pytest.raises(ValueError):
        policy.invoke(fn)
    assert fn.calls == 1


def test_on_retry_sees_each_failure():
    seen = []
    policy = LinearRetryPolicy(3, 0, sleep=lambda s: None, on_retry=lambda a, e: seen.append(a))
    policy.invoke(Flaky(2))
    assert seen == [1, 2]


def test_no_retry_policy_propagates():
    with pytest.raises(ConnectionError):
        NoRetryPolicy().invoke(Flaky(1))


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        LinearRetryPolicy(0, 1)


def test_decorator_only_retries_listed_exceptions():
    calls = []

    @retry(retries=3, delay=0, retry_on=(ConnectionError,))
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("again")
        return len(calls)

    @retry(retries=3, delay=0, retry_on=(ConnectionError,))
    def broken():
        raise KeyError("nope")

    assert flaky() == 3
    with pytest.raises(KeyError):
        broken()


def test_decorator_exhaustion_names_function():
    @retry(retries=2, delay=0)
    def always_fails():
        raise ConnectionError("down")

    with pytest.raises(RetryError, match="always_fails failed after 2 retries"):
        always_fails()
