# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import enum
import functools
import logging
import time
from typing import Callable, Optional, TypeVar

log = logging.getLogger("kubeboot")

T = TypeVar("T")


class RetryError(RuntimeError):
    pass


class ErrorClass(enum.Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


Classifier = Callable[[BaseException], ErrorClass]


def always_transient(exc: BaseException) -> ErrorClass:
    return ErrorClass.TRANSIENT


class RetryPolicy:
    """
    Base retry policy.

    Whether an error is worth retrying is decided by the ``classifier``
    callable, which each transport supplies. The policy only decides how
    many times and how long to wait.
    """

    def __init__(
        self,
        max_attempts: int,
        *,
        classifier: Classifier = always_transient,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.classifier = classifier
        self._sleep = sleep
        self.on_retry = on_retry

    def interval(self, attempt: int) -> float:
        raise NotImplementedError

    def invoke(self, fn: Callable[[], T]) -> T:
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except Exception as exc:
                if self.classifier(exc) is ErrorClass.FATAL:
                    raise
                last_exc = exc
                if self.on_retry:
                    self.on_retry(attempt, exc)
                if attempt == self.max_attempts:
                    break
                delay = self.interval(attempt)
                log.debug("transient error (attempt %d/%d), retrying in %.1fs: %s",
                          attempt, self.max_attempts, delay, exc)
                self._sleep(delay)
        raise RetryError(f"operation failed after {self.max_attempts} attempts") from last_exc


class NoRetryPolicy(RetryPolicy):
    def __init__(self):
        super().__init__(1)

    def interval(self, attempt: int) -> float:
        return 0.0

    def invoke(self, fn: Callable[[], T]) -> T:
        return fn()


class LinearRetryPolicy(RetryPolicy):
    """Fixed delay between attempts."""

    def __init__(self, max_attempts: int, delay: float, **kwargs):
        super().__init__(max_attempts, **kwargs)
        self.delay = delay

    def interval(self, attempt: int) -> float:
        return self.delay


class ExponentialRetryPolicy(RetryPolicy):
    def __init__(
        self,
        max_attempts: int,
        *,
        initial_interval: float = 1.0,
        max_interval: float = 5.0,
        **kwargs,
    ):
        super().__init__(max_attempts, **kwargs)
        self.initial_interval = initial_interval
        self.max_interval = max_interval

    def interval(self, attempt: int) -> float:
        return min(self.initial_interval * (2 ** (attempt - 1)), self.max_interval)


def retry(
    *,
    retries: int,
    delay: int,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[[int, Exception], None] | None = None,
):
    """
    Retry decorator for idempotent operations.

    retries: number of attempts
    delay: seconds between attempts
    retry_on: exception types to retry
    on_retry: callback(attempt, exception)
    """

    def classify(exc: BaseException) -> ErrorClass:
        return ErrorClass.TRANSIENT if isinstance(exc, retry_on) else ErrorClass.FATAL

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            policy = LinearRetryPolicy(retries, delay, classifier=classify, on_retry=on_retry)
            try:
                return policy.invoke(lambda: fn(*args, **kwargs))
            except RetryError as exc:
                raise RetryError(f"{fn.__name__} failed after {retries} retries") from exc.__cause__
        return wrapper
    return decorator
