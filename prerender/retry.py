"""
Retry strategies applied by the scheduler after a failed render.
The default is NoRetry: a failed URL waits for the next organic or refresh enqueue.
"""

from abc import ABC, abstractmethod
from typing import Optional

from prerender.core import ConfigurationError


class RetryPolicy(ABC):

    @abstractmethod
    def next_delay(self, failures: int) -> Optional[float]:
        """
        Seconds to wait before re-enqueueing after `failures` consecutive failed attempts,
        or None to give up.
        """
        pass


class NoRetry(RetryPolicy):

    def next_delay(self, failures: int) -> Optional[float]:
        return None

    def __repr__(self):
        return "NoRetry()"


class FixedRetry(RetryPolicy):

    def __init__(self, max_retries: int, delay: float = 5.0):
        if max_retries < 0 or delay < 0:
            raise ValueError("max_retries and delay must be non-negative")
        self.max_retries = max_retries
        self.delay = delay

    def next_delay(self, failures: int) -> Optional[float]:
        if failures > self.max_retries:
            return None
        return self.delay

    def __repr__(self):
        return f"FixedRetry(max_retries={self.max_retries}, delay={self.delay})"


class ExponentialBackoff(RetryPolicy):

    def __init__(self, max_retries: int, base: float = 5.0, cap: float = 300.0):
        if max_retries < 0 or base < 0 or cap < 0:
            raise ValueError("max_retries, base and cap must be non-negative")
        self.max_retries = max_retries
        self.base = base
        self.cap = cap

    def next_delay(self, failures: int) -> Optional[float]:
        if failures > self.max_retries:
            return None
        return min(self.cap, self.base * (2 ** (failures - 1)))

    def __repr__(self):
        return f"ExponentialBackoff(max_retries={self.max_retries}, base={self.base}, cap={self.cap})"


def parse_retry_policy(spec: Optional[str]) -> RetryPolicy:
    """
    Parse PRERENDER_RETRY: "none", "fixed:N[:delay]" or "exponential:N[:base[:cap]]".
    """
    text = (spec or "none").strip().lower()
    name, _, rest = text.partition(":")
    args = [a for a in rest.split(":") if a] if rest else []
    try:
        if name == "none" and not args:
            return NoRetry()
        if name == "fixed" and 1 <= len(args) <= 2:
            return FixedRetry(int(args[0]), *(float(a) for a in args[1:]))
        if name == "exponential" and 1 <= len(args) <= 3:
            return ExponentialBackoff(int(args[0]), *(float(a) for a in args[1:]))
    except ValueError as e:
        raise ConfigurationError(f"Invalid retry policy {spec!r}: {e}")
    raise ConfigurationError(f"Invalid retry policy {spec!r}; expected none, fixed:N[:delay] or exponential:N[:base[:cap]]")
