import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from lofiradio import LOGGER_NAME
from lofiradio.errors import FetchCancelled

T = TypeVar("T")


class RetriesExhausted(Exception):
    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attempt ``n`` (1-based) that fails is followed by a wait of
    ``base_delay * multiplier ** (n - 1)``, capped at ``max_delay``. No wait
    follows the final attempt.
    """

    attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 16.0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    @classmethod
    def from_config(cls, section: dict) -> "RetryPolicy":
        return cls(
            attempts=int(section.get("attempts", cls.attempts)),
            base_delay=float(section.get("base_delay", cls.base_delay)),
            multiplier=float(section.get("multiplier", cls.multiplier)),
            max_delay=float(section.get("max_delay", cls.max_delay)),
        )

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def call(self, func: Callable[[int], T], retry_on: Tuple[Type[BaseException], ...],
             cancel: Optional[threading.Event] = None, label: str = "",
             logger: Optional[logging.Logger] = None) -> T:
        """Run ``func(attempt)`` until it succeeds or attempts run out.

        Raises ``RetriesExhausted`` with the last error, or ``FetchCancelled``
        when ``cancel`` is set before or during a backoff wait.
        """
        logger = logger or logging.getLogger(f"{LOGGER_NAME}.retry")
        cancel = cancel or threading.Event()
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.attempts + 1):
            if cancel.is_set():
                raise FetchCancelled(label)
            try:
                return func(attempt)
            except retry_on as e:
                last_error = e
                if attempt == self.attempts:
                    break
                wait = self.delay(attempt)
                logger.warning(f"{label}: attempt {attempt}/{self.attempts} failed ({e}), retrying in {wait:.1f}s")
                if cancel.wait(wait):
                    raise FetchCancelled(label)

        logger.error(f"{label}: giving up after {self.attempts} attempt(s)")
        raise RetriesExhausted(self.attempts, last_error)
