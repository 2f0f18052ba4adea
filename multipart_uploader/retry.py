from __future__ import annotations

import asyncio
import dataclasses
import logging
import typing as T

import requests

from . import constants, exceptions

LOG = logging.getLogger(__name__)

_R = T.TypeVar("_R")

SleepFunc = T.Callable[[float], T.Awaitable[None]]
RetryCallback = T.Callable[[int, float, BaseException], None]


@dataclasses.dataclass(frozen=True)
class RetryConfig:
    # Retries after the first attempt, so max_retries=0 means a single attempt
    max_retries: int = constants.MAX_UPLOAD_RETRIES
    # In seconds
    initial_delay: float = constants.RETRY_INITIAL_DELAY
    max_delay: float = constants.RETRY_MAX_DELAY
    multiplier: float = 2.0
    exponential_backoff: bool = True
    # Explicit per-retry delays in seconds. Takes precedence over the backoff settings
    delays: tuple[float, ...] | None = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(
                f"Expect non-negative max_retries but got {self.max_retries}"
            )
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError(
                f"Expect non-negative delays but got {self.initial_delay} and {self.max_delay}"
            )
        if self.multiplier < 1:
            raise ValueError(f"Expect multiplier >= 1 but got {self.multiplier}")
        if self.delays is not None and any(d < 0 for d in self.delays):
            raise ValueError(f"Expect non-negative delays but got {self.delays}")

    @classmethod
    def with_delays(cls, delays: T.Sequence[float]) -> RetryConfig:
        """
        One retry per entry in the delay table

        >>> config = RetryConfig.with_delays([0, 1.0])
        >>> config.max_retries, config.max_attempts
        (2, 3)
        """
        return cls(
            max_retries=len(delays),
            delays=tuple(delays),
            exponential_backoff=False,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def get_delay(self, attempt: int) -> float:
        """
        Delay before the given attempt (1-based retry count). The first attempt has no delay.

        >>> config = RetryConfig(initial_delay=1, max_delay=30)
        >>> [config.get_delay(n) for n in range(0, 7)]
        [0.0, 1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
        >>> RetryConfig.with_delays([0, 1.0]).get_delay(5)
        1.0
        >>> RetryConfig(initial_delay=5, exponential_backoff=False).get_delay(3)
        5.0
        """
        if attempt <= 0:
            return 0.0

        if self.delays:
            idx = min(attempt - 1, len(self.delays) - 1)
            return float(self.delays[idx])

        if not self.exponential_backoff:
            return float(self.initial_delay)

        return float(
            min(
                self.initial_delay * (self.multiplier ** (attempt - 1)),
                self.max_delay,
            )
        )


DEFAULT_RETRY_CONFIG = RetryConfig()


def is_retriable_exception(ex: BaseException) -> bool:
    """
    Only transport-level failures are retried. HTTP errors, auth errors and
    rejections from the store propagate on the first failure.

    >>> is_retriable_exception(exceptions.TransientTransportError("reset"))
    True
    >>> is_retriable_exception(requests.ConnectionError("reset"))
    True
    >>> is_retriable_exception(requests.ReadTimeout("slow"))
    True
    >>> is_retriable_exception(exceptions.ServerRejectionError("NoSuchUpload", 404))
    False
    >>> resp = requests.Response()
    >>> resp.status_code = 503
    >>> is_retriable_exception(requests.HTTPError("error", response=resp))
    False
    """
    return isinstance(
        ex,
        (
            exceptions.TransientTransportError,
            requests.ConnectionError,
            requests.Timeout,
            asyncio.TimeoutError,
        ),
    )


class RetryPolicy:
    """
    Run one async operation with bounded retries.

    Cancellation is checked before every attempt, which includes right after
    every retry delay. A cancelled run returns None instead of starting a doomed attempt.
    """

    def __init__(
        self,
        config: RetryConfig = DEFAULT_RETRY_CONFIG,
        sleep: SleepFunc | None = None,
    ):
        self.config = config
        self._sleep: SleepFunc = sleep if sleep is not None else asyncio.sleep

    async def run(
        self,
        operation: T.Callable[[], T.Awaitable[_R]],
        is_cancelled: T.Callable[[], bool] | None = None,
        on_retry: RetryCallback | None = None,
        name: str = "operation",
    ) -> _R | None:
        attempt = 0

        while True:
            if is_cancelled is not None and is_cancelled():
                LOG.debug(f"Skipped {name}: cancelled before attempt {attempt + 1}")
                return None

            try:
                return await operation()
            except Exception as ex:
                if not is_retriable_exception(ex):
                    raise

                attempt += 1
                if attempt > self.config.max_retries:
                    LOG.warning(
                        f"Giving up {name} after {attempt} attempts: {ex.__class__.__name__}: {ex}"
                    )
                    raise

                delay = self.config.get_delay(attempt)
                LOG.info(
                    f"Retrying {name} in {delay:.3f} seconds ({attempt}/{self.config.max_retries}): {ex.__class__.__name__}: {ex}"
                )
                if on_retry is not None:
                    on_retry(attempt, delay, ex)

                if delay > 0:
                    await self._sleep(delay)
