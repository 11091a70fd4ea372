import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_none,
)

from config import Settings
from errors import ConflictError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with exponential backoff for store calls.

    ``StoreError`` is retried up to ``store_max_attempts`` times. A
    ``ConflictError`` re-runs the whole unit of work (fresh read included) up
    to ``conflict_max_attempts`` times. After that the last error propagates.
    """

    store_max_attempts: int = 3
    conflict_max_attempts: int = 5
    backoff_multiplier: float = 0.5
    backoff_min_secs: float = 0.1
    backoff_max_secs: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            store_max_attempts=settings.store_max_attempts,
            conflict_max_attempts=settings.conflict_max_attempts,
            backoff_multiplier=settings.backoff_multiplier,
            backoff_min_secs=settings.backoff_min_secs,
            backoff_max_secs=settings.backoff_max_secs,
        )

    def _wait(self):
        if self.backoff_max_secs <= 0:
            return wait_none()
        return wait_exponential(
            multiplier=self.backoff_multiplier,
            min=self.backoff_min_secs,
            max=self.backoff_max_secs,
        )

    def _retrying(self, attempts: int, error_type: type[Exception]) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(max(1, attempts)),
            wait=self._wait(),
            retry=retry_if_exception_type(error_type),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        store_retrying = self._retrying(self.store_max_attempts, StoreError)
        conflict_retrying = self._retrying(self.conflict_max_attempts, ConflictError)
        return conflict_retrying(store_retrying, fn, *args, **kwargs)
