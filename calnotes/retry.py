from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: tuple[float, ...] = (0.1, 0.2)
    retryable: tuple[type[BaseException], ...] = (FileExistsError, OSError)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        if not self.backoff_seconds:
            return 0.0
        return self.backoff_seconds[min(attempt, len(self.backoff_seconds) - 1)]

    def run(self, operation: Callable[[int], T]) -> T:
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                return operation(attempt)
            except self.retryable as exc:
                if attempt + 1 >= attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Attempt %s/%s failed (%s); retrying in %.2fs",
                    attempt + 1,
                    attempts,
                    exc,
                    delay,
                )
                self.sleep(delay)
        raise RuntimeError("unreachable")
