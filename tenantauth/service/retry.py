from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from tenantauth.logging import get_logger
from tenantauth.service.errors import StoreUnavailableError
from tenantauth.storage.errors import TransientStoreError

logger = get_logger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS_HARD_CAP = 5


class StoreRetry:
    """Bounded retry around store calls.

    Only ``TransientStoreError`` is retried; constraint violations and every
    other exception propagate on the first attempt. Backoff quadruples after
    each failed attempt starting from ``backoff_ms``.
    """

    def __init__(self, attempts: int = 3, backoff_ms: int = 50) -> None:
        self.attempts = max(1, min(attempts, MAX_ATTEMPTS_HARD_CAP))
        self.backoff_ms = max(0, backoff_ms)

    async def call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        last_error: TransientStoreError | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                return fn(*args, **kwargs)
            except TransientStoreError as exc:
                last_error = exc
                logger.warning(
                    "store_call_retry",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=self.attempts,
                    error=exc.message,
                )
            if attempt < self.attempts and self.backoff_ms:
                await asyncio.sleep(self.backoff_ms * (4 ** (attempt - 1)) / 1000.0)

        logger.error(
            "store_call_exhausted",
            operation=operation,
            attempts=self.attempts,
            error=last_error.message if last_error else None,
        )
        raise StoreUnavailableError(
            "storage temporarily unavailable", detail={"operation": operation}
        ) from last_error
