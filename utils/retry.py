import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from config import settings
from utils.errors import StoreError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient store failures."""

    attempts: int = settings.STORE_RETRY_ATTEMPTS
    base_delay: float = settings.STORE_RETRY_BASE_DELAY
    max_delay: float = settings.STORE_RETRY_MAX_DELAY

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** attempt))

    async def run(self, fn: Callable[..., Awaitable[Any]], *args, idempotent: bool = True, **kwargs) -> Any:
        """
        Call `fn`, retrying on StoreError.

        A failure that may already have been applied (ambiguous) is only retried
        when the call is idempotent, i.e. protected by a dedup key or a status CAS.
        """
        attempt = 0
        while True:
            try:
                return await fn(*args, **kwargs)
            except StoreError as e:
                attempt += 1
                if e.ambiguous and not idempotent:
                    log.warning("Ambiguous store failure in %s, not retrying: %s", getattr(fn, "__name__", fn), e)
                    raise
                if attempt >= self.attempts:
                    log.error("Store call %s failed after %d attempts: %s", getattr(fn, "__name__", fn), attempt, e)
                    raise
                delay = self.delay_for(attempt - 1)
                log.warning("Store call %s failed (attempt %d/%d), retrying in %.2fs: %s",
                            getattr(fn, "__name__", fn), attempt, self.attempts, delay, e)
                await asyncio.sleep(delay)


NO_RETRY = RetryPolicy(attempts=1)
