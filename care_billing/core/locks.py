"""
Per-entity serialization.

One asyncio.Lock per (entity, id) key so that two operations on the same
caregiver wallet or the same subscription never interleave inside this
process, while unrelated keys proceed in parallel. Cross-process safety comes
from row locks (SELECT ... FOR UPDATE) and the models' version counters;
retry_on_conflict() turns a lost optimistic race into a bounded retry.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy.orm.exc import StaleDataError

from care_billing.core.config import settings
from care_billing.core.exceptions import ConcurrencyConflictError
from care_billing.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

WALLET = "wallet"
SUBSCRIPTION = "subscription"


class KeyedLockManager:
    """Lazily created locks, dropped again once no task holds or waits on them"""

    def __init__(self, timeout_seconds: float | None = None):
        self.timeout_seconds = timeout_seconds
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._waiters: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, entity: str, entity_id: str) -> AsyncIterator[None]:
        key = (entity, str(entity_id))
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        timeout = self.timeout_seconds
        if timeout is None:
            timeout = settings.WALLET_LOCK_TIMEOUT_SECONDS
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Timed out waiting for entity lock",
                    extra_data={"entity": entity, "entity_id": key[1], "timeout_seconds": timeout}
                )
                raise ConcurrencyConflictError(entity, key[1]) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def is_locked(self, entity: str, entity_id: str) -> bool:
        lock = self._locks.get((entity, str(entity_id)))
        return lock is not None and lock.locked()


_lock_manager: KeyedLockManager | None = None


def get_lock_manager() -> KeyedLockManager:
    global _lock_manager
    if _lock_manager is None:
        _lock_manager = KeyedLockManager()
    return _lock_manager


def reset_lock_manager() -> None:
    """Drop all locks. Locks bind to an event loop, so every task loop starts clean."""
    global _lock_manager
    _lock_manager = None


def wallet_lock(caregiver_id: str):
    return get_lock_manager().hold(WALLET, caregiver_id)


def subscription_lock(subscription_id: str):
    return get_lock_manager().hold(SUBSCRIPTION, subscription_id)


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    *,
    entity: str,
    entity_id: str,
    rollback: Callable[[], Awaitable[None]] | None = None,
    attempts: int | None = None,
) -> T:
    """
    Run operation, retrying when another writer won the race.

    StaleDataError (version counter mismatch) and ConcurrencyConflictError
    are retried up to CONCURRENCY_RETRY_ATTEMPTS times in total; every other
    error propagates untouched.
    """
    max_attempts = attempts or settings.CONCURRENCY_RETRY_ATTEMPTS
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except (StaleDataError, ConcurrencyConflictError) as e:
            if rollback is not None:
                await rollback()
            logger.warning(
                "Concurrent modification, retrying",
                extra_data={
                    "entity": entity,
                    "entity_id": entity_id,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "error": str(e),
                }
            )
            if attempt == max_attempts:
                raise ConcurrencyConflictError(entity, entity_id, attempts=max_attempts) from e
    raise ConcurrencyConflictError(entity, entity_id, attempts=max_attempts)
