"""Per-slot advisory edit locks.

A lock is a soft lease at locks/{day}__{timeSlot}: who holds it and when they
took it. Acquisition happens inside a store transaction, so two teachers
opening the same cell cannot both win. A lock older than the timeout counts
as absent for every reader (resolve) and for the next acquirer, but only its
owner, or the owner's disconnect, ever deletes it. The store does not enforce
locks; they gate the editing flow only.
"""

from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from src.playboard.logging import get_logger
from src.playboard.models import Lock, LocksMap, Slot, User
from src.playboard.store.base import (
    RemoteStore,
    TransactionAborted,
    Unsubscribe,
    epoch_ms,
)

logger = get_logger(__name__)

LOCKS_PATH = "locks"
LOCK_TIMEOUT_MS = 2 * 60 * 1000


def resolve(
    locks: LocksMap, slot: Slot, now: int, timeout_ms: int = LOCK_TIMEOUT_MS
) -> Lock | None:
    """Return the effective lock on slot, or None if absent or expired."""
    lock = locks.get(slot.lock_key)
    if lock is None or lock.is_expired(now, timeout_ms):
        return None
    return lock


def parse_locks(raw: Any) -> LocksMap:
    """Turn the raw locks node into Lock models, skipping malformed records."""
    locks: LocksMap = {}
    for key, value in (raw or {}).items():
        try:
            locks[key] = Lock.model_validate(value)
        except ValidationError:
            logger.warning("lock_record_malformed", key=key)
    return locks


class LockManager:
    """Acquire and release slot locks for one client connection.

    Args:
        store: The client's store connection.
        clock: Returns the current time in epoch ms. Read inside the
            transaction, so each store retry sees a fresh value.
        timeout_ms: Age after which a lock no longer counts.
    """

    def __init__(
        self,
        store: RemoteStore,
        *,
        clock: Callable[[], int] = epoch_ms,
        timeout_ms: int = LOCK_TIMEOUT_MS,
    ) -> None:
        self.store = store
        self.clock = clock
        self.timeout_ms = timeout_ms

    async def acquire(self, slot: Slot, user: User) -> bool:
        """Try to take the lock on slot for user.

        Succeeds when the slot is free, its lock has expired, or user already
        holds it (in which case only lockedAt is refreshed). Returns False
        when another teacher holds a live lock; that is not an error.
        """

        def claim(current: Any) -> dict:
            now = self.clock()
            if not current or now - current.get("lockedAt", 0) > self.timeout_ms:
                return Lock(
                    locked_by=user.uid, display_name=user.display_name, locked_at=now
                ).model_dump(by_alias=True)
            if current.get("lockedBy") == user.uid:
                return {**current, "lockedAt": now}
            raise TransactionAborted

        result = await self.store.transaction(slot.lock_path, claim)
        if not result.committed:
            holder = (result.value or {}).get("displayName", "")
            logger.info("lock_contended", slot=str(slot), uid=user.uid, held_by=holder)
            return False

        await self.store.on_disconnect_remove(slot.lock_path)
        logger.info("lock_acquired", slot=str(slot), uid=user.uid)
        return True

    async def release(self, slot: Slot, user: User) -> None:
        """Delete the lock on slot if, and only if, user owns it."""
        current = await self.store.get(slot.lock_path)
        if not current or current.get("lockedBy") != user.uid:
            logger.debug("lock_release_skipped", slot=str(slot), uid=user.uid)
            return
        await self.store.remove(slot.lock_path)
        # The lock may be re-taken by someone else; our disconnect delete must not hit theirs
        await self.store.cancel_on_disconnect(slot.lock_path)
        logger.info("lock_released", slot=str(slot), uid=user.uid)

    def resolve(self, locks: LocksMap, slot: Slot, now: int | None = None) -> Lock | None:
        return resolve(locks, slot, self.clock() if now is None else now, self.timeout_ms)

    async def subscribe(self, callback: Callable[[LocksMap], None]) -> Unsubscribe:
        """Deliver the full lock map on every change ({} when none)."""
        return await self.store.subscribe(
            LOCKS_PATH, lambda raw: callback(parse_locks(raw))
        )
