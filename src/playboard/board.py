"""BoardClient - what a teacher's screen does with the store.

Holds one subscription per channel (schedule, locks, presence) and keeps the
latest pushed snapshot of each in BoardView. The view is only ever replaced
by a new snapshot from the store, never edited in place after a local
action, so every client converges on what the store holds.

Editing flow:
  open_editor(slot)   acquire the slot lock; None if someone else is editing
  save(slot, entry)   upsert the entry, then release the lock
  cancel(slot)        release the lock
  clear(slot, confirm) delete an occupied slot once confirm() agrees
"""

from collections.abc import Callable
from dataclasses import dataclass, field

from src.playboard.errors import BoardError
from src.playboard.grid import entry_at
from src.playboard.locks import LockManager
from src.playboard.logging import get_logger
from src.playboard.models import (
    Lock,
    LocksMap,
    PresenceMap,
    ScheduleEntry,
    ScheduleGrid,
    Slot,
    User,
)
from src.playboard.presence import PresenceTracker, online_others
from src.playboard.repository import ScheduleRepository
from src.playboard.store.base import RemoteStore, Unsubscribe
from src.playboard.suggestions import Suggester, apply_suggestions

logger = get_logger(__name__)

ConfirmDelete = Callable[[Slot, ScheduleEntry], bool]


@dataclass
class BoardView:
    """Latest snapshots pushed by the store."""

    schedule: ScheduleGrid = field(default_factory=dict)
    locks: LocksMap = field(default_factory=dict)
    presence: PresenceMap = field(default_factory=dict)


class BoardClient:
    """One teacher's connection to the board.

    Args:
        store: This client's store connection; closed by stop().
        user: The signed-in teacher.
        clock: Epoch-ms clock used for lock timestamps and expiry.
        lock_timeout_ms: Age after which a lock no longer counts.
        heartbeat_seconds: Interval between presence heartbeats.
    """

    def __init__(
        self,
        store: RemoteStore,
        user: User,
        *,
        clock: Callable[[], int] | None = None,
        lock_timeout_ms: int | None = None,
        heartbeat_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.user = user
        lock_kwargs = {}
        if clock is not None:
            lock_kwargs["clock"] = clock
        if lock_timeout_ms is not None:
            lock_kwargs["timeout_ms"] = lock_timeout_ms
        self.locks = LockManager(store, **lock_kwargs)
        presence_kwargs = {}
        if heartbeat_seconds is not None:
            presence_kwargs["heartbeat_seconds"] = heartbeat_seconds
        self.presence = PresenceTracker(store, **presence_kwargs)
        self.schedule = ScheduleRepository(store)
        self.view = BoardView()
        self.editing: set[Slot] = set()
        self._unsubscribes: list[Unsubscribe] = []
        self.started = False

    async def start(self, *, migrate: bool = True) -> None:
        """Publish presence, fix up legacy data, and start the three subscriptions."""
        if self.started:
            return
        await self.presence.setup(self.user)
        if migrate:
            await self.schedule.migrate()
        self._unsubscribes = [
            await self.schedule.subscribe(self._on_schedule),
            await self.locks.subscribe(self._on_locks),
            await self.presence.subscribe(self._on_presence),
        ]
        self.started = True
        logger.info("board_started", uid=self.user.uid)

    def _on_schedule(self, grid: ScheduleGrid) -> None:
        self.view.schedule = grid

    def _on_locks(self, locks: LocksMap) -> None:
        self.view.locks = locks

    def _on_presence(self, presence: PresenceMap) -> None:
        self.view.presence = presence

    def lock_for(self, slot: Slot) -> Lock | None:
        """Live lock on slot as currently seen, expired ones excluded."""
        return self.locks.resolve(self.view.locks, slot)

    def entry(self, slot: Slot) -> ScheduleEntry | None:
        return entry_at(self.view.schedule, slot)

    def others_online(self) -> PresenceMap:
        """Other teachers online now; crashed sessions drop out once their heartbeat goes stale."""
        return online_others(
            self.view.presence,
            self.user.uid,
            now=self.locks.clock(),
            stale_after_ms=self.presence.stale_after_ms,
        )

    async def open_editor(self, slot: Slot) -> ScheduleEntry | None:
        """Take the lock on slot for editing.

        Returns the current entry (an empty one for a free slot), or None
        when another teacher is editing the slot.
        """
        holder = self.lock_for(slot)
        if holder is not None and holder.locked_by != self.user.uid:
            logger.info("editor_blocked", slot=str(slot), held_by=holder.display_name)
            return None
        if not await self.locks.acquire(slot, self.user):
            return None
        self.editing.add(slot)
        return self.entry(slot) or ScheduleEntry(class_name="", activity="")

    async def save(self, slot: Slot, entry: ScheduleEntry) -> None:
        """Write entry to slot and let go of the lock.

        Raises:
            SaveFailedError: The write failed; the lock is kept so the
                teacher can retry or cancel.
        """
        await self.schedule.save(slot, entry, self.user)
        await self.cancel(slot)

    async def cancel(self, slot: Slot) -> None:
        await self.locks.release(slot, self.user)
        self.editing.discard(slot)

    async def clear(self, slot: Slot, confirm: ConfirmDelete) -> bool:
        """Delete the entry at slot after confirm(slot, entry) returns True.

        Returns True if the delete was issued. A free slot needs no delete.

        Raises:
            DeleteFailedError: The delete failed.
        """
        current = self.entry(slot)
        if current is None:
            return False
        if not confirm(slot, current):
            logger.debug("delete_not_confirmed", slot=str(slot))
            return False
        await self.schedule.delete(slot)
        return True

    async def auto_fill(self, suggester: Suggester) -> list[Slot]:
        """Fill empty slots with suggestions; occupied slots are never touched.

        Raises:
            SuggestionError: The suggester is unusable; nothing was written.
        """
        suggestions = await suggester.suggest_schedule(self.view.schedule)
        return await apply_suggestions(self.schedule, suggestions, self.user)

    async def stop(self) -> None:
        """Logout: release held locks, go offline, unsubscribe, close the store.

        The store is always closed, so its disconnect writes (lock deletes,
        offline status) still go out when an earlier step fails.
        """
        for slot in list(self.editing):
            try:
                await self.cancel(slot)
            except BoardError as e:
                logger.warning("lock_release_failed", slot=str(slot), error=str(e))
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes = []
        try:
            if self.started:
                await self.presence.cleanup(self.user)
        finally:
            await self.presence.stop_heartbeat()
            await self.store.close()
            self.started = False
        logger.info("board_stopped", uid=self.user.uid)

    async def __aenter__(self) -> "BoardClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
