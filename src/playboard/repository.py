"""ScheduleRepository - grid cells stored at schedule/{day}/{timeSlot}.

Writes are plain upserts: whoever writes last wins. The edit lock is the only
thing keeping two teachers off the same cell, and the store does not enforce
it. A missing cell is a free slot; deletes remove the node, no tombstones.
"""

from collections.abc import Callable
from typing import Any

from src.playboard.errors import (
    BoardError,
    DeleteFailedError,
    InvalidSlotError,
    MigrationError,
    SaveFailedError,
)
from src.playboard.grid import parse_grid
from src.playboard.logging import get_logger
from src.playboard.models import (
    LEGACY_KEY_SEPARATOR,
    ScheduleEntry,
    ScheduleGrid,
    Slot,
    User,
)
from src.playboard.store.base import SERVER_TIMESTAMP, RemoteStore, Unsubscribe

logger = get_logger(__name__)

SCHEDULE_PATH = "schedule"


class ScheduleRepository:
    """CRUD and live view over the weekly schedule."""

    def __init__(self, store: RemoteStore) -> None:
        self.store = store

    async def save(self, slot: Slot, entry: ScheduleEntry, user: User | None = None) -> None:
        """Upsert the entry at slot, stamping who wrote it and when.

        Raises:
            SaveFailedError: The store rejected or never received the write.
        """
        document = {
            "className": entry.class_name,
            "activity": entry.activity,
            "updatedBy": user.display_name if user else "",
            "updatedAt": SERVER_TIMESTAMP,
        }
        try:
            await self.store.set(slot.entry_path, document)
        except BoardError as e:
            logger.error("schedule_save_failed", slot=str(slot), error=str(e))
            raise SaveFailedError(f"Saving {slot} failed", path=slot.entry_path) from e
        logger.info("schedule_saved", slot=str(slot), class_name=entry.class_name)

    async def delete(self, slot: Slot) -> None:
        """Free the slot.

        Raises:
            DeleteFailedError: The store rejected or never received the delete.
        """
        try:
            await self.store.remove(slot.entry_path)
        except BoardError as e:
            logger.error("schedule_delete_failed", slot=str(slot), error=str(e))
            raise DeleteFailedError(f"Deleting {slot} failed", path=slot.entry_path) from e
        logger.info("schedule_deleted", slot=str(slot))

    async def load(self) -> ScheduleGrid:
        return parse_grid(await self.store.get(SCHEDULE_PATH))

    async def subscribe(self, callback: Callable[[ScheduleGrid], None]) -> Unsubscribe:
        """Deliver the whole grid now and after every change, from any client."""
        return await self.store.subscribe(
            SCHEDULE_PATH, lambda raw: callback(parse_grid(raw))
        )

    async def migrate(self) -> bool:
        """Fold legacy flat "day::timeSlot" keys into the nested layout.

        The nested result is computed in full before a single overwrite of
        the schedule node, so a failure leaves the legacy data in place for a
        retry. When nested and flat entries name the same slot, the nested
        one is kept. Returns True if anything was rewritten; running again
        afterwards finds no flat keys and writes nothing.

        Raises:
            MigrationError: The overwrite failed.
        """
        data = await self.store.get(SCHEDULE_PATH)
        if not isinstance(data, dict):
            return False

        flat_keys = [key for key in data if LEGACY_KEY_SEPARATOR in key]
        if not flat_keys:
            return False

        logger.info("migration_started", flat_keys=len(flat_keys))
        nested = _nested_entries(data)

        for key in flat_keys:
            value = data[key]
            try:
                slot = Slot.from_legacy_key(key)
            except InvalidSlotError:
                logger.warning("migration_key_dropped", key=key, reason="not_a_grid_slot")
                continue
            if not isinstance(value, dict):
                logger.warning("migration_key_dropped", key=key, reason="not_an_entry")
                continue

            cells = nested.setdefault(slot.day, {})
            if slot.time_slot in cells:
                logger.info("migration_key_superseded", key=key)
                continue
            cells[slot.time_slot] = {
                "className": value.get("className", ""),
                "activity": value.get("activity", ""),
            }

        try:
            await self.store.set(SCHEDULE_PATH, nested)
        except BoardError as e:
            logger.error("migration_failed", error=str(e))
            raise MigrationError("Writing migrated schedule failed", path=SCHEDULE_PATH) from e

        logger.info("migration_done", days=len(nested))
        return True


def _nested_entries(data: dict[str, Any]) -> dict[str, Any]:
    return {
        key: dict(value)
        for key, value in data.items()
        if LEGACY_KEY_SEPARATOR not in key and isinstance(value, dict)
    }
