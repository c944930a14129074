"""Online/offline presence for signed-in teachers.

A connected client marks itself online and registers an offline write for
when its connection drops. Stores that cannot run that write when a client
dies (the REST backend) would leave a crashed teacher online forever, so
every client also refreshes ``lastSeen`` on a heartbeat, and readers treat a
record whose ``lastSeen`` is older than the staleness window as offline.
"""

import asyncio
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from src.playboard.errors import BoardError, StoreUnavailableError
from src.playboard.logging import get_logger
from src.playboard.models import Presence, PresenceMap, User
from src.playboard.store.base import SERVER_TIMESTAMP, RemoteStore, Unsubscribe

logger = get_logger(__name__)

PRESENCE_PATH = "presence"
HEARTBEAT_SECONDS = 30.0
STALE_AFTER_HEARTBEATS = 3
PRESENCE_STALE_MS = STALE_AFTER_HEARTBEATS * int(HEARTBEAT_SECONDS * 1000)


def presence_path(uid: str) -> str:
    return f"{PRESENCE_PATH}/{uid}"


def parse_presence(raw: Any) -> PresenceMap:
    presence: PresenceMap = {}
    for uid, value in (raw or {}).items():
        try:
            presence[uid] = Presence.model_validate(value)
        except ValidationError:
            logger.warning("presence_record_malformed", uid=uid)
    return presence


def online_others(
    presence: PresenceMap,
    uid: str,
    now: int | None = None,
    stale_after_ms: int = PRESENCE_STALE_MS,
) -> PresenceMap:
    """Teachers currently online, excluding uid.

    With ``now`` given, records whose heartbeat stopped more than
    ``stale_after_ms`` ago count as offline.
    """
    return {
        other: status
        for other, status in presence.items()
        if other != uid
        and (status.is_live(now, stale_after_ms) if now is not None else status.online)
    }


def _status(online: bool, display_name: str) -> dict:
    return {"online": online, "displayName": display_name, "lastSeen": SERVER_TIMESTAMP}


class PresenceTracker:
    """Publishes this client's presence and watches everyone else's.

    Args:
        store: The client's store connection.
        heartbeat_seconds: Interval between ``lastSeen`` refreshes.
    """

    def __init__(
        self, store: RemoteStore, *, heartbeat_seconds: float = HEARTBEAT_SECONDS
    ) -> None:
        self.store = store
        self.heartbeat_seconds = heartbeat_seconds
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def stale_after_ms(self) -> int:
        return STALE_AFTER_HEARTBEATS * int(self.heartbeat_seconds * 1000)

    async def setup(self, user: User) -> None:
        """Mark user online, have the store mark them offline on disconnect,
        and start the heartbeat."""
        path = presence_path(user.uid)
        await self.store.set(path, _status(True, user.display_name))
        await self.store.on_disconnect_set(path, _status(False, user.display_name))
        await self.stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat(user))
        logger.info("presence_online", uid=user.uid)

    async def beat(self, user: User) -> None:
        """Refresh lastSeen for user."""
        await self.store.set(f"{presence_path(user.uid)}/lastSeen", SERVER_TIMESTAMP)

    async def _heartbeat(self, user: User) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                await self.beat(user)
            except StoreUnavailableError:
                logger.debug("presence_heartbeat_stopped", uid=user.uid, reason="store_closed")
                return
            except BoardError as e:
                logger.warning("presence_heartbeat_failed", uid=user.uid, error=str(e))

    async def stop_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            return
        self._heartbeat_task.cancel()
        try:
            await self._heartbeat_task
        except asyncio.CancelledError:
            pass
        self._heartbeat_task = None

    async def cleanup(self, user: User) -> None:
        """Mark user offline now (logout), without waiting for the disconnect."""
        await self.stop_heartbeat()
        await self.store.set(presence_path(user.uid), _status(False, user.display_name))
        logger.info("presence_offline", uid=user.uid)

    async def subscribe(self, callback: Callable[[PresenceMap], None]) -> Unsubscribe:
        return await self.store.subscribe(
            PRESENCE_PATH, lambda raw: callback(parse_presence(raw))
        )
