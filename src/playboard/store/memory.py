"""In-process RemoteStore backend.

MemoryDatabase plays the server: one tree, server timestamps, listeners and
per-connection disconnect writes. Each MemoryStore returned by connect() is
one client session. Transactions are optimistic, like the real store: the
update function runs against a snapshot, and the write only lands if the
path still holds that snapshot; otherwise the update runs again.
"""

import asyncio
import copy
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from src.playboard.errors import StoreUnavailableError, TransactionContentionError
from src.playboard.logging import get_logger
from src.playboard.store.base import (
    RemoteStore,
    TransactionAborted,
    TransactionResult,
    Unsubscribe,
    ValueCallback,
    epoch_ms,
    get_in,
    resolve_server_values,
    set_in,
    split_path,
)

logger = get_logger(__name__)

MAX_TRANSACTION_ATTEMPTS = 25


@dataclass(eq=False)
class _Listener:
    parts: list[str]
    callback: ValueCallback
    owner: "MemoryStore"
    last: Any = field(default=None)


def _overlaps(a: list[str], b: list[str]) -> bool:
    shorter = min(len(a), len(b))
    return a[:shorter] == b[:shorter]


class MemoryDatabase:
    """Shared in-memory tree that several MemoryStore connections talk to."""

    def __init__(self, clock: Callable[[], int] | None = None) -> None:
        self.clock = clock or epoch_ms
        self._root: dict = {}
        self._listeners: list[_Listener] = []

    def connect(self) -> "MemoryStore":
        return MemoryStore(self)

    def read(self, path: str) -> Any:
        return copy.deepcopy(get_in(self._root, split_path(path)))

    def write(self, path: str, value: Any) -> None:
        parts = split_path(path)
        value = resolve_server_values(value, self.clock())
        self._root = set_in(self._root, parts, value)
        self._notify(parts)

    def add_listener(self, listener: _Listener) -> None:
        listener.last = get_in(self._root, listener.parts)
        self._listeners.append(listener)
        listener.callback(copy.deepcopy(listener.last))

    def remove_listener(self, listener: _Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def disconnect(self, store: "MemoryStore", ops: dict[str, Any]) -> None:
        """Drop a connection: detach its listeners, then apply its disconnect writes."""
        self._listeners = [lsn for lsn in self._listeners if lsn.owner is not store]
        for path, value in ops.items():
            logger.debug("disconnect_write_applied", path=path, delete=value is None)
            self.write(path, value)

    def _notify(self, parts: list[str]) -> None:
        for listener in list(self._listeners):
            if not _overlaps(parts, listener.parts):
                continue
            current = get_in(self._root, listener.parts)
            if current == listener.last:
                continue
            listener.last = copy.deepcopy(current)
            listener.callback(copy.deepcopy(current))


class MemoryStore(RemoteStore):
    """One client connection to a MemoryDatabase."""

    def __init__(self, database: MemoryDatabase) -> None:
        self.database = database
        self.closed = False
        self._disconnect_ops: dict[str, Any] = {}

    def _ensure_open(self) -> None:
        if self.closed:
            raise StoreUnavailableError("Connection is closed")

    async def get(self, path: str) -> Any:
        self._ensure_open()
        return self.database.read(path)

    async def set(self, path: str, value: Any) -> None:
        self._ensure_open()
        self.database.write(path, value)

    async def remove(self, path: str) -> None:
        self._ensure_open()
        self.database.write(path, None)

    async def transaction(
        self, path: str, update: Callable[[Any], Any]
    ) -> TransactionResult:
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            self._ensure_open()
            current = self.database.read(path)
            try:
                new_value = update(copy.deepcopy(current))
            except TransactionAborted:
                return TransactionResult(committed=False, value=current)

            # Round trip to the server: other clients may write in between
            await asyncio.sleep(0)
            self._ensure_open()

            if self.database.read(path) != current:
                logger.debug("transaction_retry", path=path, attempt=attempt)
                continue
            self.database.write(path, new_value)
            return TransactionResult(committed=True, value=self.database.read(path))

        raise TransactionContentionError(
            f"Transaction on {path} failed after {MAX_TRANSACTION_ATTEMPTS} attempts"
        )

    async def subscribe(self, path: str, callback: ValueCallback) -> Unsubscribe:
        self._ensure_open()
        listener = _Listener(parts=split_path(path), callback=callback, owner=self)
        self.database.add_listener(listener)
        return lambda: self.database.remove_listener(listener)

    async def on_disconnect_set(self, path: str, value: Any) -> None:
        self._ensure_open()
        self._disconnect_ops[path] = value

    async def on_disconnect_remove(self, path: str) -> None:
        self._ensure_open()
        self._disconnect_ops[path] = None

    async def cancel_on_disconnect(self, path: str) -> None:
        self._ensure_open()
        self._disconnect_ops.pop(path, None)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        ops, self._disconnect_ops = self._disconnect_ops, {}
        self.database.disconnect(self, ops)
        logger.debug("memory_store_closed", disconnect_writes=len(ops))
