"""RemoteStore contract shared by the memory and Firebase REST backends.

Values are JSON-like trees addressed by slash-separated paths
("schedule/星期一/8:40-9:40"). Writing None deletes a path. Empty objects
are not stored: a path whose children are all gone disappears as well.
"""

import copy
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

# Placeholder the store replaces with its own clock (epoch ms) when applying a write.
SERVER_TIMESTAMP: dict[str, str] = {".sv": "timestamp"}

ValueCallback = Callable[[Any], None]
Unsubscribe = Callable[[], None]


def epoch_ms() -> int:
    return int(time.time() * 1000)


class TransactionAborted(Exception):
    """Raised inside a transaction update function to write nothing."""


@dataclass(frozen=True)
class TransactionResult:
    """Outcome of RemoteStore.transaction().

    ``value`` is the committed value, or the value that caused the abort.
    """

    committed: bool
    value: Any


class RemoteStore(ABC):
    """A client connection to a realtime key/value tree."""

    @abstractmethod
    async def get(self, path: str) -> Any:
        """Read the value at path (None if absent)."""

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Overwrite the value at path. None deletes it."""

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Delete the value at path."""

    @abstractmethod
    async def transaction(
        self, path: str, update: Callable[[Any], Any]
    ) -> TransactionResult:
        """Atomically read-modify-write path.

        ``update`` receives the current value and returns the new one, or
        raises TransactionAborted to leave the path untouched. The store may
        call ``update`` several times if another writer got there first.
        """

    @abstractmethod
    async def subscribe(self, path: str, callback: ValueCallback) -> Unsubscribe:
        """Deliver the value at path now and after every change.

        Callbacks run on the subscriber's event loop, in the order the store
        applied the writes. Returns a function that stops delivery.
        """

    @abstractmethod
    async def on_disconnect_set(self, path: str, value: Any) -> None:
        """Register a write the store applies when this connection drops."""

    @abstractmethod
    async def on_disconnect_remove(self, path: str) -> None:
        """Register a delete the store applies when this connection drops."""

    @abstractmethod
    async def cancel_on_disconnect(self, path: str) -> None:
        """Forget the disconnect write registered for path, if any."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection, triggering the registered disconnect writes."""

    async def __aenter__(self) -> "RemoteStore":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def split_path(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


def get_in(tree: Any, parts: list[str]) -> Any:
    node = tree
    for part in parts:
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def set_in(tree: Any, parts: list[str], value: Any) -> Any:
    """Return a copy of tree with value stored at parts, pruning empty objects."""
    if not parts:
        replaced = prune(copy.deepcopy(value))
        return {} if replaced is None else replaced

    root = copy.deepcopy(tree) if isinstance(tree, dict) else {}
    node = root
    trail = []
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        trail.append((node, part))
        node = child

    leaf = prune(copy.deepcopy(value))
    if leaf is None:
        node.pop(parts[-1], None)
    else:
        node[parts[-1]] = leaf

    # Walk back up removing objects left empty by a delete
    for parent, key in reversed(trail):
        if parent[key]:
            break
        del parent[key]
    return root


def prune(value: Any) -> Any:
    """Drop None leaves and empty objects, mirroring how the store persists data."""
    if isinstance(value, dict):
        cleaned = {}
        for key, child in value.items():
            child = prune(child)
            if child is not None:
                cleaned[key] = child
        return cleaned or None
    return value


def resolve_server_values(value: Any, now_ms: int) -> Any:
    """Replace SERVER_TIMESTAMP placeholders with now_ms."""
    if value == SERVER_TIMESTAMP:
        return now_ms
    if isinstance(value, dict):
        return {key: resolve_server_values(child, now_ms) for key, child in value.items()}
    return value
