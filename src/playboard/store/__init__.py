"""Realtime store backends."""

from src.playboard.store.base import (
    SERVER_TIMESTAMP,
    RemoteStore,
    TransactionAborted,
    TransactionResult,
)
from src.playboard.store.memory import MemoryDatabase, MemoryStore
from src.playboard.store.rest import FirebaseRestStore

__all__ = [
    "SERVER_TIMESTAMP",
    "RemoteStore",
    "TransactionAborted",
    "TransactionResult",
    "MemoryDatabase",
    "MemoryStore",
    "FirebaseRestStore",
]
