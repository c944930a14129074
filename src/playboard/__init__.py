"""Shared outdoor-play-area scheduling board for 臺南市立新市幼兒園.

Teachers fill a weekly grid (five weekdays x three time slots) kept in a
Firebase Realtime Database. Cells are edited under soft per-slot locks,
presence shows who else is on the board, and Gemini can propose entries for
empty slots.
"""

from src.playboard.board import BoardClient, BoardView
from src.playboard.locks import LockManager, resolve
from src.playboard.models import (
    ALL_SLOTS,
    DAYS,
    TIME_SLOTS,
    Lock,
    Presence,
    ScheduleEntry,
    Slot,
    User,
)
from src.playboard.presence import PresenceTracker
from src.playboard.repository import ScheduleRepository

__all__ = [
    "BoardClient",
    "BoardView",
    "LockManager",
    "resolve",
    "PresenceTracker",
    "ScheduleRepository",
    "ALL_SLOTS",
    "DAYS",
    "TIME_SLOTS",
    "Lock",
    "Presence",
    "ScheduleEntry",
    "Slot",
    "User",
]
