"""Pydantic models for board data.

All data structures use Pydantic v2 for validation, serialization, and type safety.
Store documents use camelCase keys; dump with ``by_alias=True`` before writing.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.playboard.errors import InvalidSlotError

DAYS: tuple[str, ...] = ("星期一", "星期二", "星期三", "星期四", "星期五")
TIME_SLOTS: tuple[str, ...] = ("8:40-9:40", "9:40-10:40", "10:40-11:40")

APP_TITLE = "臺南市立新市幼兒園"
APP_SUBTITLE = "戶外體能場班級使用時段"

LOCK_KEY_SEPARATOR = "__"
LEGACY_KEY_SEPARATOR = "::"


class Slot(BaseModel):
    """One cell of the weekly grid: (day, time slot)."""

    model_config = ConfigDict(frozen=True)

    day: str
    time_slot: str

    @field_validator("day")
    @classmethod
    def _known_day(cls, value: str) -> str:
        if value not in DAYS:
            raise ValueError(f"Unknown day {value!r}. Valid: {list(DAYS)}")
        return value

    @field_validator("time_slot")
    @classmethod
    def _known_time_slot(cls, value: str) -> str:
        if value not in TIME_SLOTS:
            raise ValueError(f"Unknown time slot {value!r}. Valid: {list(TIME_SLOTS)}")
        return value

    @classmethod
    def of(cls, day: str, time_slot: str) -> "Slot":
        """Build a slot from user input, raising InvalidSlotError if off-grid."""
        if day not in DAYS or time_slot not in TIME_SLOTS:
            raise InvalidSlotError(f"Not a grid slot: {day!r} {time_slot!r}")
        return cls(day=day, time_slot=time_slot)

    @classmethod
    def from_legacy_key(cls, key: str) -> "Slot":
        day, sep, time_slot = key.partition(LEGACY_KEY_SEPARATOR)
        if not sep:
            raise InvalidSlotError(f"Malformed legacy key {key!r}")
        return cls.of(day, time_slot)

    @property
    def lock_key(self) -> str:
        return f"{self.day}{LOCK_KEY_SEPARATOR}{self.time_slot}"

    @property
    def entry_path(self) -> str:
        return f"schedule/{self.day}/{self.time_slot}"

    @property
    def lock_path(self) -> str:
        return f"locks/{self.lock_key}"

    def __str__(self) -> str:
        return f"{self.day} {self.time_slot}"


ALL_SLOTS: tuple[Slot, ...] = tuple(
    Slot(day=day, time_slot=time_slot) for day in DAYS for time_slot in TIME_SLOTS
)


class ScheduleEntry(BaseModel):
    """What one class does in one slot.

    ``updated_by``/``updated_at`` are stamped by the repository on save;
    ``updated_at`` is a server timestamp in epoch milliseconds.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    class_name: str = Field(alias="className")
    activity: str = ""
    updated_by: str | None = Field(default=None, alias="updatedBy")
    updated_at: int | None = Field(default=None, alias="updatedAt")


class Lock(BaseModel):
    """Advisory edit lock on one slot."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    locked_by: str = Field(alias="lockedBy")  # uid of the editor
    display_name: str = Field(default="", alias="displayName")
    locked_at: int = Field(alias="lockedAt")  # client clock, epoch ms

    def is_expired(self, now: int, timeout_ms: int) -> bool:
        return now - self.locked_at > timeout_ms


class Presence(BaseModel):
    """Online status of one signed-in teacher."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    online: bool = False
    display_name: str = Field(default="", alias="displayName")
    last_seen: int | None = Field(default=None, alias="lastSeen")  # server time, epoch ms

    def is_live(self, now: int, stale_after_ms: int) -> bool:
        if not self.online:
            return False
        # Records without a heartbeat timestamp cannot go stale
        return self.last_seen is None or now - self.last_seen <= stale_after_ms


class User(BaseModel):
    """A signed-in teacher: anonymous uid plus the name they typed at login."""

    uid: str
    display_name: str


class UserProfile(BaseModel):
    """Profile document written to users/{uid} on login."""

    model_config = ConfigDict(populate_by_name=True)

    display_name: str = Field(alias="displayName")
    role: str = "teacher"
    last_login: Any = Field(default=None, alias="lastLogin")


ScheduleGrid = dict[str, dict[str, ScheduleEntry]]
LocksMap = dict[str, Lock]
PresenceMap = dict[str, Presence]
