"""Weekly grid helpers: snapshot parsing, slot queries and text rendering."""

import unicodedata
from typing import Any

from pydantic import ValidationError

from src.playboard.locks import resolve
from src.playboard.logging import get_logger
from src.playboard.models import (
    ALL_SLOTS,
    APP_SUBTITLE,
    APP_TITLE,
    DAYS,
    LEGACY_KEY_SEPARATOR,
    TIME_SLOTS,
    LocksMap,
    ScheduleEntry,
    ScheduleGrid,
    Slot,
)

log = get_logger(__name__)


def parse_grid(raw: Any) -> ScheduleGrid:
    """Convert the raw schedule node into {day: {time_slot: ScheduleEntry}}.

    Legacy flat keys ("星期一::8:40-9:40") and anything outside the weekly
    grid are left out; migrate() is what folds legacy keys back in. Always
    returns a dict, empty when the node is missing.
    """
    grid: ScheduleGrid = {}
    if not isinstance(raw, dict):
        return grid

    for day, cells in raw.items():
        if LEGACY_KEY_SEPARATOR in day or day not in DAYS or not isinstance(cells, dict):
            continue
        for time_slot, value in cells.items():
            if time_slot not in TIME_SLOTS:
                continue
            try:
                entry = ScheduleEntry.model_validate(value)
            except ValidationError:
                log.warning("schedule_entry_malformed", day=day, time_slot=time_slot)
                continue
            grid.setdefault(day, {})[time_slot] = entry
    return grid


def entry_at(grid: ScheduleGrid, slot: Slot) -> ScheduleEntry | None:
    return grid.get(slot.day, {}).get(slot.time_slot)


def empty_slots(grid: ScheduleGrid) -> list[Slot]:
    """Free slots in display order (day-major)."""
    return [slot for slot in ALL_SLOTS if entry_at(grid, slot) is None]


def _display_width(text: str) -> int:
    # CJK characters take two terminal columns
    return sum(2 if unicodedata.east_asian_width(c) in ("W", "F") else 1 for c in text)


def _pad(text: str, width: int) -> str:
    return text + " " * (width - _display_width(text))


def format_grid(
    grid: ScheduleGrid,
    locks: LocksMap | None = None,
    *,
    now: int | None = None,
    timeout_ms: int | None = None,
) -> str:
    """Format the grid as a human-readable table.

    Rows are time slots, columns are days. A cell shows
    "className / activity"; cells with a live lock get "(editing: name)".
    Lock expiry is only applied when ``now`` and ``timeout_ms`` are given.
    """
    headers = ["時段", *DAYS]
    rows = []
    for time_slot in TIME_SLOTS:
        row = [time_slot]
        for day in DAYS:
            slot = Slot(day=day, time_slot=time_slot)
            entry = entry_at(grid, slot)
            cell = f"{entry.class_name} / {entry.activity}" if entry else "-"
            if locks:
                if now is not None and timeout_ms is not None:
                    lock = resolve(locks, slot, now, timeout_ms)
                else:
                    lock = locks.get(slot.lock_key)
                if lock is not None:
                    cell = f"{cell} (editing: {lock.display_name})"
            row.append(cell)
        rows.append(row)

    widths = [_display_width(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], _display_width(cell))

    header_line = " | ".join(_pad(h, widths[i]) for i, h in enumerate(headers))
    separator = "-+-".join("-" * w for w in widths)
    row_lines = [
        " | ".join(_pad(cell, widths[i]) for i, cell in enumerate(row)) for row in rows
    ]

    return "\n".join([f"{APP_TITLE} {APP_SUBTITLE}", header_line, separator, *row_lines])
