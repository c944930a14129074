"""Show or edit the outdoor play area schedule from the command line.

Signs in anonymously as a teacher, joins the board (presence + live
subscriptions), performs one action and leaves.

Run with: python scripts/board.py --name 王老師
JSON:     python scripts/board.py --json
Set:      python scripts/board.py --set 星期一 8:40-9:40 大班-太陽班 滑梯探險
Clear:    python scripts/board.py --clear 星期一 8:40-9:40 [--yes]
Migrate:  python scripts/board.py --migrate
Auto-fill: python scripts/board.py --autofill

The teacher name is remembered in the state directory after the first
--name, like the login screen remembers it.

Exit codes:
  0 = success (grid or JSON on stdout)
  1 = error (message on stderr)
  2 = slot is being edited by another teacher
"""

import argparse
import asyncio
import json
import os
import sys

from dotenv import load_dotenv

load_dotenv()

# Add project root to path for src imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.playboard.auth import AnonymousAuth, SessionManager  # noqa: E402
from src.playboard.board import BoardClient  # noqa: E402
from src.playboard.config import get_config  # noqa: E402
from src.playboard.errors import BoardError  # noqa: E402
from src.playboard.grid import format_grid  # noqa: E402
from src.playboard.logging import setup_logging  # noqa: E402
from src.playboard.models import DAYS, TIME_SLOTS, ScheduleEntry, Slot  # noqa: E402
from src.playboard.store.base import epoch_ms  # noqa: E402
from src.playboard.store.rest import FirebaseRestStore  # noqa: E402
from src.playboard.suggestions import GeminiSuggester  # noqa: E402

EXIT_SLOT_LOCKED = 2


def _log(msg: str) -> None:
    """Write diagnostic messages to stderr so stdout stays clean for JSON."""
    print(msg, file=sys.stderr)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments using argparse."""
    parser = argparse.ArgumentParser(
        description="Show or edit the outdoor play area schedule.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"Days: {', '.join(DAYS)}\nTime slots: {', '.join(TIME_SLOTS)}",
    )
    parser.add_argument(
        "--name",
        type=str,
        default=None,
        help="Teacher display name (default: the name used last time).",
    )

    action_group = parser.add_mutually_exclusive_group()
    action_group.add_argument(
        "--json",
        action="store_true",
        help="Print the schedule as JSON instead of a table.",
    )
    action_group.add_argument(
        "--set",
        nargs=4,
        metavar=("DAY", "TIME_SLOT", "CLASS", "ACTIVITY"),
        help="Write one cell (takes the cell's edit lock first).",
    )
    action_group.add_argument(
        "--clear",
        nargs=2,
        metavar=("DAY", "TIME_SLOT"),
        help="Delete one cell (asks for confirmation unless --yes).",
    )
    action_group.add_argument(
        "--migrate",
        action="store_true",
        help="Convert legacy 'day::timeSlot' keys to the nested layout.",
    )
    action_group.add_argument(
        "--autofill",
        action="store_true",
        help="Fill empty slots with Gemini suggestions.",
    )

    parser.add_argument(
        "--yes",
        action="store_true",
        help="Do not ask before deleting with --clear.",
    )
    return parser.parse_args(argv)


def _confirm_delete(assume_yes: bool):
    def confirm(slot: Slot, entry: ScheduleEntry) -> bool:
        if assume_yes:
            return True
        answer = input(f"Delete {slot} ({entry.class_name} / {entry.activity})? [y/N] ")
        return answer.strip().lower() in ("y", "yes")

    return confirm


async def main(args: argparse.Namespace) -> int:
    config = get_config()
    setup_logging(json_output=config.log_json, log_level=config.log_level)

    sessions = SessionManager(
        AnonymousAuth(config.firebase_api_key, timeout=config.request_timeout_seconds),
        state_dir=config.state_dir,
    )
    name = args.name or sessions.remembered_name()
    if not name:
        _log("ERROR: no teacher name yet, pass --name")
        return 1

    store = FirebaseRestStore(
        config.firebase_database_url,
        token_provider=sessions.id_token,
        timeout=config.request_timeout_seconds,
    )
    user = await sessions.login_as_teacher(store, name)
    _log(f"board: signed in as {user.display_name}")

    client = BoardClient(
        store,
        user,
        lock_timeout_ms=config.lock_timeout_ms,
        heartbeat_seconds=config.presence_heartbeat_seconds,
    )
    # The CLI runs the migration only when asked for it
    await client.start(migrate=False)
    try:
        if args.set:
            day, time_slot, class_name, activity = args.set
            slot = Slot.of(day, time_slot)
            if await client.open_editor(slot) is None:
                lock = client.lock_for(slot)
                holder = lock.display_name if lock else "another teacher"
                _log(f"  {slot} is being edited by {holder}")
                return EXIT_SLOT_LOCKED
            await client.save(slot, ScheduleEntry(class_name=class_name, activity=activity))
            _log(f"  Saved {slot}")

        elif args.clear:
            slot = Slot.of(*args.clear)
            if await client.clear(slot, _confirm_delete(args.yes)):
                _log(f"  Cleared {slot}")
            else:
                _log(f"  Nothing deleted at {slot}")

        elif args.migrate:
            migrated = await client.schedule.migrate()
            _log("  Migrated legacy keys" if migrated else "  No legacy keys found")

        elif args.autofill:
            suggester = GeminiSuggester(
                config.gemini_api_key,
                config.gemini_model,
                timeout=config.request_timeout_seconds,
            )
            filled = await client.auto_fill(suggester)
            _log(f"  Filled {len(filled)} empty slots")

        # Reload rather than rely on the stream having caught up with our own writes
        grid = await client.schedule.load()
        if args.json:
            output = {
                day: {
                    time_slot: entry.model_dump(by_alias=True, exclude_none=True)
                    for time_slot, entry in cells.items()
                }
                for day, cells in grid.items()
            }
            print(json.dumps(output, indent=2, ensure_ascii=False))
        else:
            print(
                format_grid(
                    grid,
                    client.view.locks,
                    now=epoch_ms(),
                    timeout_ms=config.lock_timeout_ms,
                )
            )
            others = client.others_online()
            if others:
                names = ", ".join(p.display_name for p in others.values())
                _log(f"  Also online: {names}")
    finally:
        await client.stop()

    return 0


if __name__ == "__main__":
    args = _parse_args()
    try:
        sys.exit(asyncio.run(main(args)))
    except BoardError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
