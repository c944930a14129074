"""AI auto-fill: ask Gemini for entries, merge them into free slots only.

The model is an untrusted collaborator. Whatever it returns, an entry only
lands if its slot is on the grid and still empty in a freshly loaded
schedule, and it goes through the ordinary ScheduleRepository.save().
"""

import asyncio
import json
from typing import Protocol

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.playboard.errors import (
    InvalidSlotError,
    PermanentError,
    RateLimitError,
    SuggestionError,
    TransientError,
)
from src.playboard.grid import entry_at
from src.playboard.logging import get_logger
from src.playboard.models import (
    APP_SUBTITLE,
    APP_TITLE,
    DAYS,
    TIME_SLOTS,
    ScheduleEntry,
    ScheduleGrid,
    Slot,
    User,
)
from src.playboard.repository import ScheduleRepository

log = get_logger(__name__)

GENERATE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

# Single-slot suggestion fallbacks
NO_KEY_ACTIVITY = "自由探索"
EMPTY_ANSWER_ACTIVITY = "戶外遊戲"

SCHEDULE_RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "newEntries": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "day": {"type": "STRING", "enum": list(DAYS)},
                    "timeSlot": {"type": "STRING", "enum": list(TIME_SLOTS)},
                    "className": {"type": "STRING"},
                    "activity": {"type": "STRING"},
                },
                "required": ["day", "timeSlot", "className", "activity"],
            },
        }
    },
}


class Suggestion(BaseModel):
    """One proposed entry as returned by the model."""

    model_config = ConfigDict(populate_by_name=True)

    day: str
    time_slot: str = Field(alias="timeSlot")
    class_name: str = Field(alias="className")
    activity: str


class Suggester(Protocol):
    async def suggest_schedule(self, grid: ScheduleGrid) -> list[Suggestion]: ...


def merge_suggestions(
    grid: ScheduleGrid, suggestions: list[Suggestion]
) -> list[tuple[Slot, ScheduleEntry]]:
    """Pick the suggestions that may be written.

    Drops off-grid slots, occupied slots and repeats of a slot already
    picked (first one wins). Order follows the input.
    """
    picked: dict[Slot, ScheduleEntry] = {}
    for suggestion in suggestions:
        try:
            slot = Slot.of(suggestion.day, suggestion.time_slot)
        except InvalidSlotError:
            log.debug("suggestion_off_grid", day=suggestion.day, time_slot=suggestion.time_slot)
            continue
        if entry_at(grid, slot) is not None:
            log.debug("suggestion_slot_occupied", slot=str(slot))
            continue
        if slot in picked:
            continue
        picked[slot] = ScheduleEntry(
            class_name=suggestion.class_name, activity=suggestion.activity
        )
    return list(picked.items())


async def apply_suggestions(
    repository: ScheduleRepository,
    suggestions: list[Suggestion],
    user: User | None = None,
) -> list[Slot]:
    """Save the mergeable suggestions against the schedule as it is now.

    Returns the slots that were filled.
    """
    current = await repository.load()
    filled = []
    for slot, entry in merge_suggestions(current, suggestions):
        await repository.save(slot, entry, user)
        filled.append(slot)
    log.info("suggestions_applied", proposed=len(suggestions), filled=len(filled))
    return filled


def build_schedule_prompt(grid: ScheduleGrid) -> str:
    current = {
        day: {
            time_slot: entry.model_dump(include={"class_name", "activity"}, by_alias=True)
            for time_slot, entry in cells.items()
        }
        for day, cells in grid.items()
    }
    return f"""
You are a kindergarten physical education coordinator for "{APP_TITLE}".

The "{APP_SUBTITLE}" schedule grid has days: {", ".join(DAYS)}
and time slots: {", ".join(TIME_SLOTS)}.

Current schedule (JSON): {json.dumps(current, ensure_ascii=False)}

Fill ONLY the empty slots with realistic kindergarten class names
(e.g. "大班-向日葵", "中班-小星星", "小班-綿羊") and fun, safe outdoor physical
activities (e.g. "滑梯探險", "障礙賽跑", "球類遊戲"). Never change slots that
already have data. Vary the activities.

Return the NEW entries only, as a flat list.
"""


def build_activity_prompt(slot: Slot, class_name: str) -> str:
    return (
        f'Suggest one fun, safe, specific outdoor physical activity for a '
        f'kindergarten class named "{class_name}" on {slot.day} at {slot.time_slot}. '
        f"Keep it under 10 words. In Traditional Chinese."
    )


class GeminiSuggester:
    """Gemini generateContent client for schedule and activity suggestions."""

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self._session = session or requests.Session()
        self._timeout = timeout

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=8),
        retry=retry_if_exception_type(TransientError),
        reraise=True,
    )
    def _generate(self, prompt: str, generation_config: dict) -> str:
        try:
            response = self._session.post(
                GENERATE_URL.format(model=self.model),
                headers={"x-goog-api-key": self.api_key},
                json={
                    "contents": [{"parts": [{"text": prompt}]}],
                    "generationConfig": generation_config,
                },
                timeout=self._timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientError(f"Gemini request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitError("Gemini rate limit exceeded")
        if response.status_code >= 500:
            raise TransientError(f"Gemini unavailable ({response.status_code})")
        if response.status_code >= 400:
            raise SuggestionError(f"Gemini rejected the request: {response.text[:200]}")

        try:
            parts = response.json()["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise SuggestionError("Gemini answer has no candidate content") from e
        return "".join(part.get("text", "") for part in parts)

    async def suggest_schedule(self, grid: ScheduleGrid) -> list[Suggestion]:
        """Ask for entries for the empty slots of grid.

        Raises:
            SuggestionError: No API key, a malformed response, or an answer
                that is not the expected JSON.
        """
        if not self.api_key:
            raise SuggestionError("gemini_api_key is not configured")

        text = await asyncio.to_thread(
            self._generate,
            build_schedule_prompt(grid),
            {
                "responseMimeType": "application/json",
                "responseSchema": SCHEDULE_RESPONSE_SCHEMA,
            },
        )
        try:
            payload = json.loads(text or '{"newEntries": []}')
        except json.JSONDecodeError as e:
            raise SuggestionError("Gemini answer is not JSON") from e
        if not isinstance(payload, dict) or not isinstance(payload.get("newEntries", []), list):
            raise SuggestionError("Gemini answer has no newEntries list")

        suggestions = []
        for item in payload.get("newEntries", []):
            try:
                suggestions.append(Suggestion.model_validate(item))
            except ValidationError:
                log.warning("suggestion_malformed", item=item)
        log.info("schedule_suggested", count=len(suggestions), model=self.model)
        return suggestions

    async def suggest_activity(self, slot: Slot, class_name: str) -> str:
        """One short activity idea for a class; falls back instead of failing."""
        if not self.api_key:
            return NO_KEY_ACTIVITY
        try:
            text = await asyncio.to_thread(
                self._generate,
                build_activity_prompt(slot, class_name),
                {"responseMimeType": "text/plain"},
            )
        except (TransientError, PermanentError) as e:
            log.warning("activity_suggestion_failed", slot=str(slot), error=str(e))
            return EMPTY_ANSWER_ACTIVITY
        return text.strip() or EMPTY_ANSWER_ACTIVITY
