"""Pytest configuration and fixtures."""

import copy
import json

import pytest

from src.playboard.models import Slot, User
from src.playboard.store.memory import MemoryDatabase

T0 = 1_700_000_000_000


class FakeClock:
    """Epoch-ms clock the tests move by hand."""

    def __init__(self, start: int = T0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class FakeResponse:
    """Just enough of requests.Response for the REST clients."""

    def __init__(self, status_code: int = 200, body=None, headers=None) -> None:
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}
        self.text = json.dumps(body, ensure_ascii=False) if body is not None else ""

    def json(self):
        return copy.deepcopy(self._body)


class FakeSession:
    """Replays canned responses, then plain 200s, and records every call."""

    def __init__(self, responses=()) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, str, dict]] = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if not self.responses:
            return FakeResponse(200, None)
        return self.responses.pop(0)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(clock):
    return MemoryDatabase(clock=clock)


@pytest.fixture
def store_a(database):
    return database.connect()


@pytest.fixture
def store_b(database):
    return database.connect()


@pytest.fixture
def alice():
    return User(uid="uid-alice", display_name="王老師")


@pytest.fixture
def bob():
    return User(uid="uid-bob", display_name="林老師")


@pytest.fixture
def monday_first():
    return Slot(day="星期一", time_slot="8:40-9:40")


@pytest.fixture
def wednesday_second():
    return Slot(day="星期三", time_slot="9:40-10:40")
