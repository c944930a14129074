"""Tests for PresenceTracker."""

import asyncio

import pytest
import pytest_asyncio

from src.playboard.models import Presence
from src.playboard.presence import (
    PRESENCE_STALE_MS,
    PresenceTracker,
    online_others,
    parse_presence,
)
from src.playboard.store.base import SERVER_TIMESTAMP
from src.playboard.store.rest import FirebaseRestStore

from tests.conftest import T0, FakeSession


@pytest_asyncio.fixture
async def trackers():
    """Build trackers and stop their heartbeats afterwards."""
    made = []

    def make(store, **kwargs):
        tracker = PresenceTracker(store, **kwargs)
        made.append(tracker)
        return tracker

    yield make
    for tracker in made:
        await tracker.stop_heartbeat()


async def _wait_for(condition, attempts=200):
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestPresenceTracker:
    @pytest.mark.asyncio
    async def test_setup_marks_online(self, trackers, store_a, alice):
        await trackers(store_a).setup(alice)

        assert await store_a.get("presence/uid-alice") == {
            "online": True,
            "displayName": "王老師",
            "lastSeen": T0,
        }

    @pytest.mark.asyncio
    async def test_disconnect_marks_offline(self, trackers, store_a, store_b, clock, alice):
        await trackers(store_a).setup(alice)
        clock.advance(45)

        await store_a.close()

        assert await store_b.get("presence/uid-alice") == {
            "online": False,
            "displayName": "王老師",
            "lastSeen": T0 + 45_000,
        }

    @pytest.mark.asyncio
    async def test_cleanup_marks_offline_immediately(self, trackers, store_a, store_b, alice):
        tracker = trackers(store_a)
        await tracker.setup(alice)

        await tracker.cleanup(alice)

        assert (await store_b.get("presence/uid-alice"))["online"] is False

    @pytest.mark.asyncio
    async def test_subscribers_get_full_map(self, trackers, store_a, store_b, alice, bob):
        seen = []
        await trackers(store_b).subscribe(seen.append)

        await trackers(store_a).setup(alice)
        await trackers(store_b).setup(bob)

        assert seen[0] == {}
        assert set(seen[-1]) == {"uid-alice", "uid-bob"}
        assert seen[-1]["uid-alice"].display_name == "王老師"


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_refreshes_last_seen(self, trackers, store_a, store_b, clock, alice):
        await trackers(store_a, heartbeat_seconds=0.01).setup(alice)
        clock.advance(40)

        async def last_seen():
            return (await store_b.get("presence/uid-alice"))["lastSeen"]

        for _ in range(200):
            if await last_seen() == T0 + 40_000:
                break
            await asyncio.sleep(0.01)

        assert await last_seen() == T0 + 40_000
        assert (await store_b.get("presence/uid-alice"))["online"] is True

    @pytest.mark.asyncio
    async def test_cleanup_stops_heartbeat(self, trackers, store_a, store_b, clock, alice):
        tracker = trackers(store_a, heartbeat_seconds=0.01)
        await tracker.setup(alice)
        await tracker.cleanup(alice)
        settled = await store_b.get("presence/uid-alice")

        clock.advance(60)
        await asyncio.sleep(0.05)

        assert await store_b.get("presence/uid-alice") == settled

    @pytest.mark.asyncio
    async def test_heartbeat_ends_when_store_closes(self, trackers, store_a, alice):
        tracker = trackers(store_a, heartbeat_seconds=0.01)
        await tracker.setup(alice)

        await store_a.close()
        await _wait_for(lambda: tracker._heartbeat_task.done())

        assert tracker._heartbeat_task.exception() is None

    @pytest.mark.asyncio
    async def test_crashed_rest_client_goes_stale(self, trackers, alice):
        session = FakeSession()
        store = FirebaseRestStore("https://board-test.firebasedatabase.app", session=session)
        tracker = trackers(store, heartbeat_seconds=0.01)
        await tracker.setup(alice)
        await _wait_for(lambda: len(session.calls) >= 2)
        # The process dies here: close() never runs, so no offline write is sent
        await tracker.stop_heartbeat()

        offline = {"online": False, "displayName": "王老師", "lastSeen": SERVER_TIMESTAMP}
        assert all(call[2].get("json") != offline for call in session.calls)
        method, url, kwargs = session.calls[1]
        assert (method, kwargs["json"]) == ("PUT", SERVER_TIMESTAMP)
        assert url.endswith("/presence/uid-alice/lastSeen.json")

        # Other readers only have the last heartbeat to go on
        presence = parse_presence(
            {"uid-alice": {"online": True, "displayName": "王老師", "lastSeen": T0}}
        )
        assert list(online_others(presence, "uid-bob", now=T0 + 60_000)) == ["uid-alice"]
        assert online_others(presence, "uid-bob", now=T0 + 24 * 3600 * 1000) == {}


class TestOnlineOthers:
    def test_filters_self_and_offline(self):
        presence = {
            "me": Presence(online=True, display_name="王老師"),
            "on": Presence(online=True, display_name="林老師"),
            "off": Presence(online=False, display_name="陳老師"),
        }

        assert list(online_others(presence, "me")) == ["on"]

    def test_stale_record_counts_as_offline(self):
        presence = {
            "fresh": Presence(online=True, last_seen=T0),
            "stale": Presence(online=True, last_seen=T0 - PRESENCE_STALE_MS - 1),
            "edge": Presence(online=True, last_seen=T0 - PRESENCE_STALE_MS),
            "unknown": Presence(online=True),
        }

        assert set(online_others(presence, "me", now=T0)) == {"fresh", "edge", "unknown"}

    def test_parse_skips_malformed(self):
        presence = parse_presence({"u1": {"online": True}, "u2": "garbage"})

        assert list(presence) == ["u1"]
