"""Tests for the Firebase REST backend against a fake requests session."""

import asyncio
import threading

import pytest
import requests

from src.playboard.errors import (
    PermanentError,
    PermissionDeniedError,
    RateLimitError,
    TransientError,
)
from src.playboard.locks import LockManager
from src.playboard.store.base import TransactionAborted
from src.playboard.store import rest
from src.playboard.store.rest import FirebaseRestStore, _EventStream, raise_for_status

from tests.conftest import T0, FakeResponse, FakeSession

DB_URL = "https://board-test.firebasedatabase.app"


def _store(responses, token="tok"):
    session = FakeSession(responses)
    store = FirebaseRestStore(DB_URL, token_provider=lambda: token, session=session)
    return store, session


class TestRequests:
    def test_url_quotes_path(self):
        store, _ = _store([])

        url = store.url_for("schedule/星期一/8:40-9:40")

        assert url.startswith(f"{DB_URL}/schedule/%E6%98%9F")
        assert url.endswith("/8%3A40-9%3A40.json")

    @pytest.mark.asyncio
    async def test_get_sends_auth_token(self):
        store, session = _store([FakeResponse(200, {"online": True})])

        assert await store.get("presence/u1") == {"online": True}

        method, url, kwargs = session.calls[0]
        assert method == "GET"
        assert kwargs["params"] == {"auth": "tok"}

    @pytest.mark.asyncio
    async def test_set_none_deletes(self):
        store, session = _store([FakeResponse(200, None)])

        await store.set("locks/k", None)

        assert session.calls[0][0] == "DELETE"

    @pytest.mark.asyncio
    async def test_permission_denied_not_retried(self):
        store, session = _store([FakeResponse(401, {"error": "Permission denied"})])

        with pytest.raises(PermissionDeniedError):
            await store.set("schedule/x", {"a": 1})

        assert len(session.calls) == 1


class TestRaiseForStatus:
    @pytest.mark.parametrize(
        "status,error",
        [
            (403, PermissionDeniedError),
            (429, RateLimitError),
            (503, TransientError),
            (400, PermanentError),
        ],
    )
    def test_classification(self, status, error):
        with pytest.raises(error):
            raise_for_status(FakeResponse(status, {"error": "x"}))

    def test_success_passes(self):
        raise_for_status(FakeResponse(204, None))


class TestTransaction:
    @pytest.mark.asyncio
    async def test_conditional_write(self):
        store, session = _store([
            FakeResponse(200, None, headers={"ETag": "etag-0"}),
            FakeResponse(200, {"n": 1}),
        ])

        result = await store.transaction("counter", lambda current: {"n": 1})

        assert result.committed is True
        assert result.value == {"n": 1}
        get_call, put_call = session.calls
        assert get_call[2]["headers"] == {"X-Firebase-ETag": "true"}
        assert put_call[0] == "PUT"
        assert put_call[2]["headers"] == {"if-match": "etag-0"}

    @pytest.mark.asyncio
    async def test_retries_with_server_value_on_412(self):
        store, session = _store([
            FakeResponse(200, None, headers={"ETag": "etag-0"}),
            FakeResponse(412, 5, headers={"ETag": "etag-1"}),
            FakeResponse(200, 6),
        ])
        seen = []

        def increment(current):
            seen.append(current)
            return (current or 0) + 1

        result = await store.transaction("counter", increment)

        assert result.committed is True
        assert seen == [None, 5]
        assert session.calls[2][2]["headers"] == {"if-match": "etag-1"}

    @pytest.mark.asyncio
    async def test_abort_sends_no_write(self):
        store, session = _store([FakeResponse(200, 7, headers={"ETag": "e"})])

        def abort(current):
            raise TransactionAborted

        result = await store.transaction("counter", abort)

        assert result.committed is False
        assert result.value == 7
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_lock_lost_race_returns_false(self, alice, monday_first):
        bob_lock = {"lockedBy": "uid-bob", "displayName": "林老師", "lockedAt": T0}
        store, session = _store([
            FakeResponse(200, None, headers={"ETag": "e0"}),
            FakeResponse(412, bob_lock, headers={"ETag": "e1"}),
        ])

        acquired = await LockManager(store, clock=lambda: T0 + 1000).acquire(monday_first, alice)

        assert acquired is False
        assert [call[0] for call in session.calls] == ["GET", "PUT"]


class TestClose:
    @pytest.mark.asyncio
    async def test_disconnect_writes_applied(self):
        store, session = _store([FakeResponse(200, None), FakeResponse(200, {"online": False})])
        await store.on_disconnect_remove("locks/k")
        await store.on_disconnect_set("presence/u1", {"online": False})

        await store.close()

        assert [call[0] for call in session.calls] == ["DELETE", "PUT"]
        assert session.closed is True

    @pytest.mark.asyncio
    async def test_failed_disconnect_write_does_not_block_close(self):
        store, session = _store([FakeResponse(403, {"error": "denied"})])
        await store.on_disconnect_remove("locks/k")

        await store.close()

        assert store.closed is True


class TestEventStream:
    @pytest.mark.asyncio
    async def test_put_and_patch_build_snapshot(self):
        store, _ = _store([])
        seen = []
        stream = _EventStream(store, "locks", seen.append, asyncio.get_running_loop())

        stream.handle_event("put", '{"path": "/", "data": {"a": {"lockedBy": "u1"}}}')
        stream.handle_event("patch", '{"path": "/", "data": {"b": {"lockedBy": "u2"}}}')
        stream.handle_event("keep-alive", "null")
        stream.handle_event("put", '{"path": "/a", "data": null}')
        await asyncio.sleep(0)

        assert seen == [
            {"a": {"lockedBy": "u1"}},
            {"a": {"lockedBy": "u1"}, "b": {"lockedBy": "u2"}},
            {"b": {"lockedBy": "u2"}},
        ]
        assert stream.ready.is_set()

    @pytest.mark.asyncio
    async def test_empty_node_delivered_as_none(self):
        store, _ = _store([])
        seen = []
        stream = _EventStream(store, "locks", seen.append, asyncio.get_running_loop())

        stream.handle_event("put", '{"path": "/", "data": null}')
        await asyncio.sleep(0)

        assert seen == [None]

    @pytest.mark.asyncio
    async def test_revoked_auth_ends_stream(self):
        store, _ = _store([])
        stream = _EventStream(store, "locks", lambda value: None, asyncio.get_running_loop())

        with pytest.raises(PermissionDeniedError):
            stream.handle_event("auth_revoked", "null")


class StreamResponse:
    """A streaming response: yields SSE lines, then fails or stays open until closed."""

    def __init__(self, lines=(), status_code=200, error=None):
        self.status_code = status_code
        self.text = ""
        self.lines = list(lines)
        self.error = error
        self.closed = threading.Event()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        self.closed.set()

    def iter_lines(self, decode_unicode=False):
        yield from self.lines
        if self.error is not None:
            raise self.error
        self.closed.wait(5)


class StreamSession(FakeSession):
    """FakeSession whose get(stream=True) plays one scripted connection per call."""

    def __init__(self, streams):
        super().__init__()
        self.streams = list(streams)
        self.stream_calls = []

    def get(self, url, **kwargs):
        self.stream_calls.append((url, kwargs))
        item = self.streams.pop(0) if self.streams else StreamResponse()
        if isinstance(item, Exception):
            raise item
        return item


def _put(data_json):
    return ["event: put", f'data: {{"path": "/", "data": {data_json}}}', ""]


async def _wait_for(condition, attempts=200):
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_initial_snapshot_then_changes(self):
        session = StreamSession([
            StreamResponse(
                _put('{"k": {"lockedBy": "u1"}}')
                + ["event: keep-alive", "data: null", ""]
                + ["event: patch", 'data: {"path": "/", "data": {"j": {"lockedBy": "u2"}}}', ""]
            )
        ])
        store = FirebaseRestStore(DB_URL, token_provider=lambda: "tok", session=session)
        seen = []

        unsubscribe = await store.subscribe("locks", seen.append)

        assert seen[0] == {"k": {"lockedBy": "u1"}}
        await _wait_for(lambda: len(seen) == 2)
        assert seen[1] == {"k": {"lockedBy": "u1"}, "j": {"lockedBy": "u2"}}
        url, kwargs = session.stream_calls[0]
        assert url == f"{DB_URL}/locks.json"
        assert kwargs["headers"] == {"Accept": "text/event-stream"}
        assert kwargs["stream"] is True
        assert kwargs["params"] == {"auth": "tok"}

        stream = store._streams[0]
        unsubscribe()
        stream.join(2)

        assert not stream.is_alive()
        assert store._streams == []

    @pytest.mark.asyncio
    async def test_reconnects_after_dropped_connection(self, monkeypatch):
        monkeypatch.setattr(rest, "STREAM_RECONNECT_SECONDS", 0.01)
        session = StreamSession([
            requests.ConnectionError("connection refused"),
            StreamResponse(_put('{"a": 1}'), error=requests.ConnectionError("reset")),
            StreamResponse(_put('{"a": 1, "b": 2}')),
        ])
        store = FirebaseRestStore(DB_URL, session=session)
        seen = []

        await store.subscribe("schedule", seen.append)
        await _wait_for(lambda: len(seen) == 2)

        assert seen == [{"a": 1}, {"a": 1, "b": 2}]
        assert len(session.stream_calls) == 3
        await store.close()

    @pytest.mark.asyncio
    async def test_rejected_stream_ends_without_value(self):
        session = StreamSession([StreamResponse(status_code=401)])
        store = FirebaseRestStore(DB_URL, session=session)
        seen = []

        await store.subscribe("locks", seen.append)
        stream = store._streams[0]
        stream.join(2)

        assert stream.ready.is_set()
        assert not stream.is_alive()
        assert seen == []
        await store.close()
