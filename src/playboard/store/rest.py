"""Firebase Realtime Database backend over the REST API.

Reads and writes are plain HTTP calls on ``{database_url}/{path}.json``.
Transactions use conditional requests: read with ``X-Firebase-ETag: true``,
write with ``if-match``, and on HTTP 412 re-run the update against the value
the server sends back. Subscriptions use the streaming endpoint
(``Accept: text/event-stream``) on a background thread and hand each
snapshot to the subscriber's event loop.

The REST API has no server-side disconnect hook. Disconnect writes are kept
client-side and applied by close(); a process that dies without closing
leaves them unapplied, which lock expiry and ``lastSeen`` cover for readers.
"""

import asyncio
import copy
import json
import threading
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.playboard.errors import (
    BoardError,
    PermanentError,
    PermissionDeniedError,
    RateLimitError,
    StoreUnavailableError,
    TransactionContentionError,
    TransientError,
)
from src.playboard.logging import get_logger
from src.playboard.store.base import (
    RemoteStore,
    TransactionAborted,
    TransactionResult,
    Unsubscribe,
    ValueCallback,
    set_in,
    split_path,
)

logger = get_logger(__name__)

MAX_TRANSACTION_ATTEMPTS = 25
STREAM_RECONNECT_SECONDS = 3.0

# Sentinel: request without a JSON body (None would send "null")
_NO_BODY = object()


def raise_for_status(response: requests.Response) -> None:
    """Classify an HTTP error response into the board error hierarchy."""
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:200] if response.text else ""
    if status in (401, 403):
        raise PermissionDeniedError(f"Database denied the request ({status}): {detail}")
    if status == 429:
        raise RateLimitError(f"Database rate limit exceeded: {detail}")
    if status >= 500:
        raise TransientError(f"Database unavailable ({status}): {detail}")
    raise PermanentError(f"Database rejected the request ({status}): {detail}")


class FirebaseRestStore(RemoteStore):
    """RemoteStore backed by a Firebase Realtime Database.

    Args:
        database_url: Database root URL.
        token_provider: Returns the current ID token (or None for open rules).
        session: requests.Session to use; one is created if omitted.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        database_url: str,
        *,
        token_provider: Callable[[], str | None] | None = None,
        session: requests.Session | None = None,
        timeout: float = 15.0,
    ) -> None:
        if not database_url:
            raise PermanentError("firebase_database_url is not configured")
        self.database_url = database_url.rstrip("/")
        self._token_provider = token_provider
        self._session = session or requests.Session()
        self._timeout = timeout
        self._disconnect_ops: dict[str, Any] = {}
        self._streams: list[_EventStream] = []
        self.closed = False

    def url_for(self, path: str) -> str:
        return f"{self.database_url}/{quote(path.strip('/'), safe='/')}.json"

    def auth_params(self) -> dict[str, str]:
        token = self._token_provider() if self._token_provider else None
        return {"auth": token} if token else {}

    def _ensure_open(self) -> None:
        if self.closed:
            raise StoreUnavailableError("Connection is closed")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        retry=retry_if_exception_type(TransientError),
        reraise=True,
    )
    def _request(
        self,
        method: str,
        path: str,
        *,
        body: Any = _NO_BODY,
        headers: dict[str, str] | None = None,
        allow: tuple[int, ...] = (),
    ) -> requests.Response:
        """Send one REST call, retrying transient failures.

        Raises:
            TransientError: Network failure or 5xx after retries.
            PermissionDeniedError: Rules rejected the call.
            PermanentError: Any other 4xx not listed in ``allow``.
        """
        kwargs: dict[str, Any] = {
            "params": self.auth_params(),
            "headers": headers or {},
            "timeout": self._timeout,
        }
        if body is not _NO_BODY:
            kwargs["json"] = body
        try:
            response = self._session.request(method, self.url_for(path), **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            logger.warning("store_request_failed", method=method, path=path, error=str(e))
            raise TransientError(f"{method} {path} failed: {e}") from e

        if response.status_code not in allow:
            raise_for_status(response)
        return response

    async def get(self, path: str) -> Any:
        self._ensure_open()
        response = await asyncio.to_thread(self._request, "GET", path)
        return response.json()

    async def set(self, path: str, value: Any) -> None:
        self._ensure_open()
        if value is None:
            await self.remove(path)
            return
        await asyncio.to_thread(self._request, "PUT", path, body=value)
        logger.debug("store_set", path=path)

    async def remove(self, path: str) -> None:
        self._ensure_open()
        await asyncio.to_thread(self._request, "DELETE", path)
        logger.debug("store_remove", path=path)

    async def transaction(
        self, path: str, update: Callable[[Any], Any]
    ) -> TransactionResult:
        self._ensure_open()
        return await asyncio.to_thread(self._run_transaction, path, update)

    def _run_transaction(
        self, path: str, update: Callable[[Any], Any]
    ) -> TransactionResult:
        response = self._request("GET", path, headers={"X-Firebase-ETag": "true"})
        etag = response.headers.get("ETag", "")
        current = response.json()

        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            try:
                new_value = update(copy.deepcopy(current))
            except TransactionAborted:
                return TransactionResult(committed=False, value=current)

            headers = {"if-match": etag}
            if new_value is None:
                response = self._request("DELETE", path, headers=headers, allow=(412,))
            else:
                response = self._request(
                    "PUT", path, body=new_value, headers=headers, allow=(412,)
                )

            if response.status_code == 412:
                # Someone else wrote first: the 412 carries their value and ETag
                etag = response.headers.get("ETag", "")
                current = response.json()
                logger.debug("transaction_retry", path=path, attempt=attempt)
                continue

            committed = None if new_value is None else response.json()
            return TransactionResult(committed=True, value=committed)

        raise TransactionContentionError(
            f"Transaction on {path} failed after {MAX_TRANSACTION_ATTEMPTS} attempts"
        )

    async def subscribe(self, path: str, callback: ValueCallback) -> Unsubscribe:
        self._ensure_open()
        stream = _EventStream(self, path, callback, asyncio.get_running_loop())
        self._streams.append(stream)
        stream.start()
        # Wait for the initial snapshot so callers start from a known view
        await asyncio.to_thread(stream.ready.wait, self._timeout)

        def unsubscribe() -> None:
            stream.stop()
            if stream in self._streams:
                self._streams.remove(stream)

        return unsubscribe

    async def on_disconnect_set(self, path: str, value: Any) -> None:
        self._ensure_open()
        self._disconnect_ops[path] = value

    async def on_disconnect_remove(self, path: str) -> None:
        self._ensure_open()
        self._disconnect_ops[path] = None

    async def cancel_on_disconnect(self, path: str) -> None:
        self._ensure_open()
        self._disconnect_ops.pop(path, None)

    async def close(self) -> None:
        if self.closed:
            return
        for stream in self._streams:
            stream.stop()
        self._streams.clear()

        ops, self._disconnect_ops = self._disconnect_ops, {}
        for path, value in ops.items():
            try:
                if value is None:
                    await asyncio.to_thread(self._request, "DELETE", path)
                else:
                    await asyncio.to_thread(self._request, "PUT", path, body=value)
                logger.debug("disconnect_write_applied", path=path, delete=value is None)
            except BoardError as e:
                # Lock expiry and lastSeen cover whatever did not get written
                logger.warning("disconnect_write_failed", path=path, error=str(e))

        self.closed = True
        self._session.close()
        logger.info("store_closed", disconnect_writes=len(ops))


class _EventStream(threading.Thread):
    """Background reader of one streaming subscription."""

    def __init__(
        self,
        store: FirebaseRestStore,
        path: str,
        callback: ValueCallback,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        super().__init__(name=f"stream:{path}", daemon=True)
        self.store = store
        self.path = path
        self.callback = callback
        self.loop = loop
        self.ready = threading.Event()
        self._stopped = threading.Event()
        self._response: requests.Response | None = None
        self._tree: Any = {}
        self._last_delivered: Any = None

    def stop(self) -> None:
        self._stopped.set()
        if self._response is not None:
            self._response.close()

    def run(self) -> None:
        while not self._stopped.is_set():
            try:
                with self.store._session.get(
                    self.store.url_for(self.path),
                    params=self.store.auth_params(),
                    headers={"Accept": "text/event-stream"},
                    stream=True,
                    timeout=(self.store._timeout, None),
                ) as response:
                    self._response = response
                    raise_for_status(response)
                    self._consume(response.iter_lines(decode_unicode=True))
            except (requests.RequestException, TransientError) as e:
                if self._stopped.is_set():
                    break
                logger.warning("stream_dropped", path=self.path, error=str(e))
                self._stopped.wait(STREAM_RECONNECT_SECONDS)
            except PermanentError as e:
                logger.error("stream_closed_by_server", path=self.path, error=str(e))
                break
        self.ready.set()

    def _consume(self, lines) -> None:
        event = None
        for line in lines:
            if self._stopped.is_set():
                return
            if not line:
                continue
            if line.startswith("event:"):
                event = line[len("event:"):].strip()
            elif line.startswith("data:"):
                self.handle_event(event, line[len("data:"):].strip())

    def handle_event(self, event: str | None, raw: str) -> None:
        if event == "keep-alive":
            return
        if event in ("cancel", "auth_revoked"):
            raise PermissionDeniedError(f"Stream {self.path} ended: {event}")

        payload = json.loads(raw)
        parts = split_path(payload["path"])
        if event == "put":
            self._tree = set_in(self._tree, parts, payload["data"])
        elif event == "patch":
            for key, value in payload["data"].items():
                self._tree = set_in(self._tree, parts + split_path(key), value)
        else:
            logger.debug("stream_event_ignored", path=self.path, stream_event=event)
            return

        value = None if self._tree == {} else copy.deepcopy(self._tree)
        if self.ready.is_set() and value == self._last_delivered:
            return
        self._last_delivered = value
        self.loop.call_soon_threadsafe(self.callback, value)
        self.ready.set()
