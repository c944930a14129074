"""Anonymous sign-in and teacher identity.

AnonymousAuth talks to the Identity Toolkit REST API. SessionManager persists
the resulting identity and the teacher's chosen display name in the state
directory, so a teacher reopening the board keeps their uid and name, and it
hands fresh ID tokens to the store.
"""

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import requests
from pydantic import BaseModel, ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from src.playboard.errors import AuthenticationError, RateLimitError, TransientError
from src.playboard.logging import get_logger
from src.playboard.models import User, UserProfile
from src.playboard.store.base import SERVER_TIMESTAMP, RemoteStore

logger = get_logger(__name__)

SIGN_UP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signUp"
REFRESH_URL = "https://securetoken.googleapis.com/v1/token"

# Refresh a little before the token actually runs out
TOKEN_EXPIRY_MARGIN = timedelta(minutes=5)


class AuthState(BaseModel):
    """What is kept in the state file between runs."""

    uid: str
    id_token: str = ""
    refresh_token: str = ""
    expires_at: datetime | None = None
    display_name: str = ""
    signed_in: bool = False

    def token_expired(self, now: datetime | None = None) -> bool:
        if not self.id_token or self.expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at - TOKEN_EXPIRY_MARGIN


def _expiry(expires_in: str | int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))


class AnonymousAuth:
    """Firebase anonymous sign-in over the Identity Toolkit REST API."""

    def __init__(
        self,
        api_key: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 15.0,
    ) -> None:
        if not api_key:
            raise AuthenticationError("firebase_api_key is not configured")
        self.api_key = api_key
        self._session = session or requests.Session()
        self._timeout = timeout

    def _post(self, url: str, **kwargs) -> dict:
        try:
            response = self._session.post(
                url, params={"key": self.api_key}, timeout=self._timeout, **kwargs
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientError(f"Sign-in request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitError("Sign-in rate limit exceeded")
        if response.status_code >= 500:
            raise TransientError(f"Sign-in service unavailable ({response.status_code})")
        if response.status_code >= 400:
            # e.g. ADMIN_ONLY_OPERATION when anonymous sign-in is disabled
            raise AuthenticationError(f"Sign-in rejected: {response.text[:200]}")
        return response.json()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(2),
        retry=retry_if_exception_type(TransientError),
        reraise=True,
    )
    def sign_in(self) -> AuthState:
        """Create a new anonymous account.

        Raises:
            AuthenticationError: Anonymous sign-in is rejected by the project.
            TransientError: Network/temporary issues persisted through retries.
        """
        data = self._post(SIGN_UP_URL, json={"returnSecureToken": True})
        logger.info("anonymous_sign_in_succeeded", uid=data["localId"])
        return AuthState(
            uid=data["localId"],
            id_token=data["idToken"],
            refresh_token=data["refreshToken"],
            expires_at=_expiry(data.get("expiresIn", 3600)),
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(2),
        retry=retry_if_exception_type(TransientError),
        reraise=True,
    )
    def refresh(self, state: AuthState) -> AuthState:
        """Exchange the refresh token for a new ID token, keeping the uid."""
        data = self._post(
            REFRESH_URL,
            data={"grant_type": "refresh_token", "refresh_token": state.refresh_token},
        )
        if data.get("user_id") and data["user_id"] != state.uid:
            raise AuthenticationError("Refreshed token belongs to a different user")
        logger.debug("token_refreshed", uid=state.uid)
        return state.model_copy(
            update={
                "id_token": data["id_token"],
                "refresh_token": data["refresh_token"],
                "expires_at": _expiry(data.get("expires_in", 3600)),
            }
        )


class SessionManager:
    """Keeps the anonymous identity and the teacher's name across runs.

    Plays the part of the browser's persisted auth plus the remembered
    teacher name: the uid survives logout, only ``signed_in`` is cleared.
    """

    def __init__(self, auth: AnonymousAuth, state_dir: str = "data/state") -> None:
        """Initialize SessionManager.

        Args:
            auth: Sign-in client.
            state_dir: Directory to store the session state file.
        """
        self.auth = auth
        self.state_dir = Path(state_dir)
        self.state_file = self.state_dir / "board_session.json"
        self._lock = threading.Lock()

        self.state_dir.mkdir(parents=True, exist_ok=True)
        logger.info("session_manager_initialized", state_file=str(self.state_file))

    def load(self) -> AuthState | None:
        if not self.state_file.exists():
            logger.debug("session_check", result="missing", reason="file_not_found")
            return None
        try:
            return AuthState.model_validate_json(self.state_file.read_text(encoding="utf-8"))
        except ValidationError:
            logger.warning("session_file_unreadable", path=str(self.state_file))
            return None

    def save(self, state: AuthState) -> None:
        self.state_file.write_text(state.model_dump_json(indent=2), encoding="utf-8")
        logger.debug("session_saved", path=str(self.state_file))

    def remembered_name(self) -> str:
        """Display name from the last login, for pre-filling the login prompt."""
        state = self.load()
        return state.display_name if state else ""

    def current_user(self) -> User | None:
        """The signed-in teacher, or None if nobody has logged in on this machine."""
        state = self.load()
        if state is None or not state.signed_in or not state.display_name:
            return None
        return User(uid=state.uid, display_name=state.display_name)

    def id_token(self) -> str | None:
        """Current ID token, refreshed when close to expiry.

        Called from store worker threads, hence the lock.
        """
        with self._lock:
            state = self.load()
            if state is None:
                return None
            if state.token_expired():
                state = self.auth.refresh(state)
                self.save(state)
            return state.id_token

    async def login_as_teacher(self, store: RemoteStore, display_name: str) -> User:
        """Sign in (reusing this machine's anonymous account) and record the teacher.

        Writes the teacher profile to users/{uid}.

        Raises:
            AuthenticationError: Empty name, or sign-in rejected.
        """
        display_name = display_name.strip()
        if not display_name:
            raise AuthenticationError("Display name is required")

        state = await asyncio.to_thread(self._sign_in, display_name)

        profile = UserProfile(display_name=display_name, last_login=SERVER_TIMESTAMP)
        await store.set(f"users/{state.uid}", profile.model_dump(by_alias=True))
        logger.info("teacher_logged_in", uid=state.uid)
        return User(uid=state.uid, display_name=display_name)

    def _sign_in(self, display_name: str) -> AuthState:
        with self._lock:
            state = self.load()
            if state is None:
                state = self.auth.sign_in()
            elif state.token_expired():
                state = self.auth.refresh(state)
            state = state.model_copy(update={"display_name": display_name, "signed_in": True})
            self.save(state)
            return state

    def logout(self) -> None:
        """Forget the signed-in teacher but keep the identity and remembered name."""
        state = self.load()
        if state is None:
            logger.debug("logout_skipped", reason="no_session")
            return
        self.save(state.model_copy(update={"signed_in": False}))
        logger.info("teacher_logged_out", uid=state.uid)

    def clear_session(self) -> None:
        """Delete the saved state file, forcing a new anonymous account next login."""
        if self.state_file.exists():
            self.state_file.unlink()
            logger.info("session_cleared", path=str(self.state_file))
        else:
            logger.debug("session_clear_skipped", reason="file_not_found")
