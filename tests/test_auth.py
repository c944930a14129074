"""Tests for anonymous sign-in and the persisted teacher session."""

from datetime import datetime, timedelta, timezone

import pytest

from src.playboard.auth import AnonymousAuth, AuthState, SessionManager
from src.playboard.errors import AuthenticationError

from tests.conftest import T0, FakeResponse, FakeSession


class FakeAuth:
    """Hands out anonymous accounts without the network."""

    def __init__(self) -> None:
        self.sign_ins = 0
        self.refreshes = 0

    def sign_in(self) -> AuthState:
        self.sign_ins += 1
        return AuthState(
            uid=f"anon-{self.sign_ins}",
            id_token="token-1",
            refresh_token="refresh",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    def refresh(self, state: AuthState) -> AuthState:
        self.refreshes += 1
        return state.model_copy(
            update={
                "id_token": f"token-r{self.refreshes}",
                "expires_at": datetime.now(timezone.utc) + timedelta(hours=1),
            }
        )


@pytest.fixture
def sessions(tmp_path):
    return SessionManager(FakeAuth(), state_dir=str(tmp_path / "state"))


class TestSessionManager:
    @pytest.mark.asyncio
    async def test_login_writes_profile(self, sessions, store_a):
        user = await sessions.login_as_teacher(store_a, "  王老師 ")

        assert user.uid == "anon-1"
        assert user.display_name == "王老師"
        assert await store_a.get("users/anon-1") == {
            "displayName": "王老師",
            "role": "teacher",
            "lastLogin": T0,
        }
        assert sessions.current_user() == user

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, sessions, store_a):
        with pytest.raises(AuthenticationError):
            await sessions.login_as_teacher(store_a, "   ")

        assert sessions.load() is None

    @pytest.mark.asyncio
    async def test_relogin_keeps_uid(self, sessions, store_a):
        first = await sessions.login_as_teacher(store_a, "王老師")
        sessions.logout()

        second = await sessions.login_as_teacher(store_a, "林老師")

        assert second.uid == first.uid
        assert sessions.auth.sign_ins == 1

    @pytest.mark.asyncio
    async def test_logout_remembers_name(self, sessions, store_a):
        await sessions.login_as_teacher(store_a, "王老師")

        sessions.logout()

        assert sessions.current_user() is None
        assert sessions.remembered_name() == "王老師"

    @pytest.mark.asyncio
    async def test_clear_session_forgets_identity(self, sessions, store_a):
        await sessions.login_as_teacher(store_a, "王老師")

        sessions.clear_session()

        assert sessions.remembered_name() == ""
        assert (await sessions.login_as_teacher(store_a, "王老師")).uid == "anon-2"

    def test_expired_token_refreshed(self, sessions):
        sessions.save(
            AuthState(
                uid="anon-1",
                id_token="old",
                refresh_token="refresh",
                expires_at=datetime.now(timezone.utc) + timedelta(minutes=1),
                signed_in=True,
            )
        )

        assert sessions.id_token() == "token-r1"
        assert sessions.load().id_token == "token-r1"

    def test_unreadable_state_file_ignored(self, sessions):
        sessions.state_file.write_text("{not json", encoding="utf-8")

        assert sessions.load() is None
        assert sessions.id_token() is None


class TestAnonymousAuth:
    def test_sign_in_parses_account(self):
        session = FakeSession([
            FakeResponse(
                200,
                {"localId": "anon-9", "idToken": "id", "refreshToken": "rt", "expiresIn": "3600"},
            )
        ])

        state = AnonymousAuth("api-key", session=session).sign_in()

        assert state.uid == "anon-9"
        assert not state.token_expired()
        method, url, kwargs = session.calls[0]
        assert url.endswith("accounts:signUp")
        assert kwargs["params"] == {"key": "api-key"}

    def test_disabled_sign_in_rejected(self):
        session = FakeSession([FakeResponse(400, {"error": {"message": "ADMIN_ONLY_OPERATION"}})])

        with pytest.raises(AuthenticationError):
            AnonymousAuth("api-key", session=session).sign_in()

        assert len(session.calls) == 1

    def test_missing_key_rejected(self):
        with pytest.raises(AuthenticationError):
            AnonymousAuth("")
