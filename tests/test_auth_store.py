"""Tests for the authentication datastore."""

from __future__ import annotations

import base64
import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from thoughtstime.auth.models import Session, UserRecord, is_expired
from thoughtstime.auth.store import AuthStore
from thoughtstime.storage.kvstore import MemoryKeyValueStore
from thoughtstime.storage.migrations import get_current_version, has_column
from thoughtstime.storage.models import AUTH_DB_KEY, SESSION_KEY


def make_user(
    email: str = "Ada@Example.com",
    username: str = "Ada",
    user_id: str = "",
) -> UserRecord:
    return UserRecord(
        id=user_id,
        email=email,
        username=username,
        first_name="Ada",
        surname="Lovelace",
        password_hash="pbkdf2$opaque",
    )


def pre_v2_image() -> str:
    """An auth image from before the GitHub token columns existed."""
    conn = sqlite3.connect(":memory:")
    conn.executescript(
        """
        CREATE TABLE users (
            id TEXT PRIMARY KEY, email TEXT UNIQUE NOT NULL, username TEXT UNIQUE NOT NULL,
            first_name TEXT NOT NULL, surname TEXT NOT NULL, password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL, updated_at TEXT NOT NULL, last_login_at TEXT,
            github_id TEXT UNIQUE, github_username TEXT, github_access_token TEXT
        );
        INSERT INTO users (id, email, username, first_name, surname, password_hash, created_at, updated_at)
        VALUES ('u1', 'old@example.com', 'old', 'Old', 'Timer', 'x', '2023-01-01', '2023-01-01');
        """
    )
    image = conn.serialize()
    conn.close()
    return base64.b64encode(image).decode("ascii")


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
async def store(kv):
    s = AuthStore(kv)
    result = await s.initialize()
    assert result.success, result.error
    yield s
    await s.close()


class TestSchema:
    @pytest.mark.asyncio
    async def test_fresh_schema_at_latest_version(self, store, kv):
        assert store.is_initialized()
        assert kv.get_item(AUTH_DB_KEY)
        conn = store.db.connection
        assert await get_current_version(conn) == 2
        assert await has_column(conn, "users", "github_refresh_token")

    @pytest.mark.asyncio
    async def test_old_image_gains_columns_and_keeps_users(self, kv):
        kv.set_item(AUTH_DB_KEY, pre_v2_image())
        s = AuthStore(kv)
        try:
            assert (await s.initialize()).success
            conn = s.db.connection
            for column in ("github_token_expires_at", "github_refresh_token", "github_refresh_token_expires_at"):
                assert await has_column(conn, "users", column)
            found = await s.find_user("OLD")
            assert found.data.id == "u1"
            assert found.data.github_refresh_token is None
        finally:
            await s.close()

    @pytest.mark.asyncio
    async def test_not_initialized(self, kv):
        s = AuthStore(kv)
        assert not s.is_initialized()
        assert (await s.insert_user(make_user())).error == "Database not initialized"


class TestUsers:
    @pytest.mark.asyncio
    async def test_insert_lowercases_and_fills(self, store):
        result = await store.insert_user(make_user())
        assert result.success
        user = result.data
        assert user.id
        assert user.email == "ada@example.com"
        assert user.username == "ada"
        assert user.created_at and user.updated_at

    @pytest.mark.asyncio
    async def test_duplicates_rejected(self, store):
        await store.insert_user(make_user())
        dup_email = await store.insert_user(make_user(username="other"))
        dup_name = await store.insert_user(make_user(email="other@example.com", username="ADA"))
        assert dup_email.error == "Email already registered"
        assert dup_name.error == "Username already taken"

    @pytest.mark.asyncio
    async def test_find_by_email_or_username(self, store):
        created = (await store.insert_user(make_user())).data
        assert (await store.find_user("ADA@example.COM")).data.id == created.id
        assert (await store.find_user("Ada")).data.id == created.id
        assert (await store.find_user("nobody")).data is None

    @pytest.mark.asyncio
    async def test_find_by_github_id(self, store):
        user = make_user()
        user.github_id = "4242"
        await store.insert_user(user)
        found = await store.find_user_by_github_id(4242)
        assert found.data.username == "ada"

    @pytest.mark.asyncio
    async def test_update_user(self, store):
        created = (await store.insert_user(make_user())).data
        result = await store.update_user(created.id, first_name="Augusta", username="Countess")
        assert result.success
        assert result.data.first_name == "Augusta"
        assert result.data.username == "countess"
        assert result.data.updated_at >= created.updated_at

    @pytest.mark.asyncio
    async def test_update_user_errors(self, store):
        first = (await store.insert_user(make_user())).data
        await store.insert_user(make_user(email="b@example.com", username="bea"))

        assert (await store.update_user(first.id, username="BEA")).error == "Username already taken"
        assert (await store.update_user("missing", first_name="x")).error == "User not found"
        assert (await store.update_user(first.id, id="new")).error.startswith("Unknown user fields")

    @pytest.mark.asyncio
    async def test_profile_hides_credentials(self, store):
        user = (await store.insert_user(make_user())).data
        profile = user.to_profile()
        assert "password_hash" not in profile and "passwordHash" not in profile
        assert profile["isGithubLinked"] is False
        assert profile["hasValidGithubToken"] is False


class TestSessions:
    @pytest.mark.asyncio
    async def test_create_and_resolve(self, store, kv):
        user = (await store.insert_user(make_user())).data
        session = (await store.create_session(user.id)).data

        assert json.loads(kv.get_item(SESSION_KEY))["token"] == session.token
        assert not is_expired(session.expires_at)
        resolved = await store.resolve_session()
        assert resolved.data.id == user.id

    @pytest.mark.asyncio
    async def test_new_session_replaces_old(self, store):
        user = (await store.insert_user(make_user())).data
        await store.create_session(user.id)
        await store.create_session(user.id)
        rows = await store.db.fetchall("SELECT token FROM sessions WHERE user_id = ?", (user.id,))
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_no_stored_session(self, store):
        assert (await store.resolve_session()).data is None

    @pytest.mark.asyncio
    async def test_unknown_session_is_dropped(self, store, kv):
        kv.set_item(SESSION_KEY, json.dumps(Session("u", "forged", "2999-01-01T00:00:00+00:00").to_dict()))
        assert (await store.resolve_session()).data is None
        assert kv.get_item(SESSION_KEY) is None

    @pytest.mark.asyncio
    async def test_expired_session_is_purged(self, store, kv):
        user = (await store.insert_user(make_user())).data
        session = (await store.create_session(user.id)).data
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        async with store.db.transaction() as conn:
            await conn.execute("UPDATE sessions SET expires_at = ?", (past,))

        assert (await store.resolve_session()).data is None
        assert kv.get_item(SESSION_KEY) is None
        rows = await store.db.fetchall("SELECT id FROM sessions WHERE token = ?", (session.token,))
        assert rows == []

    @pytest.mark.asyncio
    async def test_resolve_opens_store_lazily(self, store, kv):
        user = (await store.insert_user(make_user())).data
        await store.create_session(user.id)
        await store.close()

        reopened = AuthStore(kv)
        try:
            assert (await reopened.resolve_session()).data.id == user.id
            assert reopened.is_initialized()
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_end_session(self, store, kv):
        user = (await store.insert_user(make_user())).data
        await store.create_session(user.id)
        assert (await store.end_session()).success
        assert kv.get_item(SESSION_KEY) is None
        assert await store.db.fetchall("SELECT id FROM sessions") == []

    @pytest.mark.asyncio
    async def test_deleting_user_cascades(self, store):
        user = (await store.insert_user(make_user())).data
        await store.create_session(user.id)
        async with store.db.transaction() as conn:
            await conn.execute("DELETE FROM users WHERE id = ?", (user.id,))
        assert await store.db.fetchall("SELECT id FROM sessions") == []

    @pytest.mark.asyncio
    async def test_delete_user_sessions(self, store):
        user = (await store.insert_user(make_user())).data
        await store.create_session(user.id)
        assert (await store.delete_user_sessions(user.id)).success
        assert await store.db.fetchall("SELECT id FROM sessions") == []


class TestResetTokens:
    @pytest.mark.asyncio
    async def test_unknown_email_gives_no_token(self, store):
        result = await store.create_reset_token("ghost@example.com")
        assert result.success
        assert result.data is None

    @pytest.mark.asyncio
    async def test_token_lifecycle(self, store):
        user = (await store.insert_user(make_user())).data
        first = (await store.create_reset_token("ADA@example.com")).data
        second = (await store.create_reset_token("ada@example.com")).data

        assert second.user_id == user.id
        assert (await store.get_reset_token(first.token)).data is None
        stored = (await store.get_reset_token(second.token)).data
        assert not stored.is_used
        assert not is_expired(stored.expires_at)
        assert is_expired(stored.expires_at, datetime.now(timezone.utc) + timedelta(hours=2))

        assert (await store.mark_reset_token_used(second.token)).success
        assert (await store.get_reset_token(second.token)).data.is_used

    @pytest.mark.asyncio
    async def test_mark_unknown_token(self, store):
        result = await store.mark_reset_token_used("nope")
        assert result.error == "Invalid or expired reset link"


class TestWholeStore:
    @pytest.mark.asyncio
    async def test_export_import(self, store, kv):
        user = (await store.insert_user(make_user())).data
        await store.create_session(user.id)
        await store.create_reset_token(user.email)
        exported = (await store.export_all()).data
        assert len(exported["users"]) == 1

        other = AuthStore(MemoryKeyValueStore())
        await other.initialize()
        try:
            assert (await other.import_all(exported)).success
            again = (await other.export_all()).data
            assert again == exported
        finally:
            await other.close()

    @pytest.mark.asyncio
    async def test_clear(self, store, kv):
        user = (await store.insert_user(make_user())).data
        await store.create_session(user.id)
        assert (await store.clear()).success
        assert (await store.find_user("ada")).data is None
        assert kv.get_item(SESSION_KEY) is None

    @pytest.mark.asyncio
    async def test_persists_across_reopen(self, store, kv):
        await store.insert_user(make_user())
        await store.close()

        reopened = AuthStore(kv)
        try:
            await reopened.initialize()
            assert (await reopened.find_user("ada")).success
            assert (await reopened.find_user("ada")).data is not None
        finally:
            await reopened.close()
