"""Authentication datastore: users, sessions and reset tokens in a blob-persisted SQLite image.

Only persistence lives here. Password hashing, sign-in rules and OAuth
exchanges belong to the callers; this store accepts and returns records.
"""

from __future__ import annotations

import json
import logging
import secrets
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

from thoughtstime.auth.models import ResetToken, Session, UserRecord, is_expired
from thoughtstime.storage.blobdb import BlobDatabase
from thoughtstime.storage.kvstore import KeyValueStore
from thoughtstime.storage.migrations import MigrationStep
from thoughtstime.storage.models import AUTH_DB_KEY, SESSION_KEY, StorageResult

logger = logging.getLogger(__name__)

SCHEMA_SQL_PATH = Path(__file__).parent / "schema.sql"

SESSION_LIFETIME = timedelta(days=30)
RESET_TOKEN_LIFETIME = timedelta(hours=1)

NOT_INITIALIZED = "Database not initialized"

USER_COLUMNS = UserRecord.columns()
# Fields update_user() may change
UPDATABLE_FIELDS = frozenset(USER_COLUMNS) - {"id", "created_at"}


def auth_migrations() -> List[MigrationStep]:
    """Return ordered list of migrations for the auth datastore."""
    return [
        (1, "Initial schema: users, sessions, reset tokens", [SCHEMA_SQL_PATH.read_text(encoding="utf-8")]),
        (
            2,
            "GitHub App token expiry and refresh columns",
            [
                "ALTER TABLE users ADD COLUMN github_token_expires_at TEXT",
                "ALTER TABLE users ADD COLUMN github_refresh_token TEXT",
                "ALTER TABLE users ADD COLUMN github_refresh_token_expires_at TEXT",
            ],
        ),
    ]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class AuthStore:
    """Async auth persistence over a BlobDatabase.

    Emails and usernames are stored lowercased and looked up
    case-insensitively. Every successful write re-persists the image.

    Usage:
        store = AuthStore(kv)
        await store.initialize()
        result = await store.insert_user(UserRecord(...))
        session = (await store.create_session(result.data.id)).data
        user = (await store.resolve_session()).data
    """

    def __init__(self, kv: KeyValueStore, image_key: str = AUTH_DB_KEY, session_key: str = SESSION_KEY):
        self.kv = kv
        self.session_key = session_key
        self.db = BlobDatabase(kv, image_key, auth_migrations)

    async def initialize(self) -> StorageResult[None]:
        try:
            await self.db.open()
            return StorageResult.ok()
        except Exception as e:
            logger.error("Failed to initialize auth storage: %s", e)
            return StorageResult.fail(f"Failed to initialize auth storage: {e}")

    def is_initialized(self) -> bool:
        return self.db.is_open

    async def close(self) -> None:
        await self.db.close()

    # --- Users ---

    async def insert_user(self, user: UserRecord) -> StorageResult[UserRecord]:
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            user.email = user.email.lower()
            user.username = user.username.lower()
            if await self._lookup("SELECT id FROM users WHERE email = ?", user.email):
                return StorageResult.fail("Email already registered")
            if await self._lookup("SELECT id FROM users WHERE username = ?", user.username):
                return StorageResult.fail("Username already taken")

            now = _now().isoformat()
            user.id = user.id or _new_id()
            user.created_at = user.created_at or now
            user.updated_at = user.updated_at or now

            async with self._write() as conn:
                await conn.execute(
                    f"INSERT INTO users ({', '.join(USER_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in USER_COLUMNS)})",
                    user.to_row(),
                )
            logger.info("Created user %s", user.username)
            return StorageResult.ok(user)
        except Exception as e:
            logger.warning("Failed to create user: %s", e)
            return StorageResult.fail(f"Failed to create user: {e}")

    async def get_user(self, user_id: str) -> StorageResult[Optional[UserRecord]]:
        return await self._find_one("SELECT * FROM users WHERE id = ? LIMIT 1", user_id)

    async def find_user(self, email_or_username: str) -> StorageResult[Optional[UserRecord]]:
        """Look a user up by email or username, ignoring case."""
        key = email_or_username.strip().lower()
        return await self._find_one(
            "SELECT * FROM users WHERE email = ? OR username = ? LIMIT 1", key, key
        )

    async def find_user_by_github_id(self, github_id: str) -> StorageResult[Optional[UserRecord]]:
        return await self._find_one("SELECT * FROM users WHERE github_id = ? LIMIT 1", str(github_id))

    async def update_user(self, user_id: str, **changes: Any) -> StorageResult[UserRecord]:
        """Change the given columns of one user and bump ``updated_at``."""
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            return StorageResult.fail(f"Unknown user fields: {', '.join(sorted(unknown))}")
        try:
            found = await self.get_user(user_id)
            if not found.success:
                return StorageResult.fail(found.error or "Failed to update user")
            if found.data is None:
                return StorageResult.fail("User not found")

            for name in ("email", "username"):
                if changes.get(name):
                    changes[name] = changes[name].lower()
            if changes.get("username") and await self._lookup(
                "SELECT id FROM users WHERE username = ? AND id != ?", changes["username"], user_id
            ):
                return StorageResult.fail("Username already taken")
            if changes.get("email") and await self._lookup(
                "SELECT id FROM users WHERE email = ? AND id != ?", changes["email"], user_id
            ):
                return StorageResult.fail("Email already registered")

            changes["updated_at"] = _now().isoformat()
            assignments = ", ".join(f"{name} = ?" for name in changes)
            async with self._write() as conn:
                await conn.execute(
                    f"UPDATE users SET {assignments} WHERE id = ?",
                    (*changes.values(), user_id),
                )
            return await self._require_user(user_id)
        except Exception as e:
            logger.warning("Failed to update user %s: %s", user_id, e)
            return StorageResult.fail(f"Failed to update user: {e}")

    # --- Sessions ---

    async def create_session(self, user_id: str) -> StorageResult[Session]:
        """Start a 30-day session, replacing any the user already had."""
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            now = _now()
            session = Session(
                user_id=user_id,
                token=secrets.token_urlsafe(32),
                expires_at=(now + SESSION_LIFETIME).isoformat(),
            )
            async with self._write() as conn:
                await conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
                await conn.execute(
                    "INSERT INTO sessions (id, user_id, token, expires_at, created_at) VALUES (?, ?, ?, ?, ?)",
                    (_new_id(), user_id, session.token, session.expires_at, now.isoformat()),
                )
            self.kv.set_item(self.session_key, json.dumps(session.to_dict()))
            return StorageResult.ok(session)
        except Exception as e:
            logger.warning("Failed to create session for %s: %s", user_id, e)
            return StorageResult.fail(f"Failed to create session: {e}")

    def get_stored_session(self) -> Optional[Session]:
        """The session mirrored in the host store, or None if absent or unreadable."""
        try:
            stored = self.kv.get_item(self.session_key)
            return Session.from_dict(json.loads(stored)) if stored else None
        except (ValueError, KeyError, TypeError) as e:
            logger.debug("Ignoring unreadable stored session: %s", e)
            return None

    async def resolve_session(self) -> StorageResult[Optional[UserRecord]]:
        """Return the signed-in user, dropping sessions that are unknown or expired."""
        session = self.get_stored_session()
        if session is None:
            return StorageResult.ok(None)
        if not self.db.is_open:
            opened = await self.initialize()
            if not opened.success:
                return StorageResult.fail(opened.error or NOT_INITIALIZED)
        try:
            row = await self.db.fetchone(
                "SELECT user_id, expires_at FROM sessions WHERE token = ? LIMIT 1",
                (session.token,),
            )
            if row is None:
                self.kv.remove_item(self.session_key)
                return StorageResult.ok(None)

            if is_expired(row["expires_at"]):
                logger.info("Session for %s expired", row["user_id"])
                async with self._write() as conn:
                    await conn.execute("DELETE FROM sessions WHERE token = ?", (session.token,))
                self.kv.remove_item(self.session_key)
                return StorageResult.ok(None)

            return await self.get_user(row["user_id"])
        except Exception as e:
            logger.warning("Failed to resolve session: %s", e)
            return StorageResult.fail(f"Failed to resolve session: {e}")

    async def end_session(self) -> StorageResult[None]:
        """Delete the stored session everywhere (sign-out)."""
        try:
            session = self.get_stored_session()
            if session is not None and self.db.is_open:
                async with self._write() as conn:
                    await conn.execute("DELETE FROM sessions WHERE token = ?", (session.token,))
            self.kv.remove_item(self.session_key)
            return StorageResult.ok()
        except Exception as e:
            logger.warning("Failed to end session: %s", e)
            return StorageResult.fail(f"Failed to end session: {e}")

    async def delete_user_sessions(self, user_id: str) -> StorageResult[None]:
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            async with self._write() as conn:
                await conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
            return StorageResult.ok()
        except Exception as e:
            logger.warning("Failed to delete sessions for %s: %s", user_id, e)
            return StorageResult.fail(f"Failed to delete sessions: {e}")

    # --- Password reset tokens ---

    async def create_reset_token(self, email: str) -> StorageResult[Optional[ResetToken]]:
        """Issue a 1-hour reset token, replacing earlier ones.

        An unknown email succeeds with no token so callers cannot tell
        which addresses are registered.
        """
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            user_id = await self._lookup("SELECT id FROM users WHERE email = ?", email.strip().lower())
            if not user_id:
                return StorageResult.ok(None)

            now = _now()
            token = ResetToken(
                id=_new_id(),
                user_id=user_id,
                token=secrets.token_urlsafe(32),
                expires_at=(now + RESET_TOKEN_LIFETIME).isoformat(),
                created_at=now.isoformat(),
            )
            async with self._write() as conn:
                await conn.execute("DELETE FROM password_reset_tokens WHERE user_id = ?", (user_id,))
                await conn.execute(
                    """INSERT INTO password_reset_tokens (id, user_id, token, expires_at, created_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (token.id, token.user_id, token.token, token.expires_at, token.created_at),
                )
            return StorageResult.ok(token)
        except Exception as e:
            logger.warning("Failed to create reset token: %s", e)
            return StorageResult.fail(f"Failed to create reset token: {e}")

    async def get_reset_token(self, token: str) -> StorageResult[Optional[ResetToken]]:
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            row = await self.db.fetchone(
                "SELECT * FROM password_reset_tokens WHERE token = ? LIMIT 1", (token,)
            )
            return StorageResult.ok(ResetToken.from_row(dict(row)) if row else None)
        except Exception as e:
            logger.warning("Failed to read reset token: %s", e)
            return StorageResult.fail(f"Failed to read reset token: {e}")

    async def mark_reset_token_used(self, token: str) -> StorageResult[None]:
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            async with self._write() as conn:
                cursor = await conn.execute(
                    "UPDATE password_reset_tokens SET used_at = ? WHERE token = ?",
                    (_now().isoformat(), token),
                )
                if cursor.rowcount == 0:
                    raise LookupError("Invalid or expired reset link")
            return StorageResult.ok()
        except LookupError as e:
            return StorageResult.fail(str(e))
        except Exception as e:
            logger.warning("Failed to mark reset token used: %s", e)
            return StorageResult.fail(f"Failed to mark reset token used: {e}")

    # --- Whole-store operations ---

    async def export_all(self) -> StorageResult[Dict[str, List[Dict[str, Any]]]]:
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            data = {}
            for table in ("users", "sessions", "password_reset_tokens"):
                rows = await self.db.fetchall(f"SELECT * FROM {table} ORDER BY created_at, rowid")
                data[table] = [dict(row) for row in rows]
            return StorageResult.ok(data)
        except Exception as e:
            logger.warning("Failed to export auth data: %s", e)
            return StorageResult.fail(f"Failed to export auth data: {e}")

    async def import_all(self, data: Dict[str, List[Dict[str, Any]]]) -> StorageResult[None]:
        """Replace every user, session and reset token in one transaction."""
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            async with self._write() as conn:
                for table in ("password_reset_tokens", "sessions", "users"):
                    await conn.execute(f"DELETE FROM {table}")
                for table in ("users", "sessions", "password_reset_tokens"):
                    for row in data.get(table) or []:
                        columns = list(row)
                        await conn.execute(
                            f"INSERT INTO {table} ({', '.join(columns)}) "
                            f"VALUES ({', '.join('?' for _ in columns)})",
                            tuple(row[c] for c in columns),
                        )
            return StorageResult.ok()
        except Exception as e:
            logger.warning("Failed to import auth data: %s", e)
            return StorageResult.fail(f"Failed to import auth data: {e}")

    async def clear(self) -> StorageResult[None]:
        try:
            if self.db.is_open:
                async with self._write() as conn:
                    for table in ("password_reset_tokens", "sessions", "users"):
                        await conn.execute(f"DELETE FROM {table}")
            else:
                self.db.discard_image()
            self.kv.remove_item(self.session_key)
            return StorageResult.ok()
        except Exception as e:
            logger.warning("Failed to clear auth storage: %s", e)
            return StorageResult.fail(f"Failed to clear auth storage: {e}")

    # --- Helpers ---

    @asynccontextmanager
    async def _write(self) -> AsyncIterator[aiosqlite.Connection]:
        """Transaction followed by a persist of the whole image."""
        async with self.db.transaction() as conn:
            yield conn
        await self.db.persist()

    async def _lookup(self, sql: str, *params: Any) -> Optional[str]:
        row = await self.db.fetchone(sql + " LIMIT 1", params)
        return row[0] if row else None

    async def _find_one(self, sql: str, *params: Any) -> StorageResult[Optional[UserRecord]]:
        if not self.db.is_open:
            return StorageResult.fail(NOT_INITIALIZED)
        try:
            row = await self.db.fetchone(sql, params)
            return StorageResult.ok(UserRecord.from_row(dict(row)) if row else None)
        except Exception as e:
            logger.warning("User lookup failed: %s", e)
            return StorageResult.fail(f"Failed to read user: {e}")

    async def _require_user(self, user_id: str) -> StorageResult[UserRecord]:
        found = await self.get_user(user_id)
        if found.success and found.data is None:
            return StorageResult.fail("User not found")
        return found
