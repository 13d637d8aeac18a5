"""Records held by the authentication datastore."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dateutil.parser import isoparse


@dataclass
class UserRecord:
    """One row of the users table. ``password_hash`` is opaque here."""

    id: str
    email: str
    username: str
    first_name: str
    surname: str
    password_hash: str
    created_at: str = ""
    updated_at: str = ""
    last_login_at: Optional[str] = None
    github_id: Optional[str] = None
    github_username: Optional[str] = None
    github_access_token: Optional[str] = None
    github_token_expires_at: Optional[str] = None
    github_refresh_token: Optional[str] = None
    github_refresh_token_expires_at: Optional[str] = None

    @classmethod
    def columns(cls) -> tuple:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def from_row(cls, row: Any) -> UserRecord:
        return cls(**{name: row[name] for name in cls.columns()})

    def to_row(self) -> tuple:
        return tuple(getattr(self, name) for name in self.columns())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def has_valid_github_token(self, now: Optional[datetime] = None) -> bool:
        if not self.github_access_token or not self.github_token_expires_at:
            return False
        return not is_expired(self.github_token_expires_at, now)

    def to_profile(self) -> Dict[str, Any]:
        """The user without credentials, as shown to the rest of the app."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "firstName": self.first_name,
            "surname": self.surname,
            "createdAt": self.created_at,
            "lastLoginAt": self.last_login_at,
            "githubUsername": self.github_username,
            "isGithubLinked": bool(self.github_id),
            "hasValidGithubToken": self.has_valid_github_token(),
        }


@dataclass
class Session:
    """The signed-in session, also mirrored into the host store."""

    user_id: str
    token: str
    expires_at: str

    def to_dict(self) -> Dict[str, str]:
        return {"userId": self.user_id, "token": self.token, "expiresAt": self.expires_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Session:
        return cls(user_id=data["userId"], token=data["token"], expires_at=data["expiresAt"])


@dataclass
class ResetToken:
    id: str
    user_id: str
    token: str
    expires_at: str
    created_at: str
    used_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> ResetToken:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            used_at=row["used_at"],
        )

    @property
    def is_used(self) -> bool:
        return bool(self.used_at)


def is_expired(timestamp: str, now: Optional[datetime] = None) -> bool:
    """True if an ISO timestamp lies in the past. Unparseable values count as expired."""
    now = now or datetime.now(timezone.utc)
    try:
        moment = isoparse(timestamp)
    except (ValueError, OverflowError, TypeError):
        return True
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment < now
