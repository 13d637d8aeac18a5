"""Authentication datastore - users, sessions and reset tokens."""

from thoughtstime.auth.models import ResetToken, Session, UserRecord
from thoughtstime.auth.store import AuthStore

__all__ = ["AuthStore", "UserRecord", "Session", "ResetToken"]
