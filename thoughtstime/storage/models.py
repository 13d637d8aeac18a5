"""Value types shared by the storage backends, the manager and the bridge."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from dateutil.parser import isoparse

T = TypeVar("T")

STORAGE_VERSION = 1

# Reserved keys in the host key-value store
ITEMS_KEY = "thoughts-time-storage"
SETTINGS_KEY = "thoughts-time-settings"
METADATA_KEY = "thoughts-time-metadata"
SQLITE_DB_KEY = "thoughts-time-sqlite-db"
AUTH_DB_KEY = "thoughts-time-auth-db"
SESSION_KEY = "thoughts-time-session"

# Item payload fields that hold timestamps
DATE_FIELDS = (
    "createdAt",
    "updatedAt",
    "completedAt",
    "cancelledAt",
    "scheduledTime",
    "startTime",
    "endTime",
    "lastCompleted",
)


class StorageType(str, Enum):
    """Identifies one of the two storage backends."""

    KEY_VALUE = "keyvalue"
    RELATIONAL = "relational"

    @classmethod
    def parse(cls, value: Any) -> StorageType:
        """Accept enum members, current names and the names older builds wrote."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        legacy = {"localStorage": cls.KEY_VALUE, "sqlite": cls.RELATIONAL}
        if text in legacy:
            return legacy[text]
        return cls(text.lower())


@dataclass
class StorageResult(Generic[T]):
    """Uniform outcome of every backend and manager operation."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Optional[T] = None) -> StorageResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> StorageResult[T]:
        return cls(success=False, error=error)


@dataclass
class Settings:
    """Display preferences. Always written wholesale."""

    theme: str = "dark"
    view_mode: str = "infinite"
    time_format: str = "12h"
    active_mobile_pane: str = "thoughts"

    # field name -> serialized key
    KEYS = {
        "theme": "theme",
        "view_mode": "viewMode",
        "time_format": "timeFormat",
        "active_mobile_pane": "activeMobilePane",
    }

    def to_dict(self) -> Dict[str, str]:
        return {key: getattr(self, name) for name, key in self.KEYS.items()}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Settings:
        """Build from a serialized dict, falling back to defaults for missing or empty fields."""
        data = data or {}
        defaults = cls()
        values = {}
        for name, key in cls.KEYS.items():
            value = data.get(key)
            values[name] = str(value) if value else getattr(defaults, name)
        return cls(**values)


@dataclass
class ItemsState:
    """The ordered item collection plus the undo/redo replay flag."""

    items: List[Dict[str, Any]] = field(default_factory=list)
    skip_history: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [serialize_item_dates(item) for item in self.items],
            "skipHistory": self.skip_history,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> ItemsState:
        data = data or {}
        return cls(
            items=[revive_item_dates(item) for item in data.get("items") or []],
            skip_history=bool(data.get("skipHistory", False)),
        )

    @property
    def ids(self) -> List[str]:
        return [item.get("id") for item in self.items]


@dataclass
class StorageSnapshot:
    """A complete, self-consistent copy of one backend's data."""

    items: ItemsState
    settings: Settings
    timestamp: str = ""
    version: int = STORAGE_VERSION

    @classmethod
    def create(cls, items: ItemsState, settings: Settings) -> StorageSnapshot:
        return cls(items=items, settings=settings, timestamp=utc_now_iso())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": self.items.to_dict(),
            "settings": self.settings.to_dict(),
            "timestamp": self.timestamp,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StorageSnapshot:
        return cls(
            items=ItemsState.from_dict(data.get("items")),
            settings=Settings.from_dict(data.get("settings")),
            timestamp=data.get("timestamp") or "",
            version=int(data.get("version", STORAGE_VERSION)),
        )


@dataclass
class BackendMetadata:
    """Which backend is authoritative. Lives outside the application data."""

    active_storage: StorageType = StorageType.KEY_VALUE
    last_migration: Optional[str] = None
    version: int = STORAGE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "activeStorage": self.active_storage.value,
            "version": self.version,
        }
        if self.last_migration:
            data["lastMigration"] = self.last_migration
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BackendMetadata:
        return cls(
            active_storage=StorageType.parse(data.get("activeStorage", StorageType.KEY_VALUE)),
            last_migration=data.get("lastMigration"),
            version=int(data.get("version", STORAGE_VERSION)),
        )


@dataclass
class MigrationProgress:
    """One progress report emitted by StorageManager.migrate()."""

    phase: str
    percent: int
    message: str


@dataclass
class StorageStats:
    """Advisory numbers for display; never used for correctness."""

    type: StorageType
    item_count: int
    estimated_bytes: int

    @property
    def estimated_size(self) -> str:
        return format_bytes(self.estimated_bytes)


# --- Helpers ---

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def revive_item_dates(item: Dict[str, Any]) -> Dict[str, Any]:
    """Turn ISO timestamp strings in known date fields back into datetimes."""
    revived = dict(item)
    for name in DATE_FIELDS:
        value = revived.get(name)
        if value and isinstance(value, str):
            revived[name] = _parse_ts(value)
    return revived


def serialize_item_dates(item: Dict[str, Any]) -> Dict[str, Any]:
    """Replace every datetime value in an item with its ISO string."""
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in item.items()
    }


def format_bytes(size: int) -> str:
    """Render a byte count the way the settings pane shows it."""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


def _parse_ts(val: str) -> Any:
    """Parse an ISO-8601 timestamp; leave anything else (e.g. "09:30") untouched."""
    try:
        return isoparse(val)
    except (ValueError, OverflowError):
        return val
