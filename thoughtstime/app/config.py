"""YAML configuration for the storage layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from thoughtstime.storage.kvstore import DEFAULT_CAPACITY
from thoughtstime.storage.models import StorageType

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_DATA_PATH = "data/thoughts-time.json"


@dataclass
class StorageConfig:
    data_path: str = DEFAULT_DATA_PATH
    capacity_bytes: int = DEFAULT_CAPACITY
    default_backend: StorageType = StorageType.KEY_VALUE

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> StorageConfig:
        data = data or {}
        return cls(
            data_path=str(data.get("data_path") or DEFAULT_DATA_PATH),
            capacity_bytes=int(data.get("capacity_bytes") or DEFAULT_CAPACITY),
            default_backend=StorageType.parse(data.get("default_backend") or StorageType.KEY_VALUE),
        )


def load_config(path: str = DEFAULT_CONFIG_PATH) -> StorageConfig:
    """Load the ``storage:`` section of a YAML file. A missing file yields defaults."""
    config_file = Path(path)
    if not config_file.exists():
        logger.debug("No config at %s, using defaults", path)
        return StorageConfig()

    with open(config_file, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return StorageConfig.from_dict(raw.get("storage"))
