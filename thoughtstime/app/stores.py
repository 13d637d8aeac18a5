"""Reactive state containers persisted through a storage adapter."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from thoughtstime.storage.bridge import (
    ItemsStorageAdapter,
    SettingsStorageAdapter,
    wrap_state,
)
from thoughtstime.storage.models import ITEMS_KEY, SETTINGS_KEY, Settings

logger = logging.getLogger(__name__)

State = Dict[str, Any]
Listener = Callable[[State, State], Any]


class PersistedStore:
    """Holds one named state dict and persists it on every change.

    ``storage`` is any object with ``get_item``/``set_item``/``remove_item``;
    both the async bridge adapters and SyncStorageAdapter work. The complete
    state is written on each change, never a delta.

    Usage:
        store = create_items_store(ItemsStorageAdapter(manager))
        await store.rehydrate()
        unsubscribe = store.subscribe(lambda state, previous: ...)
        await store.set_state(items=[...])
    """

    def __init__(
        self,
        name: str,
        storage: Any,
        default_state: Callable[[], State],
        version: int = 0,
    ):
        self.name = name
        self.storage = storage
        self.version = version
        self._default_state = default_state
        self._state: State = default_state()
        self._listeners: List[Listener] = []
        self.hydrated = False

    @property
    def state(self) -> State:
        return self._state

    def get_state(self) -> State:
        return dict(self._state)

    async def set_state(self, **changes: Any) -> None:
        previous = self._state
        self._state = {**previous, **changes}
        await _maybe_await(self.storage.set_item(self.name, wrap_state(self._state, self.version)))
        await self._notify(previous)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener(state, previous)``; returns the unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def rehydrate(self) -> None:
        """Reload state from storage, keeping defaults for anything not stored."""
        stored = await _maybe_await(self.storage.get_item(self.name))
        state = stored.get("state") if isinstance(stored, dict) else None
        self._state = {**self._default_state(), **(state if isinstance(state, dict) else {})}
        self.hydrated = True
        logger.debug("Rehydrated %s (%s)", self.name, "stored" if state else "defaults")

    async def clear(self) -> None:
        await _maybe_await(self.storage.remove_item(self.name))
        previous = self._state
        self._state = self._default_state()
        await self._notify(previous)

    async def _notify(self, previous: State) -> None:
        for listener in list(self._listeners):
            try:
                await _maybe_await(listener(self._state, previous))
            except Exception as e:
                logger.warning("Listener on %s failed: %s", self.name, e)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def default_items_state() -> State:
    return {"items": [], "skipHistory": False}


def default_settings_state() -> State:
    return Settings().to_dict()


def create_items_store(storage: Optional[Any] = None) -> PersistedStore:
    return PersistedStore(ITEMS_KEY, storage or ItemsStorageAdapter(), default_items_state)


def create_settings_store(storage: Optional[Any] = None) -> PersistedStore:
    return PersistedStore(SETTINGS_KEY, storage or SettingsStorageAdapter(), default_settings_state)
