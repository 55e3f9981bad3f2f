"""Session controller owning the single active tenant."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from .backends import ConnectionBackendError, DocumentStore
from .config import AppConfig, ConfigStore, TenantConfig
from .models import ConnectionConfig
from .registry import ConnectionRegistry

LOG = logging.getLogger(__name__)

SessionListener = Callable[["SessionState"], None]


class SwitchFailure(str, Enum):
    CONFIG_NOT_FOUND = "config-not-found"
    CONNECTION_FAILED = "connection-failed"


class SwitchError(RuntimeError):
    """Raised when the active tenant cannot be changed."""

    def __init__(self, tenant_id: str, reason: SwitchFailure, cause: BaseException | None = None) -> None:
        if reason is SwitchFailure.CONFIG_NOT_FOUND:
            message = f"Tenant '{tenant_id}' not found."
        else:
            message = f"Could not connect to tenant '{tenant_id}': {cause}"
        super().__init__(message)
        self.tenant_id = tenant_id
        self.reason = reason
        self.cause = cause


@dataclass(frozen=True, slots=True)
class SessionState:
    """Current session snapshot."""

    config: ConnectionConfig | None
    connected_at: datetime | None = None
    status: str = "Disconnected"
    last_error: str | None = None

    @property
    def tenant_id(self) -> str | None:
        return self.config.tenant_id if self.config else None

    @property
    def connected(self) -> bool:
        return self.config is not None


class SessionController:
    """Switches the active tenant atomically and persists the choice."""

    def __init__(self, registry: ConnectionRegistry, *, config_store: ConfigStore) -> None:
        self._registry = registry
        self._config_store = config_store
        self._state = SessionState(config=None)
        self._listeners: set[SessionListener] = set()
        self._lock = asyncio.Lock()

    @property
    def configs(self) -> tuple[ConnectionConfig, ...]:
        """Tenant configurations available in the current config."""

        return tuple(entry.to_connection() for entry in self._config_store.config.tenants)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def active_tenant_id(self) -> str | None:
        return self._state.tenant_id

    def current_config(self) -> ConnectionConfig | None:
        return self._state.config

    def active_store(self) -> DocumentStore | None:
        """Live handle for the active tenant, if any."""

        tenant_id = self._state.tenant_id
        if tenant_id is None:
            return None
        return self._registry.get(tenant_id)

    def config_for(self, tenant_id: str) -> ConnectionConfig | None:
        entry = self._config_store.config.tenant(tenant_id)
        return entry.to_connection() if entry else None

    async def restore(self) -> SessionState:
        """Re-activate the persisted tenant, or the first configured one."""

        configs = self.configs
        target = self._config_store.config.active_tenant
        if target is None or self.config_for(target) is None:
            target = configs[0].tenant_id if configs else None
        if target is None:
            return self._state
        try:
            return await self.switch_to(target)
        except SwitchError as exc:
            LOG.warning("Could not restore tenant %s: %s", target, exc)
            self._set_state(SessionState(config=None, last_error=str(exc)))
            return self._state

    async def switch_to(self, tenant_id: str) -> SessionState:
        """Make `tenant_id` the active tenant; on failure the session is unchanged."""

        async with self._lock:
            return await self._switch(tenant_id)

    async def add_config(self, config: ConnectionConfig) -> None:
        """Register a new tenant configuration."""

        async with self._lock:
            if self.config_for(config.tenant_id) is not None:
                raise ValueError(f"Tenant '{config.tenant_id}' already exists.")
            self._persist(self._config_store.config.with_tenant(TenantConfig.from_connection(config)))

    async def update_config(self, config: ConnectionConfig) -> None:
        """Replace an existing configuration; the tenant id is the key and never changes."""

        async with self._lock:
            if self.config_for(config.tenant_id) is None:
                raise ValueError(f"Tenant '{config.tenant_id}' not found.")
            self._persist(self._config_store.config.with_tenant(TenantConfig.from_connection(config)))
            await self._registry.release(config.tenant_id)
            if self.active_tenant_id != config.tenant_id:
                return
            try:
                await self._switch(config.tenant_id)
            except SwitchError as exc:
                self._set_state(SessionState(config=None, last_error=str(exc)))
                self._persist(self._config_store.config.with_active_tenant(None))
                raise

    async def remove(self, tenant_id: str) -> None:
        """Forget a tenant; if it was active, move to the next remaining one."""

        async with self._lock:
            ordered = [config.tenant_id for config in self.configs]
            await self._registry.release(tenant_id)
            self._persist(self._config_store.config.without_tenant(tenant_id))
            if self.active_tenant_id != tenant_id:
                return
            self._set_state(SessionState(config=None))
            candidate = _next_remaining(ordered, tenant_id)
            if candidate is None:
                return
            try:
                await self._switch(candidate)
            except SwitchError as exc:
                LOG.warning("Could not activate %s after removing %s: %s", candidate, tenant_id, exc)
                self._set_state(SessionState(config=None, last_error=str(exc)))

    async def clear(self) -> None:
        """Release every handle and leave the session without an active tenant."""

        async with self._lock:
            await self._registry.release_all()
            self._persist(self._config_store.config.with_active_tenant(None))
            self._set_state(SessionState(config=None))

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Subscribe to session updates; returns an unsubscribe handle."""

        self._listeners.add(listener)
        listener(self._state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    async def _switch(self, tenant_id: str) -> SessionState:
        config = self.config_for(tenant_id)
        if config is None:
            raise SwitchError(tenant_id, SwitchFailure.CONFIG_NOT_FOUND)
        previous = self.active_tenant_id
        try:
            await self._registry.acquire(config)
        except ConnectionBackendError as exc:
            LOG.warning("Switch to %s failed: %s", tenant_id, exc)
            raise SwitchError(tenant_id, SwitchFailure.CONNECTION_FAILED, exc) from exc
        self._persist(self._config_store.config.with_active_tenant(tenant_id))
        if previous and previous != tenant_id and self._config_store.config.release_on_switch:
            await self._registry.release(previous)
        self._set_state(
            SessionState(
                config=config,
                connected_at=datetime.now(tz=timezone.utc),
                status="Connected",
            )
        )
        return self._state

    def _persist(self, config: AppConfig) -> None:
        try:
            self._config_store.update(config)
        except OSError:
            LOG.warning("Failed to save configuration", exc_info=True)

    def _set_state(self, state: SessionState) -> None:
        self._state = state
        for listener in tuple(self._listeners):
            listener(state)


def _next_remaining(ordered: list[str], removed: str) -> str | None:
    if removed not in ordered:
        return ordered[0] if ordered else None
    index = ordered.index(removed)
    remaining = ordered[index + 1 :] + ordered[:index]
    return remaining[0] if remaining else None


__all__ = [
    "SessionController",
    "SessionListener",
    "SessionState",
    "SwitchError",
    "SwitchFailure",
]
