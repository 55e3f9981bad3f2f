"""Connection registry holding one live document-store client per tenant."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from .backends import ConnectionBackendError, DocumentStore, StoreFactory
from .models import ConnectionConfig

LOG = logging.getLogger(__name__)

ReleaseHook = Callable[[str], Awaitable[None]]


class ConnectionRegistry:
    """Creates, reuses and disposes per-tenant DocumentStore handles."""

    def __init__(self, factory: StoreFactory) -> None:
        self._factory = factory
        self._handles: dict[str, DocumentStore] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._release_hooks: list[ReleaseHook] = []

    @property
    def tenant_ids(self) -> tuple[str, ...]:
        """Tenants that currently hold a live handle."""

        return tuple(self._handles)

    def get(self, tenant_id: str) -> DocumentStore | None:
        """Return the live handle for a tenant without creating one."""

        return self._handles.get(tenant_id)

    def add_release_hook(self, hook: ReleaseHook) -> Callable[[], None]:
        """Run `hook(tenant_id)` whenever a handle is disposed; returns a remove handle."""

        self._release_hooks.append(hook)

        def _remove() -> None:
            if hook in self._release_hooks:
                self._release_hooks.remove(hook)

        return _remove

    async def acquire(self, config: ConnectionConfig) -> DocumentStore:
        """Return the handle for `config.tenant_id`, constructing it on first use."""

        async with self._tenant_lock(config.tenant_id):
            handle = self._handles.get(config.tenant_id)
            if handle is not None:
                return handle
            try:
                handle = await self._factory.create(config)
            except Exception as exc:
                raise ConnectionBackendError(config.tenant_id, exc) from exc
            self._handles[config.tenant_id] = handle
            LOG.info("Opened connection for tenant %s", config.tenant_id)
            return handle

    async def release(self, tenant_id: str) -> None:
        """Dispose the tenant's handle if present; safe to call repeatedly."""

        async with self._tenant_lock(tenant_id):
            handle = self._handles.pop(tenant_id, None)
            if handle is None:
                return
            try:
                await handle.close()
            except Exception:
                LOG.warning("Failed to close connection for tenant %s", tenant_id, exc_info=True)
            for hook in tuple(self._release_hooks):
                try:
                    await hook(tenant_id)
                except Exception:
                    LOG.warning("Release hook failed for tenant %s", tenant_id, exc_info=True)
            LOG.info("Released connection for tenant %s", tenant_id)

    async def release_all(self) -> None:
        for tenant_id in tuple(self._handles):
            await self.release(tenant_id)

    @asynccontextmanager
    async def _tenant_lock(self, tenant_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        self._lock_users[tenant_id] = self._lock_users.get(tenant_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[tenant_id] -= 1
            if not self._lock_users[tenant_id]:
                del self._lock_users[tenant_id]
                # Only tenants with a live handle or a waiter keep their lock.
                if tenant_id not in self._handles:
                    del self._locks[tenant_id]


__all__ = ["ConnectionRegistry", "ReleaseHook"]
