"""Collection discovery through the privileged discovery service."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

import requests

from .backends import DocumentStore, resolve_credentials
from .config import DiscoverySettings
from .models import ConnectionConfig
from .registry import ConnectionRegistry
from .session import SessionState

LOG = logging.getLogger(__name__)

CatalogListener = Callable[["CollectionCatalog"], None]


class DiscoveryError(RuntimeError):
    """Base class for discovery failures."""

    def __init__(self, tenant_id: str, message: str) -> None:
        super().__init__(message)
        self.tenant_id = tenant_id


class DiscoveryUnavailable(DiscoveryError):
    """The discovery service failed its health probe or could not be reached."""

    def __init__(self, tenant_id: str, detail: str = "") -> None:
        message = "Discovery backend unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(tenant_id, message)


class DiscoveryTimeout(DiscoveryError):
    """The top-level listing did not finish in time."""

    def __init__(self, tenant_id: str, paths: Iterable[str] = ()) -> None:
        super().__init__(tenant_id, f"Timed out listing collections for tenant '{tenant_id}'.")
        self.paths = tuple(paths)


class DiscoveryRequestError(DiscoveryError):
    """The discovery service answered with an error."""

    def __init__(self, tenant_id: str, message: str, *, status: int | None = None) -> None:
        super().__init__(tenant_id, message)
        self.status = status


@dataclass(frozen=True, slots=True)
class DiscoveryResult:
    paths: tuple[str, ...]
    partial: bool = False
    pending: bool = False
    fallback: bool = False


class DiscoveryTransport:
    """Blocking `requests` client for the discovery service, run off the event loop."""

    def __init__(self, base_url: str, *, session: requests.Session | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session or requests.Session()

    async def health(self, *, timeout: float) -> bool:
        try:
            response = await asyncio.to_thread(self._session.get, f"{self._base_url}/health", timeout=timeout)
        except requests.RequestException as exc:
            LOG.warning("Discovery health probe failed: %s", exc)
            return False
        if not response.ok:
            return False
        try:
            payload = response.json()
        except ValueError:
            return False
        return isinstance(payload, dict) and payload.get("status") == "ok"

    async def list_collections(self, tenant_id: str, credentials: Mapping[str, Any], *, timeout: float) -> list[str]:
        try:
            response = await asyncio.to_thread(
                self._session.post,
                f"{self._base_url}/collections",
                json={"credentials": dict(credentials)},
                timeout=timeout,
            )
        except requests.Timeout:
            raise DiscoveryTimeout(tenant_id) from None
        except requests.RequestException as exc:
            raise DiscoveryUnavailable(tenant_id, str(exc)) from exc
        payload = _json_or_none(response)
        if not response.ok:
            detail = payload.get("error") if isinstance(payload, dict) else None
            raise DiscoveryRequestError(
                tenant_id,
                f"Failed to list collections: {detail or response.reason or response.status_code}",
                status=response.status_code,
            )
        collections = payload.get("collections") if isinstance(payload, dict) else None
        if not isinstance(collections, list):
            raise DiscoveryRequestError(tenant_id, "Discovery response is missing 'collections'.", status=response.status_code)
        return [str(name) for name in collections]

    async def cleanup(self, tenant_id: str, *, timeout: float) -> None:
        try:
            response = await asyncio.to_thread(
                self._session.delete,
                f"{self._base_url}/cleanup/{tenant_id}",
                timeout=timeout,
            )
        except requests.RequestException as exc:
            LOG.warning("Discovery cleanup for %s failed: %s", tenant_id, exc)
            return
        if not response.ok:
            LOG.warning("Discovery cleanup for %s returned %s", tenant_id, response.status_code)

    def close(self) -> None:
        self._session.close()


def _json_or_none(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class CollectionCatalog:
    """Ordered collection paths discovered for one tenant."""

    def __init__(self) -> None:
        self._tenant_id: str | None = None
        self._paths: list[str] = []
        self._generation = 0
        self._partial = False
        self._pending = False
        self._fallback = False
        self._listeners: set[CatalogListener] = set()

    @property
    def tenant_id(self) -> str | None:
        return self._tenant_id

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(self._paths)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def partial(self) -> bool:
        return self._partial

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def fallback(self) -> bool:
        return self._fallback

    def top_level(self) -> tuple[str, ...]:
        return tuple(path for path in self._paths if "/" not in path)

    def reset(self, tenant_id: str | None, generation: int) -> None:
        """Start over for a tenant; paths from another tenant are never kept."""

        self._tenant_id = tenant_id
        self._generation = generation
        self._paths = []
        self._partial = False
        self._pending = False
        self._fallback = False
        self._notify()

    def adopt(self, generation: int) -> None:
        """Let a new run for the same tenant write here, keeping the current paths."""

        self._generation = generation

    def replace(
        self,
        generation: int,
        paths: Iterable[str],
        *,
        pending: bool = False,
        partial: bool = False,
        fallback: bool = False,
    ) -> bool:
        if generation != self._generation:
            return False
        self._paths = list(dict.fromkeys(paths))
        self._pending = pending
        self._partial = partial
        self._fallback = fallback
        self._notify()
        return True

    def extend(self, generation: int, paths: Iterable[str]) -> bool:
        if generation != self._generation:
            return False
        added = [path for path in paths if path not in self._paths]
        if added:
            self._paths.extend(added)
            self._notify()
        return True

    def finish(self, generation: int, *, partial: bool) -> bool:
        if generation != self._generation:
            return False
        self._pending = False
        self._partial = partial
        self._notify()
        return True

    def subscribe(self, listener: CatalogListener) -> Callable[[], None]:
        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in tuple(self._listeners):
            listener(self)


class DiscoveryClient:
    """Lists top-level collections via the discovery service, then probes one nested level."""

    def __init__(
        self,
        transport: DiscoveryTransport,
        registry: ConnectionRegistry,
        *,
        config_lookup: Callable[[str], ConnectionConfig | None],
        settings: DiscoverySettings | None = None,
        catalog: CollectionCatalog | None = None,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._config_lookup = config_lookup
        self._settings = settings or DiscoverySettings()
        self._catalog = catalog or CollectionCatalog()
        self._generation = 0
        self._task: asyncio.Task[DiscoveryResult] | None = None
        self._sessions: set[str] = set()

    @property
    def catalog(self) -> CollectionCatalog:
        return self._catalog

    @property
    def background_task(self) -> asyncio.Task[DiscoveryResult] | None:
        return self._task

    def has_session(self, tenant_id: str) -> bool:
        """Whether the discovery service holds resources for this tenant."""

        return tenant_id in self._sessions

    async def discover(
        self,
        tenant_id: str,
        timeout_ms: int | None = None,
        *,
        background: bool = False,
    ) -> DiscoveryResult:
        """Populate the catalog for `tenant_id`.

        The top-level listing must finish within `timeout_ms`. Sub-collection probes
        run in a task; with `background=True` this returns as soon as the top-level
        paths are known and the task keeps appending to the catalog.
        """

        self.cancel()
        generation = self._generation
        if self._catalog.tenant_id == tenant_id:
            self._catalog.adopt(generation)
        else:
            self._catalog.reset(tenant_id, generation)
        try:
            top_level = await self._list_top_level(tenant_id, timeout_ms)
        except DiscoveryError as exc:
            fallback = self._fallback_result(generation, exc)
            if fallback is None:
                raise
            return fallback
        store = self._registry.get(tenant_id)
        if store is None:
            # No handle left to release, so no release hook will clean this up.
            await self._cleanup(tenant_id)
        else:
            self._sessions.add(tenant_id)
        if generation != self._generation:
            LOG.debug("Discarding superseded discovery run for %s", tenant_id)
            return DiscoveryResult(paths=tuple(top_level), partial=True)
        if store is None or not top_level:
            partial = store is None and bool(top_level)
            self._catalog.replace(generation, top_level, partial=partial)
            return DiscoveryResult(paths=tuple(top_level), partial=partial)

        self._catalog.replace(generation, top_level, pending=True)
        task = asyncio.create_task(self._probe_subcollections(store, top_level, generation))
        self._task = task
        if background:
            return DiscoveryResult(paths=tuple(top_level), pending=True)
        await asyncio.wait({task})
        if task.cancelled():
            return DiscoveryResult(paths=tuple(top_level), partial=True)
        return task.result()

    async def wait_background(self) -> DiscoveryResult | None:
        """Wait for an in-flight sub-collection probe, if any."""

        task = self._task
        if task is None:
            return None
        await asyncio.wait({task})
        return None if task.cancelled() else task.result()

    def cancel(self) -> None:
        """Cancel background work and invalidate its generation."""

        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def on_session_change(self, state: SessionState) -> None:
        if state.tenant_id == self._catalog.tenant_id:
            return
        self.cancel()
        self._catalog.reset(state.tenant_id, self._generation)

    async def release_tenant(self, tenant_id: str) -> None:
        """Release server-side discovery resources tied to a tenant."""

        if self._catalog.tenant_id == tenant_id:
            self.cancel()
        if tenant_id not in self._sessions:
            return
        self._sessions.discard(tenant_id)
        await self._cleanup(tenant_id)

    async def _cleanup(self, tenant_id: str) -> None:
        await self._transport.cleanup(tenant_id, timeout=self._settings.health_timeout_ms / 1000)

    async def _list_top_level(self, tenant_id: str, timeout_ms: int | None) -> list[str]:
        config = self._config_lookup(tenant_id)
        if config is None:
            raise DiscoveryRequestError(tenant_id, f"Tenant '{tenant_id}' is not configured.")
        if not await self._transport.health(timeout=self._settings.health_timeout_ms / 1000):
            raise DiscoveryUnavailable(tenant_id)
        try:
            credentials = resolve_credentials(config)
        except (OSError, ValueError) as exc:
            raise DiscoveryRequestError(tenant_id, f"Could not read credentials: {exc}") from exc
        timeout = (timeout_ms or self._settings.timeout_ms) / 1000
        try:
            return await asyncio.wait_for(
                self._transport.list_collections(tenant_id, credentials, timeout=timeout),
                timeout,
            )
        except (asyncio.TimeoutError, DiscoveryTimeout):
            raise DiscoveryTimeout(tenant_id, self._catalog.paths) from None

    async def _probe_subcollections(
        self,
        store: DocumentStore,
        top_level: list[str],
        generation: int,
    ) -> DiscoveryResult:
        timeout = self._settings.probe_timeout_ms / 1000
        found: list[str] = []
        partial = False
        for path in top_level:
            try:
                children = await asyncio.wait_for(store.list_subcollections(path), timeout)
            except Exception as exc:
                LOG.warning("Sub-collection probe for %s failed: %s", path, exc)
                partial = True
                continue
            nested = [child for child in children if child.count("/") == 2]
            found.extend(nested)
            self._catalog.extend(generation, nested)
        self._catalog.finish(generation, partial=partial)
        return DiscoveryResult(paths=tuple(top_level) + tuple(found), partial=partial)

    def _fallback_result(self, generation: int, error: DiscoveryError) -> DiscoveryResult | None:
        settings = self._settings
        if not settings.fallback_enabled or not settings.fallback_collections:
            return None
        LOG.warning("Discovery failed for %s, using fallback collections: %s", error.tenant_id, error)
        paths = tuple(settings.fallback_collections)
        self._catalog.replace(generation, paths, partial=True, fallback=True)
        return DiscoveryResult(paths=paths, partial=True, fallback=True)


__all__ = [
    "CollectionCatalog",
    "DiscoveryClient",
    "DiscoveryError",
    "DiscoveryRequestError",
    "DiscoveryResult",
    "DiscoveryTimeout",
    "DiscoveryTransport",
    "DiscoveryUnavailable",
]
