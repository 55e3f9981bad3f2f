"""Explicit wiring of one registry, session, discovery client and pagination engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from .backends import BackendStoreFactory, StoreFactory
from .config import AppConfig, ConfigStore
from .discovery import CollectionCatalog, DiscoveryClient, DiscoveryTransport
from .pagination import PaginationEngine
from .query import QuerySpec
from .registry import ConnectionRegistry
from .saved import SavedQueries
from .session import SessionController

LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class BrowserContext:
    """Everything one browsing process owns; tests build a fresh one per case."""

    config_store: ConfigStore
    registry: ConnectionRegistry
    session: SessionController
    discovery: DiscoveryClient
    pagination: PaginationEngine
    saved_queries: SavedQueries
    _unsubscribers: list[Callable[[], None]] = field(default_factory=list)

    @property
    def catalog(self) -> CollectionCatalog:
        return self.discovery.catalog

    def new_query(self, collection_path: str) -> QuerySpec:
        """Blank query over a collection using the configured page size."""

        return QuerySpec(collection_path=collection_path, page_size=self.config_store.config.page_size)

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.discovery.cancel()
        await self.registry.release_all()


def create_context(
    config: AppConfig,
    *,
    store_factory: StoreFactory | None = None,
    transport: DiscoveryTransport | None = None,
    config_store: ConfigStore | None = None,
) -> BrowserContext:
    """Build and wire the core components for one process."""

    store = config_store or ConfigStore(config)
    registry = ConnectionRegistry(store_factory or BackendStoreFactory())
    session = SessionController(registry, config_store=store)
    discovery = DiscoveryClient(
        transport or DiscoveryTransport(config.discovery.base_url),
        registry,
        config_lookup=session.config_for,
        settings=config.discovery,
    )
    pagination = PaginationEngine(registry)
    context = BrowserContext(
        config_store=store,
        registry=registry,
        session=session,
        discovery=discovery,
        pagination=pagination,
        saved_queries=SavedQueries(store),
    )
    context._unsubscribers.append(session.subscribe(pagination.on_session_change))
    context._unsubscribers.append(session.subscribe(discovery.on_session_change))
    context._unsubscribers.append(registry.add_release_hook(discovery.release_tenant))
    LOG.debug("Browser context ready with %d tenant(s)", len(session.configs))
    return context


__all__ = ["BrowserContext", "create_context"]
