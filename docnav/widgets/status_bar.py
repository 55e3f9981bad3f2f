"""Status bar widget that mirrors session, catalog and page information."""

from __future__ import annotations

from typing import Callable

from textual.widgets import Static

from docnav.context import BrowserContext
from docnav.discovery import CollectionCatalog
from docnav.pagination import Page
from docnav.session import SessionState


class StatusBar(Static):
    """Compact status strip rendered above Textual's footer."""

    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        padding: 0 1;
        background: $surface-darken-3;
        color: $text;
    }
    """

    def __init__(self, context: BrowserContext) -> None:
        super().__init__("", id="status-bar")
        self._context = context
        self._unsubscribers: list[Callable[[], None]] = []

    async def on_mount(self) -> None:
        self._unsubscribers = [
            self._context.session.subscribe(self._handle_session_update),
            self._context.catalog.subscribe(self._handle_catalog_update),
            self._context.pagination.subscribe(self._handle_page_update),
        ]

    def on_unmount(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _handle_session_update(self, state: SessionState) -> None:
        self.update(describe_status(self._context))

    def _handle_catalog_update(self, catalog: CollectionCatalog) -> None:
        self.update(describe_status(self._context))

    def _handle_page_update(self, page: Page | None) -> None:
        self.update(describe_status(self._context))


def describe_status(context: BrowserContext) -> str:
    """One-line summary of tenant, catalog and page state."""

    state = context.session.state
    catalog = context.catalog
    page = context.pagination.current_page
    tenant = state.config.label if state.config else "none"
    collections = str(len(catalog.paths))
    if catalog.pending:
        collections += " (discovering)"
    elif catalog.fallback:
        collections += " (fallback)"
    elif catalog.partial:
        collections += " (partial)"
    parts = [
        f"Tenant: {tenant}",
        f"Status: {state.status}",
        f"Collections: {collections}",
    ]
    if page is not None:
        more = "+" if page.has_more else ""
        parts.append(f"{page.collection_path} p{page.number}{more}")
        parts.append(f"Rows: {len(page.rows)}/{page.fetched_count}")
    if state.last_error:
        parts.append(f"Error: {state.last_error.splitlines()[0][:80]}")
    return " | ".join(parts)


__all__ = ["StatusBar", "describe_status"]
