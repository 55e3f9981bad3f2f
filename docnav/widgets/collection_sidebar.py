"""Sidebar listing the collections discovered for the active tenant."""

from __future__ import annotations

from typing import Callable

from textual import on
from textual.app import ComposeResult
from textual.containers import Container
from textual.message import Message
from textual.widgets import Label, ListItem, ListView, Static

from docnav.discovery import CollectionCatalog


class CollectionSidebar(Container):
    """Shows catalog paths; nested collections are indented under their parent."""

    DEFAULT_CSS = """
    CollectionSidebar {
        width: 32;
        min-width: 22;
        border-right: solid $surface-darken-1;
        padding: 1;
        height: 1fr;
        background: $surface-darken-2;
    }

    CollectionSidebar .sidebar-heading {
        text-style: bold;
        margin-bottom: 1;
    }

    #collection-list {
        height: 1fr;
        border: round $primary 30%;
    }

    #collection-summary {
        padding-top: 1;
        color: $text-muted;
    }
    """

    class CollectionSelected(Message):
        """Posted when the user picks a collection path."""

        def __init__(self, path: str) -> None:
            super().__init__()
            self.path = path

    def __init__(self, catalog: CollectionCatalog) -> None:
        super().__init__(id="collection-sidebar")
        self._catalog = catalog
        self._list: ListView | None = None
        self._summary: Static | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def compose(self) -> ComposeResult:
        yield Static("Collections", classes="sidebar-heading")
        self._list = ListView(id="collection-list")
        yield self._list
        self._summary = Static("", id="collection-summary")
        yield self._summary

    async def on_mount(self) -> None:
        self._unsubscribe = self._catalog.subscribe(self._handle_catalog_update)
        self._handle_catalog_update(self._catalog)

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _handle_catalog_update(self, catalog: CollectionCatalog) -> None:
        if self._list is not None:
            self._list.clear()
            for path in catalog.paths:
                self._list.append(ListItem(Label(_display_name(path)), name=path))
        if self._summary is not None:
            self._summary.update(_summary(catalog))

    @on(ListView.Selected, "#collection-list")
    def _handle_selected(self, event: ListView.Selected) -> None:
        path = event.item.name
        if path:
            self.post_message(self.CollectionSelected(path))


def _display_name(path: str) -> str:
    segments = path.split("/")
    if len(segments) == 1:
        return path
    return "  " * (len(segments) // 2) + "/".join(segments[-2:])


def _summary(catalog: CollectionCatalog) -> str:
    if catalog.tenant_id is None:
        return "No tenant selected."
    if catalog.pending:
        return "Looking for nested collections..."
    if catalog.fallback:
        return "Discovery unavailable; showing fallback list."
    if catalog.partial:
        return "Some collections could not be probed."
    if not catalog.paths:
        return "No collections found."
    return f"{len(catalog.paths)} collection(s)"


__all__ = ["CollectionSidebar"]
