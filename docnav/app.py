"""Textual application entry point for docnav."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from textual import on
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.widgets import Footer, Header, Input

from .config import AppConfig, ConfigStore, load_config
from .context import BrowserContext, create_context
from .discovery import DiscoveryError, DiscoveryTimeout
from .export import ExportFormat, export_rows
from .logging_config import setup_logging
from .pagination import Page, PaginationError, StalePageError
from .providers import CollectionOpenProvider, DiscoveryRefreshProvider, PageExportProvider, TenantSwitchProvider
from .query import CompileError
from .session import SessionState, SwitchError
from .widgets import CollectionSidebar, DocumentTable, StatusBar

LOG = logging.getLogger(__name__)


def _load_app_config() -> AppConfig:
    """Load configuration with a small wrapper for future overrides."""

    return load_config()


class DocnavApp(App[None]):
    """Browse collections and documents across several tenants."""

    COMMANDS = App.COMMANDS | {
        TenantSwitchProvider,
        CollectionOpenProvider,
        DiscoveryRefreshProvider,
        PageExportProvider,
    }
    CSS = """
    Screen {
        layout: vertical;
    }
    #content {
        layout: horizontal;
        height: 1fr;
    }
    #main-column {
        layout: vertical;
        padding: 0 1;
        height: 1fr;
    }
    #search {
        margin-bottom: 1;
    }
    """

    BINDINGS = [
        ("ctrl+c", "quit", "Quit"),
        ("n", "next_page", "Next Page"),
        ("p", "previous_page", "Previous Page"),
        ("ctrl+r", "refresh_page", "Refresh"),
        ("ctrl+p", "command_palette", "Command Palette"),
    ]

    def __init__(self, context: BrowserContext | None = None) -> None:
        super().__init__()
        if context is None:
            config = _load_app_config()
            context = create_context(config, config_store=ConfigStore(config))
        self._context = context
        self._pending_notifications: list[tuple[str, str]] = []
        self._last_session_state: SessionState | None = None
        self._session_unsubscribe: Callable[[], None] | None = self._context.session.subscribe(
            self._handle_session_state
        )

    @property
    def context(self) -> BrowserContext:
        """Expose the wired core for providers and tests."""

        return self._context

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        main_column = Vertical(
            Input(placeholder="Search this page", id="search"),
            DocumentTable(self._context.pagination),
            id="main-column",
        )
        yield Horizontal(CollectionSidebar(self._context.catalog), main_column, id="content")
        yield StatusBar(self._context)
        yield Footer()

    async def on_mount(self) -> None:
        self._flush_pending_notifications()
        self.run_worker(self._restore_session(), exclusive=True, group="session")

    async def switch_tenant(self, tenant_id: str) -> None:
        """Activate a tenant, then list its collections in the background."""

        try:
            state = await self._context.session.switch_to(tenant_id)
        except SwitchError as exc:
            self._safe_notify(str(exc), severity="error")
            return
        label = state.config.label if state.config else tenant_id
        self._safe_notify(f"Switched to tenant: {label}")
        await self._discover(tenant_id)

    async def refresh_collections(self) -> None:
        tenant_id = self._context.session.active_tenant_id
        if tenant_id is None:
            self._safe_notify("No active tenant.", severity="warning")
            return
        await self._discover(tenant_id)

    async def open_collection(self, path: str) -> Page | None:
        """Select a collection with an empty query and show its first page."""

        try:
            self._context.pagination.set_query(self._context.new_query(path))
        except CompileError as exc:
            self._safe_notify(str(exc), severity="error")
            return None
        return await self._run_page(self._context.pagination.first_page)

    async def action_next_page(self) -> None:
        page = self._context.pagination.current_page
        if page is not None and not page.has_more:
            self._safe_notify("Already on the last page.")
            return
        await self._run_page(self._context.pagination.next_page)

    async def action_previous_page(self) -> None:
        page = self._context.pagination.current_page
        if page is None or not page.has_previous:
            return
        await self._run_page(self._context.pagination.previous_page)

    async def action_refresh_page(self) -> None:
        await self._run_page(self._context.pagination.refresh)

    def copy_page(self, fmt: ExportFormat | str) -> str | None:
        """Copy the rows shown on the current page to the clipboard as JSON or CSV."""

        page = self._context.pagination.current_page
        if page is None or not page.rows:
            self._safe_notify("Nothing to export.", severity="warning")
            return None
        fmt = ExportFormat(fmt)
        text = export_rows(page.rows, fmt)
        self.copy_to_clipboard(text)
        self._safe_notify(f"Copied {len(page.rows)} row(s) as {fmt.value.upper()}.")
        return text

    @on(CollectionSidebar.CollectionSelected)
    async def _handle_collection_selected(self, event: CollectionSidebar.CollectionSelected) -> None:
        await self.open_collection(event.path)

    @on(Input.Changed, "#search")
    def _handle_search_changed(self, event: Input.Changed) -> None:
        self._context.pagination.set_search(event.value)

    async def _restore_session(self) -> None:
        state = await self._context.session.restore()
        if state.tenant_id is not None:
            await self._discover(state.tenant_id)

    async def _discover(self, tenant_id: str) -> None:
        try:
            await self._context.discovery.discover(tenant_id, background=True)
        except DiscoveryTimeout as exc:
            kept = f" Keeping {len(exc.paths)} known collection(s)." if exc.paths else ""
            self._safe_notify(f"{exc}{kept}", severity="warning")
        except DiscoveryError as exc:
            self._safe_notify(str(exc), severity="error")

    async def _run_page(self, fetch: Callable[[], Awaitable[Page]]) -> Page | None:
        try:
            return await fetch()
        except StalePageError:
            LOG.debug("Ignoring stale page result")
        except PaginationError as exc:
            self._safe_notify(str(exc), severity="error")
        return None

    async def _shutdown(self) -> None:
        if self._session_unsubscribe:
            self._session_unsubscribe()
            self._session_unsubscribe = None
        await self._context.close()
        await super()._shutdown()

    def _handle_session_state(self, state: SessionState) -> None:
        previous = self._last_session_state
        if state.last_error and (previous is None or previous.last_error != state.last_error):
            self._safe_notify(state.last_error.splitlines()[0][:120], severity="warning")
        self._last_session_state = state

    def _safe_notify(self, message: str, *, severity: str = "information") -> None:
        if self.is_running:
            try:
                self.notify(message, severity=severity)
            except Exception:
                LOG.exception("Failed to display notification", extra={"notice": message})
        else:
            self._pending_notifications.append((message, severity))

    def _flush_pending_notifications(self) -> None:
        if not self._pending_notifications:
            return
        pending = list(self._pending_notifications)
        self._pending_notifications.clear()
        for message, severity in pending:
            try:
                self.notify(message, severity=severity)
            except Exception:
                LOG.exception("Failed to display queued notification", extra={"notice": message})

    @property
    def pending_notifications(self) -> tuple[tuple[str, str], ...]:
        """Notifications queued before the app started (testing helper)."""

        return tuple(self._pending_notifications)


def main() -> None:
    """Invoke the Textual application."""

    setup_logging()
    DocnavApp().run()


if __name__ == "__main__":
    main()
