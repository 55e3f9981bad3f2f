"""Command palette providers for core app features."""

from __future__ import annotations

from textual.command import DiscoveryHit, Hit, Hits, Provider
from textual.types import IgnoreReturnCallbackType

from .context import BrowserContext
from .export import ExportFormat


class _ContextProvider(Provider):
    @property
    def _context(self) -> BrowserContext | None:
        context = getattr(self.app, "context", None)
        if isinstance(context, BrowserContext):
            return context
        return None


class TenantSwitchProvider(_ContextProvider):
    """Expose configured tenants to the command palette."""

    async def search(self, query: str) -> Hits:
        context = self._context
        if context is None:
            return
        matcher = self.matcher(query)
        for config in context.session.configs:
            match = matcher.match(config.label)
            if match > 0:
                yield Hit(
                    score=match,
                    match_display=f"Switch to tenant: {matcher.highlight(config.label)}",
                    command=self._build_callback(config.tenant_id),
                    help="Set the active tenant.",
                )

    async def discover(self) -> Hits:
        context = self._context
        if context is None:
            return
        for config in context.session.configs:
            yield DiscoveryHit(
                display=f"Switch to tenant: {config.label}",
                command=self._build_callback(config.tenant_id),
                help="Set the active tenant.",
            )

    def _build_callback(self, tenant_id: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            switcher = getattr(self.app, "switch_tenant", None)
            if switcher is None:
                return
            await switcher(tenant_id)

        return _run


class CollectionOpenProvider(_ContextProvider):
    """Open any discovered collection, including nested ones."""

    async def search(self, query: str) -> Hits:
        context = self._context
        if context is None:
            return
        matcher = self.matcher(query)
        for path in context.catalog.paths:
            match = matcher.match(path)
            if match > 0:
                yield Hit(
                    score=match,
                    match_display=f"Open collection: {matcher.highlight(path)}",
                    command=self._build_callback(path),
                    help="Show the first page of this collection.",
                )

    async def discover(self) -> Hits:
        context = self._context
        if context is None:
            return
        for path in context.catalog.paths:
            yield DiscoveryHit(
                display=f"Open collection: {path}",
                command=self._build_callback(path),
                help="Show the first page of this collection.",
            )

    def _build_callback(self, path: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            opener = getattr(self.app, "open_collection", None)
            if opener is None:
                return
            await opener(path)

        return _run


class DiscoveryRefreshProvider(_ContextProvider):
    """Re-run collection discovery for the active tenant."""

    _LABEL = "Refresh collection list"

    async def search(self, query: str) -> Hits:
        if self._context is None:
            return
        matcher = self.matcher(query)
        score = matcher.match(self._LABEL)
        if score > 0:
            yield Hit(
                score=score,
                match_display=matcher.highlight(self._LABEL),
                command=self._build_callback(),
                help="Ask the discovery service for the tenant's collections again.",
            )

    async def discover(self) -> Hits:
        if self._context is None:
            return
        yield DiscoveryHit(
            display=self._LABEL,
            command=self._build_callback(),
            help="Ask the discovery service for the tenant's collections again.",
        )

    def _build_callback(self) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            refresher = getattr(self.app, "refresh_collections", None)
            if refresher is None:
                return
            await refresher()

        return _run


class PageExportProvider(_ContextProvider):
    """Copy the current page to the clipboard."""

    def _entries(self) -> list[tuple[str, ExportFormat]]:
        context = self._context
        if context is None or context.pagination.current_page is None:
            return []
        return [(f"Copy page as {fmt.value.upper()}", fmt) for fmt in ExportFormat]

    async def search(self, query: str) -> Hits:
        matcher = self.matcher(query)
        for label, fmt in self._entries():
            score = matcher.match(label)
            if score > 0:
                yield Hit(
                    score=score,
                    match_display=matcher.highlight(label),
                    command=self._build_callback(fmt),
                    help="Copy the rows shown on this page.",
                )

    async def discover(self) -> Hits:
        for label, fmt in self._entries():
            yield DiscoveryHit(
                display=label,
                command=self._build_callback(fmt),
                help="Copy the rows shown on this page.",
            )

    def _build_callback(self, fmt: ExportFormat) -> IgnoreReturnCallbackType:
        def _run() -> None:
            copier = getattr(self.app, "copy_page", None)
            if copier is None:
                return
            copier(fmt)

        return _run


__all__ = ["CollectionOpenProvider", "DiscoveryRefreshProvider", "PageExportProvider", "TenantSwitchProvider"]
