"""Cursor-based pagination over a compiled query, plus single-document mutations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .backends import DocumentNotFoundError, DocumentStore
from .models import DocumentData, DocumentRow
from .query import CompiledQuery, QuerySpec, compile_query, matches_post_filters, matches_search
from .registry import ConnectionRegistry
from .session import SessionState

LOG = logging.getLogger(__name__)

PageListener = Callable[["Page | None"], None]


class PaginationError(RuntimeError):
    """Base class for page navigation failures."""


class NoActiveConnection(PaginationError):
    """Raised when no tenant is active or its handle has been released."""


class PageNotReachable(PaginationError):
    """Raised when a page is requested without the cursor of the page before it."""

    def __init__(self, page: int, collection_path: str) -> None:
        super().__init__(
            f"Page {page} of '{collection_path}' is not reachable; fetch page {max(page - 1, 1)} first."
        )
        self.page = page
        self.collection_path = collection_path


class StalePageError(PaginationError):
    """Raised when a fetch finishes after the query or tenant changed; its rows are discarded."""


class QueryFailed(PaginationError):
    """Raised when the backend rejects a page query."""

    def __init__(self, tenant_id: str | None, collection_path: str, cause: BaseException) -> None:
        super().__init__(f"Query on '{collection_path}' failed: {cause}")
        self.tenant_id = tenant_id
        self.collection_path = collection_path
        self.cause = cause


class MutationError(RuntimeError):
    """Raised when a create/update/delete is rejected by the backend."""

    def __init__(
        self,
        tenant_id: str | None,
        collection_path: str,
        document_id: str | None,
        cause: BaseException,
    ) -> None:
        target = f"'{collection_path}/{document_id}'" if document_id else f"'{collection_path}'"
        super().__init__(f"Write to {target} failed: {cause}")
        self.tenant_id = tenant_id
        self.collection_path = collection_path
        self.document_id = document_id
        self.cause = cause


class PageState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    READY = "ready"


@dataclass(frozen=True, slots=True)
class Page:
    """Rows visible on one page after client-side filters are applied."""

    number: int
    collection_path: str
    rows: tuple[DocumentRow, ...]
    fetched_count: int
    has_more: bool

    @property
    def has_previous(self) -> bool:
        return self.number > 1


class PaginationEngine:
    """Drives page fetches for one collection+query and caches page-boundary cursors."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry
        self._tenant_id: str | None = None
        self._spec: QuerySpec | None = None
        self._compiled: CompiledQuery | None = None
        self._cursors: dict[tuple[tuple[object, ...], int], object] = {}
        self._generation = 0
        self._state = PageState.IDLE
        self._page_number = 0
        self._raw_rows: list[DocumentRow] = []
        self._has_more = False
        self._search = ""
        self._listeners: set[PageListener] = set()

    @property
    def state(self) -> PageState:
        return self._state

    @property
    def spec(self) -> QuerySpec | None:
        return self._spec

    @property
    def compiled(self) -> CompiledQuery | None:
        return self._compiled

    @property
    def tenant_id(self) -> str | None:
        return self._tenant_id

    @property
    def page_number(self) -> int:
        return self._page_number

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def search(self) -> str:
        return self._search

    @property
    def cached_pages(self) -> tuple[int, ...]:
        """Page numbers whose end cursor is known."""

        return tuple(sorted(number for _, number in self._cursors))

    @property
    def current_page(self) -> Page | None:
        if self._state is PageState.IDLE or self._compiled is None or self._page_number == 0:
            return None
        post_filters = self._compiled.post_filters
        rows = tuple(
            row
            for row in self._raw_rows
            if matches_post_filters(row, post_filters) and matches_search(row, self._search)
        )
        return Page(
            number=self._page_number,
            collection_path=self._compiled.collection_path,
            rows=rows,
            fetched_count=len(self._raw_rows),
            has_more=self._has_more,
        )

    def on_session_change(self, state: SessionState) -> None:
        if state.tenant_id == self._tenant_id:
            return
        self._tenant_id = state.tenant_id
        self._spec = None
        self._compiled = None
        self._reset()

    def set_query(self, spec: QuerySpec) -> CompiledQuery:
        """Compile and select a query; a changed collection or term drops the cursor cache."""

        compiled = compile_query(spec)
        if self._spec is not None and self._spec.cache_key() == spec.cache_key():
            return compiled
        self._spec = spec
        self._compiled = compiled
        self._reset()
        return compiled

    def set_search(self, text: str) -> Page | None:
        """Apply free-text search to the current page only."""

        self._search = text
        page = self.current_page
        self._notify(page)
        return page

    def reset(self) -> None:
        """Drop the cursor cache and the current page, keeping the selected query."""

        self._reset()

    async def fetch_page(self, number: int) -> Page:
        compiled = self._require_query()
        store = self._require_store()
        if number < 1:
            raise PageNotReachable(number, compiled.collection_path)
        cursor: object | None = None
        if number > 1:
            cursor = self._cursors.get(self._cursor_key(number - 1))
            if cursor is None:
                raise PageNotReachable(number, compiled.collection_path)
        generation = self._generation
        previous_state = self._state
        self._state = PageState.FETCHING
        try:
            batch = await store.query(compiled, start_after=cursor)
        except Exception as exc:
            if generation == self._generation:
                self._state = previous_state
            raise QueryFailed(self._tenant_id, compiled.collection_path, exc) from exc
        if generation != self._generation:
            LOG.debug("Discarding stale page %s of %s", number, compiled.collection_path)
            raise StalePageError(f"Page {number} of '{compiled.collection_path}' arrived after the query changed.")
        if batch.cursor is not None:
            self._cursors[self._cursor_key(number)] = batch.cursor
        self._raw_rows = list(batch.rows)
        self._page_number = number
        self._has_more = len(batch.rows) == compiled.limit
        self._state = PageState.READY
        page = self.current_page
        assert page is not None
        self._notify(page)
        return page

    async def first_page(self) -> Page:
        return await self.fetch_page(1)

    async def next_page(self) -> Page:
        return await self.fetch_page(self._page_number + 1)

    async def previous_page(self) -> Page:
        return await self.fetch_page(max(self._page_number - 1, 1))

    async def refresh(self) -> Page:
        return await self.fetch_page(max(self._page_number, 1))

    async def get_document(self, document_id: str, *, collection_path: str | None = None) -> DocumentRow:
        path = self._target_collection(collection_path)
        store = self._require_store()
        try:
            return await store.get_document(path, document_id)
        except DocumentNotFoundError:
            raise
        except Exception as exc:
            raise QueryFailed(self._tenant_id, path, exc) from exc

    async def create_document(self, data: DocumentData, *, collection_path: str | None = None) -> DocumentRow:
        path = self._target_collection(collection_path)
        store = self._require_store()
        generation = self._generation
        try:
            row = await store.add_document(path, data)
        except Exception as exc:
            raise MutationError(self._tenant_id, path, None, exc) from exc
        if self._applies_to_current_page(generation, path):
            self._raw_rows.append(row)
            self._notify(self.current_page)
        return row

    async def update_document(
        self,
        document_id: str,
        data: DocumentData,
        *,
        collection_path: str | None = None,
    ) -> DocumentRow:
        path = self._target_collection(collection_path)
        store = self._require_store()
        generation = self._generation
        try:
            row = await store.update_document(path, document_id, data)
        except Exception as exc:
            raise MutationError(self._tenant_id, path, document_id, exc) from exc
        if self._applies_to_current_page(generation, path):
            self._raw_rows = [row if existing.id == document_id else existing for existing in self._raw_rows]
            self._notify(self.current_page)
        return row

    async def delete_document(self, document_id: str, *, collection_path: str | None = None) -> None:
        path = self._target_collection(collection_path)
        store = self._require_store()
        generation = self._generation
        try:
            await store.delete_document(path, document_id)
        except Exception as exc:
            raise MutationError(self._tenant_id, path, document_id, exc) from exc
        if self._applies_to_current_page(generation, path):
            self._raw_rows = [existing for existing in self._raw_rows if existing.id != document_id]
            self._notify(self.current_page)

    def subscribe(self, listener: PageListener) -> Callable[[], None]:
        """Subscribe to page updates; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _reset(self) -> None:
        self._generation += 1
        self._cursors.clear()
        self._raw_rows = []
        self._page_number = 0
        self._has_more = False
        self._state = PageState.IDLE
        self._notify(None)

    def _cursor_key(self, number: int) -> tuple[tuple[object, ...], int]:
        assert self._spec is not None
        return (self._spec.cache_key(), number)

    def _require_query(self) -> CompiledQuery:
        if self._compiled is None:
            raise PaginationError("Select a collection and query first.")
        return self._compiled

    def _require_store(self) -> DocumentStore:
        if self._tenant_id is None:
            raise NoActiveConnection("No active connection.")
        store = self._registry.get(self._tenant_id)
        if store is None:
            raise NoActiveConnection(f"Tenant '{self._tenant_id}' has no open connection.")
        return store

    def _target_collection(self, collection_path: str | None) -> str:
        if collection_path:
            return collection_path.strip("/")
        return self._require_query().collection_path

    def _applies_to_current_page(self, generation: int, collection_path: str) -> bool:
        return (
            generation == self._generation
            and self._state is PageState.READY
            and self._compiled is not None
            and self._compiled.collection_path == collection_path
        )

    def _notify(self, page: Page | None) -> None:
        for listener in tuple(self._listeners):
            listener(page)


__all__ = [
    "MutationError",
    "NoActiveConnection",
    "Page",
    "PageNotReachable",
    "PageState",
    "PaginationEngine",
    "PaginationError",
    "QueryFailed",
    "StalePageError",
]
