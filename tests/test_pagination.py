"""Tests for the pagination engine."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from docnav.backends import DemoDocumentStore, DemoStoreFactory, QueryBatch
from docnav.models import ConnectionConfig
from docnav.pagination import (
    MutationError,
    NoActiveConnection,
    Page,
    PageNotReachable,
    PageState,
    PaginationEngine,
    PaginationError,
    QueryFailed,
    StalePageError,
)
from docnav.query import CompiledQuery, FilterClause, QuerySpec
from docnav.registry import ConnectionRegistry
from docnav.session import SessionState


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


ALPHA = ConnectionConfig(tenant_id="alpha", display_name="Alpha", backend="demo")
BETA = ConnectionConfig(tenant_id="beta", display_name="Beta", backend="demo")

DATASETS = {
    "alpha": {
        "items": {
            f"i{index}": {"name": f"item {index}", "kind": "odd" if index % 2 else "even", "n": index}
            for index in range(1, 6)
        },
        "empty": {},
    },
    "beta": {"items": {"b1": {"name": "beta item"}}},
}


async def _engine(factory: DemoStoreFactory | None = None) -> tuple[PaginationEngine, ConnectionRegistry]:
    registry = ConnectionRegistry(factory or DemoStoreFactory(DATASETS))
    await registry.acquire(ALPHA)
    engine = PaginationEngine(registry)
    engine.on_session_change(SessionState(config=ALPHA))
    return engine, registry


def _ids(page: Page) -> list[str]:
    return [row.id for row in page.rows]


@pytest.mark.anyio
async def test_pages_walk_forward_and_report_has_more() -> None:
    engine, _ = await _engine()
    engine.set_query(QuerySpec("items", page_size=2))

    first = await engine.first_page()
    second = await engine.next_page()
    third = await engine.next_page()

    assert (_ids(first), first.has_more) == (["i1", "i2"], True)
    assert (_ids(second), second.has_more) == (["i3", "i4"], True)
    assert (_ids(third), third.has_more) == (["i5"], False)
    assert third.has_previous is True
    assert engine.state is PageState.READY
    assert engine.cached_pages == (1, 2, 3)


@pytest.mark.anyio
async def test_returning_to_page_one_gives_same_rows() -> None:
    engine, _ = await _engine()
    engine.set_query(QuerySpec("items", page_size=2))

    first = await engine.fetch_page(1)
    await engine.fetch_page(2)
    again = await engine.previous_page()

    assert again.number == 1
    assert _ids(again) == _ids(first)


@pytest.mark.anyio
async def test_page_jump_without_cursor_is_not_reachable() -> None:
    engine, _ = await _engine()
    engine.set_query(QuerySpec("items", page_size=2))
    await engine.fetch_page(1)

    with pytest.raises(PageNotReachable) as excinfo:
        await engine.fetch_page(3)

    assert excinfo.value.page == 3
    assert excinfo.value.collection_path == "items"
    assert engine.page_number == 1


@pytest.mark.anyio
async def test_exact_page_size_reports_more_and_next_page_is_empty() -> None:
    engine, _ = await _engine()
    engine.set_query(QuerySpec("items", page_size=5))

    first = await engine.first_page()
    second = await engine.next_page()

    assert first.has_more is True
    assert second.rows == ()
    assert second.has_more is False


@pytest.mark.anyio
async def test_client_side_filters_shrink_rows_but_not_has_more() -> None:
    engine, _ = await _engine()
    engine.set_query(QuerySpec("items", filters=(FilterClause("kind", "starts-with", "ev"),), page_size=2))

    first = await engine.first_page()

    assert _ids(first) == ["i2"]
    assert first.fetched_count == 2
    assert first.has_more is True


@pytest.mark.anyio
async def test_search_filters_current_page_only() -> None:
    engine, _ = await _engine()
    engine.set_query(QuerySpec("items", page_size=2))
    await engine.first_page()
    seen: list[Page | None] = []
    engine.subscribe(seen.append)

    page = engine.set_search("ITEM 2")

    assert page is not None and _ids(page) == ["i2"]
    assert page.has_more is True
    assert seen[-1] == page
    cleared = engine.set_search("")
    assert cleared is not None and _ids(cleared) == ["i1", "i2"]


@pytest.mark.anyio
async def test_changing_query_clears_cursor_cache() -> None:
    engine, _ = await _engine()
    engine.set_query(QuerySpec("items", page_size=2))
    await engine.first_page()
    await engine.next_page()
    generation = engine.generation

    engine.set_query(QuerySpec("items", filters=(FilterClause("kind", "==", "odd"),), page_size=2))

    assert engine.cached_pages == ()
    assert engine.generation == generation + 1
    assert engine.current_page is None
    assert engine.state is PageState.IDLE
    with pytest.raises(PageNotReachable):
        await engine.fetch_page(2)


@pytest.mark.anyio
async def test_same_query_keeps_cursor_cache() -> None:
    engine, _ = await _engine()
    engine.set_query(QuerySpec("items", page_size=2))
    await engine.first_page()

    engine.set_query(QuerySpec("items", page_size=2))

    assert engine.cached_pages == (1,)
    assert (await engine.fetch_page(2)).number == 2


@pytest.mark.anyio
async def test_tenant_change_drops_query_and_page() -> None:
    engine, registry = await _engine()
    engine.set_query(QuerySpec("items", page_size=2))
    await engine.first_page()
    await registry.acquire(BETA)

    engine.on_session_change(SessionState(config=BETA))

    assert engine.tenant_id == "beta"
    assert engine.spec is None
    assert engine.current_page is None
    with pytest.raises(PaginationError):
        await engine.first_page()
    engine.set_query(QuerySpec("items"))
    assert _ids(await engine.first_page()) == ["b1"]


@pytest.mark.anyio
async def test_fetch_requires_active_tenant() -> None:
    engine = PaginationEngine(ConnectionRegistry(DemoStoreFactory(DATASETS)))
    engine.set_query(QuerySpec("items"))

    with pytest.raises(NoActiveConnection):
        await engine.first_page()


@pytest.mark.anyio
async def test_released_handle_means_no_active_connection() -> None:
    engine, registry = await _engine()
    engine.set_query(QuerySpec("items"))
    await registry.release("alpha")

    with pytest.raises(NoActiveConnection):
        await engine.first_page()


class _GatedStore(DemoDocumentStore):
    def __init__(self, collections: Any) -> None:
        super().__init__(collections)
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def query(self, compiled: CompiledQuery, *, start_after: object | None = None) -> QueryBatch:
        self.started.set()
        await self.gate.wait()
        return await super().query(compiled, start_after=start_after)


class _GatedFactory(DemoStoreFactory):
    async def create(self, config: ConnectionConfig) -> DemoDocumentStore:
        store = _GatedStore(DATASETS[config.tenant_id])
        self.created.append(store)
        return store


@pytest.mark.anyio
async def test_result_arriving_after_query_change_is_discarded() -> None:
    factory = _GatedFactory()
    engine, _ = await _engine(factory)
    store = factory.created[0]
    assert isinstance(store, _GatedStore)
    engine.set_query(QuerySpec("items", page_size=2))

    pending = asyncio.ensure_future(engine.first_page())
    await store.started.wait()
    assert engine.state is PageState.FETCHING
    engine.set_query(QuerySpec("empty"))
    store.gate.set()

    with pytest.raises(StalePageError):
        await pending
    assert engine.current_page is None
    assert engine.state is PageState.IDLE
    assert engine.cached_pages == ()


@pytest.mark.anyio
async def test_backend_failure_is_wrapped() -> None:
    factory = DemoStoreFactory(DATASETS)
    engine, _ = await _engine(factory)
    engine.set_query(QuerySpec("items"))
    await factory.created[0].close()

    with pytest.raises(QueryFailed) as excinfo:
        await engine.first_page()

    assert excinfo.value.tenant_id == "alpha"
    assert excinfo.value.collection_path == "items"
    assert engine.state is PageState.IDLE


@pytest.mark.anyio
async def test_mutations_update_current_page_in_place() -> None:
    engine, _ = await _engine()
    engine.set_query(QuerySpec("items", page_size=10))
    await engine.first_page()

    created = await engine.create_document({"name": "fresh"})
    await engine.update_document("i1", {"name": "renamed"})
    await engine.delete_document("i2")

    page = engine.current_page
    assert page is not None
    assert _ids(page) == ["i1", "i3", "i4", "i5", created.id]
    assert page.rows[0].data["name"] == "renamed"
    assert page.rows[0].data["kind"] == "odd"
    fetched = await engine.get_document("i1")
    assert fetched.data["name"] == "renamed"


@pytest.mark.anyio
async def test_mutation_in_other_collection_leaves_page_alone() -> None:
    engine, _ = await _engine()
    engine.set_query(QuerySpec("items", page_size=10))
    before = await engine.first_page()

    await engine.create_document({"name": "elsewhere"}, collection_path="empty")

    assert engine.current_page == before


@pytest.mark.anyio
async def test_failed_mutation_raises_and_keeps_page() -> None:
    engine, _ = await _engine()
    engine.set_query(QuerySpec("items", page_size=10))
    before = await engine.first_page()

    with pytest.raises(MutationError) as excinfo:
        await engine.update_document("missing", {"name": "x"})

    assert excinfo.value.document_id == "missing"
    assert excinfo.value.collection_path == "items"
    assert engine.current_page == before
