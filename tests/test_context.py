"""End-to-end tests over a freshly wired browser context."""

from __future__ import annotations

from typing import Any, Mapping

import pytest

from docnav.backends import BackendStoreFactory, DemoStoreFactory
from docnav.config import AppConfig, ConfigStore, load_config
from docnav.context import create_context
from docnav.models import ConnectionConfig
from docnav.query import FilterClause, QuerySpec

DATASETS = {
    "alpha": {
        "users": {"u1": {"name": "Ada"}},
        "users/u1/sessions": {"s1": {"device": "laptop"}},
        "orders": {
            "o1": {"status": True, "total": 10},
            "o2": {"status": False, "total": 20},
            "o3": {"status": True, "total": 30},
            "o4": {"status": True, "total": 40},
            "o5": {"status": True, "total": 50},
            "o6": {"status": "true", "total": 60},
            "o7": {"status": True, "total": 70},
        },
    },
    "beta": {"things": {"t1": {"name": "thing"}}},
}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _FakeTransport:
    def __init__(self, collections: Mapping[str, list[str]]) -> None:
        self._collections = collections
        self.cleaned: list[str] = []

    async def health(self, *, timeout: float) -> bool:
        return True

    async def list_collections(self, tenant_id: str, credentials: Mapping[str, Any], *, timeout: float) -> list[str]:
        return list(self._collections.get(tenant_id, []))

    async def cleanup(self, tenant_id: str, *, timeout: float) -> None:
        self.cleaned.append(tenant_id)


def _context(transport: _FakeTransport, config: AppConfig | None = None) -> Any:
    config = config or AppConfig(tenants=[])
    return create_context(
        config,
        store_factory=BackendStoreFactory(demo_factory=DemoStoreFactory(DATASETS)),
        transport=transport,  # type: ignore[arg-type]
        config_store=ConfigStore(config, autosave=False),
    )


@pytest.mark.anyio
async def test_browse_paginated_filtered_orders() -> None:
    transport = _FakeTransport({"alpha": ["users", "orders"]})
    context = _context(transport)

    await context.session.add_config(ConnectionConfig(tenant_id="alpha", display_name="Alpha", backend="demo"))
    await context.session.switch_to("alpha")
    discovered = await context.discovery.discover("alpha")
    spec = QuerySpec(
        collection_path="orders",
        filters=(FilterClause(field="status", operator="==", raw_value="true"),),
        orderings=(),
        page_size=2,
    )
    context.pagination.set_query(spec)
    first = await context.pagination.fetch_page(1)
    second = await context.pagination.fetch_page(2)
    third = await context.pagination.fetch_page(3)

    assert discovered.paths[:2] == ("users", "orders")
    assert "users/u1/sessions" in context.catalog.paths
    assert ([row.id for row in first.rows], first.has_more) == (["o1", "o3"], True)
    assert ([row.id for row in second.rows], second.has_more) == (["o4", "o5"], True)
    assert ([row.id for row in third.rows], third.has_more) == (["o7"], False)

    await context.close()


@pytest.mark.anyio
async def test_switching_tenants_invalidates_pages_catalog_and_discovery_session() -> None:
    transport = _FakeTransport({"alpha": ["users", "orders"], "beta": ["things"]})
    context = _context(transport)
    for tenant_id in ("alpha", "beta"):
        await context.session.add_config(ConnectionConfig(tenant_id=tenant_id, display_name=tenant_id, backend="demo"))
    await context.session.switch_to("alpha")
    await context.discovery.discover("alpha")
    context.pagination.set_query(context.new_query("orders"))
    await context.pagination.first_page()

    await context.session.switch_to("beta")

    assert context.pagination.current_page is None
    assert context.pagination.spec is None
    assert context.catalog.tenant_id == "beta"
    assert context.catalog.paths == ()
    assert context.registry.tenant_ids == ("beta",)
    assert transport.cleaned == ["alpha"]

    result = await context.discovery.discover("beta")
    assert result.paths == ("things",)
    await context.close()
    assert context.registry.tenant_ids == ()


@pytest.mark.anyio
async def test_removing_active_tenant_resets_pagination() -> None:
    transport = _FakeTransport({})
    context = _context(transport)
    await context.session.add_config(ConnectionConfig(tenant_id="alpha", display_name="Alpha", backend="demo"))
    await context.session.switch_to("alpha")
    context.pagination.set_query(context.new_query("orders"))
    await context.pagination.first_page()

    await context.session.remove("alpha")

    assert context.session.current_config() is None
    assert context.pagination.current_page is None
    assert context.catalog.tenant_id is None
    await context.close()


@pytest.mark.anyio
async def test_active_tenant_and_configs_survive_restart(tmp_path: Any) -> None:
    config_path = tmp_path / "config.toml"
    config = AppConfig(tenants=[])
    context = create_context(
        config,
        store_factory=BackendStoreFactory(demo_factory=DemoStoreFactory(DATASETS)),
        transport=_FakeTransport({}),  # type: ignore[arg-type]
        config_store=ConfigStore(config, path=config_path),
    )
    for tenant_id in ("alpha", "beta"):
        await context.session.add_config(ConnectionConfig(tenant_id=tenant_id, display_name=tenant_id, backend="demo"))
    await context.session.switch_to("beta")
    await context.close()

    restored_config = load_config(config_path)
    restored = _context(_FakeTransport({}), restored_config)
    state = await restored.session.restore()

    assert [config.tenant_id for config in restored.session.configs] == ["alpha", "beta"]
    assert state.tenant_id == "beta"
    await restored.close()


def test_new_query_uses_configured_page_size() -> None:
    context = _context(_FakeTransport({}), AppConfig(tenants=[], page_size=25))

    spec = context.new_query("orders")

    assert spec.page_size == 25
    assert spec.filters == ()
