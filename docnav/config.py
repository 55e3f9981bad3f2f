"""App configuration loading helpers."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable

import tomllib

from pydantic import BaseModel, Field, ValidationError, field_validator

from .models import ConnectionConfig

CONFIG_FILE = Path.home() / ".config" / "docnav" / "config.toml"

LOG = logging.getLogger(__name__)

BACKEND_KINDS = ("firestore", "demo")


class TenantConfig(BaseModel):
    """Tenant connection stored in config.toml."""

    tenant_id: str
    display_name: str = ""
    backend: str = "firestore"
    credentials_path: str | None = None
    credentials: dict[str, str] = Field(default_factory=dict)

    @field_validator("tenant_id")
    @classmethod
    def _tenant_id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("tenant_id must not be empty")
        return value

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        if value not in BACKEND_KINDS:
            raise ValueError(f"backend must be one of {', '.join(BACKEND_KINDS)}")
        return value

    def to_connection(self) -> ConnectionConfig:
        return ConnectionConfig(
            tenant_id=self.tenant_id,
            display_name=self.display_name or self.tenant_id,
            backend=self.backend,
            credentials=dict(self.credentials),
            credentials_path=self.credentials_path,
        )

    @classmethod
    def from_connection(cls, config: ConnectionConfig) -> TenantConfig:
        return cls(
            tenant_id=config.tenant_id,
            display_name=config.display_name,
            backend=config.backend,
            credentials_path=config.credentials_path,
            credentials=dict(config.credentials),
        )


class DiscoverySettings(BaseModel):
    """Where the discovery service lives and how long to wait for it."""

    base_url: str = "http://localhost:3001"
    timeout_ms: int = Field(default=30_000, gt=0)
    probe_timeout_ms: int = Field(default=10_000, gt=0)
    health_timeout_ms: int = Field(default=2_000, gt=0)
    fallback_enabled: bool = False
    fallback_collections: list[str] = Field(default_factory=list)


class SavedFilter(BaseModel):
    field: str
    operator: str
    value: str = ""


class SavedOrdering(BaseModel):
    field: str
    direction: str = "asc"


class SavedQueryConfig(BaseModel):
    """A named query persisted alongside the tenants."""

    id: str
    name: str
    collection_path: str
    filters: list[SavedFilter] = Field(default_factory=list)
    orderings: list[SavedOrdering] = Field(default_factory=list)
    page_size: int = Field(default=50, gt=0)


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    theme: str = "dark"
    page_size: int = Field(default=50, gt=0)
    release_on_switch: bool = True
    tenants: list[TenantConfig] = Field(default_factory=lambda: list(_default_tenants()))
    active_tenant: str | None = None
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    saved_queries: list[SavedQueryConfig] = Field(default_factory=list)

    def tenant(self, tenant_id: str) -> TenantConfig | None:
        for entry in self.tenants:
            if entry.tenant_id == tenant_id:
                return entry
        return None

    def with_active_tenant(self, tenant_id: str | None) -> AppConfig:
        """Return a copy with the active tenant updated."""

        return self.model_copy(update={"active_tenant": tenant_id})

    def with_tenant(self, tenant: TenantConfig) -> AppConfig:
        """Return a copy with the tenant added, or replaced in place if it exists."""

        tenants = list(self.tenants)
        for idx, entry in enumerate(tenants):
            if entry.tenant_id == tenant.tenant_id:
                tenants[idx] = tenant
                break
        else:
            tenants.append(tenant)
        return self.model_copy(update={"tenants": tenants})

    def without_tenant(self, tenant_id: str) -> AppConfig:
        """Return a copy without the tenant; clears the active pointer if it matched."""

        tenants = [entry for entry in self.tenants if entry.tenant_id != tenant_id]
        active = None if self.active_tenant == tenant_id else self.active_tenant
        return self.model_copy(update={"tenants": tenants, "active_tenant": active})

    def with_saved_query(self, query: SavedQueryConfig) -> AppConfig:
        queries = [entry for entry in self.saved_queries if entry.id != query.id]
        queries.append(query)
        return self.model_copy(update={"saved_queries": queries})

    def without_saved_query(self, query_id: str) -> AppConfig:
        queries = [entry for entry in self.saved_queries if entry.id != query_id]
        return self.model_copy(update={"saved_queries": queries})


class ConfigStore:
    """Owns the current AppConfig and writes every change to disk."""

    def __init__(self, config: AppConfig, *, path: Path | None = None, autosave: bool = True) -> None:
        self._config = config
        self._path = path
        self._autosave = autosave

    @property
    def config(self) -> AppConfig:
        return self._config

    def update(self, config: AppConfig) -> None:
        self._config = config
        if self._autosave:
            save_config(config, self._path)


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file(path or CONFIG_FILE)
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        LOG.warning("Unreadable config file, using defaults", exc_info=True)
        return AppConfig()

    try:
        return AppConfig(**data)
    except ValidationError:
        LOG.warning("Invalid config file, using defaults", exc_info=True)
        return AppConfig()


def save_config(config: AppConfig, path: Path | None = None) -> None:
    """Persist configuration to disk."""

    target = path or CONFIG_FILE
    target.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f"theme = {_quote(config.theme)}",
        f"page_size = {config.page_size}",
        f"release_on_switch = {_bool(config.release_on_switch)}",
    ]
    if config.active_tenant:
        lines.append(f"active_tenant = {_quote(config.active_tenant)}")
    discovery = config.discovery
    lines.extend(
        [
            "",
            "[discovery]",
            f"base_url = {_quote(discovery.base_url)}",
            f"timeout_ms = {discovery.timeout_ms}",
            f"probe_timeout_ms = {discovery.probe_timeout_ms}",
            f"health_timeout_ms = {discovery.health_timeout_ms}",
            f"fallback_enabled = {_bool(discovery.fallback_enabled)}",
            f"fallback_collections = {_array(discovery.fallback_collections)}",
        ]
    )
    # An empty tenant list is written as an empty array so it does not reload as the defaults.
    if not config.tenants:
        lines.insert(3, "tenants = []")
    for tenant in config.tenants:
        lines.append("")
        lines.append("[[tenants]]")
        lines.append(f"tenant_id = {_quote(tenant.tenant_id)}")
        if tenant.display_name:
            lines.append(f"display_name = {_quote(tenant.display_name)}")
        lines.append(f"backend = {_quote(tenant.backend)}")
        if tenant.credentials_path:
            lines.append(f"credentials_path = {_quote(tenant.credentials_path)}")
        if tenant.credentials:
            pairs = ", ".join(
                f"{_quote(key)} = {_quote(value)}" for key, value in sorted(tenant.credentials.items())
            )
            lines.append(f"credentials = {{ {pairs} }}")
    for query in config.saved_queries:
        lines.append("")
        lines.append("[[saved_queries]]")
        lines.append(f"id = {_quote(query.id)}")
        lines.append(f"name = {_quote(query.name)}")
        lines.append(f"collection_path = {_quote(query.collection_path)}")
        lines.append(f"page_size = {query.page_size}")
        filters = ", ".join(
            _inline_table(field=entry.field, operator=entry.operator, value=entry.value)
            for entry in query.filters
        )
        lines.append(f"filters = [{filters}]")
        orderings = ", ".join(
            _inline_table(field=entry.field, direction=entry.direction) for entry in query.orderings
        )
        lines.append(f"orderings = [{orderings}]")
    target.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _read_config_file(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    for key in ("theme", "active_tenant"):
        value = raw.get(key)
        if isinstance(value, str):
            data[key] = value
    page_size = raw.get("page_size")
    if isinstance(page_size, int) and page_size > 0:
        data["page_size"] = page_size
    release = raw.get("release_on_switch")
    if isinstance(release, bool):
        data["release_on_switch"] = release
    discovery = raw.get("discovery")
    if isinstance(discovery, dict):
        try:
            data["discovery"] = DiscoverySettings(**discovery)
        except ValidationError:
            LOG.warning("Ignoring invalid [discovery] section", exc_info=True)
    tenants = raw.get("tenants")
    if isinstance(tenants, list):
        data["tenants"] = list(_valid_entries(TenantConfig, tenants))
    queries = raw.get("saved_queries")
    if isinstance(queries, list):
        data["saved_queries"] = list(_valid_entries(SavedQueryConfig, queries))
    return data


def _valid_entries(model: type[BaseModel], entries: Iterable[object]) -> Iterable[BaseModel]:
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            yield model(**entry)
        except ValidationError:
            LOG.warning("Skipping invalid %s entry", model.__name__, exc_info=True)


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _bool(value: bool) -> str:
    return "true" if value else "false"


def _array(values: Iterable[str]) -> str:
    return "[" + ", ".join(_quote(value) for value in values) + "]"


def _inline_table(**items: str) -> str:
    pairs = ", ".join(f"{key} = {_quote(value)}" for key, value in items.items())
    return f"{{ {pairs} }}"


def _default_tenants() -> tuple[TenantConfig, ...]:
    """Default tenant shown on first run before config is customized."""

    return (
        TenantConfig(
            tenant_id="demo",
            display_name="Local Demo",
            backend="demo",
        ),
    )


__all__ = [
    "AppConfig",
    "BACKEND_KINDS",
    "CONFIG_FILE",
    "ConfigStore",
    "DiscoverySettings",
    "SavedFilter",
    "SavedOrdering",
    "SavedQueryConfig",
    "TenantConfig",
    "load_config",
    "save_config",
]
