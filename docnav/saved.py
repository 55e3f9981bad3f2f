"""Named queries persisted in the config file."""

from __future__ import annotations

import uuid

from .config import ConfigStore, SavedFilter, SavedOrdering, SavedQueryConfig
from .query import Direction, FilterClause, Operator, OrderClause, QuerySpec, compile_query


class SavedQueries:
    """Save, list, load and delete QuerySpecs by id."""

    def __init__(self, config_store: ConfigStore) -> None:
        self._config_store = config_store

    def list(self) -> tuple[SavedQueryConfig, ...]:
        return tuple(self._config_store.config.saved_queries)

    def save(self, name: str, spec: QuerySpec) -> SavedQueryConfig:
        """Store `spec` under `name`; the spec must compile."""

        if not name.strip():
            raise ValueError("Saved query name must not be empty.")
        compile_query(spec)
        entry = SavedQueryConfig(
            id=str(uuid.uuid4()),
            name=name.strip(),
            collection_path=spec.collection_path,
            filters=[
                SavedFilter(field=clause.field, operator=_text(clause.operator), value=clause.raw_value)
                for clause in spec.filters
            ],
            orderings=[
                SavedOrdering(field=clause.field, direction=_text(clause.direction))
                for clause in spec.orderings
            ],
            page_size=spec.page_size,
        )
        self._config_store.update(self._config_store.config.with_saved_query(entry))
        return entry

    def load(self, query_id: str) -> QuerySpec:
        for entry in self._config_store.config.saved_queries:
            if entry.id == query_id:
                return QuerySpec(
                    collection_path=entry.collection_path,
                    filters=tuple(
                        FilterClause(field=item.field, operator=item.operator, raw_value=item.value)
                        for item in entry.filters
                    ),
                    orderings=tuple(
                        OrderClause(field=item.field, direction=item.direction) for item in entry.orderings
                    ),
                    page_size=entry.page_size,
                )
        raise KeyError(query_id)

    def delete(self, query_id: str) -> None:
        self._config_store.update(self._config_store.config.without_saved_query(query_id))


def _text(value: Operator | Direction | str) -> str:
    return value.value if isinstance(value, (Operator, Direction)) else str(value)


__all__ = ["SavedQueries"]
