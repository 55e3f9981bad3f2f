"""Document-store backends handed out by the connection registry."""

from __future__ import annotations

import functools
import inspect
import itertools
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from google.oauth2 import service_account

from .models import ConnectionConfig, DocumentData, DocumentRow
from .query import DOCUMENT_ID, CompiledQuery, Direction, FieldConstraint, Operator, Ordering, lookup_field

LOG = logging.getLogger(__name__)


class ConnectionBackendError(RuntimeError):
    """Raised when a backend client cannot be constructed or reached."""

    def __init__(self, tenant_id: str, cause: BaseException | str) -> None:
        super().__init__(f"Failed to connect to tenant '{tenant_id}': {cause}")
        self.tenant_id = tenant_id
        self.cause = cause


class DocumentNotFoundError(LookupError):
    """Raised when a document id does not exist in the collection."""

    def __init__(self, collection_path: str, document_id: str) -> None:
        super().__init__(f"Document '{document_id}' not found in '{collection_path}'.")
        self.collection_path = collection_path
        self.document_id = document_id


@dataclass(frozen=True, slots=True)
class QueryBatch:
    """One backend page plus the cursor marking its last document."""

    rows: tuple[DocumentRow, ...]
    cursor: object | None


@runtime_checkable
class DocumentStore(Protocol):
    """Surface of a remote document store used by the browser core."""

    async def list_collections(self) -> list[str]: ...

    async def list_subcollections(self, collection_path: str) -> list[str]: ...

    async def query(self, compiled: CompiledQuery, *, start_after: object | None = None) -> QueryBatch: ...

    async def get_document(self, collection_path: str, document_id: str) -> DocumentRow: ...

    async def add_document(self, collection_path: str, data: DocumentData) -> DocumentRow: ...

    async def update_document(self, collection_path: str, document_id: str, data: DocumentData) -> DocumentRow: ...

    async def delete_document(self, collection_path: str, document_id: str) -> None: ...

    async def close(self) -> None: ...


class StoreFactory(Protocol):
    """Builds a DocumentStore for one tenant."""

    async def create(self, config: ConnectionConfig) -> DocumentStore: ...


def resolve_credentials(config: ConnectionConfig) -> dict[str, Any]:
    """Return the credential blob for a tenant, reading the service-account file if configured."""

    credentials: dict[str, Any] = dict(config.credentials)
    if config.credentials_path:
        path = Path(config.credentials_path).expanduser()
        with path.open("r", encoding="utf-8") as handle:
            loaded = json.load(handle)
        if not isinstance(loaded, dict):
            raise ValueError(f"{path} does not contain a JSON object")
        credentials = {**loaded, **credentials}
    return credentials


_FIRESTORE_OPERATORS: Mapping[Operator, str] = {
    Operator.EQ: "==",
    Operator.NE: "!=",
    Operator.LT: "<",
    Operator.LE: "<=",
    Operator.GT: ">",
    Operator.GE: ">=",
    Operator.IN: "in",
    Operator.NOT_IN: "not-in",
    Operator.ARRAY_CONTAINS: "array_contains",
    Operator.ARRAY_CONTAINS_ANY: "array_contains_any",
}


class FirestoreDocumentStore:
    """DocumentStore backed by google-cloud-firestore's AsyncClient."""

    def __init__(self, client: Any) -> None:
        self._client = client

    @property
    def client(self) -> Any:
        return self._client

    async def list_collections(self) -> list[str]:
        return [collection.id async for collection in self._client.collections()]

    async def list_subcollections(self, collection_path: str) -> list[str]:
        paths: list[str] = []
        async for document in self._client.collection(collection_path).list_documents():
            async for child in document.collections():
                paths.append(f"{collection_path}/{document.id}/{child.id}")
        return paths

    async def query(self, compiled: CompiledQuery, *, start_after: object | None = None) -> QueryBatch:
        query = self._client.collection(compiled.collection_path)
        for constraint in compiled.constraints:
            query = query.where(filter=FieldFilter(*self._filter_args(constraint)))
        for ordering in compiled.orderings:
            direction = firestore.Query.DESCENDING if ordering.direction is Direction.DESC else firestore.Query.ASCENDING
            query = query.order_by(ordering.field, direction=direction)
        query = query.limit(compiled.limit)
        if start_after is not None:
            query = query.start_after(start_after)
        snapshots = await query.get()
        rows = tuple(self._to_row(snapshot) for snapshot in snapshots)
        return QueryBatch(rows=rows, cursor=snapshots[-1] if snapshots else None)

    async def get_document(self, collection_path: str, document_id: str) -> DocumentRow:
        snapshot = await self._client.collection(collection_path).document(document_id).get()
        if not snapshot.exists:
            raise DocumentNotFoundError(collection_path, document_id)
        return self._to_row(snapshot)

    async def add_document(self, collection_path: str, data: DocumentData) -> DocumentRow:
        _, reference = await self._client.collection(collection_path).add(dict(data))
        return DocumentRow(id=reference.id, path=reference.path, data=dict(data))

    async def update_document(self, collection_path: str, document_id: str, data: DocumentData) -> DocumentRow:
        reference = self._client.collection(collection_path).document(document_id)
        await reference.update(dict(data))
        return self._to_row(await reference.get())

    async def delete_document(self, collection_path: str, document_id: str) -> None:
        await self._client.collection(collection_path).document(document_id).delete()

    async def close(self) -> None:
        closer = getattr(self._client, "close", None)
        if closer is None:
            return
        result = closer()
        if inspect.isawaitable(result):
            await result

    @staticmethod
    def _filter_args(constraint: FieldConstraint) -> tuple[Any, str, Any]:
        field: Any = firestore.FieldPath.document_id() if constraint.field == DOCUMENT_ID else constraint.field
        return field, _FIRESTORE_OPERATORS[constraint.operator], constraint.value.native

    @staticmethod
    def _to_row(snapshot: Any) -> DocumentRow:
        return DocumentRow(id=snapshot.id, path=snapshot.reference.path, data=snapshot.to_dict() or {})


class FirestoreStoreFactory:
    """Creates one AsyncClient per tenant from its service-account credentials."""

    async def create(self, config: ConnectionConfig) -> FirestoreDocumentStore:
        info = resolve_credentials(config)
        credentials = service_account.Credentials.from_service_account_info(info)
        project = info.get("project_id") or config.tenant_id
        client = firestore.AsyncClient(project=project, credentials=credentials)
        LOG.info("Created Firestore client for project %s", project)
        return FirestoreDocumentStore(client)


DEMO_DATASETS: Mapping[str, Mapping[str, Mapping[str, DocumentData]]] = {
    "demo": {
        "users": {
            "u1": {"name": "Ada", "email": "ada@example.com", "age": 36, "active": True},
            "u2": {"name": "Grace", "email": "grace@example.com", "age": 45, "active": True},
            "u3": {"name": "Linus", "email": "linus@example.com", "age": 28, "active": False},
        },
        "users/u1/sessions": {
            "s1": {"device": "laptop", "minutes": 42},
            "s2": {"device": "phone", "minutes": 7},
        },
        "orders": {
            "o1": {"user": "u1", "total": 120.5, "status": True, "tags": ["gift"]},
            "o2": {"user": "u2", "total": 35, "status": True, "tags": []},
            "o3": {"user": "u1", "total": 12, "status": False, "tags": ["promo"]},
            "o4": {"user": "u3", "total": 99.99, "status": True, "tags": ["promo", "gift"]},
            "o5": {"user": "u2", "total": 7, "status": True, "tags": []},
        },
    },
}


@dataclass(frozen=True, slots=True)
class DemoCursor:
    """Sort key of the last row in a demo page."""

    key: tuple[Any, ...]


class DemoDocumentStore:
    """In-memory DocumentStore that mimics Firestore query semantics."""

    def __init__(self, collections: Mapping[str, Mapping[str, DocumentData]] | None = None) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {
            path.strip("/"): {doc_id: dict(data) for doc_id, data in documents.items()}
            for path, documents in (collections or {}).items()
        }
        self._ids = itertools.count(1)
        self.closed = False
        self.query_calls: list[tuple[CompiledQuery, object | None]] = []

    async def list_collections(self) -> list[str]:
        self._ensure_open()
        return [path for path in self._collections if "/" not in path]

    async def list_subcollections(self, collection_path: str) -> list[str]:
        self._ensure_open()
        prefix = collection_path.strip("/") + "/"
        depth = prefix.count("/") + 1
        return [
            path
            for path in self._collections
            if path.startswith(prefix) and path.count("/") == depth
        ]

    async def query(self, compiled: CompiledQuery, *, start_after: object | None = None) -> QueryBatch:
        self._ensure_open()
        self.query_calls.append((compiled, start_after))
        documents = self._collections.get(compiled.collection_path, {})
        rows = [
            self._row(compiled.collection_path, doc_id, data)
            for doc_id, data in documents.items()
            if all(_matches(doc_id, data, constraint) for constraint in compiled.constraints)
            and all(
                ordering.field == DOCUMENT_ID or lookup_field(data, ordering.field)[0]
                for ordering in compiled.orderings
            )
        ]
        orderings = list(compiled.orderings)
        if not any(ordering.field == DOCUMENT_ID for ordering in orderings):
            orderings.append(_implicit_id_ordering(orderings))
        keyed = [(_sort_key(row, orderings), row) for row in rows]
        compare = functools.partial(_compare_keys, orderings)
        keyed.sort(key=functools.cmp_to_key(lambda left, right: compare(left[0], right[0])))
        if isinstance(start_after, DemoCursor):
            keyed = [item for item in keyed if compare(item[0], start_after.key) > 0]
        page = keyed[: compiled.limit]
        cursor = DemoCursor(page[-1][0]) if page else None
        return QueryBatch(rows=tuple(row for _, row in page), cursor=cursor)

    async def get_document(self, collection_path: str, document_id: str) -> DocumentRow:
        self._ensure_open()
        path = collection_path.strip("/")
        data = self._collections.get(path, {}).get(document_id)
        if data is None:
            raise DocumentNotFoundError(path, document_id)
        return self._row(path, document_id, data)

    async def add_document(self, collection_path: str, data: DocumentData) -> DocumentRow:
        self._ensure_open()
        path = collection_path.strip("/")
        documents = self._collections.setdefault(path, {})
        document_id = f"doc{next(self._ids):04d}"
        while document_id in documents:
            document_id = f"doc{next(self._ids):04d}"
        documents[document_id] = dict(data)
        return self._row(path, document_id, documents[document_id])

    async def update_document(self, collection_path: str, document_id: str, data: DocumentData) -> DocumentRow:
        self._ensure_open()
        path = collection_path.strip("/")
        documents = self._collections.get(path, {})
        if document_id not in documents:
            raise DocumentNotFoundError(path, document_id)
        documents[document_id] = {**documents[document_id], **data}
        return self._row(path, document_id, documents[document_id])

    async def delete_document(self, collection_path: str, document_id: str) -> None:
        self._ensure_open()
        self._collections.get(collection_path.strip("/"), {}).pop(document_id, None)

    async def close(self) -> None:
        self.closed = True

    def _ensure_open(self) -> None:
        if self.closed:
            raise RuntimeError("Demo store has been closed.")

    @staticmethod
    def _row(collection_path: str, document_id: str, data: Mapping[str, Any]) -> DocumentRow:
        return DocumentRow(id=document_id, path=f"{collection_path}/{document_id}", data=dict(data))


class DemoStoreFactory:
    """Creates in-memory stores seeded from a preset keyed by tenant id."""

    def __init__(self, datasets: Mapping[str, Mapping[str, Mapping[str, DocumentData]]] | None = None) -> None:
        self._datasets = DEMO_DATASETS if datasets is None else datasets
        self.created: list[DemoDocumentStore] = []

    async def create(self, config: ConnectionConfig) -> DemoDocumentStore:
        dataset = config.credentials.get("dataset") or config.tenant_id
        store = DemoDocumentStore(self._datasets.get(dataset, {}))
        self.created.append(store)
        return store


class BackendStoreFactory:
    """Dispatches on ConnectionConfig.backend to the matching factory."""

    def __init__(
        self,
        *,
        firestore_factory: StoreFactory | None = None,
        demo_factory: StoreFactory | None = None,
    ) -> None:
        self._factories: dict[str, StoreFactory] = {
            "firestore": firestore_factory or FirestoreStoreFactory(),
            "demo": demo_factory or DemoStoreFactory(),
        }

    async def create(self, config: ConnectionConfig) -> DocumentStore:
        factory = self._factories.get(config.backend)
        if factory is None:
            raise ValueError(f"Unknown backend '{config.backend}'")
        return await factory.create(config)


_TYPE_RANKS: tuple[tuple[type | tuple[type, ...], int], ...] = (
    (bool, 1),
    ((int, float), 2),
    (datetime, 3),
    (str, 4),
    (bytes, 5),
    ((list, tuple), 8),
    (dict, 9),
)


def _type_rank(value: Any) -> int:
    if value is None:
        return 0
    for kind, rank in _TYPE_RANKS:
        if isinstance(value, kind):
            return rank
    return 10


def _compare_values(left: Any, right: Any) -> int:
    left_rank, right_rank = _type_rank(left), _type_rank(right)
    if left_rank != right_rank:
        return -1 if left_rank < right_rank else 1
    if left_rank >= 8:
        left, right = str(left), str(right)
    if left == right:
        return 0
    return -1 if left < right else 1


def _equal(left: Any, right: Any) -> bool:
    return _type_rank(left) == _type_rank(right) and left == right


def _matches(document_id: str, data: Mapping[str, Any], constraint: FieldConstraint) -> bool:
    if constraint.field == DOCUMENT_ID:
        found, value = True, document_id
    else:
        found, value = lookup_field(data, constraint.field)
    target = constraint.value.native
    operator = constraint.operator
    if operator is Operator.EQ:
        return found and _equal(value, target)
    if operator is Operator.NE:
        return found and value is not None and not _equal(value, target)
    if operator in (Operator.LT, Operator.LE, Operator.GT, Operator.GE):
        if not found or _type_rank(value) != _type_rank(target):
            return False
        result = _compare_values(value, target)
        return {
            Operator.LT: result < 0,
            Operator.LE: result <= 0,
            Operator.GT: result > 0,
            Operator.GE: result >= 0,
        }[operator]
    if operator is Operator.IN:
        return found and any(_equal(value, item) for item in target)
    if operator is Operator.NOT_IN:
        return found and value is not None and not any(_equal(value, item) for item in target)
    if operator is Operator.ARRAY_CONTAINS:
        return found and isinstance(value, list) and any(_equal(item, target) for item in value)
    if operator is Operator.ARRAY_CONTAINS_ANY:
        return found and isinstance(value, list) and any(_equal(item, wanted) for item in value for wanted in target)
    return False


def _implicit_id_ordering(orderings: Sequence[Ordering]) -> Ordering:
    direction = orderings[-1].direction if orderings else Direction.ASC
    return Ordering(field=DOCUMENT_ID, direction=direction)


def _sort_key(row: DocumentRow, orderings: Sequence[Ordering]) -> tuple[Any, ...]:
    key: list[Any] = []
    for ordering in orderings:
        if ordering.field == DOCUMENT_ID:
            key.append(row.id)
        else:
            key.append(lookup_field(row.data, ordering.field)[1])
    return tuple(key)


def _compare_keys(orderings: Sequence[Ordering], left: tuple[Any, ...], right: tuple[Any, ...]) -> int:
    for ordering, left_value, right_value in zip(orderings, left, right):
        result = _compare_values(left_value, right_value)
        if result:
            return -result if ordering.direction is Direction.DESC else result
    return 0


__all__ = [
    "BackendStoreFactory",
    "ConnectionBackendError",
    "DEMO_DATASETS",
    "DemoCursor",
    "DemoDocumentStore",
    "DemoStoreFactory",
    "DocumentNotFoundError",
    "DocumentStore",
    "FirestoreDocumentStore",
    "FirestoreStoreFactory",
    "QueryBatch",
    "StoreFactory",
    "resolve_credentials",
]
