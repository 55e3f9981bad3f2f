"""Query specification, value coercion and the query compiler."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence, Union

from .models import DocumentRow

DOCUMENT_ID = "__name__"
"""Field name that orders or filters by the backend's document identifier."""


class CompileError(ValueError):
    """Raised when a query specification cannot be compiled."""

    def __init__(self, message: str, *, field: str | None = None, collection_path: str | None = None) -> None:
        super().__init__(message)
        self.field = field
        self.collection_path = collection_path


class Operator(str, Enum):
    """Filter operators accepted in a FilterClause."""

    EQ = "=="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    CONTAINS = "contains"
    STARTS_WITH = "starts-with"
    ENDS_WITH = "ends-with"
    IN = "in"
    NOT_IN = "not-in"
    ARRAY_CONTAINS = "array-contains"
    ARRAY_CONTAINS_ANY = "array-contains-any"

    @property
    def client_side(self) -> bool:
        return self in _CLIENT_SIDE

    @property
    def multi_value(self) -> bool:
        return self in _MULTI_VALUE


_CLIENT_SIDE = frozenset({Operator.CONTAINS, Operator.STARTS_WITH, Operator.ENDS_WITH})
_MULTI_VALUE = frozenset({Operator.IN, Operator.NOT_IN, Operator.ARRAY_CONTAINS_ANY})

MAX_LIST_VALUES = {Operator.IN: 30, Operator.NOT_IN: 10, Operator.ARRAY_CONTAINS_ANY: 30}
"""Per-operator cap on list elements enforced by the backend."""


class Direction(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True, slots=True)
class BoolValue:
    value: bool

    @property
    def native(self) -> bool:
        return self.value


@dataclass(frozen=True, slots=True)
class NumberValue:
    value: int | float

    @property
    def native(self) -> int | float:
        return self.value


@dataclass(frozen=True, slots=True)
class StringValue:
    value: str

    @property
    def native(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class ListValue:
    items: tuple[Union[BoolValue, NumberValue, StringValue], ...]

    @property
    def native(self) -> list[Any]:
        return [item.native for item in self.items]


ScalarValue = Union[BoolValue, NumberValue, StringValue]
FilterValue = Union[BoolValue, NumberValue, StringValue, ListValue]


def coerce_value(raw: str) -> ScalarValue:
    """Infer a typed value from user input: boolean, then number, else string."""

    if raw == "true":
        return BoolValue(True)
    if raw == "false":
        return BoolValue(False)
    number = _parse_number(raw)
    if number is not None:
        return NumberValue(number)
    return StringValue(raw)


def _parse_number(raw: str) -> int | float | None:
    text = raw.strip()
    if not text or "_" in text or not text.isascii():
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


@dataclass(frozen=True, slots=True)
class FilterClause:
    field: str
    operator: Operator | str
    raw_value: str = ""


@dataclass(frozen=True, slots=True)
class OrderClause:
    field: str
    direction: Direction | str = Direction.ASC


@dataclass(frozen=True, slots=True)
class QuerySpec:
    """User-built query over one collection."""

    collection_path: str
    filters: tuple[FilterClause, ...] = ()
    orderings: tuple[OrderClause, ...] = ()
    page_size: int = 50

    def __post_init__(self) -> None:
        object.__setattr__(self, "filters", tuple(self.filters))
        object.__setattr__(self, "orderings", tuple(self.orderings))

    def cache_key(self) -> tuple[object, ...]:
        """Hashable identity used to key cursor caches."""

        return (
            self.collection_path,
            tuple((clause.field, str(_enum_value(clause.operator)), clause.raw_value) for clause in self.filters),
            tuple((clause.field, str(_enum_value(clause.direction))) for clause in self.orderings),
            self.page_size,
        )


@dataclass(frozen=True, slots=True)
class FieldConstraint:
    """A backend-ready filter with a typed value."""

    field: str
    operator: Operator
    value: FilterValue


@dataclass(frozen=True, slots=True)
class Ordering:
    field: str
    direction: Direction


@dataclass(frozen=True, slots=True)
class CompiledQuery:
    """Backend constraints plus the filters evaluated after each page is fetched."""

    collection_path: str
    constraints: tuple[FieldConstraint, ...]
    orderings: tuple[Ordering, ...]
    limit: int
    post_filters: tuple[FieldConstraint, ...] = ()


def compile_query(spec: QuerySpec, *, paginated: bool = True) -> CompiledQuery:
    """Translate a QuerySpec into backend constraints without touching the network."""

    path = spec.collection_path.strip("/")
    if not path:
        raise CompileError("Select a collection before running a query.")
    if len(path.split("/")) % 2 == 0:
        raise CompileError(f"'{spec.collection_path}' is a document path, not a collection.", collection_path=path)
    if not isinstance(spec.page_size, int) or isinstance(spec.page_size, bool) or spec.page_size <= 0:
        raise CompileError(f"Page size must be a positive integer, got {spec.page_size!r}.", collection_path=path)

    constraints: list[FieldConstraint] = []
    post_filters: list[FieldConstraint] = []
    for clause in spec.filters:
        field = clause.field.strip()
        if not field:
            raise CompileError("Filter field must not be empty.", collection_path=path)
        operator = _parse_operator(clause.operator, field=field, collection_path=path)
        value = _compile_value(operator, clause.raw_value, field=field, collection_path=path)
        constraint = FieldConstraint(field=field, operator=operator, value=value)
        if operator.client_side:
            post_filters.append(constraint)
        else:
            constraints.append(constraint)

    orderings: list[Ordering] = []
    for clause in spec.orderings:
        field = clause.field.strip()
        if not field:
            raise CompileError("Order field must not be empty.", collection_path=path)
        orderings.append(Ordering(field=field, direction=_parse_direction(clause.direction, field, path)))
    if not orderings and paginated:
        orderings.append(Ordering(field=DOCUMENT_ID, direction=Direction.ASC))

    return CompiledQuery(
        collection_path=path,
        constraints=tuple(constraints),
        orderings=tuple(orderings),
        limit=spec.page_size,
        post_filters=tuple(post_filters),
    )


def _compile_value(operator: Operator, raw: str, *, field: str, collection_path: str) -> FilterValue:
    if operator.client_side:
        return StringValue(raw)
    if operator.multi_value:
        items = tuple(coerce_value(part.strip()) for part in raw.split(",") if part.strip())
        if not items:
            raise CompileError(
                f"Operator '{operator.value}' on '{field}' needs at least one comma-separated value.",
                field=field,
                collection_path=collection_path,
            )
        limit = MAX_LIST_VALUES[operator]
        if len(items) > limit:
            raise CompileError(
                f"Operator '{operator.value}' on '{field}' accepts at most {limit} values, got {len(items)}.",
                field=field,
                collection_path=collection_path,
            )
        return ListValue(items)
    return coerce_value(raw)


def _parse_operator(value: Operator | str, *, field: str, collection_path: str) -> Operator:
    try:
        return Operator(_enum_value(value))
    except ValueError:
        raise CompileError(
            f"Unknown operator '{value}' for field '{field}'.",
            field=field,
            collection_path=collection_path,
        ) from None


def _parse_direction(value: Direction | str, field: str, collection_path: str) -> Direction:
    try:
        return Direction(str(_enum_value(value)).lower())
    except ValueError:
        raise CompileError(
            f"Unknown sort direction '{value}' for field '{field}'.",
            field=field,
            collection_path=collection_path,
        ) from None


def _enum_value(value: object) -> object:
    return value.value if isinstance(value, Enum) else value


def lookup_field(data: Mapping[str, Any], field: str) -> tuple[bool, Any]:
    """Resolve a dotted field path; returns (found, value)."""

    current: Any = data
    for part in field.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return False, None
        current = current[part]
    return True, current


def matches_post_filters(row: DocumentRow, filters: Sequence[FieldConstraint]) -> bool:
    """Evaluate string operators the backend cannot run."""

    for constraint in filters:
        if constraint.field == DOCUMENT_ID:
            found, value = True, row.id
        else:
            found, value = lookup_field(row.data, constraint.field)
        if not found or value is None:
            return False
        text = value if isinstance(value, str) else str(value)
        needle = str(constraint.value.native)
        if constraint.operator is Operator.CONTAINS and needle not in text:
            return False
        if constraint.operator is Operator.STARTS_WITH and not text.startswith(needle):
            return False
        if constraint.operator is Operator.ENDS_WITH and not text.endswith(needle):
            return False
    return True


def matches_search(row: DocumentRow, text: str) -> bool:
    """Case-insensitive free-text match against the id and top-level values."""

    needle = text.strip().lower()
    if not needle:
        return True
    if needle in row.id.lower():
        return True
    return any(needle in str(value).lower() for value in _flatten(row.data.values()))


def _flatten(values: Iterable[Any]) -> Iterable[Any]:
    for value in values:
        if isinstance(value, Mapping):
            yield from _flatten(value.values())
        elif isinstance(value, (list, tuple)):
            yield from _flatten(value)
        else:
            yield value


__all__ = [
    "BoolValue",
    "CompileError",
    "CompiledQuery",
    "DOCUMENT_ID",
    "Direction",
    "FieldConstraint",
    "FilterClause",
    "FilterValue",
    "ListValue",
    "MAX_LIST_VALUES",
    "NumberValue",
    "Operator",
    "OrderClause",
    "Ordering",
    "QuerySpec",
    "ScalarValue",
    "StringValue",
    "coerce_value",
    "compile_query",
    "lookup_field",
    "matches_post_filters",
    "matches_search",
]
