"""Query specification translator.

Structured tool arguments are validated and turned into a backend-agnostic
:class:`QuerySpec`. A spec carries exactly one :class:`Predicate`; every
result shape (rows, count, aggregate) is planned from that same object so a
filter can never be applied to one shape and dropped for another.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..annotations.constants import (
    DATE_TYPES,
    DATETIME_TYPES,
    INTEGER_TYPES,
    NUMBER_TYPES,
    STRING_KEY_NUMERIC_TYPES,
    STRING_TYPES,
)
from ..annotations.structures import ResourceAnnotation
from ..annotations.walker import ElementField
from ..utils.errors import ValidationError

COMPARISON_OPERATORS = ("eq", "ne", "gt", "ge", "lt", "le")
STRING_OPERATORS = ("contains", "startswith", "endswith")
OPERATORS = COMPARISON_OPERATORS + STRING_OPERATORS + ("in",)
AGGREGATE_FUNCTIONS = ("sum", "avg", "min", "max", "count")

_INT_PATTERN = re.compile(r"^[+-]?\d+$")
_NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


class ResultShape(str, Enum):
    ROWS = "rows"
    COUNT = "count"
    AGGREGATE = "aggregate"


# --- Predicate nodes -------------------------------------------------------


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "eq":
        return left == right
    if op == "ne":
        return left != right
    if left is None or right is None:
        return False
    try:
        if op == "gt":
            return left > right
        if op == "ge":
            return left >= right
        if op == "lt":
            return left < right
        if op == "le":
            return left <= right
    except TypeError:
        return False
    raise ValueError(f"Unsupported comparison '{op}'")


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Any

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        actual = row.get(self.field)
        if self.op == "in":
            return actual in self.value
        if self.op in STRING_OPERATORS:
            if not isinstance(actual, str):
                return False
            if self.op == "contains":
                return self.value in actual
            if self.op == "startswith":
                return actual.startswith(self.value)
            return actual.endswith(self.value)
        return _compare(self.op, actual, self.value)

    def to_dict(self) -> Dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"field": self.field, "op": self.op, "value": value}


@dataclass(frozen=True)
class AllOf:
    nodes: Tuple["Node", ...]

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        return all(node.evaluate(row) for node in self.nodes)

    def to_dict(self) -> Dict[str, Any]:
        return {"and": [node.to_dict() for node in self.nodes]}


@dataclass(frozen=True)
class AnyOf:
    nodes: Tuple["Node", ...]

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        return any(node.evaluate(row) for node in self.nodes)

    def to_dict(self) -> Dict[str, Any]:
        return {"or": [node.to_dict() for node in self.nodes]}


@dataclass(frozen=True)
class Not:
    node: "Node"

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        return not self.node.evaluate(row)

    def to_dict(self) -> Dict[str, Any]:
        return {"not": self.node.to_dict()}


Node = Union[Condition, AllOf, AnyOf, Not]


@dataclass(frozen=True)
class Predicate:
    """Filter conditions ANDed with an optional free-text search."""

    conditions: Tuple[Node, ...] = ()
    free_text_term: Optional[str] = None
    search_fields: Tuple[str, ...] = ()

    def matches(self, row: Mapping[str, Any]) -> bool:
        if not all(node.evaluate(row) for node in self.conditions):
            return False
        if self.free_text_term is None:
            return True
        term = self.free_text_term.lower()
        return any(
            isinstance(row.get(name), str) and term in row[name].lower()
            for name in self.search_fields
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"where": [node.to_dict() for node in self.conditions]}
        if self.free_text_term is not None:
            payload["search"] = {"term": self.free_text_term, "fields": list(self.search_fields)}
        return payload


@dataclass(frozen=True)
class SortKey:
    field: str
    descending: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "dir": "desc" if self.descending else "asc"}


@dataclass(frozen=True)
class Aggregation:
    field: str
    function: str

    @property
    def alias(self) -> str:
        return f"{self.function}_{self.field}"

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "fn": self.function, "as": self.alias}


@dataclass(frozen=True)
class QuerySpec:
    entity: str
    predicate: Predicate = field(default_factory=Predicate)
    columns: Tuple[str, ...] = ()
    sort_keys: Tuple[SortKey, ...] = ()
    page_top: Optional[int] = None
    page_skip: Optional[int] = None
    aggregations: Tuple[Aggregation, ...] = ()
    result_shape: ResultShape = ResultShape.ROWS
    explain: bool = False

    @property
    def filter_conditions(self) -> Tuple[Node, ...]:
        return self.predicate.conditions

    @property
    def free_text_term(self) -> Optional[str]:
        return self.predicate.free_text_term


@dataclass(frozen=True)
class QueryPlan:
    """What a backend executes. ``limit``/``offset`` are only set for rows."""

    entity: str
    shape: ResultShape
    predicate: Predicate
    columns: Tuple[str, ...] = ()
    order_by: Tuple[SortKey, ...] = ()
    limit: Optional[int] = None
    offset: Optional[int] = None
    aggregations: Tuple[Aggregation, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "shape": self.shape.value,
            **self.predicate.to_dict(),
            "columns": list(self.columns),
            "orderby": [key.to_dict() for key in self.order_by],
            "limit": self.limit,
            "offset": self.offset,
            "aggregate": [agg.to_dict() for agg in self.aggregations],
        }


def build_plan(spec: QuerySpec, shape: Optional[ResultShape] = None) -> QueryPlan:
    """Plan ``spec`` for ``shape`` (defaults to the spec's own shape)."""
    shape = ResultShape(shape or spec.result_shape)
    base = QueryPlan(entity=spec.entity, shape=shape, predicate=spec.predicate)
    if shape is ResultShape.ROWS:
        return replace(
            base,
            columns=spec.columns,
            order_by=spec.sort_keys,
            limit=spec.page_top,
            offset=spec.page_skip,
        )
    if shape is ResultShape.AGGREGATE:
        return replace(base, aggregations=spec.aggregations)
    return base


# --- Value coercion --------------------------------------------------------


def _type_error(name: str, expected: str, value: Any) -> ValidationError:
    return ValidationError(
        f"Field '{name}' expects a value of type {expected}, got {value!r}",
        field=name,
        expected=expected,
    )


def coerce_value(type_name: str, value: Any, name: str) -> Any:
    """Check ``value`` against a field type, converting lossless string forms."""
    if value is None:
        return None

    if type_name in INTEGER_TYPES or type_name == "Int64":
        if isinstance(value, bool):
            raise _type_error(name, type_name, value)
        if isinstance(value, int):
            result = value
        elif isinstance(value, float) and value.is_integer():
            result = int(value)
        elif isinstance(value, str) and _INT_PATTERN.match(value.strip()):
            result = int(value.strip())
        else:
            raise _type_error(name, type_name, value)
        if type_name == "UInt8" and not 0 <= result <= 255:
            raise _type_error(name, type_name, value)
        return result

    if type_name in NUMBER_TYPES:
        if isinstance(value, bool):
            raise _type_error(name, type_name, value)
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str) and _NUMBER_PATTERN.match(value.strip()):
            text = value.strip()
            return int(text) if _INT_PATTERN.match(text) else float(text)
        raise _type_error(name, type_name, value)

    if type_name == "Boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise _type_error(name, type_name, value)

    if not isinstance(value, str):
        raise _type_error(name, type_name if type_name != "LargeString" else "String", value)

    try:
        if type_name in DATE_TYPES:
            date.fromisoformat(value)
        elif type_name in DATETIME_TYPES:
            datetime.fromisoformat(value.replace("Z", "+00:00"))
        elif type_name == "UUID":
            uuid.UUID(value)
    except ValueError:
        raise _type_error(name, type_name, value) from None
    return value


def coerce_key(type_name: str, value: Any, name: str) -> Any:
    """Normalize a key value before it is handed to a backend.

    Integer keys accept digit strings; Int64 and Decimal keys travel as
    strings so large values survive JSON number precision.
    """
    if value is None:
        raise ValidationError(f"Missing value for key '{name}'", field=name, expected=type_name)
    if type_name in STRING_KEY_NUMERIC_TYPES:
        if isinstance(value, bool):
            raise _type_error(name, type_name, value)
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str) and _NUMBER_PATTERN.match(value.strip()):
            return value.strip()
        raise _type_error(name, type_name, value)
    return coerce_value(type_name, value, name)


def strip_omitted(payload: Any, omitted: Sequence[str]) -> Any:
    """Remove omitted fields from a row, a list of rows or an aggregate."""
    if not omitted:
        return payload
    if isinstance(payload, list):
        return [strip_omitted(item, omitted) for item in payload]
    if isinstance(payload, dict):
        return {key: value for key, value in payload.items() if key not in omitted}
    return payload


# --- Tool arguments --------------------------------------------------------


class WhereClause(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str
    op: Literal["eq", "ne", "gt", "ge", "lt", "le", "contains", "startswith", "endswith", "in"] = "eq"
    value: Any = None


class OrderByClause(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str
    dir: Literal["asc", "desc"] = "asc"


class AggregateClause(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str
    fn: Literal["sum", "avg", "min", "max", "count"]


class QueryArgs(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    top: Optional[int] = None
    skip: int = 0
    select: Optional[List[str]] = None
    orderby: Optional[List[OrderByClause]] = None
    where: Optional[List[WhereClause]] = None
    q: Optional[str] = None
    return_: Literal["rows", "count", "aggregate"] = Field(default="rows", alias="return")
    aggregate: Optional[List[AggregateClause]] = None
    explain: bool = False


def validation_error_from_pydantic(exc: PydanticValidationError) -> ValidationError:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "arguments"
    return ValidationError(
        f"Invalid argument '{location}': {first.get('msg', 'invalid value')}",
        field=location,
        expected=first.get("type"),
    )


class QueryTranslator:
    """Validates query tool arguments for one entity and builds its QuerySpec."""

    def __init__(self, resource: ResourceAnnotation, *, max_top: int, default_top: int) -> None:
        self.resource = resource
        self.max_top = max_top
        self.default_top = min(default_top, max_top)
        self._fields: Dict[str, ElementField] = {f.name: f for f in resource.scalar_fields}

    @property
    def field_names(self) -> List[str]:
        return list(self._fields)

    @property
    def search_fields(self) -> Tuple[str, ...]:
        return tuple(name for name, f in self._fields.items() if f.type in STRING_TYPES and not f.is_array)

    def field(self, name: str, usage: str) -> ElementField:
        found = self._fields.get(name)
        if found is None:
            raise ValidationError(
                f"Unknown field '{name}' in {usage} for {self.resource.entity_name}. "
                f"Allowed: {', '.join(self._fields)}",
                field=name,
                expected=f"one of {', '.join(self._fields)}",
            )
        return found

    def condition(self, name: str, op: str, value: Any, usage: str = "where") -> Condition:
        target = self.field(name, usage)
        if op not in OPERATORS:
            raise ValidationError(f"Unsupported operator '{op}'", field=name, expected=", ".join(OPERATORS))
        if op in STRING_OPERATORS:
            if target.type not in STRING_TYPES:
                raise ValidationError(
                    f"Operator '{op}' needs a string field, '{name}' is {target.type}",
                    field=name,
                    expected="String",
                )
            if not isinstance(value, str):
                raise _type_error(name, "String", value)
            return Condition(name, op, value)
        if op == "in":
            if not isinstance(value, (list, tuple)) or not value:
                raise ValidationError(
                    f"Operator 'in' on '{name}' needs a non-empty list",
                    field=name,
                    expected=f"list of {target.type}",
                )
            return Condition(name, op, tuple(coerce_value(target.type, item, name) for item in value))
        return Condition(name, op, coerce_value(target.type, value, name))

    def translate(self, arguments: Optional[Mapping[str, Any]]) -> QuerySpec:
        try:
            args = QueryArgs.model_validate(dict(arguments or {}))
        except PydanticValidationError as exc:
            raise validation_error_from_pydantic(exc) from None

        top = self.default_top if args.top is None else args.top
        if top < 1 or top > self.max_top:
            raise ValidationError(
                f"top must be between 1 and {self.max_top}, got {top}",
                field="top",
                expected=f"integer 1..{self.max_top}",
            )
        if args.skip < 0:
            raise ValidationError("skip must not be negative", field="skip", expected="integer >= 0")

        conditions = tuple(self.condition(w.field, w.op, w.value) for w in args.where or [])

        search_fields: Tuple[str, ...] = ()
        term = args.q.strip() if args.q and args.q.strip() else None
        if term is not None:
            search_fields = self.search_fields
            if not search_fields:
                raise ValidationError(
                    f"{self.resource.entity_name} has no text fields to search",
                    field="q",
                )

        columns = tuple(self.field(name, "select").name for name in args.select or []) or tuple(self._fields)
        sort_keys = tuple(
            SortKey(self.field(o.field, "orderby").name, o.dir == "desc") for o in args.orderby or []
        )

        shape = ResultShape(args.return_)
        aggregations: Tuple[Aggregation, ...] = ()
        if args.aggregate and shape is not ResultShape.AGGREGATE:
            raise ValidationError("aggregate requires return='aggregate'", field="aggregate")
        if shape is ResultShape.AGGREGATE:
            if not args.aggregate:
                raise ValidationError(
                    "return='aggregate' requires at least one aggregate entry",
                    field="aggregate",
                    expected="list of {field, fn}",
                )
            aggregations = tuple(self._aggregation(a.field, a.fn) for a in args.aggregate)

        return QuerySpec(
            entity=self.resource.element.qualified_name,
            predicate=Predicate(conditions, term, search_fields),
            columns=columns,
            sort_keys=sort_keys,
            page_top=top,
            page_skip=args.skip,
            aggregations=aggregations,
            result_shape=shape,
            explain=args.explain,
        )

    def _aggregation(self, name: str, function: str) -> Aggregation:
        target = self.field(name, "aggregate")
        numeric = target.type in INTEGER_TYPES + NUMBER_TYPES + ("Int64",)
        if function in ("sum", "avg") and not numeric:
            raise ValidationError(
                f"'{function}' needs a numeric field, '{name}' is {target.type}",
                field=name,
                expected="numeric field",
            )
        return Aggregation(name, function)


__all__ = [
    "AGGREGATE_FUNCTIONS",
    "OPERATORS",
    "AllOf",
    "AnyOf",
    "Aggregation",
    "Condition",
    "Not",
    "Predicate",
    "QueryArgs",
    "QueryPlan",
    "QuerySpec",
    "QueryTranslator",
    "ResultShape",
    "SortKey",
    "build_plan",
    "coerce_key",
    "coerce_value",
    "strip_omitted",
]
