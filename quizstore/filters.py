"""
Filter builder: turns caller supplied ``where`` dicts into a normalized,
engine-agnostic predicate tree, validated against the schema registry.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple, Union

from quizstore.errors import ValidationError
from quizstore.schema import ModelInfo, REGISTRY, ScalarType, FieldInfo, NUMERIC_TYPES, ORDERABLE_TYPES
from quizstore.types import NullType, QueryMode, SortOrder


@dataclass(frozen=True)
class ScalarCondition:
    field: str
    op: str
    value: Any
    insensitive: bool = False


@dataclass(frozen=True)
class JsonCondition:
    field: str
    op: str
    value: Any
    path: Tuple[Union[str, int], ...] = ()


@dataclass(frozen=True)
class RelationCondition:
    relation: str
    quantifier: str  # is, is_not, some, every, none
    predicate: Optional["Predicate"]
    is_null_check: bool = False


@dataclass(frozen=True)
class And:
    children: Tuple["Predicate", ...]


@dataclass(frozen=True)
class Or:
    children: Tuple["Predicate", ...]


@dataclass(frozen=True)
class Not:
    child: "Predicate"


@dataclass(frozen=True)
class AggregateCondition:
    """Filter on an aggregate of a field, used by `group_by` having clauses."""
    field: str
    aggregate: str  # _count, _avg, _sum, _min, _max
    condition: ScalarCondition


Predicate = Union[ScalarCondition, JsonCondition, RelationCondition, AggregateCondition, And, Or, Not]

COMPARISON_OPS = ("equals", "in", "not_in", "lt", "lte", "gt", "gte", "not")
STRING_OPS = ("contains", "starts_with", "ends_with", "mode")
JSON_OPS = (
    "equals", "not", "path",
    "string_contains", "string_starts_with", "string_ends_with",
    "array_contains", "array_starts_with", "array_ends_with",
)
TO_ONE_KEYS = {"is", "is_not"}
TO_MANY_KEYS = {"some", "every", "none"}


def _fail(model: ModelInfo, message: str):
    raise ValidationError(f"{model.name}: {message}")


# Scalar coercion, shared with the input builder

def coerce_value(model: ModelInfo, field: FieldInfo, value: Any) -> Any:
    """Checks ``value`` against the field's type and returns the stored form."""
    if value is None:
        if not field.nullable and field.type != ScalarType.JSON:
            _fail(model, f"Argument `{field.name}` must not be null")
        return None
    kind = field.type
    if kind == ScalarType.INT:
        if isinstance(value, bool) or not isinstance(value, int):
            _fail(model, f"Argument `{field.name}`: expected Int, got {type(value).__name__}")
        return value
    if kind == ScalarType.STRING:
        if not isinstance(value, str):
            _fail(model, f"Argument `{field.name}`: expected String, got {type(value).__name__}")
        return value
    if kind == ScalarType.BOOLEAN:
        if not isinstance(value, bool):
            _fail(model, f"Argument `{field.name}`: expected Boolean, got {type(value).__name__}")
        return value
    if kind == ScalarType.DECIMAL:
        if isinstance(value, bool):
            _fail(model, f"Argument `{field.name}`: expected Decimal, got bool")
        if isinstance(value, Decimal):
            return value
        if isinstance(value, (int, str)):
            try:
                return Decimal(value)
            except InvalidOperation:
                _fail(model, f"Argument `{field.name}`: {value!r} is not a valid Decimal")
        if isinstance(value, float):
            return Decimal(str(value))
        _fail(model, f"Argument `{field.name}`: expected Decimal, got {type(value).__name__}")
    if kind == ScalarType.DATETIME:
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                _fail(model, f"Argument `{field.name}`: {value!r} is not an ISO-8601 DateTime")
        if not isinstance(value, datetime):
            _fail(model, f"Argument `{field.name}`: expected DateTime, got {type(value).__name__}")
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    return value  # Json


def _coerce_list(model, field, value):
    if not isinstance(value, (list, tuple, set)):
        _fail(model, f"Argument `{field.name}`: `in`/`not_in` expect a list")
    return [coerce_value(model, field, item) for item in value]


# where

def build_where(model: ModelInfo, where: Optional[Dict[str, Any]]) -> Optional[Predicate]:
    if where is None:
        return None
    if not isinstance(where, dict):
        _fail(model, f"`where` must be a dict, got {type(where).__name__}")
    conditions: List[Predicate] = []
    for key, value in where.items():
        if key in ("AND", "OR", "NOT"):
            conditions.append(_logical(model, key, value))
        elif key in model.fields:
            conditions.append(_field_condition(model, model.fields[key], value))
        elif key in model.relations:
            conditions.append(_relation_condition(model, key, value))
        else:
            _fail(model, f"Unknown argument `{key}` in where")
    if len(conditions) == 1:
        return conditions[0]
    return And(tuple(conditions))


def _logical(model: ModelInfo, key: str, value) -> Predicate:
    items = value if isinstance(value, (list, tuple)) else [value]
    children = []
    for item in items:
        child = build_where(model, item)
        if child is not None:
            children.append(child)
    if key == "AND":
        return And(tuple(children))
    if key == "OR":
        return Or(tuple(children))
    return Not(And(tuple(children)))


def _field_condition(model: ModelInfo, field: FieldInfo, value) -> Predicate:
    if field.type == ScalarType.JSON:
        return _json_condition(model, field, value)
    if not isinstance(value, dict):
        return ScalarCondition(field.name, "equals", coerce_value(model, field, value) if value is not None else None)
    allowed = COMPARISON_OPS + (STRING_OPS if field.type == ScalarType.STRING else ())
    unknown = set(value) - set(allowed)
    if unknown:
        _fail(model, f"Unknown filter operator(s) {sorted(unknown)} for {field.type.value} field `{field.name}`")
    if field.type == ScalarType.BOOLEAN and set(value) - {"equals", "not"}:
        _fail(model, f"Boolean field `{field.name}` only supports `equals` and `not`")

    mode = value.get("mode", QueryMode.DEFAULT.value)
    try:
        insensitive = QueryMode(mode) == QueryMode.INSENSITIVE
    except ValueError:
        _fail(model, f"Invalid mode {mode!r}, expected 'default' or 'insensitive'")

    conditions: List[Predicate] = []
    for op, operand in value.items():
        if op == "mode":
            continue
        if op == "not":
            if isinstance(operand, dict):
                nested = dict(operand)
                if insensitive and "mode" not in nested:
                    nested["mode"] = mode
                conditions.append(Not(_field_condition(model, field, nested)))
            else:
                equals = ScalarCondition(field.name, "equals", _nullable(model, field, operand), insensitive)
                conditions.append(Not(equals))
            continue
        if op in ("in", "not_in"):
            operand = _coerce_list(model, field, operand)
        elif op == "equals":
            operand = _nullable(model, field, operand)
        else:
            if operand is None:
                _fail(model, f"Argument `{op}` of `{field.name}` must not be null")
            operand = coerce_value(model, field, operand)
        conditions.append(ScalarCondition(field.name, op, operand, insensitive))
    if len(conditions) == 1:
        return conditions[0]
    return And(tuple(conditions))


def _nullable(model, field, value):
    # equals/not accept null on every field, even required ones
    if value is None:
        return None
    return coerce_value(model, field, value)


def _json_condition(model: ModelInfo, field: FieldInfo, value) -> Predicate:
    if not isinstance(value, dict):
        if value is None:
            _fail(model, f"Json field `{field.name}` cannot be filtered by None, use DbNull, JsonNull or AnyNull")
        return JsonCondition(field.name, "equals", value)
    unknown = set(value) - set(JSON_OPS)
    if unknown:
        _fail(model, f"Unknown Json filter operator(s) {sorted(unknown)} for `{field.name}`")
    path = value.get("path", ())
    if isinstance(path, (str, int)):
        path = (path,)
    if not all(isinstance(p, (str, int)) and not isinstance(p, bool) for p in path):
        _fail(model, f"Json `path` of `{field.name}` must be a list of keys/indexes")
    path = tuple(path)

    conditions: List[Predicate] = []
    for op, operand in value.items():
        if op == "path":
            continue
        if op.startswith("string_") and not isinstance(operand, str):
            _fail(model, f"`{op}` of `{field.name}` expects a string")
        if operand is None:
            _fail(model, f"`{op}` of `{field.name}` does not accept None, use DbNull, JsonNull or AnyNull")
        if isinstance(operand, NullType) and op not in ("equals", "not"):
            _fail(model, f"`{op}` of `{field.name}` does not accept {operand!r}")
        if op == "not":
            conditions.append(Not(JsonCondition(field.name, "equals", operand, path)))
        else:
            conditions.append(JsonCondition(field.name, op, operand, path))
    if not conditions:
        _fail(model, f"Json filter on `{field.name}` needs at least one operator")
    if len(conditions) == 1:
        return conditions[0]
    return And(tuple(conditions))


def _relation_condition(model: ModelInfo, name: str, value) -> Predicate:
    relation = model.relations[name]
    target = REGISTRY.model(relation.target)
    if relation.to_many:
        if not isinstance(value, dict) or not value or set(value) - TO_MANY_KEYS:
            _fail(model, f"To-many relation filter `{name}` expects `some`, `every` or `none`")
        conditions = tuple(
            RelationCondition(name, quantifier, build_where(target, nested or {}))
            for quantifier, nested in value.items()
        )
        return conditions[0] if len(conditions) == 1 else And(conditions)

    if value is None:
        return RelationCondition(name, "is", None, is_null_check=True)
    if not isinstance(value, dict):
        _fail(model, f"Relation filter `{name}` expects a dict")
    if value and set(value) <= TO_ONE_KEYS:
        conditions = []
        for quantifier, nested in value.items():
            if nested is None:
                conditions.append(RelationCondition(name, quantifier, None, is_null_check=True))
            else:
                conditions.append(RelationCondition(name, quantifier, build_where(target, nested)))
        return conditions[0] if len(conditions) == 1 else And(tuple(conditions))
    return RelationCondition(name, "is", build_where(target, value))


# where unique

def build_where_unique(model: ModelInfo, where: Optional[Dict[str, Any]]):
    """Returns ``(predicate, unique_values)`` for a unique selector.

    ``where`` has to name at least one complete unique key; remaining keys are
    regular filters that narrow the match (e.g. an optimistic ``version``).
    """
    if not isinstance(where, dict) or not where:
        _fail(model, "`where` must name a unique field: " + ", ".join(k.name for k in model.unique_keys))
    unique_values: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    for key, value in where.items():
        unique_key = model.unique_key(key)
        if unique_key is not None and unique_key.is_compound:
            if not isinstance(value, dict) or set(value) != set(unique_key.fields):
                _fail(model, f"Compound selector `{key}` needs exactly {list(unique_key.fields)}")
            for name in unique_key.fields:
                unique_values[name] = coerce_value(model, model.fields[name], value[name])
        elif unique_key is not None and value is not None and not isinstance(value, dict):
            unique_values[key] = coerce_value(model, model.fields[key], value)
        else:
            extra[key] = value
    if not unique_values:
        _fail(model, "`where` must name a unique field: " + ", ".join(k.name for k in model.unique_keys))
    conditions: List[Predicate] = [ScalarCondition(name, "equals", v) for name, v in unique_values.items()]
    extra_predicate = build_where(model, extra) if extra else None
    if extra_predicate is not None:
        conditions.append(extra_predicate)
    predicate = conditions[0] if len(conditions) == 1 else And(tuple(conditions))
    return predicate, unique_values


def unique_predicate(unique_values: Dict[str, Any]) -> Predicate:
    conditions = tuple(ScalarCondition(name, "equals", v) for name, v in unique_values.items())
    return conditions[0] if len(conditions) == 1 else And(conditions)


def and_predicates(*predicates: Optional[Predicate]) -> Optional[Predicate]:
    present = tuple(p for p in predicates if p is not None)
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return And(present)


# order_by

@dataclass(frozen=True)
class OrderItem:
    field: str
    descending: bool = False
    nulls: Optional[str] = None  # first / last
    aggregate: Optional[str] = None  # group_by ordering on _count/_sum/...


def _order_direction(model, name, value):
    nulls = None
    if isinstance(value, dict):
        if set(value) - {"sort", "nulls"} or "sort" not in value:
            _fail(model, f"order_by `{name}` expects 'asc', 'desc' or {{'sort': ..., 'nulls': ...}}")
        nulls = value.get("nulls")
        if nulls not in (None, "first", "last"):
            _fail(model, f"order_by `{name}`: nulls must be 'first' or 'last'")
        value = value["sort"]
    try:
        return SortOrder(value) == SortOrder.DESC, nulls
    except ValueError:
        _fail(model, f"order_by `{name}`: invalid direction {value!r}")


AGGREGATE_KEYS = ("_count", "_avg", "_sum", "_min", "_max")


def build_order_by(model: ModelInfo, order_by, allow_aggregates: bool = False) -> List[OrderItem]:
    if order_by is None:
        return []
    entries = order_by if isinstance(order_by, (list, tuple)) else [order_by]
    items: List[OrderItem] = []
    for entry in entries:
        if not isinstance(entry, dict):
            _fail(model, "order_by entries must be dicts")
        if len(entry) != 1 and isinstance(order_by, (list, tuple)):
            _fail(model, "each order_by entry in a list must have exactly one key")
        for name, value in entry.items():
            if allow_aggregates and name in AGGREGATE_KEYS:
                if not isinstance(value, dict):
                    _fail(model, f"order_by `{name}` expects {{field: direction}}")
                for field_name, direction in value.items():
                    _check_orderable(model, field_name, name)
                    descending, nulls = _order_direction(model, field_name, direction)
                    items.append(OrderItem(field_name, descending, nulls, aggregate=name))
                continue
            if name not in model.fields:
                _fail(model, f"Unknown order_by field `{name}`")
            _check_orderable(model, name)
            descending, nulls = _order_direction(model, name, value)
            items.append(OrderItem(name, descending, nulls))
    return items


def _check_orderable(model, name, aggregate=None):
    if name == "_all" and aggregate == "_count":
        return
    if name not in model.fields:
        _fail(model, f"Unknown field `{name}`")
    kind = model.fields[name].type
    if aggregate in ("_avg", "_sum"):
        if kind not in NUMERIC_TYPES:
            _fail(model, f"`{aggregate}` is only available on numeric fields, `{name}` is {kind.value}")
    elif aggregate != "_count" and kind not in ORDERABLE_TYPES:
        _fail(model, f"Field `{name}` of type {kind.value} cannot be ordered")
