"""
Input builder: validates and normalizes the arguments of every operation
(mutation payloads, projections, pagination, aggregation selectors).

Everything here runs synchronously when an operation is built, so structural
mistakes surface as ``ValidationError`` before a connection is touched.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from quizstore.errors import ValidationError
from quizstore.filters import (
    AGGREGATE_KEYS, AggregateCondition, And, Not, Or, OrderItem, Predicate, ScalarCondition, build_order_by, build_where,
    build_where_unique, coerce_value, _field_condition, _check_orderable,
)
from quizstore.schema import ModelInfo, REGISTRY, ScalarType, NUMERIC_TYPES
from quizstore.types import NullType

NUMBER_OPS = ("increment", "decrement", "multiply", "divide")
TO_ONE_CREATE_OPS = {"connect", "create", "connect_or_create"}
TO_ONE_UPDATE_OPS = TO_ONE_CREATE_OPS | {"disconnect", "update"}
TO_MANY_CREATE_OPS = {"create", "create_many", "connect", "connect_or_create"}
TO_MANY_UPDATE_OPS = TO_MANY_CREATE_OPS | {"disconnect", "set", "delete_many", "update_many"}


def _fail(model: ModelInfo, message: str):
    raise ValidationError(f"{model.name}: {message}")


# normalized shapes

@dataclass
class UniqueWhere:
    predicate: Predicate
    values: Dict[str, Any]


@dataclass
class ScalarUpdate:
    op: str  # set, increment, decrement, multiply, divide
    value: Any


@dataclass
class ToOneWrite:
    op: str
    where: Optional[UniqueWhere] = None
    create: Optional["CreateInput"] = None
    update: Optional["UpdateInput"] = None


@dataclass
class ToManyWrite:
    create: List["CreateInput"] = field(default_factory=list)
    create_many: List["CreateInput"] = field(default_factory=list)
    skip_duplicates: bool = False
    connect: List[UniqueWhere] = field(default_factory=list)
    connect_or_create: List[Tuple[UniqueWhere, "CreateInput"]] = field(default_factory=list)
    disconnect: List[UniqueWhere] = field(default_factory=list)
    set: Optional[List[UniqueWhere]] = None
    delete_many: List[Optional[Predicate]] = field(default_factory=list)
    update_many: List[Tuple[Optional[Predicate], "UpdateInput"]] = field(default_factory=list)


@dataclass
class CreateInput:
    scalars: Dict[str, Any] = field(default_factory=dict)
    to_one: Dict[str, ToOneWrite] = field(default_factory=dict)
    to_many: Dict[str, ToManyWrite] = field(default_factory=dict)


@dataclass
class UpdateInput:
    scalars: Dict[str, ScalarUpdate] = field(default_factory=dict)
    to_one: Dict[str, ToOneWrite] = field(default_factory=dict)
    to_many: Dict[str, ToManyWrite] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.scalars or self.to_one or self.to_many)


@dataclass
class Pagination:
    where: Optional[Predicate] = None
    order_by: List[OrderItem] = field(default_factory=list)
    cursor: Optional[UniqueWhere] = None
    take: Optional[int] = None
    skip: int = 0
    distinct: List[str] = field(default_factory=list)


@dataclass
class Projection:
    scalars: Optional[Set[str]]  # None means every field not omitted
    omit: Set[str]
    relations: Dict[str, "RelationArgs"] = field(default_factory=dict)
    counts: Optional[Dict[str, Optional[Predicate]]] = None


@dataclass
class RelationArgs:
    projection: Projection
    pagination: Pagination


# scalar values

def _write_value(model: ModelInfo, name: str, value):
    info = model.fields[name]
    if info.type == ScalarType.JSON:
        if value is None:
            _fail(model, f"Json field `{name}` cannot be set to None, use DbNull or JsonNull")
        if value is NullType.ANY_NULL:
            _fail(model, "AnyNull can only be used in filters")
        if value is NullType.DB_NULL and not info.nullable:
            _fail(model, f"Json field `{name}` is required and cannot be DbNull")
        return value
    return coerce_value(model, info, value)


# create

def build_create(model: ModelInfo, data, parent_relation: Optional[str] = None) -> CreateInput:
    """``parent_relation``: back-relation implied by a nested create (its FK is filled in later)."""
    if not isinstance(data, dict):
        _fail(model, f"`data` must be a dict, got {type(data).__name__}")
    result = CreateInput()
    implied = set(model.relations[parent_relation].fields) if parent_relation else set()
    for key, value in data.items():
        if key in model.fields:
            if key in implied:
                _fail(model, f"`{key}` is set by the parent record in a nested create")
            result.scalars[key] = _write_value(model, key, value)
        elif key in model.relations:
            if key == parent_relation:
                _fail(model, f"`{key}` is set by the parent record in a nested create")
            relation = model.relations[key]
            if relation.to_many:
                result.to_many[key] = _to_many_write(model, key, value, TO_MANY_CREATE_OPS)
            else:
                result.to_one[key] = _to_one_write(model, key, value, TO_ONE_CREATE_OPS)
        else:
            _fail(model, f"Unknown argument `{key}` in data")

    _check_checked_unchecked(model, result.to_one, result.scalars)
    satisfied = set(result.scalars) | implied
    for name in result.to_one:
        satisfied |= set(model.relations[name].fields)
    missing = [f.name for f in model.fields.values() if f.is_required and f.name not in satisfied]
    if missing:
        hints = []
        for name in missing:
            relation = model.foreign_keys.get(name)
            hints.append(f"`{name}`" + (f" (or `{relation}`)" if relation else ""))
        _fail(model, "Missing required argument(s): " + ", ".join(hints))
    return result


def _check_checked_unchecked(model: ModelInfo, to_one: Dict[str, ToOneWrite], scalars: Dict[str, Any]):
    fk_scalars = [name for name in scalars if name in model.foreign_keys]
    if to_one and fk_scalars:
        _fail(
            model,
            f"Relation write(s) {sorted(to_one)} cannot be combined with foreign key field(s) "
            f"{sorted(fk_scalars)}; use either relation writes or raw foreign keys",
        )


def _unique_where(model: ModelInfo, where) -> UniqueWhere:
    predicate, values = build_where_unique(model, where)
    return UniqueWhere(predicate, values)


def _to_one_write(model: ModelInfo, name: str, value, allowed: Set[str]) -> ToOneWrite:
    relation = model.relations[name]
    target = REGISTRY.model(relation.target)
    if not isinstance(value, dict) or len(value) != 1:
        options = ", ".join(sorted(allowed))
        _fail(model, f"Relation `{name}` needs exactly one of: {options}")
    op, arg = next(iter(value.items()))
    if op not in allowed:
        _fail(model, f"Unknown operation `{op}` for relation `{name}`")
    if op == "connect":
        return ToOneWrite("connect", where=_unique_where(target, arg))
    if op == "create":
        return ToOneWrite("create", create=build_create(target, arg))
    if op == "connect_or_create":
        if not isinstance(arg, dict) or set(arg) != {"where", "create"}:
            _fail(model, f"`connect_or_create` on `{name}` needs `where` and `create`")
        return ToOneWrite("connect_or_create", where=_unique_where(target, arg["where"]),
                          create=build_create(target, arg["create"]))
    if op == "disconnect":
        if not relation.nullable:
            _fail(model, f"Relation `{name}` is required and cannot be disconnected")
        if arg is not True:
            _fail(model, f"`disconnect` on `{name}` expects True")
        return ToOneWrite("disconnect")
    # update
    return ToOneWrite("update", update=build_update(target, arg))


def _as_list(value):
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _to_many_write(model: ModelInfo, name: str, value, allowed: Set[str]) -> ToManyWrite:
    relation = model.relations[name]
    target = REGISTRY.model(relation.target)
    back = _back_relation(model, name)
    if not isinstance(value, dict) or not value:
        _fail(model, f"Relation `{name}` expects a dict of: {', '.join(sorted(allowed))}")
    unknown = set(value) - allowed
    if unknown:
        _fail(model, f"Unknown operation(s) {sorted(unknown)} for relation `{name}`")
    write = ToManyWrite()
    for op, arg in value.items():
        if op == "create":
            write.create = [build_create(target, item, parent_relation=back) for item in _as_list(arg)]
        elif op == "create_many":
            if not isinstance(arg, dict) or "data" not in arg or set(arg) - {"data", "skip_duplicates"}:
                _fail(model, f"`create_many` on `{name}` expects {{'data': [...], 'skip_duplicates': bool}}")
            rows = [build_create(target, item, parent_relation=back) for item in _as_list(arg["data"])]
            for row in rows:
                if row.to_one or row.to_many:
                    _fail(target, "`create_many` only accepts scalar fields")
            write.create_many = rows
            write.skip_duplicates = bool(arg.get("skip_duplicates", False))
        elif op == "connect":
            write.connect = [_unique_where(target, item) for item in _as_list(arg)]
        elif op == "connect_or_create":
            for item in _as_list(arg):
                if not isinstance(item, dict) or set(item) != {"where", "create"}:
                    _fail(model, f"`connect_or_create` on `{name}` needs `where` and `create`")
                write.connect_or_create.append(
                    (_unique_where(target, item["where"]), build_create(target, item["create"], parent_relation=back))
                )
        elif op in ("disconnect", "set"):
            back_relation = target.relations[back]
            if op == "disconnect" and not back_relation.nullable:
                _fail(model, f"Records of `{name}` require a parent and cannot be disconnected")
            wheres = [_unique_where(target, item) for item in _as_list(arg)]
            if op == "disconnect":
                write.disconnect = wheres
            else:
                if not back_relation.nullable:
                    _fail(model, f"Records of `{name}` require a parent, `set` is not available")
                write.set = wheres
        elif op == "delete_many":
            write.delete_many = [build_where(target, item or {}) for item in _as_list(arg)]
        elif op == "update_many":
            for item in _as_list(arg):
                if not isinstance(item, dict) or set(item) != {"where", "data"}:
                    _fail(model, f"`update_many` on `{name}` needs `where` and `data`")
                update = build_update(target, item["data"])
                if update.to_one or update.to_many:
                    _fail(target, "`update_many` only accepts scalar fields")
                write.update_many.append((build_where(target, item["where"] or {}), update))
    return write


def _back_relation(model: ModelInfo, name: str) -> str:
    """Name of the owning relation on the target that points back at ``model``."""
    relation = model.relations[name]
    target = REGISTRY.model(relation.target)
    for candidate in target.relations.values():
        if (not candidate.to_many and candidate.target == model.name
                and candidate.fields == relation.references):
            return candidate.name
    raise LookupError(f"No back relation for {model.name}.{name}")


# update

def build_update(model: ModelInfo, data) -> UpdateInput:
    if not isinstance(data, dict):
        _fail(model, f"`data` must be a dict, got {type(data).__name__}")
    result = UpdateInput()
    for key, value in data.items():
        if key in model.fields:
            result.scalars[key] = _scalar_update(model, key, value)
        elif key in model.relations:
            relation = model.relations[key]
            if relation.to_many:
                result.to_many[key] = _to_many_write(model, key, value, TO_MANY_UPDATE_OPS)
            else:
                result.to_one[key] = _to_one_write(model, key, value, TO_ONE_UPDATE_OPS)
        else:
            _fail(model, f"Unknown argument `{key}` in data")
    _check_checked_unchecked(model, result.to_one, result.scalars)
    return result


def _scalar_update(model: ModelInfo, name: str, value) -> ScalarUpdate:
    info = model.fields[name]
    if info.type == ScalarType.JSON or not isinstance(value, dict):
        return ScalarUpdate("set", _write_value(model, name, value))
    if len(value) != 1:
        _fail(model, f"Update of `{name}` needs exactly one operation")
    op, operand = next(iter(value.items()))
    if op == "set":
        return ScalarUpdate("set", _write_value(model, name, operand))
    if op in NUMBER_OPS:
        if info.type not in NUMERIC_TYPES:
            _fail(model, f"`{op}` is only available on numeric fields, `{name}` is {info.type.value}")
        if operand is None:
            _fail(model, f"`{op}` of `{name}` must not be null")
        operand = coerce_value(model, info, operand)
        if op == "divide" and operand == 0:
            _fail(model, f"`divide` of `{name}` by zero")
        return ScalarUpdate(op, operand)
    _fail(model, f"Unknown update operation `{op}` for `{name}`")


# projection

RELATION_QUERY_KEYS = {"where", "order_by", "cursor", "take", "skip", "distinct"}
PROJECTION_KEYS = {"select", "include", "omit"}


def _global_omit(model: ModelInfo, global_omit: Optional[Dict[str, Dict[str, bool]]]) -> Set[str]:
    configured = (global_omit or {}).get(model.name, {})
    return {name for name, flag in configured.items() if flag}


def build_projection(model: ModelInfo, select=None, include=None, omit=None, global_omit=None) -> Projection:
    if select is not None and include is not None:
        _fail(model, "Please either use `include` or `select`, but not both at the same time")
    if select is not None and omit is not None:
        _fail(model, "Please either use `omit` or `select`, but not both at the same time")

    omitted = _global_omit(model, global_omit)
    if omit is not None:
        if not isinstance(omit, dict):
            _fail(model, "`omit` must be a dict of field names to booleans")
        for name, flag in omit.items():
            if name not in model.fields:
                _fail(model, f"Unknown field `{name}` in omit")
            if not isinstance(flag, bool):
                _fail(model, f"`omit.{name}` must be a boolean")
            if flag:
                omitted.add(name)
            else:
                omitted.discard(name)

    if select is not None:
        if not isinstance(select, dict):
            _fail(model, "`select` must be a dict")
        projection = Projection(scalars=set(), omit=set())
        for name, value in select.items():
            if name in model.fields:
                if not isinstance(value, bool):
                    _fail(model, f"`select.{name}` must be a boolean")
                if value:
                    projection.scalars.add(name)
            elif name in model.relations:
                if value:
                    projection.relations[name] = _relation_args(model, name, value, global_omit)
            elif name == "_count":
                projection.counts = _count_selection(model, value)
            else:
                _fail(model, f"Unknown field `{name}` in select")
        return projection

    projection = Projection(scalars=None, omit=omitted)
    if include is not None:
        if not isinstance(include, dict):
            _fail(model, "`include` must be a dict")
        for name, value in include.items():
            if name in model.relations:
                if value:
                    projection.relations[name] = _relation_args(model, name, value, global_omit)
            elif name == "_count":
                projection.counts = _count_selection(model, value)
            elif name in model.fields:
                _fail(model, f"`{name}` is a scalar field, `include` only accepts relations")
            else:
                _fail(model, f"Unknown relation `{name}` in include")
    return projection


def _relation_args(model: ModelInfo, name: str, value, global_omit) -> RelationArgs:
    relation = model.relations[name]
    target = REGISTRY.model(relation.target)
    if value is True:
        return RelationArgs(build_projection(target, global_omit=global_omit), Pagination())
    if not isinstance(value, dict):
        _fail(model, f"`{name}` expects True or a dict of arguments")
    allowed = PROJECTION_KEYS | (RELATION_QUERY_KEYS if relation.to_many else set())
    unknown = set(value) - allowed
    if unknown:
        _fail(model, f"Unknown argument(s) {sorted(unknown)} for relation `{name}`")
    projection = build_projection(
        target, value.get("select"), value.get("include"), value.get("omit"), global_omit=global_omit
    )
    pagination = build_pagination(target, value) if relation.to_many else Pagination()
    return RelationArgs(projection, pagination)


def _count_selection(model: ModelInfo, value) -> Dict[str, Optional[Predicate]]:
    to_many = [r.name for r in model.relations.values() if r.to_many]
    if value is True:
        return {name: None for name in to_many}
    if not isinstance(value, dict) or set(value) != {"select"} or not isinstance(value["select"], dict):
        _fail(model, "`_count` expects True or {'select': {relation: True}}")
    counts: Dict[str, Optional[Predicate]] = {}
    for name, arg in value["select"].items():
        if name not in to_many:
            _fail(model, f"`_count` is only available on to-many relations, got `{name}`")
        if arg is True:
            counts[name] = None
        elif isinstance(arg, dict) and set(arg) <= {"where"}:
            target = REGISTRY.model(model.relations[name].target)
            counts[name] = build_where(target, arg.get("where"))
        elif arg:
            _fail(model, f"`_count.select.{name}` expects True or {{'where': ...}}")
    return counts


# pagination

def _int_arg(model, name, value, minimum=None):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(model, f"`{name}` must be an integer")
    if minimum is not None and value < minimum:
        _fail(model, f"`{name}` must be >= {minimum}")
    return value


def build_pagination(model: ModelInfo, args: Dict[str, Any]) -> Pagination:
    distinct = args.get("distinct") or []
    if isinstance(distinct, str):
        distinct = [distinct]
    for name in distinct:
        if name not in model.fields:
            _fail(model, f"Unknown field `{name}` in distinct")
    cursor = args.get("cursor")
    return Pagination(
        where=build_where(model, args.get("where")),
        order_by=build_order_by(model, args.get("order_by")),
        cursor=_unique_where(model, cursor) if cursor is not None else None,
        take=_int_arg(model, "take", args.get("take")),
        skip=_int_arg(model, "skip", args.get("skip"), minimum=0) or 0,
        distinct=list(distinct),
    )


# aggregation

@dataclass
class AggregateSelection:
    count: Any = None  # True -> plain count, or list of fields (may include "_all")
    avg: List[str] = field(default_factory=list)
    sum: List[str] = field(default_factory=list)
    min: List[str] = field(default_factory=list)
    max: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return self.count is None and not (self.avg or self.sum or self.min or self.max)


def build_aggregates(model: ModelInfo, args: Dict[str, Any]) -> AggregateSelection:
    selection = AggregateSelection()
    count = args.get("_count")
    if count is True:
        selection.count = True
    elif isinstance(count, dict):
        names = [name for name, flag in count.items() if flag]
        for name in names:
            if name != "_all" and name not in model.fields:
                _fail(model, f"Unknown field `{name}` in _count")
        selection.count = names
    elif count not in (None, False):
        _fail(model, "`_count` expects True or a dict of fields")
    for key in ("_avg", "_sum", "_min", "_max"):
        value = args.get(key)
        if value is None:
            continue
        if not isinstance(value, dict):
            _fail(model, f"`{key}` expects a dict of fields")
        names = [name for name, flag in value.items() if flag]
        for name in names:
            _check_orderable(model, name, key)
        setattr(selection, key[1:], names)
    return selection


def build_having(model: ModelInfo, having, by: List[str]):
    if having is None:
        return None
    if not isinstance(having, dict):
        _fail(model, "`having` must be a dict")
    conditions = []
    for key, value in having.items():
        if key in ("AND", "OR", "NOT"):
            items = value if isinstance(value, (list, tuple)) else [value]
            children = tuple(c for c in (build_having(model, item, by) for item in items) if c is not None)
            conditions.append({"AND": And, "OR": Or}.get(key, lambda c: Not(And(c)))(children))
            continue
        if key not in model.fields:
            _fail(model, f"Unknown field `{key}` in having")
        if isinstance(value, dict) and value and set(value) <= set(AGGREGATE_KEYS):
            for aggregate, filters in value.items():
                conditions.extend(_aggregate_conditions(model, key, aggregate, filters))
            continue
        if key not in by:
            _fail(
                model,
                f"Every field used in `having` filters must be in `by` or wrapped in an aggregate; "
                f"`{key}` is not in by {by}",
            )
        conditions.append(_field_condition(model, model.fields[key], value))
    if not conditions:
        return None
    return conditions[0] if len(conditions) == 1 else And(tuple(conditions))


AGGREGATE_FILTER_OPS = ("equals", "in", "not_in", "lt", "lte", "gt", "gte", "not")


def _aggregate_operand(model, name, aggregate, item):
    if item is None:
        return None
    if aggregate == "_count":
        if isinstance(item, bool) or not isinstance(item, int):
            _fail(model, f"`_count` filters of `{name}` expect integers")
        return item
    if aggregate == "_avg":
        if isinstance(item, bool) or not isinstance(item, (int, float, Decimal)):
            _fail(model, f"`_avg` filters of `{name}` expect numbers")
        return item
    return coerce_value(model, model.fields[name], item)


def _aggregate_conditions(model, name, aggregate, filters):
    _check_orderable(model, name, aggregate)
    if not isinstance(filters, dict):
        filters = {"equals": filters}
    result = []
    for op, operand in filters.items():
        if op not in AGGREGATE_FILTER_OPS:
            _fail(model, f"Unknown having operator `{op}`")
        if op in ("in", "not_in"):
            if not isinstance(operand, (list, tuple)):
                _fail(model, f"`{op}` in having expects a list")
            operand = [_aggregate_operand(model, name, aggregate, item) for item in operand]
        else:
            operand = _aggregate_operand(model, name, aggregate, operand)
        if op == "not":
            result.append(Not(AggregateCondition(name, aggregate, ScalarCondition(name, "equals", operand))))
        else:
            result.append(AggregateCondition(name, aggregate, ScalarCondition(name, op, operand)))
    return result


# per-action argument sets

FIND_ARGS = {"where", "order_by", "cursor", "take", "skip", "distinct", "select", "include", "omit"}
UNIQUE_ARGS = {"where", "select", "include", "omit"}
AGGREGATE_ARGS = {"_count", "_avg", "_sum", "_min", "_max"}

ACTION_ARGS = {
    "find_unique": UNIQUE_ARGS,
    "find_unique_or_throw": UNIQUE_ARGS,
    "find_first": FIND_ARGS,
    "find_first_or_throw": FIND_ARGS,
    "find_many": FIND_ARGS,
    "create": {"data", "select", "include", "omit"},
    "create_many": {"data", "skip_duplicates"},
    "create_many_and_return": {"data", "skip_duplicates", "select", "omit"},
    "update": {"where", "data", "select", "include", "omit"},
    "update_many": {"where", "data", "limit"},
    "update_many_and_return": {"where", "data", "limit", "select", "omit"},
    "upsert": {"where", "create", "update", "select", "include", "omit"},
    "delete": UNIQUE_ARGS,
    "delete_many": {"where", "limit"},
    "aggregate": {"where", "order_by", "cursor", "take", "skip"} | AGGREGATE_ARGS,
    "group_by": {"by", "where", "having", "order_by", "take", "skip"} | AGGREGATE_ARGS,
    "count": {"where", "order_by", "cursor", "take", "skip", "select"},
}


def build_args(model: ModelInfo, action: str, args: Dict[str, Any], global_omit=None) -> Dict[str, Any]:
    """Validates ``args`` for ``action`` and returns their normalized form."""
    allowed = ACTION_ARGS[action]
    unknown = set(args) - allowed
    if unknown:
        _fail(model, f"Unknown argument(s) {sorted(unknown)} for `{action}`")

    built: Dict[str, Any] = {}
    if action in ("find_unique", "find_unique_or_throw", "delete", "update", "upsert"):
        if "where" not in args:
            _fail(model, f"`{action}` requires `where`")
        built["where"] = _unique_where(model, args["where"])
    elif action in FIND_ARGS_ACTIONS or action in ("aggregate", "count"):
        built["pagination"] = build_pagination(model, args)
    elif action in ("update_many", "update_many_and_return", "delete_many"):
        built["where"] = build_where(model, args.get("where"))
        built["limit"] = _int_arg(model, "limit", args.get("limit"), minimum=1)

    if action in ("create", "create_many", "create_many_and_return", "update",
                  "update_many", "update_many_and_return") and "data" not in args:
        _fail(model, f"`{action}` requires `data`")
    if action == "create":
        built["data"] = build_create(model, args["data"])
    elif action in ("create_many", "create_many_and_return"):
        rows = [build_create(model, item) for item in _as_list(args["data"])]
        for row in rows:
            if row.to_one or row.to_many:
                _fail(model, f"`{action}` only accepts scalar fields, nested relation writes are not supported")
        built["data"] = rows
        built["skip_duplicates"] = bool(args.get("skip_duplicates", False))
    elif action == "update":
        built["data"] = build_update(model, args["data"])
    elif action in ("update_many", "update_many_and_return"):
        update = build_update(model, args["data"])
        if update.to_one or update.to_many:
            _fail(model, f"`{action}` only accepts scalar fields")
        built["data"] = update
    elif action == "upsert":
        if "create" not in args or "update" not in args:
            _fail(model, "`upsert` requires `create` and `update`")
        built["create"] = build_create(model, args["create"])
        built["update"] = build_update(model, args["update"])

    if action in ("find_unique", "find_unique_or_throw", "find_first", "find_first_or_throw", "find_many",
                  "create", "create_many_and_return", "update", "update_many_and_return", "upsert", "delete"):
        built["projection"] = build_projection(
            model, args.get("select"), args.get("include"), args.get("omit"), global_omit=global_omit
        )

    if action == "aggregate":
        built["aggregates"] = build_aggregates(model, args)
    elif action == "group_by":
        built.update(_group_by_args(model, args))
    elif action == "count":
        select = args.get("select")
        if select is not None and select is not True:
            built["aggregates"] = build_aggregates(model, {"_count": select})
        else:
            built["aggregates"] = AggregateSelection(count=True)
    return built


FIND_ARGS_ACTIONS = ("find_first", "find_first_or_throw", "find_many")


def _group_by_args(model: ModelInfo, args: Dict[str, Any]) -> Dict[str, Any]:
    by = args.get("by")
    if isinstance(by, str):
        by = [by]
    if not by:
        _fail(model, "`group_by` requires a non-empty `by` list")
    for name in by:
        if name not in model.fields:
            _fail(model, f"Unknown field `{name}` in by")
    order_by = build_order_by(model, args.get("order_by"), allow_aggregates=True)
    for item in order_by:
        if item.aggregate is None and item.field not in by:
            _fail(
                model,
                f"Every field used for `order_by` must be included in the `by` argument; "
                f"`{item.field}` is not in by {list(by)}",
            )
    take = _int_arg(model, "take", args.get("take"), minimum=0)
    skip = _int_arg(model, "skip", args.get("skip"), minimum=0)
    if (take is not None or skip) and not order_by:
        _fail(model, "`take` and `skip` in `group_by` require `order_by`")
    return {
        "by": list(by),
        "where": build_where(model, args.get("where")),
        "having": build_having(model, args.get("having"), list(by)),
        "order_by": order_by,
        "take": take,
        "skip": skip or 0,
        "aggregates": build_aggregates(model, args),
    }
