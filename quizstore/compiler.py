"""
Compiles predicate trees and order specifications into SQLAlchemy Core
expressions. JSON operators are dialect specific (SQLite json1 functions and
PostgreSQL jsonb operators).
"""
import json
from typing import List, Optional

from sqlalchemy import (
    JSON, Integer, Numeric, String, Text, and_, cast, exists, false, func, literal, not_, null, or_, select, true,
    type_coerce,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB

from quizstore.filters import (
    AggregateCondition, And, JsonCondition, Not, Or, OrderItem, Predicate, RelationCondition, ScalarCondition,
)
from quizstore.models import Money
from quizstore.schema import ModelInfo, REGISTRY
from quizstore.types import NullType


class Compiler:
    def __init__(self, dialect_name: str):
        self.dialect = dialect_name

    # where

    def where(self, model: ModelInfo, predicate: Optional[Predicate], table=None):
        table = model.table if table is None else table
        if predicate is None:
            return true()
        return self._compile(model, predicate, table)

    def _compile(self, model, node, table):
        if isinstance(node, And):
            if not node.children:
                return true()
            return and_(*(self._compile(model, child, table) for child in node.children))
        if isinstance(node, Or):
            if not node.children:
                return false()
            return or_(*(self._compile(model, child, table) for child in node.children))
        if isinstance(node, Not):
            return not_(self._compile(model, node.child, table))
        if isinstance(node, ScalarCondition):
            return self._scalar(table.c[node.field], node)
        if isinstance(node, JsonCondition):
            if self.dialect == "postgresql":
                return self._json_postgres(table.c[node.field], node)
            return self._json_sqlite(table.c[node.field], node)
        if isinstance(node, RelationCondition):
            return self._relation(model, node, table)
        if isinstance(node, AggregateCondition):
            return self._scalar(aggregate_expression(table, node.aggregate, node.field), node.condition)
        raise TypeError(f"Unknown predicate node {node!r}")

    def _scalar(self, column, node: ScalarCondition):
        op, value = node.op, node.value
        if node.insensitive:
            lowered = func.lower(column)
            if op == "equals":
                return column.is_(None) if value is None else lowered == value.lower()
            if op == "in":
                return lowered.in_([v.lower() for v in value])
            if op == "not_in":
                return lowered.not_in([v.lower() for v in value])
            if op == "contains":
                return column.icontains(value, autoescape=True)
            if op == "starts_with":
                return column.istartswith(value, autoescape=True)
            if op == "ends_with":
                return column.iendswith(value, autoescape=True)
        if op == "equals":
            return column.is_(None) if value is None else column == value
        if op == "in":
            return column.in_(value)
        if op == "not_in":
            return column.not_in(value)
        if op == "lt":
            return column < value
        if op == "lte":
            return column <= value
        if op == "gt":
            return column > value
        if op == "gte":
            return column >= value
        if op == "contains":
            return column.contains(value, autoescape=True)
        if op == "starts_with":
            return column.startswith(value, autoescape=True)
        if op == "ends_with":
            return column.endswith(value, autoescape=True)
        raise ValueError(f"Unsupported operator {op}")

    # JSON, SQLite json1

    @staticmethod
    def _sqlite_path(path) -> str:
        parts = ["$"]
        for key in path:
            if isinstance(key, int):
                parts.append(f"[{key}]")
            else:
                parts.append('."' + key.replace('"', '\\"') + '"')
        return "".join(parts)

    def _sqlite_equals(self, column, path: str, value):
        kind = func.json_type(column, path)
        extracted = func.json_extract(column, path)
        if value is NullType.DB_NULL:
            return column.is_(None) if path == "$" else kind.is_(None)
        if value is NullType.JSON_NULL:
            return kind == "null"
        if value is NullType.ANY_NULL:
            return or_(column.is_(None), kind.is_(None), kind == "null")
        if isinstance(value, bool):
            return kind == ("true" if value else "false")
        if isinstance(value, (int, float)):
            return and_(kind.in_(["integer", "real"]), extracted == value)
        if isinstance(value, str):
            return and_(kind == "text", extracted == value)
        return and_(kind.in_(["object", "array"]), extracted == func.json(json.dumps(value)))

    def _sqlite_element_match(self, element_value, value):
        if isinstance(value, (dict, list)):
            return element_value == func.json(json.dumps(value))
        if isinstance(value, bool):
            return element_value == (1 if value else 0)
        return element_value == value

    def _json_sqlite(self, column, node: JsonCondition):
        path = self._sqlite_path(node.path)
        op, value = node.op, node.value
        if op == "equals":
            return self._sqlite_equals(column, path, value)
        if op.startswith("string_"):
            text_value = type_coerce(func.json_extract(column, path), String)
            matcher = {
                "string_contains": text_value.contains,
                "string_starts_with": text_value.startswith,
                "string_ends_with": text_value.endswith,
            }[op]
            return and_(func.json_type(column, path) == "text", matcher(value, autoescape=True))
        if op == "array_contains":
            wanted = value if isinstance(value, list) else [value]
            checks = []
            for item in wanted:
                elements = func.json_each(column, path).table_valued("value").alias()
                checks.append(exists(select(literal(1)).select_from(elements).where(
                    self._sqlite_element_match(elements.c.value, item)
                )))
            return and_(func.json_type(column, path) == "array", *checks)
        if op in ("array_starts_with", "array_ends_with"):
            element_path = path + ("[0]" if op == "array_starts_with" else "[#-1]")
            if isinstance(value, (dict, list)):
                return func.json_extract(column, element_path) == func.json(json.dumps(value))
            return self._sqlite_equals(column, element_path, value)
        raise ValueError(f"Unsupported Json operator {op}")

    # JSON, PostgreSQL jsonb

    def _json_postgres(self, column, node: JsonCondition):
        document = cast(column, JSONB)
        path = [str(p) for p in node.path]
        target = document.op("#>")(literal(path, ARRAY(Text))) if path else document
        op, value = node.op, node.value
        if op == "equals":
            if value is NullType.DB_NULL:
                return column.is_(None) if not path else target.is_(None)
            if value is NullType.JSON_NULL:
                return func.jsonb_typeof(target) == "null"
            if value is NullType.ANY_NULL:
                return or_(target.is_(None), func.jsonb_typeof(target) == "null")
            return target == cast(literal(json.dumps(value)), JSONB)
        if op.startswith("string_"):
            as_text = document.op("#>>")(literal(path, ARRAY(Text)))
            as_text = type_coerce(as_text, String)
            matcher = {
                "string_contains": as_text.contains,
                "string_starts_with": as_text.startswith,
                "string_ends_with": as_text.endswith,
            }[op]
            return and_(func.jsonb_typeof(target) == "string", matcher(value, autoescape=True))
        if op == "array_contains":
            wanted = value if isinstance(value, list) else [value]
            return target.op("@>")(cast(literal(json.dumps(wanted)), JSONB))
        if op in ("array_starts_with", "array_ends_with"):
            index = 0 if op == "array_starts_with" else -1
            return target.op("->")(index) == cast(literal(json.dumps(value)), JSONB)
        raise ValueError(f"Unsupported Json operator {op}")

    # relations

    def _relation(self, model: ModelInfo, node: RelationCondition, table):
        relation = model.relations[node.relation]
        target_model = REGISTRY.model(relation.target)
        if node.is_null_check:
            fk_null = and_(*(table.c[name].is_(None) for name in relation.fields))
            return fk_null if node.quantifier == "is" else not_(fk_null)

        target = target_model.table.alias()
        join = and_(*(
            target.c[remote] == table.c[local]
            for local, remote in zip(relation.fields, relation.references)
        ))
        inner = self.where(target_model, node.predicate, target)
        if node.quantifier == "every":
            return not_(exists(select(literal(1)).select_from(target).where(join, not_(inner))))
        matching = exists(select(literal(1)).select_from(target).where(join, inner))
        if node.quantifier in ("is", "some"):
            return matching
        return not_(matching)  # is_not, none

    # order by

    def order_by(self, table, items: List[OrderItem], reverse: bool = False):
        clauses = []
        for item in items:
            if item.aggregate:
                column = aggregate_expression(table, item.aggregate, item.field)
            else:
                column = table.c[item.field]
            descending = item.descending != reverse
            clause = column.desc() if descending else column.asc()
            nulls = item.nulls
            if nulls and reverse:
                nulls = "last" if nulls == "first" else "first"
            if nulls == "first":
                clause = clause.nulls_first()
            elif nulls == "last":
                clause = clause.nulls_last()
            clauses.append(clause)
        return clauses

    def _nulls_first(self, item: OrderItem, descending: bool, reverse: bool) -> bool:
        if item.nulls:
            return (item.nulls == "first") != reverse
        # NULL sorts lowest on SQLite and highest on PostgreSQL
        return descending if self.dialect == "postgresql" else not descending

    def scale(self, column, op: str, factor):
        """``multiply``/``divide`` update expression. Money results are rounded to the cent."""
        if not isinstance(column.type, Money):
            return column * factor if op == "multiply" else column / factor
        operand = literal(factor, Numeric(20, 10))
        product = column * operand if op == "multiply" else column / operand
        if self.dialect == "sqlite":
            return cast(func.round(product), Integer)
        return func.round(product, 2)

    def after_cursor(self, table, items: List[OrderItem], cursor_row: dict, reverse: bool = False):
        """Rows at or after ``cursor_row`` in the (possibly reversed) ordering of ``items``.

        ``items`` must end with a unique column so the ordering is total.
        """
        branches = []
        equal_prefix = []
        for item in items:
            column = table.c[item.field]
            value = cursor_row[item.field]
            descending = item.descending != reverse
            nulls_first = self._nulls_first(item, descending, reverse)
            if value is None:
                after = column.is_not(None) if nulls_first else false()
                same = column.is_(None)
            else:
                after = column < value if descending else column > value
                if not nulls_first:
                    after = or_(after, column.is_(None))
                same = column == value
            branches.append(and_(*equal_prefix, after))
            equal_prefix.append(same)
        branches.append(and_(*equal_prefix))
        return or_(*branches)


def write_json(value):
    """Stored form of a Json field value."""
    if value is NullType.DB_NULL:
        return null()
    if value is NullType.JSON_NULL:
        return JSON.NULL
    return value


def aggregate_expression(table, aggregate: str, field_name: str):
    """SQL expression for ``_count``/``_avg``/``_sum``/``_min``/``_max`` of a column."""
    if aggregate == "_count":
        if field_name == "_all":
            return func.count()
        return func.count(table.c[field_name])
    column = table.c[field_name]
    if aggregate == "_avg":
        if isinstance(column.type, Money):
            return func.avg(column, type_=column.type)
        return func.avg(column)
    if aggregate == "_sum":
        return func.sum(column)
    if aggregate == "_min":
        return func.min(column)
    if aggregate == "_max":
        return func.max(column)
    raise ValueError(f"Unknown aggregate {aggregate}")
