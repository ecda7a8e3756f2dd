"""
Query executor: runs normalized operations against one ``AsyncConnection``.

The caller owns the connection and its transaction; multi-statement operations
(nested writes, upsert, conditional update) rely on that transaction for
atomicity.
"""
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, select, text, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from quizstore import relations
from quizstore.compiler import Compiler, aggregate_expression, write_json
from quizstore.errors import ConflictError, NotFoundError, translate
from quizstore.filters import OrderItem, ScalarCondition, and_predicates, unique_predicate
from quizstore.inputs import (
    AggregateSelection, CreateInput, Pagination, ToManyWrite, ToOneWrite, UniqueWhere, UpdateInput,
)
from quizstore.schema import ModelInfo, REGISTRY, ScalarType

logger = logging.getLogger("quizstore.executor")


@dataclass
class Operation:
    model: Optional[ModelInfo]  # None for raw SQL
    action: str
    args: Dict[str, Any]


class Executor:
    def __init__(self, conn: AsyncConnection):
        self.conn = conn
        self.dialect = conn.dialect.name
        self.compiler = Compiler(self.dialect)

    async def run(self, operation: Operation):
        handler = getattr(self, "_" + operation.action)
        logger.debug("Running %s.%s", operation.model.name if operation.model else "raw", operation.action)
        try:
            return await handler(operation.model, operation.args)
        except SQLAlchemyError as exc:
            raise translate(exc) from exc

    # reading

    async def _rows(self, stmt) -> List[Dict[str, Any]]:
        result = await self.conn.execute(stmt)
        return [dict(row._mapping) for row in result]

    async def _first(self, model: ModelInfo, predicate) -> Optional[Dict[str, Any]]:
        table = model.table
        stmt = select(table).where(self.compiler.where(model, predicate)).limit(1)
        rows = await self._rows(stmt)
        return rows[0] if rows else None

    async def _by_pk(self, model: ModelInfo, pk) -> Optional[Dict[str, Any]]:
        return await self._first(model, ScalarCondition(model.id_field, "equals", pk))

    def _total_order(self, model: ModelInfo, order_by: List[OrderItem]) -> List[OrderItem]:
        if any(item.field == model.id_field for item in order_by):
            return list(order_by)
        return list(order_by) + [OrderItem(model.id_field)]

    async def _paginated(self, model: ModelInfo, pagination: Pagination, apply_window: bool = True):
        """Builds the SELECT for a paginated read.

        Returns ``(stmt, reverse)``, or ``(None, False)`` when the cursor row
        does not exist (the page is empty).
        """
        table = model.table
        order = self._total_order(model, pagination.order_by)
        reverse = pagination.take is not None and pagination.take < 0
        stmt = select(table).where(self.compiler.where(model, pagination.where))
        if pagination.cursor is not None:
            cursor_row = await self._first(model, pagination.cursor.predicate)
            if cursor_row is None:
                return None, False
            stmt = stmt.where(self.compiler.after_cursor(table, order, cursor_row, reverse))
        stmt = stmt.order_by(*self.compiler.order_by(table, order, reverse=reverse))
        if apply_window:
            if pagination.skip:
                stmt = stmt.offset(pagination.skip)
            if pagination.take is not None:
                stmt = stmt.limit(abs(pagination.take))
        return stmt, reverse

    async def find_rows(self, model: ModelInfo, pagination: Pagination) -> List[Dict[str, Any]]:
        """Raw rows (every column) for a ``find_many`` style read."""
        if pagination.take == 0:
            return []
        windowed = not pagination.distinct
        stmt, reverse = await self._paginated(model, pagination, apply_window=windowed)
        if stmt is None:
            return []
        rows = await self._rows(stmt)
        if pagination.distinct:
            seen = set()
            unique_rows = []
            for row in rows:
                key = tuple(_hashable(row[name]) for name in pagination.distinct)
                if key not in seen:
                    seen.add(key)
                    unique_rows.append(row)
            rows = unique_rows[pagination.skip:]
            if pagination.take is not None:
                rows = rows[:abs(pagination.take)]
        if reverse:
            rows.reverse()
        return rows

    async def _project(self, model, rows, projection) -> List[Dict[str, Any]]:
        return await relations.resolve(self, model, rows, projection)

    async def _project_one(self, model, row, projection):
        if row is None:
            return None
        shaped = await self._project(model, [row], projection)
        return shaped[0]

    async def _find_unique(self, model, args):
        row = await self._first(model, args["where"].predicate)
        return await self._project_one(model, row, args["projection"])

    async def _find_unique_or_throw(self, model, args):
        result = await self._find_unique(model, args)
        if result is None:
            raise NotFoundError(f"No {model.name} found")
        return result

    async def _find_first(self, model, args):
        pagination = args["pagination"]
        backwards = pagination.take is not None and pagination.take < 0
        rows = await self.find_rows(model, replace(pagination, take=-1 if backwards else 1))
        return await self._project_one(model, rows[0] if rows else None, args["projection"])

    async def _find_first_or_throw(self, model, args):
        result = await self._find_first(model, args)
        if result is None:
            raise NotFoundError(f"No {model.name} found")
        return result

    async def _find_many(self, model, args):
        rows = await self.find_rows(model, args["pagination"])
        return await self._project(model, rows, args["projection"])

    # creating

    def _insert_values(self, model: ModelInfo, scalars: Dict[str, Any]) -> Dict[str, Any]:
        values = {}
        for name, value in scalars.items():
            if model.fields[name].type == ScalarType.JSON:
                value = write_json(value)
            values[name] = value
        return values

    async def _create_row(self, model: ModelInfo, data: CreateInput, parent_values=None) -> Any:
        """Inserts ``data`` with its nested writes and returns the new primary key."""
        values = self._insert_values(model, data.scalars)
        if parent_values:
            values.update(parent_values)
        for name, write in data.to_one.items():
            values.update(await self._to_one_values(model, name, write))

        result = await self.conn.execute(insert(model.table).values(**values))
        pk = values.get(model.id_field)
        if pk is None:
            pk = result.inserted_primary_key[0]

        if data.to_many:
            parent = await self._by_pk(model, pk)
            for name, write in data.to_many.items():
                await self._write_to_many(model, name, parent, write)
        return pk

    async def _to_one_values(self, model: ModelInfo, name: str, write: ToOneWrite) -> Dict[str, Any]:
        """Foreign key values that connect ``model`` to the target of relation ``name``."""
        relation = model.relations[name]
        target = REGISTRY.model(relation.target)
        if write.op == "disconnect":
            return {local: None for local in relation.fields}

        row = None
        if write.op in ("connect", "connect_or_create"):
            row = await self._first(target, write.where.predicate)
            if row is None and write.op == "connect":
                raise NotFoundError(
                    f"No '{target.name}' record was found for a nested connect on relation '{model.name}.{name}'"
                )
        if row is None:
            pk = await self._create_row(target, write.create)
            row = await self._by_pk(target, pk)
        return {local: row[remote] for local, remote in zip(relation.fields, relation.references)}

    async def _write_to_many(self, model: ModelInfo, name: str, parent: Dict[str, Any], write: ToManyWrite):
        relation = model.relations[name]
        target = REGISTRY.model(relation.target)
        table = target.table
        link = {remote: parent[local] for local, remote in zip(relation.fields, relation.references)}
        owned = unique_predicate(link)

        for data in write.create:
            await self._create_row(target, data, parent_values=link)
        if write.create_many:
            rows = []
            for data in write.create_many:
                values = self._insert_values(target, data.scalars)
                values.update(link)
                rows.append(values)
            await self._insert_many(target, rows, write.skip_duplicates)
        if write.set is not None:
            await self.conn.execute(
                update(table).where(self.compiler.where(target, owned)).values(**{k: None for k in link})
            )
            for where in write.set:
                await self._connect_child(target, name, where, link)
        for where in write.connect:
            await self._connect_child(target, name, where, link)
        for where, data in write.connect_or_create:
            existing = await self._first(target, where.predicate)
            if existing is None:
                await self._create_row(target, data, parent_values=link)
            else:
                await self._connect_child(target, name, where, link)
        for where in write.disconnect:
            predicate = and_predicates(where.predicate, owned)
            await self.conn.execute(
                update(table).where(self.compiler.where(target, predicate)).values(**{k: None for k in link})
            )
        for predicate in write.delete_many:
            await self.conn.execute(
                delete(table).where(self.compiler.where(target, and_predicates(owned, predicate)))
            )
        for predicate, data in write.update_many:
            values = self._update_values(target, data)
            if values:
                await self.conn.execute(
                    update(table).where(self.compiler.where(target, and_predicates(owned, predicate))).values(**values)
                )

    async def _connect_child(self, target: ModelInfo, relation_name: str, where: UniqueWhere, link):
        result = await self.conn.execute(
            update(target.table).where(self.compiler.where(target, where.predicate)).values(**link)
        )
        if result.rowcount == 0:
            raise NotFoundError(
                f"No '{target.name}' record was found for a nested connect on relation '{relation_name}'"
            )

    def _dialect_insert(self, table):
        if self.dialect == "postgresql":
            return postgresql.insert(table)
        if self.dialect == "sqlite":
            return sqlite.insert(table)
        return insert(table)

    async def _insert_many(self, model: ModelInfo, rows: List[Dict[str, Any]], skip_duplicates: bool) -> List[Any]:
        """Inserts ``rows`` one by one and returns the primary keys of the rows written."""
        table = model.table
        id_column = table.c[model.id_field]
        pks = []
        for values in rows:
            if skip_duplicates:
                stmt = self._dialect_insert(table).values(**values).on_conflict_do_nothing()
            else:
                stmt = insert(table).values(**values)
            result = await self.conn.execute(stmt.returning(id_column))
            pk = result.scalar_one_or_none()
            if pk is not None:
                pks.append(pk)
        return pks

    async def _create(self, model, args):
        pk = await self._create_row(model, args["data"])
        return await self._project_one(model, await self._by_pk(model, pk), args["projection"])

    async def _create_many(self, model, args):
        rows = [self._insert_values(model, data.scalars) for data in args["data"]]
        pks = await self._insert_many(model, rows, args["skip_duplicates"])
        return {"count": len(pks)}

    async def _create_many_and_return(self, model, args):
        rows = [self._insert_values(model, data.scalars) for data in args["data"]]
        pks = await self._insert_many(model, rows, args["skip_duplicates"])
        return await self._rows_by_pks(model, pks, args["projection"])

    async def _rows_by_pks(self, model, pks, projection):
        if not pks:
            return []
        id_column = model.table.c[model.id_field]
        rows = await self._rows(select(model.table).where(id_column.in_(pks)).order_by(id_column))
        return await self._project(model, rows, projection)

    # updating

    def _update_values(self, model: ModelInfo, data: UpdateInput) -> Dict[str, Any]:
        table = model.table
        values = {}
        for name, change in data.scalars.items():
            column = table.c[name]
            if change.op == "set":
                value = change.value
                if model.fields[name].type == ScalarType.JSON:
                    value = write_json(value)
                values[name] = value
            elif change.op == "increment":
                values[name] = column + change.value
            elif change.op == "decrement":
                values[name] = column - change.value
            elif change.op == "multiply":
                values[name] = self.compiler.scale(column, "multiply", change.value)
            elif change.op == "divide":
                values[name] = self.compiler.scale(column, "divide", change.value)
        return values

    async def _missing_or_conflict(self, model: ModelInfo, where: UniqueWhere, action: str):
        """Error for a conditional write on a unique selector that matched no row."""
        plain = unique_predicate(where.values)
        if where.predicate != plain and await self._first(model, plain) is not None:
            return ConflictError(
                f"Record to {action} was changed concurrently: the {model.name} matching "
                f"{where.values} no longer satisfies the conditions of the request",
                meta={"model": model.name, "where": where.values},
            )
        return NotFoundError(
            f"An operation failed because it depends on one or more records that were required but not found. "
            f"Record to {action} not found.",
            meta={"model": model.name, "where": where.values},
        )

    async def _update_row(self, model: ModelInfo, where: UniqueWhere, data: UpdateInput) -> Any:
        """Conditional update of the row selected by ``where``; returns its primary key."""
        row = await self._first(model, where.predicate)
        if row is None:
            raise await self._missing_or_conflict(model, where, "update")
        pk = row[model.id_field]
        table = model.table

        values = self._update_values(model, data)
        for name, write in data.to_one.items():
            if write.op == "update":
                await self._update_related(model, name, row, write.update)
            else:
                values.update(await self._to_one_values(model, name, write))

        if values:
            stmt = (
                update(table)
                .where(table.c[model.id_field] == pk, self.compiler.where(model, where.predicate))
                .values(**values)
            )
            result = await self.conn.execute(stmt)
            if result.rowcount == 0:
                raise await self._missing_or_conflict(model, where, "update")
            pk = values.get(model.id_field, pk)

        if data.to_many:
            parent = await self._by_pk(model, pk)
            for name, write in data.to_many.items():
                await self._write_to_many(model, name, parent, write)
        return pk

    async def _update_related(self, model: ModelInfo, name: str, row, data: UpdateInput):
        relation = model.relations[name]
        target = REGISTRY.model(relation.target)
        link = {remote: row[local] for local, remote in zip(relation.fields, relation.references)}
        if any(value is None for value in link.values()):
            raise NotFoundError(f"No '{target.name}' record is connected to {model.name}.{name}")
        values = dict(link)
        await self._update_row(target, UniqueWhere(unique_predicate(values), values), data)

    async def _update(self, model, args):
        pk = await self._update_row(model, args["where"], args["data"])
        return await self._project_one(model, await self._by_pk(model, pk), args["projection"])

    def _limited(self, model: ModelInfo, predicate, limit: Optional[int]):
        table = model.table
        condition = self.compiler.where(model, predicate)
        if limit is None:
            return condition
        id_column = table.c[model.id_field]
        ids = select(id_column).where(condition).order_by(id_column).limit(limit)
        return id_column.in_(ids)

    async def _count_where(self, model, condition) -> int:
        stmt = select(func.count()).select_from(model.table).where(condition)
        return (await self.conn.execute(stmt)).scalar_one()

    async def _update_many(self, model, args):
        condition = self._limited(model, args["where"], args["limit"])
        values = self._update_values(model, args["data"])
        if not values:
            return {"count": await self._count_where(model, condition)}
        result = await self.conn.execute(update(model.table).where(condition).values(**values))
        return {"count": result.rowcount}

    async def _update_many_and_return(self, model, args):
        id_column = model.table.c[model.id_field]
        condition = self._limited(model, args["where"], args["limit"])
        pks = (await self.conn.execute(select(id_column).where(condition).order_by(id_column))).scalars().all()
        values = self._update_values(model, args["data"])
        if pks and values:
            await self.conn.execute(update(model.table).where(id_column.in_(pks)).values(**values))
        return await self._rows_by_pks(model, pks, args["projection"])

    async def _upsert(self, model, args):
        where = args["where"]
        existing = await self._first(model, where.predicate)
        if existing is None:
            pk = await self._create_row(model, args["create"])
        else:
            pk = await self._update_row(model, where, args["update"])
        return await self._project_one(model, await self._by_pk(model, pk), args["projection"])

    # deleting

    async def _delete(self, model, args):
        where = args["where"]
        row = await self._first(model, where.predicate)
        if row is None:
            raise NotFoundError(
                "An operation failed because it depends on one or more records that were required but not found. "
                "Record to delete does not exist.",
                meta={"model": model.name, "where": where.values},
            )
        shaped = await self._project_one(model, row, args["projection"])
        table = model.table
        pk = row[model.id_field]
        result = await self.conn.execute(
            delete(table).where(table.c[model.id_field] == pk, self.compiler.where(model, where.predicate))
        )
        if result.rowcount == 0:
            raise NotFoundError("Record to delete does not exist.", meta={"model": model.name, "where": where.values})
        return shaped

    async def _delete_many(self, model, args):
        condition = self._limited(model, args["where"], args["limit"])
        result = await self.conn.execute(delete(model.table).where(condition))
        return {"count": result.rowcount}

    # raw SQL

    async def _execute_raw(self, model, args):
        result = await self.conn.execute(text(args["sql"]), args["params"])
        return result.rowcount

    async def _query_raw(self, model, args):
        result = await self.conn.execute(text(args["sql"]), args["params"])
        return [dict(row._mapping) for row in result]

    async def _execute_raw_unsafe(self, model, args):
        result = await self.conn.exec_driver_sql(args["sql"], tuple(args["params"]))
        return result.rowcount

    async def _query_raw_unsafe(self, model, args):
        result = await self.conn.exec_driver_sql(args["sql"], tuple(args["params"]))
        return [dict(row._mapping) for row in result]

    # aggregation

    def _aggregate_columns(self, model: ModelInfo, source, selection: AggregateSelection):
        """Labeled aggregate expressions plus how to fold each label back into the result."""
        columns = []
        layout = []  # (label, result key, field or None)
        if selection.count is True:
            columns.append(func.count().label("_count"))
            layout.append(("_count", "_count", None))
        elif selection.count:
            for name in selection.count:
                label = f"_count__{name}"
                columns.append(aggregate_expression(source, "_count", name).label(label))
                layout.append((label, "_count", name))
        for key in ("avg", "sum", "min", "max"):
            for name in getattr(selection, key):
                label = f"_{key}__{name}"
                columns.append(aggregate_expression(source, f"_{key}", name).label(label))
                layout.append((label, f"_{key}", name))
        return columns, layout

    def _fold(self, model: ModelInfo, row, layout, selection: AggregateSelection) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key in ("avg", "sum", "min", "max"):
            if getattr(selection, key):
                result[f"_{key}"] = {}
        if selection.count not in (None, True):
            result["_count"] = {}
        for label, key, name in layout:
            value = row[label]
            if name is None:
                result[key] = int(value or 0)
            elif key == "_count":
                result[key][name] = int(value or 0)
            else:
                result[key][name] = _aggregate_value(model, key, name, value)
        return result

    async def _aggregate(self, model, args):
        pagination = args["pagination"]
        selection = args["aggregates"]
        stmt, _ = await self._paginated(model, pagination)
        if stmt is None:
            stmt = select(model.table).where(self.compiler.where(model, None)).limit(0)
        source = stmt.subquery()
        columns, layout = self._aggregate_columns(model, source, selection)
        if not columns:
            return {}
        row = (await self.conn.execute(select(*columns).select_from(source))).mappings().one()
        return self._fold(model, row, layout, selection)

    async def _count(self, model, args):
        result = await self._aggregate(model, args)
        return result["_count"]

    async def _group_by(self, model, args):
        table = model.table
        by = [table.c[name] for name in args["by"]]
        selection = args["aggregates"]
        columns, layout = self._aggregate_columns(model, table, selection)
        stmt = select(*by, *columns).where(self.compiler.where(model, args["where"])).group_by(*by)
        if args["having"] is not None:
            stmt = stmt.having(self.compiler.where(model, args["having"]))
        if args["order_by"]:
            stmt = stmt.order_by(*self.compiler.order_by(table, args["order_by"]))
        if args["skip"]:
            stmt = stmt.offset(args["skip"])
        if args["take"] is not None:
            stmt = stmt.limit(args["take"])
        result = await self.conn.execute(stmt)
        groups = []
        for row in result.mappings():
            group = {name: row[name] for name in args["by"]}
            group.update(self._fold(model, row, layout, selection))
            groups.append(group)
        return groups


def _aggregate_value(model: ModelInfo, key: str, name: str, value):
    if value is None:
        return None
    kind = model.fields[name].type
    if kind == ScalarType.DECIMAL and key in ("_avg", "_sum", "_min", "_max"):
        return value if isinstance(value, Decimal) else Decimal(str(value))
    if kind == ScalarType.INT:
        if key == "_avg":
            return float(value)
        return int(value)
    return value


def _hashable(value):
    if isinstance(value, (dict, list)):
        return repr(value)
    return value
