"""
Relation resolver: shapes raw rows according to a ``Projection``.

Relations are loaded with one batched query per relation and level. To-many
relations that paginate (``take``/``skip``/``cursor``/``distinct``) are loaded
per parent so each parent gets its own page.
"""
from dataclasses import replace
from typing import Any, Dict, List

from sqlalchemy import func, select

from quizstore.filters import ScalarCondition, and_predicates
from quizstore.inputs import Projection, RelationArgs
from quizstore.schema import ModelInfo, REGISTRY


def _shape(model: ModelInfo, row: Dict[str, Any], projection: Projection) -> Dict[str, Any]:
    if projection.scalars is None:
        return {name: row[name] for name in model.fields if name not in projection.omit}
    return {name: row[name] for name in model.fields if name in projection.scalars}


def _key(row: Dict[str, Any], columns):
    return tuple(row[name] for name in columns)


def _in_condition(columns, keys):
    if len(columns) == 1:
        return ScalarCondition(columns[0], "in", [key[0] for key in keys])
    raise NotImplementedError("Compound relation keys are not used by this schema")


async def resolve(executor, model: ModelInfo, rows: List[Dict[str, Any]], projection: Projection):
    """Returns ``rows`` projected, with requested relations and counts attached."""
    shaped = [_shape(model, row, projection) for row in rows]
    if not rows:
        return shaped
    for name, args in projection.relations.items():
        relation = model.relations[name]
        if relation.to_many:
            loaded = await _load_to_many(executor, model, name, rows, args)
        else:
            loaded = await _load_to_one(executor, model, name, rows, args)
        for item, value in zip(shaped, loaded):
            item[name] = value
    if projection.counts is not None:
        counts = await _load_counts(executor, model, rows, projection.counts)
        for item, value in zip(shaped, counts):
            item["_count"] = value
    return shaped


async def _load_to_one(executor, model: ModelInfo, name: str, rows, args: RelationArgs):
    relation = model.relations[name]
    target = REGISTRY.model(relation.target)
    keys = {_key(row, relation.fields) for row in rows}
    keys = {key for key in keys if None not in key}
    if not keys:
        return [None] * len(rows)

    pagination = replace(args.pagination, where=_in_condition(relation.references, keys))
    related = await executor.find_rows(target, pagination)
    shaped = await resolve(executor, target, related, args.projection)
    by_key = {_key(raw, relation.references): item for raw, item in zip(related, shaped)}
    return [by_key.get(_key(row, relation.fields)) for row in rows]


def _paginates(args: RelationArgs) -> bool:
    pagination = args.pagination
    return (
        pagination.take is not None
        or bool(pagination.skip)
        or pagination.cursor is not None
        or bool(pagination.distinct)
    )


async def _load_to_many(executor, model: ModelInfo, name: str, rows, args: RelationArgs):
    relation = model.relations[name]
    target = REGISTRY.model(relation.target)
    keys = [_key(row, relation.fields) for row in rows]

    if _paginates(args):
        result = []
        for key in keys:
            owned = and_predicates(
                args.pagination.where,
                *(ScalarCondition(remote, "equals", value) for remote, value in zip(relation.references, key)),
            )
            related = await executor.find_rows(target, replace(args.pagination, where=owned))
            result.append(await resolve(executor, target, related, args.projection))
        return result

    owned = and_predicates(args.pagination.where, _in_condition(relation.references, set(keys)))
    related = await executor.find_rows(target, replace(args.pagination, where=owned))
    shaped = await resolve(executor, target, related, args.projection)
    grouped: Dict[tuple, List[Dict[str, Any]]] = {key: [] for key in keys}
    for raw, item in zip(related, shaped):
        grouped[_key(raw, relation.references)].append(item)
    return [list(grouped[key]) for key in keys]


async def _load_counts(executor, model: ModelInfo, rows, counts):
    """Counts of related rows per parent, one grouped COUNT query per relation."""
    result = [{} for _ in rows]
    for name, predicate in counts.items():
        relation = model.relations[name]
        target = REGISTRY.model(relation.target)
        table = target.table
        keys = [_key(row, relation.fields) for row in rows]
        group_columns = [table.c[remote] for remote in relation.references]
        owned = and_predicates(predicate, _in_condition(relation.references, set(keys)))
        stmt = (
            select(*group_columns, func.count().label("n"))
            .where(executor.compiler.where(target, owned))
            .group_by(*group_columns)
        )
        found = {}
        for row in (await executor.conn.execute(stmt)).mappings():
            found[tuple(row[remote] for remote in relation.references)] = row["n"]
        for item, key in zip(result, keys):
            item[name] = found.get(key, 0)
    return result
