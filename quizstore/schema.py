"""
Runtime schema registry.

The SQLAlchemy models in ``quizstore.models`` are the static schema definition.
This module reads them once and exposes the metadata the query engine works
from: scalar fields with their semantic type, relations, and unique keys.
"""
import enum
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy import Boolean, DateTime, Integer, JSON, Numeric, String, UniqueConstraint, inspect
from sqlalchemy.types import TypeDecorator

from quizstore.database import Base
from quizstore import models  # noqa: F401  (registers the mappers)


class ScalarType(str, enum.Enum):
    INT = "Int"
    STRING = "String"
    BOOLEAN = "Boolean"
    JSON = "Json"
    DATETIME = "DateTime"
    DECIMAL = "Decimal"


NUMERIC_TYPES = {ScalarType.INT, ScalarType.DECIMAL}
ORDERABLE_TYPES = NUMERIC_TYPES | {ScalarType.STRING, ScalarType.DATETIME, ScalarType.BOOLEAN}


@dataclass(frozen=True)
class FieldInfo:
    name: str
    type: ScalarType
    nullable: bool
    has_default: bool
    is_id: bool = False
    is_unique: bool = False
    is_updated_at: bool = False

    @property
    def is_required(self) -> bool:
        """True when a create payload has to provide a value."""
        return not (self.nullable or self.has_default or self.is_id or self.is_updated_at)


@dataclass(frozen=True)
class RelationInfo:
    name: str
    target: str
    to_many: bool
    nullable: bool
    # Owning side: FK columns on this model. To-many side: key columns on this model.
    fields: Tuple[str, ...]
    # Columns on the target model the local fields pair with.
    references: Tuple[str, ...]

    @property
    def owns_foreign_key(self) -> bool:
        return not self.to_many


@dataclass(frozen=True)
class UniqueKey:
    name: str
    fields: Tuple[str, ...]

    @property
    def is_compound(self) -> bool:
        return len(self.fields) > 1


@dataclass
class ModelInfo:
    name: str
    delegate: str
    orm: type
    fields: Dict[str, FieldInfo]
    relations: Dict[str, RelationInfo]
    unique_keys: List[UniqueKey]
    id_field: str
    foreign_keys: Dict[str, str] = field(default_factory=dict)  # fk column -> relation name

    @property
    def table(self):
        return self.orm.__table__

    def column(self, name: str):
        return self.table.c[name]

    def unique_key(self, name: str) -> Optional[UniqueKey]:
        for key in self.unique_keys:
            if key.name == name:
                return key
        return None

    def __repr__(self):
        return f"<ModelInfo {self.name}>"


def _scalar_type(column) -> ScalarType:
    col_type = column.type
    if isinstance(col_type, TypeDecorator):
        col_type = col_type.impl_instance
    if isinstance(col_type, Boolean):
        return ScalarType.BOOLEAN
    if isinstance(col_type, Integer):
        return ScalarType.INT
    if isinstance(col_type, Numeric):
        return ScalarType.DECIMAL
    if isinstance(col_type, DateTime):
        return ScalarType.DATETIME
    if isinstance(col_type, JSON):
        return ScalarType.JSON
    if isinstance(col_type, String):
        return ScalarType.STRING
    raise TypeError(f"Unsupported column type {col_type!r} on {column.table.name}.{column.name}")


def _delegate_name(model_name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", model_name).lower()


def _build_model(orm_class) -> ModelInfo:
    mapper = inspect(orm_class)
    table = orm_class.__table__

    fields: Dict[str, FieldInfo] = {}
    id_field = None
    for column in table.columns:
        is_id = bool(column.primary_key)
        if is_id:
            id_field = column.key
        fields[column.key] = FieldInfo(
            name=column.key,
            type=_scalar_type(column),
            nullable=bool(column.nullable) and not is_id,
            has_default=column.default is not None or column.server_default is not None,
            is_id=is_id,
            is_unique=bool(column.unique),
            is_updated_at=column.onupdate is not None,
        )

    unique_keys = [UniqueKey(id_field, (id_field,))]
    unique_keys += [UniqueKey(f.name, (f.name,)) for f in fields.values() if f.is_unique]
    for constraint in table.constraints:
        if isinstance(constraint, UniqueConstraint) and len(constraint.columns) > 1:
            names = tuple(c.key for c in constraint.columns)
            unique_keys.append(UniqueKey("_".join(names), names))

    relations: Dict[str, RelationInfo] = {}
    foreign_keys: Dict[str, str] = {}
    for rel in mapper.relationships:
        to_many = rel.direction.name == "ONETOMANY"
        local = tuple(local_col.key for local_col, _ in rel.local_remote_pairs)
        remote = tuple(remote_col.key for _, remote_col in rel.local_remote_pairs)
        nullable = False
        if not to_many:
            nullable = all(fields[name].nullable for name in local)
            for name in local:
                foreign_keys[name] = rel.key
        relations[rel.key] = RelationInfo(
            name=rel.key,
            target=rel.mapper.class_.__name__,
            to_many=to_many,
            nullable=nullable,
            fields=local,
            references=remote,
        )

    return ModelInfo(
        name=orm_class.__name__,
        delegate=_delegate_name(orm_class.__name__),
        orm=orm_class,
        fields=fields,
        relations=relations,
        unique_keys=unique_keys,
        id_field=id_field,
        foreign_keys=foreign_keys,
    )


class SchemaRegistry:
    """Read-only lookup of every model known to the declarative base."""

    def __init__(self, models: List[ModelInfo]):
        self._models = {m.name: m for m in models}
        self._delegates = {m.delegate: m for m in models}

    @classmethod
    def from_base(cls, base) -> "SchemaRegistry":
        classes = sorted((mapper.class_ for mapper in base.registry.mappers), key=lambda c: c.__name__)
        return cls([_build_model(c) for c in classes])

    def model(self, name: str) -> ModelInfo:
        try:
            return self._models[name]
        except KeyError:
            raise KeyError(f"Unknown model {name!r}") from None

    def by_delegate(self, delegate: str) -> ModelInfo:
        return self._delegates[delegate]

    def has_model(self, name: str) -> bool:
        return name in self._models

    @property
    def models(self) -> List[ModelInfo]:
        return list(self._models.values())

    @property
    def delegates(self) -> List[str]:
        return list(self._delegates)


REGISTRY = SchemaRegistry.from_base(Base)
