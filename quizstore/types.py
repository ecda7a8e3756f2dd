import enum


class NullType(enum.Enum):
    """Distinguishes a database NULL from a JSON ``null`` value in Json fields."""

    DB_NULL = "DbNull"
    JSON_NULL = "JsonNull"
    ANY_NULL = "AnyNull"  # filters only

    def __repr__(self):
        return self.value


DbNull = NullType.DB_NULL
JsonNull = NullType.JSON_NULL
AnyNull = NullType.ANY_NULL


class SortOrder(str, enum.Enum):
    ASC = "asc"
    DESC = "desc"


class QueryMode(str, enum.Enum):
    DEFAULT = "default"
    INSENSITIVE = "insensitive"


class IsolationLevel(str, enum.Enum):
    READ_UNCOMMITTED = "ReadUncommitted"
    READ_COMMITTED = "ReadCommitted"
    REPEATABLE_READ = "RepeatableRead"
    SERIALIZABLE = "Serializable"

    @property
    def sql_name(self) -> str:
        """Name SQLAlchemy expects for ``isolation_level``."""
        return {
            "ReadUncommitted": "READ UNCOMMITTED",
            "ReadCommitted": "READ COMMITTED",
            "RepeatableRead": "REPEATABLE READ",
            "Serializable": "SERIALIZABLE",
        }[self.value]
