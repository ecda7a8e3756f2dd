from quizstore.client import Client, PreparedOperation, TransactionClient
from quizstore.errors import (
    ClientError,
    ConflictError,
    DatabaseConnectionError,
    ForeignKeyConstraintError,
    NotFoundError,
    TransactionClosedError,
    TransactionTimeoutError,
    UniqueConstraintError,
    UnknownRequestError,
    ValidationError,
)
from quizstore.types import AnyNull, DbNull, IsolationLevel, JsonNull

__all__ = [
    "AnyNull",
    "Client",
    "ClientError",
    "ConflictError",
    "DatabaseConnectionError",
    "DbNull",
    "ForeignKeyConstraintError",
    "IsolationLevel",
    "JsonNull",
    "NotFoundError",
    "PreparedOperation",
    "TransactionClient",
    "TransactionClosedError",
    "TransactionTimeoutError",
    "UniqueConstraintError",
    "UnknownRequestError",
    "ValidationError",
]
