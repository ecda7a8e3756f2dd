"""
Error taxonomy of the data-access layer.

Every error carries a stable ``kind`` callers branch on, a human readable
message, and the engine error ``code`` kept for diagnostics only.
"""
import logging
import re
from typing import Any, Dict, Optional

from sqlalchemy import exc as sa_exc

logger = logging.getLogger("quizstore.errors")


class ClientError(Exception):
    kind = "unknown"
    default_code: Optional[str] = None

    def __init__(self, message: str, code: Optional[str] = None, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.meta = meta or {}
        self.model: Optional[str] = None
        self.action: Optional[str] = None
        self.error_format = "colorless"

    def with_context(self, model: Optional[str], action: Optional[str], error_format: str) -> "ClientError":
        self.model = model
        self.action = action
        self.error_format = error_format
        return self

    def __str__(self):
        return render(self)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "code": self.code, "meta": self.meta}


class ValidationError(ClientError):
    kind = "validation"
    default_code = "P2009"


class NotFoundError(ClientError):
    kind = "not_found"
    default_code = "P2025"


class UniqueConstraintError(ClientError):
    kind = "unique_constraint"
    default_code = "P2002"

    @property
    def target(self):
        return self.meta.get("target", [])


class ForeignKeyConstraintError(ClientError):
    kind = "foreign_key_constraint"
    default_code = "P2003"


class ConflictError(ClientError):
    kind = "conflict"
    default_code = "P2034"


class TransactionTimeoutError(ClientError, TimeoutError):
    kind = "timeout"
    default_code = "P2028"


class TransactionClosedError(ClientError):
    kind = "transaction_closed"
    default_code = "P2028"


class DatabaseConnectionError(ClientError, ConnectionError):
    kind = "connection"
    default_code = "P1001"


class UnknownRequestError(ClientError):
    kind = "unknown"


_RED = "\x1b[31m"
_BOLD = "\x1b[1m"
_DIM = "\x1b[2m"
_RESET = "\x1b[0m"


def render(error: ClientError) -> str:
    """Formats an error according to the client's ``error_format``."""
    if error.error_format == "minimal" or not error.action:
        return error.message
    target = f"client.{error.model}.{error.action}()" if error.model else f"client.{error.action}()"
    if error.error_format == "pretty":
        return f"{_RED}Invalid {_BOLD}`{target}`{_RESET}{_RED} invocation:{_RESET}\n\n{error.message}" + (
            f"\n{_DIM}[{error.code}]{_RESET}" if error.code else ""
        )
    header = f"Invalid `{target}` invocation:\n\n{error.message}"
    return header + (f"\n[{error.code}]" if error.code else "")


# sqlite: "UNIQUE constraint failed: users.email, users.x"
_SQLITE_UNIQUE = re.compile(r"UNIQUE constraint failed: (.+)$")
# postgres: 'Key (email)=(a@x.com) already exists.'
_PG_UNIQUE = re.compile(r"Key \(([^)]+)\)=")


def _unique_target(message: str):
    match = _SQLITE_UNIQUE.search(message)
    if match:
        return [part.strip().split(".")[-1] for part in match.group(1).split(",")]
    match = _PG_UNIQUE.search(message)
    if match:
        return [part.strip() for part in match.group(1).split(",")]
    return []


def translate(error: Exception) -> ClientError:
    """Maps a SQLAlchemy/driver exception onto the taxonomy."""
    if isinstance(error, ClientError):
        return error
    raw = str(getattr(error, "orig", None) or error)
    if isinstance(error, sa_exc.IntegrityError):
        lowered = raw.lower()
        if "unique" in lowered or "duplicate key" in lowered:
            target = _unique_target(raw)
            fields = ", ".join(target) or "unknown"
            return UniqueConstraintError(
                f"Unique constraint failed on the fields: ({fields})", meta={"target": target, "raw": raw}
            )
        if "foreign key" in lowered:
            return ForeignKeyConstraintError("Foreign key constraint failed", meta={"raw": raw})
        if "not null" in lowered:
            return ValidationError(f"Null constraint violation: {raw}", code="P2011", meta={"raw": raw})
    if isinstance(error, sa_exc.TimeoutError):
        return DatabaseConnectionError(f"Timed out fetching a new connection from the pool: {raw}", code="P2024")
    if isinstance(error, (sa_exc.InterfaceError, sa_exc.DisconnectionError)):
        return DatabaseConnectionError(f"Can't reach database server: {raw}")
    if isinstance(error, sa_exc.OperationalError):
        lowered = raw.lower()
        if "unable to open" in lowered or "could not connect" in lowered or "connection refused" in lowered:
            return DatabaseConnectionError(f"Can't reach database server: {raw}")
    if isinstance(error, (ConnectionError, OSError)):
        return DatabaseConnectionError(f"Can't reach database server: {raw}")
    logger.debug("Unclassified engine error %s: %s", type(error).__name__, raw)
    return UnknownRequestError(raw, meta={"raw": raw, "type": type(error).__name__})
