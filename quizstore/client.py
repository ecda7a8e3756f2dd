"""
Client surface: ``Client``, per-model delegates and ``TransactionClient``.

Delegate methods validate their arguments immediately and return a
``PreparedOperation``; awaiting it runs the query, and the same object can be
passed to ``Client.transaction([...])``.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

import pydantic
from sqlalchemy import event, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncEngine

from quizstore import database, transactions
from quizstore.config import ClientOptions
from quizstore.errors import ClientError, ValidationError, translate
from quizstore.events import EventHub, QueryTimer
from quizstore.executor import Executor, Operation
from quizstore.inputs import build_args
from quizstore.schema import ModelInfo, REGISTRY

logger = logging.getLogger("quizstore.client")


def _raw(action: str, sql: str, params) -> Operation:
    return Operation(None, action, {"sql": sql, "params": params})


class PreparedOperation:
    def __init__(self, runner, operation: Operation):
        self._runner = runner
        self.operation = operation

    def __await__(self):
        return self._runner._execute(self.operation).__await__()

    def __repr__(self):
        model = self.operation.model.name if self.operation.model else "raw"
        return f"<PreparedOperation {model}.{self.operation.action}>"


class ModelDelegate:
    """Query operations for one model, e.g. ``client.payment``."""

    def __init__(self, runner, model: ModelInfo):
        self._runner = runner
        self._model = model

    def _prepare(self, action: str, args: Dict[str, Any]) -> PreparedOperation:
        try:
            built = build_args(self._model, action, args, global_omit=self._runner._options.omit)
        except ClientError as exc:
            raise self._runner._fail(exc, self._model.delegate, action) from None
        return PreparedOperation(self._runner, Operation(self._model, action, built))

    def find_unique(self, **args) -> PreparedOperation:
        """Row matching a unique selector, or None."""
        return self._prepare("find_unique", args)

    def find_unique_or_throw(self, **args) -> PreparedOperation:
        return self._prepare("find_unique_or_throw", args)

    def find_first(self, **args) -> PreparedOperation:
        """First row matching ``where`` in ``order_by`` order, or None."""
        return self._prepare("find_first", args)

    def find_first_or_throw(self, **args) -> PreparedOperation:
        return self._prepare("find_first_or_throw", args)

    def find_many(self, **args) -> PreparedOperation:
        """List of rows; supports ``cursor``, ``take`` (negative pages backwards), ``skip`` and ``distinct``."""
        return self._prepare("find_many", args)

    def create(self, **args) -> PreparedOperation:
        return self._prepare("create", args)

    def create_many(self, **args) -> PreparedOperation:
        """Inserts scalar rows, returns ``{"count": n}``."""
        return self._prepare("create_many", args)

    def create_many_and_return(self, **args) -> PreparedOperation:
        return self._prepare("create_many_and_return", args)

    def update(self, **args) -> PreparedOperation:
        """Updates the row selected by a unique ``where``.

        Extra filters in ``where`` (e.g. ``version``) make the update
        conditional: when the row exists but no longer matches them,
        ``ConflictError`` is raised.
        """
        return self._prepare("update", args)

    def update_many(self, **args) -> PreparedOperation:
        return self._prepare("update_many", args)

    def update_many_and_return(self, **args) -> PreparedOperation:
        return self._prepare("update_many_and_return", args)

    def upsert(self, **args) -> PreparedOperation:
        return self._prepare("upsert", args)

    def delete(self, **args) -> PreparedOperation:
        return self._prepare("delete", args)

    def delete_many(self, **args) -> PreparedOperation:
        return self._prepare("delete_many", args)

    def aggregate(self, **args) -> PreparedOperation:
        return self._prepare("aggregate", args)

    def group_by(self, **args) -> PreparedOperation:
        return self._prepare("group_by", args)

    def count(self, **args) -> PreparedOperation:
        return self._prepare("count", args)

    def __repr__(self):
        return f"<ModelDelegate {self._model.name}>"


class _Runner:
    """Shared by ``Client`` and ``TransactionClient``: delegates, raw SQL and error reporting."""

    _options: ClientOptions
    _hub: EventHub

    def _attach_delegates(self):
        for model in REGISTRY.models:
            setattr(self, model.delegate, ModelDelegate(self, model))

    def _fail(self, exc: ClientError, model: Optional[str], action: Optional[str]) -> ClientError:
        exc.with_context(model, action, self._options.error_format)
        self._hub.error(str(exc))
        return exc

    def _contextualize(self, exc: Exception, operation: Operation) -> ClientError:
        error = translate(exc)
        model = operation.model.delegate if operation.model else None
        return self._fail(error, model, operation.action)

    def execute_raw(self, sql: str, **params) -> PreparedOperation:
        """Runs a statement with named ``:param`` placeholders; returns the affected row count."""
        return PreparedOperation(self, _raw("execute_raw", sql, params))

    def query_raw(self, sql: str, **params) -> PreparedOperation:
        """Runs a query with named ``:param`` placeholders; returns a list of dicts."""
        return PreparedOperation(self, _raw("query_raw", sql, params))

    def execute_raw_unsafe(self, sql: str, *values) -> PreparedOperation:
        """Passes ``sql`` to the driver as is, with positional DB-API parameters."""
        return PreparedOperation(self, _raw("execute_raw_unsafe", sql, values))

    def query_raw_unsafe(self, sql: str, *values) -> PreparedOperation:
        return PreparedOperation(self, _raw("query_raw_unsafe", sql, values))


class Client(_Runner):
    """Entry point of the data-access layer.

    ``Client(**options)`` accepts the fields of ``ClientOptions``. The engine is
    created lazily on first use or by ``connect()``.
    """

    def __init__(self, **options):
        try:
            self._options = ClientOptions(**options)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid client options: {exc}") from exc
        self._check_omit(self._options.omit)
        self._hub = EventHub(self._options.log_definitions())
        self._engine: Optional[AsyncEngine] = None
        self._attach_delegates()

    @staticmethod
    def _check_omit(omit: Dict[str, Dict[str, bool]]):
        for model_name, fields in omit.items():
            if not REGISTRY.has_model(model_name):
                raise ValidationError(f"Invalid client options: unknown model {model_name!r} in omit")
            model = REGISTRY.model(model_name)
            for name in fields:
                if name not in model.fields:
                    raise ValidationError(
                        f"Invalid client options: unknown field {name!r} of {model_name} in omit"
                    )

    @property
    def url(self) -> str:
        return database.choose_database_url(self._options.url_override)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = database.create_engine(self.url)
            if self._hub.enabled("query"):
                timer = QueryTimer(self._hub)
                sync_engine = self._engine.sync_engine
                event.listen(sync_engine, "before_cursor_execute", timer.before_cursor_execute)
                event.listen(sync_engine, "after_cursor_execute", timer.after_cursor_execute)
                event.listen(sync_engine, "handle_error", timer.handle_error)
        return self._engine

    # lifecycle

    async def connect(self):
        """Creates the engine and checks that the database answers."""
        engine = self.engine
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (sa_exc.SQLAlchemyError, OSError) as exc:
            raise self._fail(translate(exc), None, "connect") from exc
        self._hub.info(f"Connected to {engine.dialect.name} database")

    async def disconnect(self):
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._hub.info("Disconnected")
        await self._hub.drain()

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.disconnect()

    def on(self, level: str, callback: Callable) -> None:
        """Registers ``callback`` for ``query``, ``info``, ``warn`` or ``error`` events."""
        self._hub.on(level, callback)

    # execution

    async def _execute(self, operation: Operation):
        try:
            async with self.engine.begin() as conn:
                return await Executor(conn).run(operation)
        except ClientError as exc:
            raise self._contextualize(exc, operation) from None
        except (sa_exc.SQLAlchemyError, OSError) as exc:
            raise self._contextualize(exc, operation) from exc

    async def transaction(
        self,
        body,
        *,
        isolation_level=None,
        max_wait: Optional[int] = None,
        timeout: Optional[int] = None,
    ):
        """Runs ``body`` atomically.

        ``body`` is either a list of prepared operations (results are returned
        in the same order) or an async callable receiving a ``TransactionClient``
        (its return value is returned). Any error rolls everything back.
        """
        options = self._options.transaction_options.merged(
            isolation_level=isolation_level, max_wait=max_wait, timeout=timeout
        )
        if isinstance(body, (list, tuple)):
            for item in body:
                if not isinstance(item, PreparedOperation):
                    raise self._fail(
                        ValidationError(f"transaction() expects prepared operations, got {type(item).__name__}"),
                        None, "transaction",
                    )
            run = self._batch([item.operation for item in body])
        elif callable(body):
            run = self._interactive(body)
        else:
            raise self._fail(
                ValidationError("transaction() expects a list of operations or an async callable"),
                None, "transaction",
            )
        try:
            return await transactions.run_transaction(self.engine, run, options)
        except ClientError as exc:
            if exc.action is None:
                self._fail(exc, None, "transaction")
            raise

    def _batch(self, operations: List[Operation]):
        async def body(transaction: transactions.Transaction):
            results = []
            for operation in operations:
                try:
                    results.append(await transaction.run(operation))
                except ClientError as exc:
                    raise self._contextualize(exc, operation) from None
            return results

        return body

    def _interactive(self, callback):
        async def body(transaction: transactions.Transaction):
            return await callback(TransactionClient(self, transaction))

        return body


class TransactionClient(_Runner):
    """Delegates and raw SQL bound to one open transaction."""

    def __init__(self, client: Client, transaction: transactions.Transaction):
        self._options = client._options
        self._hub = client._hub
        self._transaction = transaction
        self._attach_delegates()

    @property
    def state(self) -> str:
        return self._transaction.state.value

    async def _execute(self, operation: Operation):
        try:
            return await self._transaction.run(operation)
        except ClientError as exc:
            raise self._contextualize(exc, operation) from None
        except (sa_exc.SQLAlchemyError, OSError) as exc:
            raise self._contextualize(exc, operation) from exc
