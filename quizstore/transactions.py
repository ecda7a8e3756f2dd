"""
Transaction coordinator.

Both transaction forms run on one dedicated connection: a list of prepared
operations executed in order, or an interactive callback receiving a
``TransactionClient``. ``max_wait`` bounds connection acquisition and
``timeout`` bounds the body; either expiring rolls back and raises
``TransactionTimeoutError``.
"""
import asyncio
import enum
import logging

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from quizstore.config import TransactionOptions
from quizstore.errors import TransactionClosedError, TransactionTimeoutError, ValidationError, translate
from quizstore.executor import Executor, Operation

logger = logging.getLogger("quizstore.transactions")


class TransactionState(str, enum.Enum):
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Transaction:
    """One open database transaction; operations on it are serialized."""

    def __init__(self, conn: AsyncConnection):
        self.conn = conn
        self.state = TransactionState.OPEN
        self._lock = asyncio.Lock()

    def ensure_open(self):
        if self.state != TransactionState.OPEN:
            raise TransactionClosedError(
                f"Transaction API error: Transaction already closed: "
                f"a query cannot be executed on a {self.state.value.replace('_', ' ')} transaction."
            )

    async def run(self, operation: Operation):
        self.ensure_open()
        async with self._lock:
            self.ensure_open()
            return await Executor(self.conn).run(operation)

    async def commit(self):
        self.ensure_open()
        await self.conn.commit()
        self.state = TransactionState.COMMITTED

    async def rollback(self):
        if self.state != TransactionState.OPEN:
            return
        # Flip the state first so racing operations are refused
        self.state = TransactionState.ROLLED_BACK
        try:
            await self.conn.rollback()
        except sa_exc.SQLAlchemyError:
            logger.exception("Rollback failed")


async def _acquire(engine: AsyncEngine, options: TransactionOptions) -> AsyncConnection:
    conn = engine.connect()
    try:
        await asyncio.wait_for(conn.start(), timeout=options.max_wait / 1000)
    except asyncio.TimeoutError:
        raise TransactionTimeoutError(
            f"Unable to start a transaction in the given time ({options.max_wait} ms)",
            meta={"max_wait": options.max_wait},
        ) from None
    except (sa_exc.SQLAlchemyError, OSError) as exc:
        raise translate(exc) from exc
    if options.isolation_level is not None:
        try:
            await conn.execution_options(isolation_level=options.isolation_level.sql_name)
        except sa_exc.ArgumentError as exc:
            await conn.close()
            raise ValidationError(
                f"Isolation level {options.isolation_level.value} is not supported by {engine.dialect.name}"
            ) from exc
    return conn


async def run_transaction(engine: AsyncEngine, body, options: TransactionOptions):
    """Runs ``body(transaction)`` inside a transaction and commits its result.

    Any exception raised by the body rolls everything back and propagates
    unchanged.
    """
    conn = await _acquire(engine, options)
    try:
        await conn.begin()
        transaction = Transaction(conn)
        try:
            result = await asyncio.wait_for(body(transaction), timeout=options.timeout / 1000)
        except TransactionTimeoutError:
            await transaction.rollback()
            raise
        except asyncio.TimeoutError:
            await transaction.rollback()
            logger.warning("Transaction rolled back after exceeding its timeout of %s ms", options.timeout)
            raise TransactionTimeoutError(
                f"Transaction already closed: the timeout for this transaction was {options.timeout} ms, "
                f"however it took longer than that. The transaction was rolled back.",
                meta={"timeout": options.timeout},
            ) from None
        except BaseException:
            await transaction.rollback()
            raise
        try:
            await transaction.commit()
        except sa_exc.SQLAlchemyError as exc:
            transaction.state = TransactionState.ROLLED_BACK
            raise translate(exc) from exc
        return result
    finally:
        await conn.close()
