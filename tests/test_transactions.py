import asyncio

import pytest

from quizstore import (
    IsolationLevel, TransactionClosedError, TransactionTimeoutError, UniqueConstraintError, ValidationError,
)
from conftest import make_user


async def test_batch_transaction_returns_results_in_order(client):
    user, attempt, count = await client.transaction([
        client.user.create(data={"email": "ana@example.com", "password": "x"}),
        client.quiz_attempt.create(data={"quiz_data": {"q": 1}}),
        client.user.count(),
    ])
    assert user["email"] == "ana@example.com"
    assert attempt["quiz_data"] == {"q": 1}
    assert count == 1


async def test_batch_transaction_is_atomic(client):
    with pytest.raises(UniqueConstraintError) as exc:
        await client.transaction([
            client.user.create(data={"email": "ana@example.com", "password": "x"}),
            client.user.create(data={"email": "ana@example.com", "password": "y"}),
        ])
    assert exc.value.model == "user"
    assert exc.value.action == "create"
    assert await client.user.count() == 0


async def test_batch_transaction_rejects_unprepared_items(client):
    with pytest.raises(ValidationError):
        await client.transaction([client.user.count(), "SELECT 1"])


async def test_interactive_transaction_commits(client):
    async def body(tx):
        user = await tx.user.create(data={"email": "ana@example.com", "password": "x"})
        await tx.payment.create(data={"user_id": user["id"], "amount": "4.00", "type": "access_pass"})
        return user["id"]

    user_id = await client.transaction(body)
    assert await client.payment.count(where={"user_id": user_id}) == 1


async def test_interactive_transaction_rolls_back_on_error(client):
    class Boom(Exception):
        pass

    async def body(tx):
        await tx.user.create(data={"email": "ana@example.com", "password": "x"})
        assert await tx.user.count() == 1
        raise Boom()

    with pytest.raises(Boom):
        await client.transaction(body)
    assert await client.user.count() == 0


async def test_timeout_rolls_back_and_closes_transaction(client):
    captured = {}

    async def body(tx):
        captured["tx"] = tx
        await tx.user.create(data={"email": "ana@example.com", "password": "x"})
        await asyncio.sleep(5)

    with pytest.raises(TransactionTimeoutError) as exc:
        await client.transaction(body, timeout=200)
    assert isinstance(exc.value, TimeoutError)
    assert await client.user.count() == 0

    tx = captured["tx"]
    assert tx.state == "rolled_back"
    with pytest.raises(TransactionClosedError):
        await tx.user.count()


async def test_transaction_client_is_closed_after_commit(client):
    captured = {}

    async def body(tx):
        captured["tx"] = tx
        return await tx.user.count()

    assert await client.transaction(body) == 0
    tx = captured["tx"]
    assert tx.state == "committed"
    with pytest.raises(TransactionClosedError):
        await tx.user.create(data={"email": "late@example.com", "password": "x"})


async def test_raw_queries_inside_transaction(client):
    await make_user(client)

    async def body(tx):
        changed = await tx.execute_raw("UPDATE users SET first_name = :name", name="Ana")
        rows = await tx.query_raw("SELECT first_name FROM users")
        return changed, rows

    changed, rows = await client.transaction(body)
    assert changed == 1
    assert rows == [{"first_name": "Ana"}]


async def test_isolation_levels(client):
    result = await client.transaction([client.user.count()], isolation_level=IsolationLevel.SERIALIZABLE)
    assert result == [0]
    # SQLite only offers SERIALIZABLE and READ UNCOMMITTED
    with pytest.raises(ValidationError):
        await client.transaction([client.user.count()], isolation_level=IsolationLevel.REPEATABLE_READ)
