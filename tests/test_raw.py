import pytest

from quizstore import UnknownRequestError
from conftest import make_user


async def test_execute_and_query_raw(client):
    await make_user(client, email="ana@example.com")
    await make_user(client, email="bob@example.com")

    changed = await client.execute_raw(
        "UPDATE users SET first_name = :name WHERE email = :email", name="Ana", email="ana@example.com"
    )
    assert changed == 1

    rows = await client.query_raw("SELECT email, first_name FROM users ORDER BY email")
    assert rows == [
        {"email": "ana@example.com", "first_name": "Ana"},
        {"email": "bob@example.com", "first_name": None},
    ]


async def test_parameters_are_bound_not_interpolated(client):
    await make_user(client)
    rows = await client.query_raw("SELECT id FROM users WHERE email = :email", email="x' OR '1'='1")
    assert rows == []


async def test_unsafe_variants(client):
    user = await make_user(client)
    rows = await client.query_raw_unsafe("SELECT email FROM users WHERE id = ?", user["id"])
    assert rows == [{"email": user["email"]}]
    assert await client.execute_raw_unsafe("DELETE FROM users WHERE id = ?", user["id"]) == 1
    assert await client.user.count() == 0


async def test_raw_errors_are_translated(client):
    with pytest.raises(UnknownRequestError) as exc:
        await client.query_raw("SELECT * FROM no_such_table")
    assert "no_such_table" in exc.value.message
    assert exc.value.action == "query_raw"
