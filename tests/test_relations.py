import pytest

from quizstore import Client, ValidationError
from quizstore.database import init_db
from conftest import make_payment, make_user, sqlite_url


async def test_missing_to_one_is_none_and_empty_to_many_is_list(client):
    attempt = await client.quiz_attempt.create(data={"quiz_data": {}})
    loaded = await client.quiz_attempt.find_unique(where={"id": attempt["id"]}, include={"user": True})
    assert loaded["user"] is None

    user = await make_user(client)
    loaded = await client.user.find_unique(where={"id": user["id"]}, include={"payments": True})
    assert loaded["payments"] == []


async def test_include_batches_per_parent(client):
    ana = await make_user(client, email="ana@example.com")
    bob = await make_user(client, email="bob@example.com")
    for _ in range(3):
        await make_payment(client, ana["id"])
    await make_payment(client, bob["id"])

    users = await client.user.find_many(order_by={"id": "asc"}, include={"payments": True})
    assert [len(u["payments"]) for u in users] == [3, 1]
    assert all(p["user_id"] == ana["id"] for p in users[0]["payments"])

    payments = await client.payment.find_many(include={"user": {"select": {"email": True}}}, order_by={"id": "asc"})
    assert [p["user"] for p in payments] == [{"email": "ana@example.com"}] * 3 + [{"email": "bob@example.com"}]


async def test_nested_relation_pagination_is_per_parent(client):
    ana = await make_user(client, email="ana@example.com")
    bob = await make_user(client, email="bob@example.com")
    ana_payments = [await make_payment(client, ana["id"]) for _ in range(3)]
    bob_payments = [await make_payment(client, bob["id"]) for _ in range(2)]

    users = await client.user.find_many(
        order_by={"id": "asc"},
        include={"payments": {"take": 1, "order_by": {"id": "desc"}}},
    )
    assert [u["payments"][0]["id"] for u in users] == [ana_payments[-1]["id"], bob_payments[-1]["id"]]


async def test_nested_relation_filter(client):
    user = await make_user(client)
    await make_payment(client, user["id"], status="completed")
    await make_payment(client, user["id"])
    loaded = await client.user.find_unique(
        where={"id": user["id"]},
        include={"payments": {"where": {"status": "completed"}}},
    )
    assert [p["status"] for p in loaded["payments"]] == ["completed"]


async def test_nested_include_two_levels(client):
    user = await make_user(client)
    attempt = await client.quiz_attempt.create(data={"quiz_data": {}, "user_id": user["id"]})
    await make_payment(client, user["id"], quiz_attempt_id=attempt["id"])
    payment = await client.payment.find_first(include={"quiz_attempt": {"include": {"user": True}}})
    assert payment["quiz_attempt"]["id"] == attempt["id"]
    assert payment["quiz_attempt"]["user"]["id"] == user["id"]


async def test_relation_counts(client):
    user = await make_user(client)
    await make_payment(client, user["id"], status="completed")
    await make_payment(client, user["id"])
    other = await make_user(client, email="other@example.com")

    users = await client.user.find_many(order_by={"id": "asc"}, include={"_count": True})
    assert users[0]["_count"]["payments"] == 2
    assert users[0]["_count"]["quiz_attempts"] == 0
    assert users[1]["_count"]["payments"] == 0
    assert users[1]["id"] == other["id"]

    selected = await client.user.find_unique(
        where={"id": user["id"]},
        select={"email": True, "_count": {"select": {"payments": {"where": {"status": "completed"}}}}},
    )
    assert selected == {"email": "ana@example.com", "_count": {"payments": 1}}


async def test_select_projects_only_requested_fields(client):
    user = await make_user(client, first_name="Ana")
    selected = await client.user.find_unique(where={"id": user["id"]}, select={"id": True, "first_name": True})
    assert selected == {"id": user["id"], "first_name": "Ana"}

    omitted = await client.user.find_unique(where={"id": user["id"]}, omit={"password": True})
    assert "password" not in omitted
    assert omitted["email"] == "ana@example.com"


@pytest.fixture
async def omitting_client(tmp_path):
    db = Client(datasource_url=sqlite_url(tmp_path), omit={"User": {"password": True}})
    await init_db(db.engine)
    yield db
    await db.disconnect()


async def test_global_omit(omitting_client):
    user = await make_user(omitting_client)
    assert "password" not in user

    payment = await make_payment(omitting_client, user["id"])
    loaded = await omitting_client.payment.find_unique(where={"id": payment["id"]}, include={"user": True})
    assert "password" not in loaded["user"]

    revealed = await omitting_client.user.find_unique(where={"id": user["id"]}, omit={"password": False})
    assert revealed["password"] == "hashed"

    selected = await omitting_client.user.find_unique(where={"id": user["id"]}, select={"password": True})
    assert selected == {"password": "hashed"}


def test_global_omit_is_validated():
    with pytest.raises(ValidationError):
        Client(datasource_url="sqlite+aiosqlite:///:memory:", omit={"Nope": {"password": True}})
    with pytest.raises(ValidationError):
        Client(datasource_url="sqlite+aiosqlite:///:memory:", omit={"User": {"nope": True}})


def test_client_options_are_validated():
    with pytest.raises(ValidationError):
        Client(error_format="loud")
    with pytest.raises(ValidationError):
        Client(datasources={"other": {"url": "sqlite+aiosqlite://"}})
    with pytest.raises(ValidationError):
        Client(datasources={"db": {"url": "sqlite+aiosqlite://"}}, datasource_url="sqlite+aiosqlite://")
    with pytest.raises(ValidationError):
        Client(log=["verbose"])
